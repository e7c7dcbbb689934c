"""
Cash desk: cash transactions and master cash handover for field-service cities
"""

__version__ = "1.0.0"
