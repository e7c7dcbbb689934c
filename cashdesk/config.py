from dataclasses import dataclass
from pathlib import Path
from dotenv import load_dotenv
import os

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

MIN_JWT_SECRET_LENGTH = 32


class ConfigurationError(Exception):
    """Raised when the process environment cannot run the service"""
    pass


@dataclass(frozen=True)
class Settings:
    mongo_url: str
    db_name: str
    jwt_secret_key: str
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 30
    log_level: str = "INFO"
    audit_queue_size: int = 1000

    def validate(self) -> "Settings":
        # A short HMAC secret makes forged tokens practical
        if not self.jwt_secret_key or len(self.jwt_secret_key) < MIN_JWT_SECRET_LENGTH:
            raise ConfigurationError(
                f"JWT_SECRET_KEY must be defined and at least {MIN_JWT_SECRET_LENGTH} characters long"
            )
        return self


def get_settings() -> Settings:
    """Read settings from the environment (and backend .env, if present)"""
    return Settings(
        mongo_url=os.environ.get('MONGO_URL', 'mongodb://localhost:27017/?replicaSet=rs0'),
        db_name=os.environ.get('DB_NAME', 'cash_desk'),
        jwt_secret_key=os.environ.get('JWT_SECRET_KEY', ''),
        jwt_algorithm=os.environ.get('JWT_ALGORITHM', 'HS256'),
        access_token_expire_minutes=int(os.environ.get('ACCESS_TOKEN_EXPIRE_MINUTES', '30')),
        log_level=os.environ.get('LOG_LEVEL', 'INFO'),
        audit_queue_size=int(os.environ.get('AUDIT_QUEUE_SIZE', '1000')),
    )
