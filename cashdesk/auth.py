from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional
import jwt
from fastapi import HTTPException, Request, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import logging

from cashdesk.config import Settings
from cashdesk.models import CallerIdentity, RequestOrigin, Role

logger = logging.getLogger(__name__)

# HTTP Bearer for token extraction
security = HTTPBearer()


def create_access_token(
    settings: Settings,
    user_id: str,
    role: str,
    login: str = "",
    name: str = "",
    cities: Optional[Iterable[str]] = None,
    expires_delta: Optional[timedelta] = None
) -> str:
    """
    Create JWT access token.
    Expires in ACCESS_TOKEN_EXPIRE_MINUTES unless `expires_delta` is given.
    """
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    )
    to_encode = {
        "sub": str(user_id),
        "login": login,
        "role": role,
        "name": name,
        "cities": list(cities or []),
        "exp": expire,
        "type": "access",
    }
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str, settings: Settings) -> Dict[str, Any]:
    """Decode and validate JWT access token"""
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Access token has expired. Please refresh."
        )
    except jwt.InvalidTokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials"
        )

    # Verify token type
    if payload.get("type") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type"
        )
    return payload


def identity_from_payload(payload: Dict[str, Any]) -> CallerIdentity:
    """
    Build the caller identity from a verified token payload.

    An unknown role does not fail authentication; it yields role=None and the
    access policy denies every operation for it.
    """
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload"
        )

    role = Role.parse(payload.get("role"))
    if role is None:
        logger.warning(f"[AUTH] Unrecognised role '{payload.get('role')}' for user:{user_id}")

    return CallerIdentity(
        user_id=str(user_id),
        login=payload.get("login") or "",
        role=role,
        display_name=payload.get("name") or "",
        allowed_cities=frozenset(payload.get("cities") or [])
    )


async def get_current_caller(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> CallerIdentity:
    """Extract and validate current caller from JWT token"""
    settings: Settings = request.app.state.settings
    payload = decode_access_token(credentials.credentials, settings)
    return identity_from_payload(payload)


def get_request_origin(request: Request) -> RequestOrigin:
    return RequestOrigin(
        source_ip=request.client.host if request.client else "unknown",
        user_agent=request.headers.get("user-agent", "Unknown")
    )
