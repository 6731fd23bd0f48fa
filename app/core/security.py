import logging
from datetime import datetime, timedelta
from typing import Optional
from jose import jwt, JWTError
from app.core.config import SECRET_KEY, ALGORITHM, SERVICE_TOKEN_SUBJECT

logger = logging.getLogger(__name__)


def create_access_token(data: dict, expires_delta: timedelta = None):
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=60))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> Optional[dict]:
    """Decode a JWT, returning None when it is invalid or expired."""
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError as e:
        logger.warning(f"Rejected access token: {e}")
        return None


def create_service_token(expires_delta: timedelta = None) -> str:
    """
    Create the bearer token the reconciliation engine presents to the link function.
    """
    return create_access_token(
        {"sub": SERVICE_TOKEN_SUBJECT, "scope": "link"},
        expires_delta or timedelta(minutes=5),
    )


def is_service_token(token: str) -> bool:
    payload = decode_access_token(token)
    if not payload:
        return False
    return payload.get("sub") == SERVICE_TOKEN_SUBJECT and payload.get("scope") == "link"
