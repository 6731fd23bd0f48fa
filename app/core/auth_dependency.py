from fastapi import Depends, HTTPException
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session
from app.core.security import decode_access_token, is_service_token
from app.db.session import SessionLocal
from app.db.models.user import User

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


def get_db():
    """Database session dependency."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_current_user(token: str = Depends(oauth2_scheme)):
    """Get current user email from JWT token."""
    payload = decode_access_token(token)
    if payload is None or payload.get("scope") == "link":
        raise HTTPException(status_code=401, detail="Invalid token")

    email: str = payload.get("sub")
    if email is None:
        raise HTTPException(status_code=401, detail="Invalid token")

    return email


def get_current_user_obj(
    email: str = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> User:
    """Get current User object from JWT token."""
    user = db.query(User).filter(User.email == email).first()
    if not user:
        raise HTTPException(
            status_code=404,
            detail="User not found"
        )
    return user


def require_service_token(token: str = Depends(oauth2_scheme)) -> None:
    """Only the reconciliation engine's service token may call the link function."""
    if not is_service_token(token):
        raise HTTPException(status_code=403, detail="Service token required")
