import logging

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from app.db.session import SessionLocal

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/system", tags=["System"])

@router.get("/health")
def system_health():
    db_ok = True
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(f"Health check database error: {e}")
        db_ok = False

    return {
        "status": "ok" if db_ok else "degraded",
        "database": "connected" if db_ok else "error",
        "api_version": "1.0.0",
        "service": "Entitlements API"
    }
