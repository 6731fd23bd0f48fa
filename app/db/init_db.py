import logging
from app.db.session import engine
from app.db.base import Base
from app.db import models  # noqa: F401  registers all tables

logger = logging.getLogger(__name__)


def init_db(bind=None):
    """Create all tables. Schema migrations are handled outside this service."""
    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database tables ensured")
