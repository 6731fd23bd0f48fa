from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey
from sqlalchemy.sql import func
from app.db.base import Base


class PurchaseIntent(Base):
    """
    What the user is buying, persisted so it survives a full page navigation.

    Keyed by the browser checkout session. Deleted once reconciliation
    reaches a terminal state; otherwise it simply expires.
    """
    __tablename__ = "purchase_intents"

    session_key = Column(String, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    track = Column(String, nullable=False)
    target_plan_type = Column(String, nullable=False)
    is_upgrade = Column(Boolean, nullable=False, default=False)
    previous_provider_subscription_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    expires_at = Column(DateTime, nullable=False)


class ConfirmationMarker(Base):
    """Short-lived marker handed to the confirmation screen after a confirmed purchase."""
    __tablename__ = "confirmation_markers"

    session_key = Column(String, primary_key=True)
    provider_subscription_id = Column(String, nullable=False)
    plan_type = Column(String, nullable=False)
    expires_at = Column(DateTime, nullable=False)
