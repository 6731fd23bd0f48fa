from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index
from sqlalchemy.sql import func
from app.db.base import Base

PENDING = "pending"
ACTIVE = "active"
SUSPENDED = "suspended"
PAYMENT_FAILED = "payment_failed"
PENDING_UPGRADE = "pending_upgrade"
CANCELED = "canceled"
EXPIRED = "expired"

# At most one row per (user_id, track) may hold one of these at a time
CURRENT_STATUSES = (ACTIVE, SUSPENDED, PAYMENT_FAILED, PENDING_UPGRADE)


class Entitlement(Base):
    """
    One row per historical provider subscription.

    Rows are written by targeted upserts keyed by provider_subscription_id.
    """
    __tablename__ = "entitlements"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    track = Column(String, nullable=False)  # interview | resume
    plan_type = Column(String, nullable=False, default="free")
    provider_subscription_id = Column(String, unique=True, nullable=False, index=True)
    status = Column(String, nullable=False, default=PENDING)
    end_date = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("idx_entitlement_user_track", "user_id", "track"),
    )

    def __repr__(self):
        return (
            f"<Entitlement {self.provider_subscription_id} user={self.user_id} "
            f"track={self.track} plan={self.plan_type} status={self.status}>"
        )
