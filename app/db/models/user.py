from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.sql import func
from app.db.base import Base

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    full_name = Column(String, nullable=True)
    email = Column(String, unique=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    stripe_customer_id = Column(String, nullable=True)

    # Profile projection, derived from the current entitlement per track
    interview_tier = Column(String, default="free", nullable=False)
    interview_status = Column(String, default="inactive", nullable=False)
    resume_tier = Column(String, default="free", nullable=False)
    resume_status = Column(String, default="inactive", nullable=False)
