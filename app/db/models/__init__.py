"""
Database models module.

This module imports all database models to ensure they are registered with SQLAlchemy's Base.metadata
before table creation.
"""
from app.db.models.user import User
from app.db.models.entitlement import Entitlement
from app.db.models.purchase_intent import PurchaseIntent, ConfirmationMarker

__all__ = [
    "User",
    "Entitlement",
    "PurchaseIntent",
    "ConfirmationMarker",
]
