"""
Script to re-read a user's subscriptions from Stripe and fix drifted entitlements.
Run: python -m scripts.sync_user_entitlements user@example.com
"""
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.db.session import SessionLocal
from app.db.models.user import User
from app.services.billing_service import sync_subscriptions
from app.services.stripe_service import get_payment_provider
from sqlalchemy.exc import SQLAlchemyError
import logging

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def sync_user(email: str, session_factory=SessionLocal, provider=None):
    """Sync one user's entitlements; returns the sync counts, or None on failure."""
    db = session_factory()
    try:
        user = db.query(User).filter(User.email == email.lower()).first()
        if not user:
            logger.error(f"User {email} not found")
            return None

        logger.info(f"Found existing user: {email} (ID: {user.id})")
        counts = sync_subscriptions(db, user.id, provider or get_payment_provider())
        logger.info(f"Synced user {email}: {counts}")
        return counts
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error syncing user: {e}", exc_info=True)
        return None
    finally:
        db.close()


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("Usage: python -m scripts.sync_user_entitlements <email>")
        sys.exit(2)

    email = sys.argv[1]
    counts = sync_user(email)

    if counts is not None:
        print(f"\n[SUCCESS] {email}: {counts['updated']} of {counts['total']} entitlements corrected, {counts['active']} active")
    else:
        print(f"\n[ERROR] Failed to sync user {email}")
        sys.exit(1)
