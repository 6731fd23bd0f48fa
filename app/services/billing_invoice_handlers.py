"""
Invoice event handlers for Stripe webhooks.

Handles invoice.payment_succeeded and invoice.payment_failed events.
"""
import logging
from typing import Dict, Optional

from sqlalchemy.orm import Session

from app.db.models.entitlement import ACTIVE, PAYMENT_FAILED, PENDING
from app.services import entitlement_repository as repo
from app.services.link_service import activate_subscription, retire_if_canceled
from app.services.stripe_service import PaymentProvider

logger = logging.getLogger(__name__)


def _invoice_subscription_id(invoice_data: Dict) -> Optional[str]:
    subscription_id = invoice_data.get("subscription")
    if subscription_id:
        return subscription_id
    # Newer API versions nest the subscription under the invoice parent
    parent = invoice_data.get("parent") or {}
    return (parent.get("subscription_details") or {}).get("subscription")


def handle_invoice_payment_succeeded(event_data: Dict, db: Session, provider: PaymentProvider) -> Optional[int]:
    """
    Handle invoice.payment_succeeded webhook event.

    Makes the paid subscription the active entitlement of its track.
    """
    invoice_data = event_data.get("object", {})
    subscription_id = _invoice_subscription_id(invoice_data)

    if not subscription_id:
        logger.warning("invoice.payment_succeeded: No subscription ID in invoice")
        return None

    row = repo.get_entitlement(db, subscription_id)
    if not row:
        logger.warning(f"invoice.payment_succeeded: Entitlement not found for subscription_id={subscription_id}")
        return None

    if retire_if_canceled(provider, row, ACTIVE):
        return row.user_id

    if row.status != ACTIVE:
        activate_subscription(
            db,
            provider,
            subscription_id=subscription_id,
            user_id=row.user_id,
            track=row.track,
            plan_type=row.plan_type,
        )

    logger.info(f"Invoice payment succeeded: user_id={row.user_id}, subscription_id={subscription_id}")
    return row.user_id


def handle_invoice_payment_failed(event_data: Dict, db: Session, provider: PaymentProvider) -> Optional[int]:
    """
    Handle invoice.payment_failed webhook event.

    Marks the entitlement payment_failed. A first payment failure leaves a
    never-activated subscription pending so it does not become current. An
    upgrade whose payment failed must not leave the user without a plan, so
    rows of the same track held in pending_upgrade go back to active.
    """
    invoice_data = event_data.get("object", {})
    subscription_id = _invoice_subscription_id(invoice_data)

    if not subscription_id:
        logger.warning("invoice.payment_failed: No subscription ID in invoice")
        return None

    row = repo.get_entitlement(db, subscription_id)
    if not row:
        logger.warning(f"invoice.payment_failed: Entitlement not found for subscription_id={subscription_id}")
        return None

    if retire_if_canceled(provider, row, PAYMENT_FAILED):
        return row.user_id

    if row.status != PENDING:
        row = repo.update_status(db, subscription_id, PAYMENT_FAILED)

    restored = repo.restore_pending_upgrade(db, row.user_id, row.track)

    logger.warning(
        f"Invoice payment failed: user_id={row.user_id}, subscription_id={subscription_id}, "
        f"restored={restored}"
    )
    return row.user_id
