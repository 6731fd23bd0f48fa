"""
Billing service for Stripe webhook events and subscription sync.

The webhook is the second writer of the entitlement store, racing the link
function. Every write is an upsert keyed by the provider subscription id.
"""
import logging
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from app.core.errors import ProviderError
from app.db.models.entitlement import ACTIVE, CANCELED, CURRENT_STATUSES, Entitlement
from app.db.models.user import User
from app.services import entitlement_repository as repo
from app.services.billing_invoice_handlers import (
    handle_invoice_payment_failed,
    handle_invoice_payment_succeeded,
)
from app.services.link_service import activate_subscription, cancel_superseded, retire_if_canceled
from app.services.stripe_service import PaymentProvider, ProviderSubscription, subscription_from_stripe

logger = logging.getLogger(__name__)


def _resolve_user_id(subscription: ProviderSubscription, existing: Optional[Entitlement], customer_id: Optional[str], db: Session) -> Optional[int]:
    if subscription.user_id:
        return subscription.user_id
    if existing is not None:
        return existing.user_id
    if customer_id:
        user = db.query(User).filter(User.stripe_customer_id == customer_id).first()
        if user:
            return user.id
    return None


def _apply_subscription(event_data: Dict, db: Session, provider: PaymentProvider, event_type: str) -> Optional[int]:
    subscription_data = event_data.get("object", {})
    subscription = subscription_from_stripe(subscription_data)
    existing = repo.get_entitlement(db, subscription.id)
    was_current = existing is not None and existing.status in CURRENT_STATUSES

    user_id = _resolve_user_id(subscription, existing, subscription_data.get("customer"), db)
    track = subscription.track or (existing.track if existing else None)
    plan_type = subscription.plan_type or (existing.plan_type if existing else None)
    if not user_id or not track or not plan_type:
        logger.warning(
            f"{event_type}: cannot attribute subscription_id={subscription.id} "
            f"(user_id={user_id}, track={track}, plan={plan_type})"
        )
        return None

    if retire_if_canceled(provider, existing, subscription.status):
        return user_id

    if subscription.status == ACTIVE:
        activate_subscription(
            db,
            provider,
            subscription_id=subscription.id,
            user_id=user_id,
            track=track,
            plan_type=plan_type,
            end_date=subscription.current_period_end,
        )
    else:
        repo.upsert_entitlement(
            db,
            provider_subscription_id=subscription.id,
            user_id=user_id,
            track=track,
            plan_type=plan_type,
            status=subscription.status,
            end_date=subscription.current_period_end,
            commit=False,
        )
        superseded = []
        if subscription.status in CURRENT_STATUSES and not was_current:
            superseded = [
                row.provider_subscription_id
                for row in repo.supersede_current(db, user_id, track, keep=subscription.id)
            ]
        repo.refresh_profile_projection(db, user_id, commit=False)
        db.commit()
        cancel_superseded(provider, superseded)

    logger.info(
        f"{event_type}: user_id={user_id}, track={track}, plan={plan_type}, "
        f"status={subscription.status}, subscription_id={subscription.id}"
    )
    return user_id


def handle_subscription_created(event_data: Dict, db: Session, provider: PaymentProvider) -> Optional[int]:
    """
    Handle customer.subscription.created webhook event.

    Returns:
        The affected user id, or None when the subscription cannot be attributed
    """
    return _apply_subscription(event_data, db, provider, "Subscription created")


def handle_subscription_updated(event_data: Dict, db: Session, provider: PaymentProvider) -> Optional[int]:
    """Handle customer.subscription.updated webhook event."""
    return _apply_subscription(event_data, db, provider, "Subscription updated")


def handle_subscription_deleted(event_data: Dict, db: Session, provider: PaymentProvider) -> Optional[int]:
    """
    Handle customer.subscription.deleted webhook event.

    Marks the entitlement canceled; the projection falls back to free if it
    was the current one.
    """
    subscription_id = event_data.get("object", {}).get("id")
    row = repo.update_status(db, subscription_id, CANCELED)
    if row is None:
        logger.warning(f"Subscription deleted for unknown subscription_id={subscription_id}")
        return None

    logger.info(f"Subscription deleted: user_id={row.user_id}, track={row.track}, subscription_id={subscription_id}")
    return row.user_id


WebhookHandler = Callable[[Dict, Session, PaymentProvider], Optional[int]]

EVENT_HANDLERS: Dict[str, WebhookHandler] = {
    "customer.subscription.created": handle_subscription_created,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
    "invoice.payment_succeeded": handle_invoice_payment_succeeded,
    "invoice.payment_failed": handle_invoice_payment_failed,
}


def handle_event(event: Dict, db: Session, provider: PaymentProvider) -> Optional[int]:
    """
    Dispatch a verified webhook event.

    Args:
        event: Verified Stripe event
        db: Database session
        provider: Payment provider adapter

    Returns:
        The user id whose entitlements changed, if any
    """
    event_type = event.get("type")
    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.debug(f"Ignoring webhook event type={event_type}")
        return None
    return handler(event.get("data", {}), db, provider)


def sync_subscriptions(db: Session, user_id: int, provider: PaymentProvider) -> Dict[str, int]:
    """
    Re-read every entitlement of a user from the provider and fix drifted statuses.

    Provider lookups that fail are logged and skipped. A row turning current
    supersedes the other current rows of its track; a canceled row the
    provider still bills stays canceled and its cancellation is retried.

    Returns:
        Counts of entitlements seen, rewritten and active afterwards
    """
    rows = repo.list_entitlements(db, user_id)
    updated = 0
    superseded = []

    for row in rows:
        try:
            subscription = provider.get_subscription(row.provider_subscription_id)
        except ProviderError as e:
            logger.warning(f"Sync skipped subscription_id={row.provider_subscription_id}: {e}")
            continue

        if row.provider_subscription_id in superseded:
            continue
        if retire_if_canceled(provider, row, subscription.status):
            continue

        if subscription.status in CURRENT_STATUSES and row.status not in CURRENT_STATUSES:
            db.flush()
            superseded.extend(
                old.provider_subscription_id
                for old in repo.supersede_current(db, user_id, row.track, keep=row.provider_subscription_id)
            )

        if subscription.status != row.status:
            logger.info(
                f"Sync corrected status: subscription_id={row.provider_subscription_id}, "
                f"{row.status} -> {subscription.status}"
            )
            row.status = subscription.status
            updated += 1
        if subscription.current_period_end:
            row.end_date = subscription.current_period_end

    db.flush()
    repo.refresh_profile_projection(db, user_id, commit=False)
    db.commit()
    cancel_superseded(provider, superseded)

    active = sum(1 for row in rows if row.status == ACTIVE)

    logger.info(f"Sync complete: user_id={user_id}, total={len(rows)}, updated={updated}, active={active}")
    return {"total": len(rows), "updated": updated, "active": active}
