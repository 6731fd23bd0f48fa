"""
Server link function.

Authoritatively verifies a purchase with the payment provider and writes the
entitlement store. Races with the provider's own webhook; both paths are
targeted upserts keyed by provider subscription id, so either may win.
"""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import ProviderError
from app.db.models.entitlement import ACTIVE, CANCELED, CURRENT_STATUSES, Entitlement
from app.db.models.user import User
from app.schemas.billing import LinkRequest, LinkResponse
from app.services import entitlement_repository as repo
from app.services.stripe_service import PaymentProvider

logger = logging.getLogger(__name__)

SUPERSEDED_REASON = "User changed subscription plan"


def _restore_if_upgrade(db: Session, request: LinkRequest) -> None:
    if request.is_upgrade:
        repo.restore_pending_upgrade(db, request.user_id, request.track)


def activate_subscription(
    db: Session,
    provider: PaymentProvider,
    subscription_id: str,
    user_id: int,
    track: str,
    plan_type: str,
    end_date: Optional[datetime] = None,
) -> List[str]:
    """
    Make a subscription the one current entitlement of its track.

    Upserts the row as active, cancels every other current row of the track
    and refreshes the projection in one transaction. Superseded subscriptions
    are then cancelled with the provider, best-effort.

    Returns:
        Provider subscription ids that were superseded

    Raises:
        SQLAlchemyError: The local write failed and was rolled back
    """
    try:
        repo.upsert_entitlement(
            db,
            provider_subscription_id=subscription_id,
            user_id=user_id,
            track=track,
            plan_type=plan_type,
            status=ACTIVE,
            end_date=end_date,
            commit=False,
        )
        superseded = [
            row.provider_subscription_id
            for row in repo.supersede_current(db, user_id, track, keep=subscription_id)
        ]
        repo.refresh_profile_projection(db, user_id, commit=False)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    logger.info(
        f"Subscription activated: subscription_id={subscription_id}, user_id={user_id}, "
        f"track={track}, plan={plan_type}, superseded={superseded}"
    )

    cancel_superseded(provider, superseded)
    return superseded


def cancel_superseded(provider: PaymentProvider, subscription_ids: List[str]) -> None:
    """Cancel superseded subscriptions with the provider, best-effort."""
    for old_id in subscription_ids:
        try:
            provider.cancel_subscription(old_id, reason=SUPERSEDED_REASON)
        except ProviderError as e:
            # Local state stays canceled; sync and later webhooks retry the cancellation.
            logger.error(f"Failed to cancel superseded subscription {old_id} with provider: {e}")


def retire_if_canceled(provider: PaymentProvider, row: Optional[Entitlement], provider_status: str) -> bool:
    """
    Keep a locally canceled subscription out of the current set.

    When the provider still reports such a row live (its earlier provider
    cancellation failed), the cancellation is retried and the row stays
    canceled.

    Returns:
        True when the row was retired and the caller must not write it
    """
    if row is None or row.status != CANCELED or provider_status not in CURRENT_STATUSES:
        return False

    logger.warning(
        f"Canceled subscription still live with provider: subscription_id={row.provider_subscription_id}, "
        f"user_id={row.user_id}, track={row.track}, provider_status={provider_status}; retrying cancellation"
    )
    cancel_superseded(provider, [row.provider_subscription_id])
    return True


def link_subscription(db: Session, request: LinkRequest, provider: PaymentProvider) -> LinkResponse:
    """
    Verify a provider subscription and link it to the user's entitlement.

    Args:
        db: Database session
        request: Link request from the reconciliation engine
        provider: Payment provider adapter

    Returns:
        LinkResponse with success flag and error message
    """
    subscription_id = request.provider_subscription_id
    logger.info(
        f"Link requested: subscription_id={subscription_id}, user_id={request.user_id}, "
        f"track={request.track}, plan={request.plan_type}, is_upgrade={request.is_upgrade}"
    )

    try:
        subscription = provider.get_subscription(subscription_id)
    except ProviderError as e:
        logger.error(f"Link failed, provider lookup error: subscription_id={subscription_id}, error={e}")
        _restore_if_upgrade(db, request)
        return LinkResponse(success=False, error=str(e))

    if not subscription.is_active:
        logger.warning(
            f"Link refused, subscription not active with provider: "
            f"subscription_id={subscription_id}, provider_status={subscription.raw_status}"
        )
        _restore_if_upgrade(db, request)
        return LinkResponse(
            success=False,
            error=f"Subscription is not active with the payment provider (status: {subscription.raw_status})",
        )

    user = db.query(User).filter(User.id == request.user_id).first()
    if not user:
        logger.error(f"Link failed, user not found: user_id={request.user_id}")
        return LinkResponse(success=False, error="User not found")

    plan_type = request.plan_type
    if subscription.plan_type and subscription.plan_type != plan_type:
        logger.warning(
            f"Plan mismatch for subscription_id={subscription_id}: requested={plan_type}, "
            f"provider={subscription.plan_type}; using provider value"
        )
        plan_type = subscription.plan_type

    if request.is_upgrade:
        repo.mark_pending_upgrade(db, request.user_id, request.track, exclude=subscription_id)

    try:
        activate_subscription(
            db,
            provider,
            subscription_id=subscription_id,
            user_id=request.user_id,
            track=request.track,
            plan_type=plan_type,
            end_date=subscription.current_period_end,
        )
    except SQLAlchemyError as e:
        logger.error(f"Link failed writing entitlement: subscription_id={subscription_id}, error={e}")
        _restore_if_upgrade(db, request)
        return LinkResponse(success=False, error="Failed to record subscription")

    return LinkResponse(success=True)
