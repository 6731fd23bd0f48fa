"""
Cancellation coordinator.

Cancels the current entitlement of a track with the payment provider and
only then writes the local status. A provider failure leaves local state
untouched and is reported with the provider's own message.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from fastapi.concurrency import run_in_threadpool

from app.core.errors import NoActiveSubscription, ProviderCancellationFailed, ProviderError
from app.db.models.entitlement import CANCELED, CURRENT_STATUSES
from app.services.entitlement_store import EntitlementStore
from app.services.stripe_service import PaymentProvider

logger = logging.getLogger(__name__)

USER_REASON = "Canceled by user"
REDUNDANT_REASON = "Redundant: interview plan already includes resume features"


@dataclass(frozen=True)
class CancellationResult:
    provider_subscription_id: str
    track: str
    redundant: bool = False
    status: str = CANCELED


class CancellationCoordinator:
    def __init__(
        self,
        store: EntitlementStore,
        provider: PaymentProvider,
        on_change: Optional[Callable[[int], None]] = None,
    ):
        self.store = store
        self.provider = provider
        self.on_change = on_change

    async def cancel(
        self,
        user_id: int,
        track: str,
        provider_subscription_id: Optional[str] = None,
        redundant: bool = False,
    ) -> CancellationResult:
        """
        Cancel the current entitlement on a track.

        Args:
            user_id: Owner of the entitlement
            track: interview or resume
            provider_subscription_id: Expected subscription; must be the current one when given
            redundant: Tag the provider-side cancellation as redundancy cleanup

        Raises:
            NoActiveSubscription: Nothing current on the track, or a different subscription is current
            ProviderCancellationFailed: The provider refused; local state unchanged
        """
        current = await self.store.get_current_entitlement(user_id, track, CURRENT_STATUSES)
        if current is None:
            logger.info(f"Cancel requested with nothing active: user_id={user_id}, track={track}")
            raise NoActiveSubscription()
        if provider_subscription_id and provider_subscription_id != current.provider_subscription_id:
            logger.warning(
                f"Cancel target is not the current entitlement: user_id={user_id}, track={track}, "
                f"requested={provider_subscription_id}, current={current.provider_subscription_id}"
            )
            raise NoActiveSubscription(detail=f"Subscription {provider_subscription_id} is not active on the {track} plan")

        subscription_id = current.provider_subscription_id
        reason = REDUNDANT_REASON if redundant else USER_REASON
        try:
            await run_in_threadpool(self.provider.cancel_subscription, subscription_id, reason, redundant)
        except ProviderError as e:
            logger.error(
                f"Provider refused cancellation: user_id={user_id}, track={track}, "
                f"subscription_id={subscription_id}, error={e}"
            )
            raise ProviderCancellationFailed(message=e.user_message, detail=e.user_message) from e

        await self.store.upsert_entitlement_status(subscription_id, CANCELED, end_date=datetime.utcnow())
        logger.info(
            f"Subscription cancelled: user_id={user_id}, track={track}, "
            f"subscription_id={subscription_id}, redundant={redundant}"
        )
        if self.on_change is not None:
            self.on_change(user_id)
        return CancellationResult(subscription_id, track, redundant)
