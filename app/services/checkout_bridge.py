"""
Checkout bridge.

Creates the provider subscription the checkout widget collects payment for,
and dispatches the widget's outcome (approve, cancel, error) to registered
handlers.
"""
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from app.core.errors import CheckoutFailed, EntitlementError, PlanNotFound, ProviderError
from app.core.plan_catalog import get_price_id
from app.services.stripe_service import PaymentProvider

logger = logging.getLogger(__name__)

Handler = Callable[..., Awaitable[Any]]


@dataclass(frozen=True)
class CheckoutSubscription:
    provider_subscription_id: str
    customer_id: str


class StripeCheckoutBridge:
    def __init__(self, provider: PaymentProvider):
        self.provider = provider
        self._on_approve: Optional[Handler] = None
        self._on_cancel: Optional[Handler] = None
        self._on_error: Optional[Handler] = None

    def on_approve(self, handler: Handler) -> None:
        self._on_approve = handler

    def on_cancel(self, handler: Handler) -> None:
        self._on_cancel = handler

    def on_error(self, handler: Handler) -> None:
        self._on_error = handler

    def create_subscription(
        self,
        plan_id: str,
        track: str,
        user_id: int,
        email: str,
        customer_id: Optional[str] = None,
    ) -> CheckoutSubscription:
        """
        Create an incomplete provider subscription for a plan.

        Raises:
            PlanNotFound: No price configured or the provider does not know it
            CheckoutFailed: Any other provider failure; the user may retry
        """
        price_id = get_price_id(plan_id)
        if not price_id:
            logger.error(f"No price configured for plan={plan_id}")
            raise PlanNotFound(detail=f"No price is configured for plan '{plan_id}'")

        metadata = {"user_id": str(user_id), "plan_type": plan_id, "track": track}
        try:
            customer_id = self.provider.get_or_create_customer(email, user_id, customer_id)
            subscription_id = self.provider.create_subscription(price_id, customer_id, metadata)
        except ProviderError as e:
            logger.error(f"Checkout failed: user_id={user_id}, plan={plan_id}, error={e}")
            raise CheckoutFailed(detail=e.user_message) from e

        logger.info(f"Checkout subscription created: user_id={user_id}, plan={plan_id}, subscription_id={subscription_id}")
        return CheckoutSubscription(subscription_id, customer_id)

    async def approved(self, session_key: str, user_id: int, provider_subscription_id: str):
        if self._on_approve is None:
            raise RuntimeError("No approve handler registered")
        return await self._on_approve(session_key, user_id, provider_subscription_id)

    async def cancelled(self, session_key: str, user_id: int):
        if self._on_cancel is None:
            raise RuntimeError("No cancel handler registered")
        return await self._on_cancel(session_key, user_id)

    async def failed(self, session_key: str, user_id: int, error: EntitlementError):
        if self._on_error is None:
            raise RuntimeError("No error handler registered")
        return await self._on_error(session_key, user_id, error)
