"""
Stripe payment provider adapter.

Subscription lookup, creation, cancellation and webhook verification.
Calls are synchronous (Stripe SDK); async callers go through the thread pool.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

import stripe

from app.core.config import STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET
from app.core.errors import PlanNotFound, ProviderError
from app.core.plan_catalog import get_tier_from_price_id, track_for_tier
from app.db.models.entitlement import (
    ACTIVE,
    CANCELED,
    EXPIRED,
    PAYMENT_FAILED,
    PENDING,
    SUSPENDED,
)

logger = logging.getLogger(__name__)

# Initialize Stripe client
if STRIPE_SECRET_KEY:
    stripe.api_key = STRIPE_SECRET_KEY
else:
    logger.warning("STRIPE_SECRET_KEY not configured - Stripe features disabled")

# Stripe subscription status -> entitlement status
PROVIDER_STATUS_MAP: Dict[str, str] = {
    "active": ACTIVE,
    "trialing": ACTIVE,
    "past_due": PAYMENT_FAILED,
    "unpaid": SUSPENDED,
    "paused": SUSPENDED,
    "canceled": CANCELED,
    "incomplete": PENDING,
    "incomplete_expired": EXPIRED,
}

RESOURCE_MISSING = "resource_missing"


def map_provider_status(raw_status: Optional[str]) -> str:
    return PROVIDER_STATUS_MAP.get((raw_status or "").lower(), PENDING)


@dataclass
class ProviderSubscription:
    """Normalized view of a provider subscription."""
    id: str
    raw_status: str
    status: str
    plan_type: Optional[str] = None
    track: Optional[str] = None
    user_id: Optional[int] = None
    current_period_end: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status == ACTIVE


class PaymentProvider(ABC):
    """Abstract payment provider used by the link, cancellation and checkout flows."""

    @abstractmethod
    def get_subscription(self, subscription_id: str) -> ProviderSubscription:
        """Fetch a subscription. Raises ProviderError on failure."""

    @abstractmethod
    def get_or_create_customer(self, email: str, user_id: int, customer_id: Optional[str] = None) -> str:
        """Return the provider customer id for a user, creating the customer if needed."""

    @abstractmethod
    def create_subscription(self, price_id: str, customer_id: str, metadata: Dict[str, str]) -> str:
        """Create a subscription awaiting payment and return its id."""

    @abstractmethod
    def cancel_subscription(self, subscription_id: str, reason: str, redundant: bool = False) -> None:
        """Cancel a subscription. Raises ProviderError on failure."""


def subscription_from_stripe(data: Dict[str, Any]) -> ProviderSubscription:
    """Build a ProviderSubscription from a Stripe subscription object or webhook payload."""
    metadata = dict(data.get("metadata") or {})
    raw_status = data.get("status") or ""

    plan_type = metadata.get("plan_type")
    if not plan_type:
        items = (data.get("items") or {}).get("data") or [{}]
        price_id = (items[0].get("price") or {}).get("id")
        plan_type = get_tier_from_price_id(price_id)

    track = metadata.get("track") or (track_for_tier(plan_type) if plan_type else None)

    user_id = None
    if metadata.get("user_id"):
        try:
            user_id = int(metadata["user_id"])
        except (TypeError, ValueError):
            logger.warning(f"Ignoring malformed user_id metadata on subscription {data.get('id')}")

    period_end = None
    period_end_timestamp = data.get("current_period_end")
    if period_end_timestamp:
        period_end = datetime.utcfromtimestamp(period_end_timestamp)

    return ProviderSubscription(
        id=data.get("id"),
        raw_status=raw_status,
        status=map_provider_status(raw_status),
        plan_type=plan_type,
        track=track,
        user_id=user_id,
        current_period_end=period_end,
        metadata=metadata,
    )


class StripeProvider(PaymentProvider):
    def get_subscription(self, subscription_id: str) -> ProviderSubscription:
        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as e:
            logger.error(f"Stripe error retrieving subscription {subscription_id}: {e}")
            raise ProviderError(f"Failed to retrieve subscription: {e.user_message or str(e)}", code=e.code)
        return subscription_from_stripe(subscription)

    def get_or_create_customer(self, email: str, user_id: int, customer_id: Optional[str] = None) -> str:
        if customer_id:
            return customer_id
        try:
            customer = stripe.Customer.create(email=email, metadata={"user_id": str(user_id)})
        except stripe.StripeError as e:
            logger.error(f"Stripe error creating customer for user_id={user_id}: {e}")
            raise ProviderError(f"Failed to create customer: {e.user_message or str(e)}", code=e.code)
        logger.info(f"Created Stripe customer: customer_id={customer.id}, user_id={user_id}")
        return customer.id

    def create_subscription(self, price_id: str, customer_id: str, metadata: Dict[str, str]) -> str:
        try:
            subscription = stripe.Subscription.create(
                customer=customer_id,
                items=[{"price": price_id}],
                payment_behavior="default_incomplete",
                metadata=metadata,
            )
        except stripe.InvalidRequestError as e:
            if e.code == RESOURCE_MISSING:
                logger.error(f"Stripe price not found: price_id={price_id}")
                raise PlanNotFound(detail=f"Price {price_id} does not exist with the payment provider")
            logger.error(f"Stripe rejected subscription creation: {e}")
            raise ProviderError(f"Failed to create subscription: {e.user_message or str(e)}", code=e.code)
        except stripe.StripeError as e:
            logger.error(f"Stripe error creating subscription: {e}")
            raise ProviderError(f"Failed to create subscription: {e.user_message or str(e)}", code=e.code)

        logger.info(
            f"Created subscription: subscription_id={subscription.id}, customer_id={customer_id}, "
            f"plan={metadata.get('plan_type')}"
        )
        return subscription.id

    def cancel_subscription(self, subscription_id: str, reason: str, redundant: bool = False) -> None:
        """
        Cancel a subscription with Stripe.

        A subscription Stripe no longer knows about counts as already cancelled.
        Redundancy cleanups are tagged so they can be told apart from churn.
        """
        details = {"comment": reason}
        if redundant:
            details["feedback"] = "other"
        try:
            stripe.Subscription.cancel(subscription_id, cancellation_details=details)
        except stripe.InvalidRequestError as e:
            if e.code == RESOURCE_MISSING:
                logger.warning(f"Subscription {subscription_id} not found at Stripe, treating as cancelled")
                return
            logger.error(f"Stripe rejected cancellation of {subscription_id}: {e}")
            raise ProviderError(e.user_message or str(e), code=e.code)
        except stripe.StripeError as e:
            logger.error(f"Stripe error cancelling {subscription_id}: {e}")
            raise ProviderError(e.user_message or str(e), code=e.code)

        logger.info(f"Cancelled subscription at Stripe: subscription_id={subscription_id}, redundant={redundant}")


def verify_webhook(request_body: bytes, signature: str) -> dict:
    """
    Verify and parse Stripe webhook event.

    Args:
        request_body: Raw request body bytes
        signature: Stripe-Signature header value

    Returns:
        Parsed event dictionary

    Raises:
        ValueError: If webhook verification fails
    """
    if not STRIPE_WEBHOOK_SECRET:
        raise ValueError("STRIPE_WEBHOOK_SECRET not configured")

    try:
        event = stripe.Webhook.construct_event(
            request_body, signature, STRIPE_WEBHOOK_SECRET
        )
        logger.info(f"Verified webhook event: {event['type']}, id={event['id']}")
        return event
    except ValueError as e:
        logger.error(f"Invalid webhook payload: {e}")
        raise ValueError(f"Invalid webhook payload: {e}")
    except stripe.SignatureVerificationError as e:
        logger.error(f"Webhook signature verification failed: {e}")
        raise ValueError(f"Invalid signature: {e}")


_provider: Optional[PaymentProvider] = None


def get_payment_provider() -> PaymentProvider:
    global _provider
    if _provider is None:
        _provider = StripeProvider()
    return _provider
