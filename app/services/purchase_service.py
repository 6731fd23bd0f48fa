"""
Purchase service.

Entry points the presentation layer calls: begin a purchase, run the
checkout, follow the reconciliation of an approved subscription, cancel an
entitlement and inspect or resolve redundant coverage.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from app.core.errors import CheckoutFailed, EntitlementError, IntentNotFound, PlanNotFound, PurchaseInProgress
from app.db.models.user import User
from app.db.session import SessionLocal
from app.services.billing_service import sync_subscriptions
from app.services.cancellation import CancellationCoordinator, CancellationResult
from app.services.checkout_bridge import StripeCheckoutBridge
from app.services.entitlement_repository import EntitlementRecord, ProfileProjection
from app.services.entitlement_store import EntitlementStore
from app.services.intent_tracker import Confirmation, Intent, IntentTracker
from app.services.link_client import LinkClient, get_link_client
from app.services.reconciliation import (
    InFlightRegistry,
    ReconciliationStateMachine,
    get_in_flight_registry,
    rollback_upgrade,
)
from app.services.redundancy import RedundancyResolver, RedundancyStatus
from app.services.stripe_service import PaymentProvider, get_payment_provider

logger = logging.getLogger(__name__)


class PurchaseService:
    def __init__(
        self,
        store: EntitlementStore,
        intents: IntentTracker,
        link_client: LinkClient,
        provider: PaymentProvider,
        session_factory: Callable[[], Session] = SessionLocal,
        registry: Optional[InFlightRegistry] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        debounce: Optional[float] = None,
    ):
        self.store = store
        self.intents = intents
        self.link_client = link_client
        self.provider = provider
        self._session_factory = session_factory
        self.registry = registry if registry is not None else get_in_flight_registry()
        self._sleep = sleep

        self.coordinator = CancellationCoordinator(store, provider)
        resolver_kwargs = {"sleep": sleep}
        if debounce is not None:
            resolver_kwargs["debounce"] = debounce
        self.redundancy = RedundancyResolver(store, self.coordinator, **resolver_kwargs)
        self.coordinator.on_change = self.redundancy.notify_change

        self.bridge = StripeCheckoutBridge(provider)
        self.bridge.on_approve(self.approve)
        self.bridge.on_cancel(self.cancel_checkout)
        self.bridge.on_error(self.checkout_error)

    async def _require_intent(self, session_key: Optional[str], user_id: int) -> Intent:
        intent = await self.intents.get_intent(session_key) if session_key else None
        if intent is None or intent.user_id != user_id:
            raise IntentNotFound()
        return intent

    async def begin_purchase(self, session_key: str, user_id: int, track: str, plan_type: str) -> Intent:
        if self.registry.is_active(user_id, track):
            logger.warning(f"Purchase started while another is in flight: user_id={user_id}, track={track}")
            raise PurchaseInProgress()
        return await self.intents.begin_purchase(session_key, user_id, track, plan_type)

    async def checkout(self, session_key: str, user_id: int) -> str:
        """
        Create the provider subscription for the session's intent.

        Returns:
            Provider subscription id for the checkout widget to approve
        """
        intent = await self._require_intent(session_key, user_id)

        def create(db: Session) -> str:
            user = db.query(User).filter(User.id == user_id).first()
            checkout = self.bridge.create_subscription(
                intent.target_plan_type,
                intent.track,
                user_id,
                user.email,
                user.stripe_customer_id,
            )
            if user.stripe_customer_id != checkout.customer_id:
                user.stripe_customer_id = checkout.customer_id
                db.commit()
            return checkout.provider_subscription_id

        def work():
            with self._session_factory() as db:
                return create(db)

        try:
            return await run_in_threadpool(work)
        except (PlanNotFound, CheckoutFailed) as e:
            await self.bridge.failed(session_key, user_id, e)
            raise

    async def approve(self, session_key: Optional[str], user_id: int, provider_subscription_id: str):
        """
        Hand an approved subscription to a new reconciliation state machine.

        Returns:
            The machine's transition stream (purchaseStatus)
        """
        intent = await self._require_intent(session_key, user_id)
        machine = ReconciliationStateMachine(
            intent,
            provider_subscription_id,
            store=self.store,
            link_client=self.link_client,
            intents=self.intents,
            registry=self.registry,
            sleep=self._sleep,
            on_entitlement_change=self.redundancy.notify_change,
        )
        return machine.transitions()

    async def cancel_checkout(self, session_key: Optional[str], user_id: int) -> bool:
        """
        The user closed the checkout widget before a subscription was produced.

        Returns:
            True when a provisional upgrade was rolled back
        """
        intent = await self.intents.get_intent(session_key) if session_key else None
        if intent is None or intent.user_id != user_id:
            logger.info(f"Checkout cancelled without an intent: user_id={user_id}")
            return False

        rolled_back = await rollback_upgrade(self.store, intent)
        await self.intents.clear(session_key)
        logger.info(
            f"Checkout aborted: user_id={user_id}, track={intent.track}, "
            f"plan={intent.target_plan_type}, rolled_back={rolled_back}"
        )
        if rolled_back:
            self.redundancy.notify_change(user_id)
        return rolled_back

    async def checkout_error(self, session_key: Optional[str], user_id: int, error: EntitlementError) -> EntitlementError:
        """
        The checkout widget failed.

        A plan the provider does not know ends the attempt; other failures keep
        the intent so the user can retry the checkout.
        """
        logger.warning(f"Checkout error: user_id={user_id}, kind={error.kind}, detail={error.detail}")
        if isinstance(error, PlanNotFound):
            await self.cancel_checkout(session_key, user_id)
            return error
        if not isinstance(error, CheckoutFailed):
            return CheckoutFailed(detail=error.detail or error.user_message)
        return error

    async def confirmation(self, session_key: Optional[str]) -> Optional[Confirmation]:
        if not session_key:
            return None
        return await self.intents.consume_confirmation(session_key)

    async def cancel_entitlement(self, user_id: int, track: str) -> CancellationResult:
        return await self.coordinator.cancel(user_id, track)

    async def redundancy_status(self, user_id: int) -> RedundancyStatus:
        return await self.redundancy.status(user_id)

    async def resolve_redundancy(self, user_id: int) -> CancellationResult:
        return await self.redundancy.resolve(user_id)

    async def entitlements(self, user_id: int) -> Tuple[ProfileProjection, List[EntitlementRecord]]:
        projection = await self.store.get_profile_projection(user_id)
        rows = await self.store.list_entitlements(user_id)
        return projection, rows

    async def sync(self, user_id: int) -> Dict[str, int]:
        def work():
            with self._session_factory() as db:
                return sync_subscriptions(db, user_id, self.provider)

        counts = await run_in_threadpool(work)
        self.redundancy.notify_change(user_id)
        return counts


_service: Optional[PurchaseService] = None


def get_purchase_service() -> PurchaseService:
    global _service
    if _service is None:
        store = EntitlementStore()
        _service = PurchaseService(
            store=store,
            intents=IntentTracker(store),
            link_client=get_link_client(),
            provider=get_payment_provider(),
        )
    return _service
