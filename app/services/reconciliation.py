"""
Purchase reconciliation state machine.

Drives one purchase attempt from the approved provider subscription to a
terminal state:

    INITIATED -> LINKING -> POLLING -> CONFIRMED | UNCONFIRMED_TIMEOUT
    LINKING -> ROLLED_BACK

The link function and the provider webhook race to write the entitlement
store, so confirmation always comes from a fresh store read, never from the
link response alone. Failed or unconfirmed upgrades restore the previous
entitlement to active.
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Optional, Set, Tuple

from sqlalchemy.exc import SQLAlchemyError

from app.core.config import LINK_TIMEOUT_SECONDS
from app.core.errors import (
    EntitlementError,
    LinkFailure,
    LinkTimeout,
    PurchaseInProgress,
    TransportError,
    UnconfirmedAfterPolling,
)
from app.db.models.entitlement import ACTIVE, PENDING_UPGRADE, SUSPENDED
from app.schemas.billing import LinkRequest
from app.services.entitlement_repository import ProfileProjection
from app.services.entitlement_store import EntitlementStore
from app.services.intent_tracker import Intent, IntentTracker
from app.services.link_client import LinkClient
from app.services.poll_schedule import next_poll_delay

logger = logging.getLogger(__name__)


class ReconciliationState(str, Enum):
    INITIATED = "initiated"
    LINKING = "linking"
    POLLING = "polling"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"
    UNCONFIRMED_TIMEOUT = "unconfirmed_timeout"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    ReconciliationState.CONFIRMED,
    ReconciliationState.ROLLED_BACK,
    ReconciliationState.UNCONFIRMED_TIMEOUT,
})


@dataclass(frozen=True)
class Transition:
    state: ReconciliationState
    provider_subscription_id: str
    error: Optional[EntitlementError] = None

    @property
    def terminal(self) -> bool:
        return self.state.terminal

    def to_dict(self) -> dict:
        data = {
            "state": self.state.value,
            "terminal": self.terminal,
            "provider_subscription_id": self.provider_subscription_id,
        }
        if self.error is not None:
            data["error"] = self.error.kind
            data["message"] = self.error.user_message
            data["retryable"] = self.error.retryable
        return data


class InFlightRegistry:
    """Tracks purchase attempts in progress per (user_id, track)."""

    def __init__(self):
        self._active: Set[Tuple[int, str]] = set()

    def acquire(self, user_id: int, track: str) -> None:
        key = (user_id, track)
        if key in self._active:
            logger.warning(f"Rejected concurrent purchase attempt: user_id={user_id}, track={track}")
            raise PurchaseInProgress()
        self._active.add(key)

    def release(self, user_id: int, track: str) -> None:
        self._active.discard((user_id, track))

    def is_active(self, user_id: int, track: str) -> bool:
        return (user_id, track) in self._active


_registry = InFlightRegistry()

# Statuses an upgrade leaves the previous entitlement in while it is in flight
ROLLBACK_FROM = (PENDING_UPGRADE, SUSPENDED)


def get_in_flight_registry() -> InFlightRegistry:
    return _registry


def is_confirmed(projection: ProfileProjection, intent: Intent) -> bool:
    """
    Whether a store read confirms the purchase.

    The target tier shown active confirms it; so does the track showing
    pending_upgrade, which only the link function writes mid-upgrade.
    """
    status = projection.status_for(intent.track)
    if status == PENDING_UPGRADE:
        return True
    return projection.tier_for(intent.track) == intent.target_plan_type and status == ACTIVE


async def rollback_upgrade(store: EntitlementStore, intent: Intent) -> bool:
    """
    Restore the entitlement an upgrade was replacing.

    Best-effort and idempotent. Only a row still held in pending_upgrade or
    suspended goes back to active; a row a late link has already superseded
    stays canceled. A failed write is logged and never replaces the error
    the caller is already reporting.

    Returns:
        True when the previous entitlement was written back to active
    """
    previous_id = intent.previous_provider_subscription_id
    if not intent.is_upgrade or not previous_id:
        return False

    try:
        record = await store.upsert_entitlement_status(previous_id, ACTIVE, only_from=ROLLBACK_FROM)
        projection = await store.get_profile_projection(intent.user_id)
    except SQLAlchemyError:
        logger.exception(
            f"Compensating rollback failed: user_id={intent.user_id}, track={intent.track}, "
            f"subscription_id={previous_id}"
        )
        return False

    if record is None or record.status != ACTIVE:
        logger.warning(
            f"Compensating rollback skipped: user_id={intent.user_id}, track={intent.track}, "
            f"subscription_id={previous_id}, status={record.status if record else None}"
        )
        return False

    logger.info(
        f"Compensating rollback applied: user_id={intent.user_id}, track={intent.track}, "
        f"subscription_id={previous_id}, tier={projection.tier_for(intent.track)}, "
        f"status={projection.status_for(intent.track)}"
    )
    return True


class ReconciliationStateMachine:
    """
    One purchase attempt.

    transitions() yields each state as it is entered and ends at a terminal
    state. It can be consumed only once; a retry needs a new purchase intent
    and a new machine.
    """

    def __init__(
        self,
        intent: Intent,
        provider_subscription_id: str,
        store: EntitlementStore,
        link_client: LinkClient,
        intents: IntentTracker,
        registry: Optional[InFlightRegistry] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        link_timeout: float = LINK_TIMEOUT_SECONDS,
        on_entitlement_change: Optional[Callable[[int], None]] = None,
    ):
        self.intent = intent
        self.provider_subscription_id = provider_subscription_id
        self.store = store
        self.link_client = link_client
        self.intents = intents
        self.registry = registry if registry is not None else get_in_flight_registry()
        self._sleep = sleep
        self.link_timeout = link_timeout
        self.on_entitlement_change = on_entitlement_change

        self.state: Optional[ReconciliationState] = None
        self.reads = 0
        self.waited = 0.0
        self.rolled_back = False
        self._started = False

    def transitions(self) -> AsyncIterator[Transition]:
        if self._started:
            raise RuntimeError("Reconciliation already started; begin a new purchase to retry")
        self._started = True
        return self._drive()

    async def run(self) -> Transition:
        """Drive the machine to completion and return the terminal transition."""
        last = None
        async for transition in self.transitions():
            last = transition
        return last

    def _enter(self, state: ReconciliationState, error: Optional[EntitlementError] = None) -> Transition:
        self.state = state
        log = logger.warning if error is not None else logger.info
        log(
            f"Reconciliation {state.value}: user_id={self.intent.user_id}, track={self.intent.track}, "
            f"subscription_id={self.provider_subscription_id}"
            + (f", error={error.kind}" if error is not None else "")
        )
        return Transition(state, self.provider_subscription_id, error)

    async def _drive(self) -> AsyncIterator[Transition]:
        intent = self.intent
        self.registry.acquire(intent.user_id, intent.track)
        try:
            yield self._enter(ReconciliationState.INITIATED)

            yield self._enter(ReconciliationState.LINKING)
            error = await self._link()
            if error is not None:
                yield await self._fail(ReconciliationState.ROLLED_BACK, error)
                return

            yield self._enter(ReconciliationState.POLLING)
            if await self._poll():
                yield await self._confirm()
            else:
                yield await self._fail(ReconciliationState.UNCONFIRMED_TIMEOUT, UnconfirmedAfterPolling())
        finally:
            self.registry.release(intent.user_id, intent.track)

    async def _link(self) -> Optional[EntitlementError]:
        """Call the link function; any answer other than an explicit success is a failure."""
        intent = self.intent
        request = LinkRequest(
            provider_subscription_id=self.provider_subscription_id,
            user_id=intent.user_id,
            plan_type=intent.target_plan_type,
            is_upgrade=intent.is_upgrade,
            track=intent.track,
            is_new_subscription=not intent.is_upgrade,
        )
        try:
            response = await asyncio.wait_for(self.link_client.link(request), timeout=self.link_timeout)
        except asyncio.TimeoutError:
            return LinkTimeout(detail=f"No answer from the link function within {self.link_timeout}s")
        except LinkFailure as e:
            return e
        except Exception as e:
            logger.exception(f"Unexpected link client error: subscription_id={self.provider_subscription_id}")
            return TransportError(detail=str(e))

        if not response.success:
            return LinkFailure(detail=response.error)
        return None

    async def _poll(self) -> bool:
        while True:
            delay = next_poll_delay(self.reads, self.waited)
            if delay is None:
                return False
            if delay:
                await self._sleep(delay)
                self.waited += delay
            self.reads += 1
            try:
                projection = await self.store.get_profile_projection(self.intent.user_id)
            except SQLAlchemyError as e:
                logger.warning(f"Confirmation read {self.reads} failed: user_id={self.intent.user_id}, error={e}")
                continue
            if is_confirmed(projection, self.intent):
                logger.debug(f"Confirmed on read {self.reads} after {self.waited}s")
                return True

    async def _confirm(self) -> Transition:
        intent = self.intent
        try:
            await self.intents.clear(intent.session_key)
            await self.intents.write_confirmation(
                intent.session_key, self.provider_subscription_id, intent.target_plan_type
            )
        except SQLAlchemyError:
            logger.exception(f"Failed to record confirmation marker: user_id={intent.user_id}")
        self._notify()
        return self._enter(ReconciliationState.CONFIRMED)

    async def _fail(self, state: ReconciliationState, error: EntitlementError) -> Transition:
        intent = self.intent
        if intent.is_upgrade:
            self.rolled_back = await rollback_upgrade(self.store, intent)
        try:
            await self.intents.clear(intent.session_key)
        except SQLAlchemyError:
            logger.exception(f"Failed to clear purchase intent: user_id={intent.user_id}")
        if self.rolled_back:
            self._notify()
        return self._enter(state, error)

    def _notify(self) -> None:
        if self.on_entitlement_change is not None:
            self.on_entitlement_change(self.intent.user_id)
