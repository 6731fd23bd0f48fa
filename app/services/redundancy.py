"""
Redundancy resolver.

A standalone resume subscription is redundant when the interview plan's
tier is bundled, i.e. already includes resume capability. Checks run after
entitlement changes have had time to settle, so a mismatch the link
function or a webhook is about to correct is not flagged.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

from app.core.config import REDUNDANCY_DEBOUNCE_SECONDS
from app.core.errors import NoActiveSubscription
from app.core.plan_catalog import RESUME_TRACK, display_name, is_bundled_tier, is_free_tier
from app.db.models.entitlement import ACTIVE, SUSPENDED
from app.services.cancellation import CancellationCoordinator, CancellationResult
from app.services.entitlement_repository import EntitlementRecord
from app.services.entitlement_store import EntitlementStore

logger = logging.getLogger(__name__)

REDUNDANT_RESUME_STATUSES = (ACTIVE, SUSPENDED)


@dataclass(frozen=True)
class RedundancyStatus:
    redundant: bool
    message: Optional[str] = None
    resume_provider_subscription_id: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "redundant": self.redundant,
            "message": self.message,
            "resume_provider_subscription_id": self.resume_provider_subscription_id,
        }


NOT_REDUNDANT = RedundancyStatus(redundant=False)


def evaluate_redundancy(interview_tier: Optional[str], resume: Optional[EntitlementRecord]) -> RedundancyStatus:
    """
    Decide whether the resume entitlement duplicates the interview plan.

    Args:
        interview_tier: Current interview tier from the profile projection
        resume: Current active or suspended resume entitlement, if any
    """
    if not is_bundled_tier(interview_tier):
        return NOT_REDUNDANT
    if resume is None or resume.status not in REDUNDANT_RESUME_STATUSES or is_free_tier(resume.plan_type):
        return NOT_REDUNDANT

    message = (
        f"Your {display_name(interview_tier)} plan already includes resume features. "
        f"You don't need to pay for a separate {display_name(resume.plan_type)} plan."
    )
    return RedundancyStatus(True, message, resume.provider_subscription_id)


class RedundancyResolver:
    def __init__(
        self,
        store: EntitlementStore,
        coordinator: CancellationCoordinator,
        debounce: float = REDUNDANCY_DEBOUNCE_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.coordinator = coordinator
        self.debounce = debounce
        self._sleep = sleep
        self._pending: Dict[int, asyncio.Task] = {}
        self._latest: Dict[int, RedundancyStatus] = {}

    async def check(self, user_id: int) -> RedundancyStatus:
        """Evaluate redundancy from a fresh store read."""
        projection = await self.store.get_profile_projection(user_id)
        resume = await self.store.get_current_entitlement(user_id, RESUME_TRACK, REDUNDANT_RESUME_STATUSES)
        result = evaluate_redundancy(projection.interview_tier, resume)
        self._latest[user_id] = result
        if result.redundant:
            logger.info(
                f"Redundant resume subscription: user_id={user_id}, interview_tier={projection.interview_tier}, "
                f"subscription_id={result.resume_provider_subscription_id}"
            )
        return result

    def notify_change(self, user_id: int) -> None:
        """Schedule a settled re-check; a newer change restarts the wait."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running loop, redundancy re-check skipped for user_id={user_id}")
            return

        pending = self._pending.get(user_id)
        if pending is not None and not pending.done():
            pending.cancel()
        self._pending[user_id] = loop.create_task(self._debounced_check(user_id))

    async def _debounced_check(self, user_id: int) -> Optional[RedundancyStatus]:
        try:
            await self._sleep(self.debounce)
            return await self.check(user_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"Redundancy re-check failed: user_id={user_id}")
            return None
        finally:
            if self._pending.get(user_id) is asyncio.current_task():
                del self._pending[user_id]

    def latest(self, user_id: int) -> Optional[RedundancyStatus]:
        return self._latest.get(user_id)

    async def status(self, user_id: int) -> RedundancyStatus:
        """
        Settled redundancy status for a user.

        Waits for a pending re-check when one is scheduled; otherwise reads
        the store directly.
        """
        pending = self._pending.get(user_id)
        if pending is not None and not pending.done():
            try:
                result = await asyncio.shield(pending)
            except asyncio.CancelledError:
                # Superseded by a newer change; fall through to a direct read.
                result = None
            if result is not None:
                return result
        return await self.check(user_id)

    async def resolve(self, user_id: int) -> CancellationResult:
        """
        Cancel the redundant resume subscription after the user confirmed.

        Raises:
            NoActiveSubscription: Nothing redundant to cancel
            ProviderCancellationFailed: The provider refused; local state unchanged
        """
        result = await self.status(user_id)
        if not result.redundant:
            raise NoActiveSubscription(detail="There is no redundant resume subscription to cancel.")
        logger.info(
            f"Resolving redundant subscription: user_id={user_id}, "
            f"subscription_id={result.resume_provider_subscription_id}"
        )
        return await self.coordinator.cancel(
            user_id,
            RESUME_TRACK,
            provider_subscription_id=result.resume_provider_subscription_id,
            redundant=True,
        )
