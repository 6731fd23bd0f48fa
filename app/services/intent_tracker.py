"""
Purchase intent tracking.

Before checkout opens, records whether the user is buying a fresh
entitlement or upgrading an active one, and on which track. The intent is
persisted per browser checkout session because the checkout widget may
navigate away from the application; after that only the stored intent is
available to resume the flow.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from app.core.config import INTENT_TTL_MINUTES, CONFIRMATION_MARKER_TTL_MINUTES
from app.core.errors import PlanNotFound
from app.core.plan_catalog import is_free_tier, is_known_tier, track_for_tier, TRACKS
from app.db.session import SessionLocal
from app.db.models.entitlement import ACTIVE, SUSPENDED
from app.db.models.purchase_intent import PurchaseIntent, ConfirmationMarker
from app.services.entitlement_store import EntitlementStore

logger = logging.getLogger(__name__)

UPGRADE_SOURCE_STATUSES = (ACTIVE, SUSPENDED)


@dataclass(frozen=True)
class Intent:
    session_key: str
    user_id: int
    track: str
    target_plan_type: str
    is_upgrade: bool = False
    previous_provider_subscription_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: PurchaseIntent) -> "Intent":
        return cls(
            session_key=row.session_key,
            user_id=row.user_id,
            track=row.track,
            target_plan_type=row.target_plan_type,
            is_upgrade=bool(row.is_upgrade),
            previous_provider_subscription_id=row.previous_provider_subscription_id,
        )


@dataclass(frozen=True)
class Confirmation:
    provider_subscription_id: str
    plan_type: str


class IntentTracker:
    def __init__(
        self,
        store: EntitlementStore,
        session_factory: Callable[[], Session] = SessionLocal,
        ttl: timedelta = timedelta(minutes=INTENT_TTL_MINUTES),
    ):
        self.store = store
        self._session_factory = session_factory
        self.ttl = ttl

    async def _run(self, fn):
        def work():
            with self._session_factory() as db:
                return fn(db)

        return await run_in_threadpool(work)

    async def begin_purchase(self, session_key: str, user_id: int, track: str, target_plan_type: str) -> Intent:
        """
        Record the purchase intent for a checkout session.

        Args:
            session_key: Browser checkout session key
            user_id: Purchasing user
            track: interview or resume
            target_plan_type: Tier the user is buying

        Returns:
            The persisted Intent

        Raises:
            PlanNotFound: Unknown tier, free tier, or tier not sold on this track
        """
        plan_type = (target_plan_type or "").lower()
        if track not in TRACKS or not is_known_tier(plan_type) or track_for_tier(plan_type) != track:
            raise PlanNotFound(detail=f"Plan '{target_plan_type}' is not sold on the {track} track")
        if plan_type == "free":
            raise PlanNotFound(detail="The free plan cannot be purchased")

        current = await self.store.get_current_entitlement(user_id, track, UPGRADE_SOURCE_STATUSES)
        is_upgrade = current is not None and not is_free_tier(current.plan_type)
        intent = Intent(
            session_key=session_key,
            user_id=user_id,
            track=track,
            target_plan_type=plan_type,
            is_upgrade=is_upgrade,
            previous_provider_subscription_id=current.provider_subscription_id if is_upgrade else None,
        )
        expires_at = datetime.utcnow() + self.ttl

        def save(db: Session):
            row = db.get(PurchaseIntent, session_key)
            if row is None:
                row = PurchaseIntent(session_key=session_key)
                db.add(row)
            row.user_id = intent.user_id
            row.track = intent.track
            row.target_plan_type = intent.target_plan_type
            row.is_upgrade = intent.is_upgrade
            row.previous_provider_subscription_id = intent.previous_provider_subscription_id
            row.expires_at = expires_at
            db.commit()

        await self._run(save)
        logger.info(
            f"Purchase intent recorded: user_id={user_id}, track={track}, plan={plan_type}, "
            f"is_upgrade={is_upgrade}, previous={intent.previous_provider_subscription_id}"
        )
        return intent

    async def get_intent(self, session_key: str) -> Optional[Intent]:
        """Load the intent for a session; expired intents are dropped and reported as absent."""
        def load(db: Session):
            row = db.get(PurchaseIntent, session_key)
            if row is None:
                return None
            if row.expires_at < datetime.utcnow():
                db.delete(row)
                db.commit()
                logger.info(f"Purchase intent expired: session_key={session_key[:8]}...")
                return None
            return Intent.from_row(row)

        return await self._run(load)

    async def clear(self, session_key: str) -> None:
        def delete(db: Session):
            deleted = db.query(PurchaseIntent).filter(PurchaseIntent.session_key == session_key).delete()
            db.commit()
            return deleted

        if await self._run(delete):
            logger.debug(f"Purchase intent cleared: session_key={session_key[:8]}...")

    async def write_confirmation(
        self,
        session_key: str,
        provider_subscription_id: str,
        plan_type: str,
        ttl: timedelta = timedelta(minutes=CONFIRMATION_MARKER_TTL_MINUTES),
    ) -> None:
        def save(db: Session):
            row = db.get(ConfirmationMarker, session_key)
            if row is None:
                row = ConfirmationMarker(session_key=session_key)
                db.add(row)
            row.provider_subscription_id = provider_subscription_id
            row.plan_type = plan_type
            row.expires_at = datetime.utcnow() + ttl
            db.commit()

        await self._run(save)

    async def consume_confirmation(self, session_key: str) -> Optional[Confirmation]:
        """Read the confirmation marker once; it is deleted on read."""
        def consume(db: Session):
            row = db.get(ConfirmationMarker, session_key)
            if row is None:
                return None
            confirmation = None
            if row.expires_at >= datetime.utcnow():
                confirmation = Confirmation(row.provider_subscription_id, row.plan_type)
            db.delete(row)
            db.commit()
            return confirmation

        return await self._run(consume)
