"""
Async Entitlement Store used by the reconciliation engine.

Each call opens its own session and runs the synchronous repository code in
the worker thread pool, so awaiting a store call never blocks the event loop.
The store is the single arbiter between the link function and the provider
webhook: both write here, the reconciliation engine only ever reads back.
"""
import logging
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from app.db.session import SessionLocal
from app.db.models.entitlement import CURRENT_STATUSES
from app.services import entitlement_repository as repo
from app.services.entitlement_repository import EntitlementRecord, ProfileProjection

logger = logging.getLogger(__name__)


class EntitlementStore:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    async def _run(self, fn, *args, **kwargs):
        def work():
            with self._session_factory() as db:
                return fn(db, *args, **kwargs)

        return await run_in_threadpool(work)

    async def get_current_entitlement(
        self,
        user_id: int,
        track: str,
        statuses: Sequence[str] = CURRENT_STATUSES,
    ) -> Optional[EntitlementRecord]:
        def query(db: Session):
            row = repo.get_current_entitlement(db, user_id, track, statuses)
            return EntitlementRecord.from_row(row) if row else None

        return await self._run(query)

    async def get_entitlement(self, provider_subscription_id: str) -> Optional[EntitlementRecord]:
        def query(db: Session):
            row = repo.get_entitlement(db, provider_subscription_id)
            return EntitlementRecord.from_row(row) if row else None

        return await self._run(query)

    async def list_entitlements(self, user_id: int, track: Optional[str] = None) -> List[EntitlementRecord]:
        def query(db: Session):
            return [EntitlementRecord.from_row(row) for row in repo.list_entitlements(db, user_id, track)]

        return await self._run(query)

    async def upsert_entitlement_status(
        self,
        provider_subscription_id: str,
        status: str,
        end_date: Optional[datetime] = None,
        only_from: Optional[Sequence[str]] = None,
    ) -> Optional[EntitlementRecord]:
        """
        Targeted status write keyed by provider subscription id.

        Repeating the same write leaves the store unchanged. With `only_from`
        the write applies only to a row currently in one of those statuses,
        checked in the same transaction. The owner's profile projection is
        refreshed in the same transaction.
        """
        def write(db: Session):
            row = repo.update_status(db, provider_subscription_id, status, end_date=end_date, only_from=only_from)
            return EntitlementRecord.from_row(row) if row else None

        return await self._run(write)

    async def get_profile_projection(self, user_id: int) -> ProfileProjection:
        return await self._run(repo.get_profile_projection, user_id)

    async def refresh_profile_projection(self, user_id: int) -> ProfileProjection:
        return await self._run(repo.refresh_profile_projection, user_id)
