"""
Entitlement persistence helpers.

Synchronous functions over a SQLAlchemy session, used directly by the link
service and webhook handlers and wrapped by the async EntitlementStore for
the reconciliation engine. Every status write is a targeted upsert keyed by
provider_subscription_id.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from app.core.plan_catalog import FREE_TIER, INTERVIEW_TRACK, RESUME_TRACK
from app.db.models.entitlement import (
    Entitlement,
    ACTIVE,
    CANCELED,
    CURRENT_STATUSES,
    PENDING_UPGRADE,
)
from app.db.models.user import User

logger = logging.getLogger(__name__)

INACTIVE = "inactive"


@dataclass
class EntitlementRecord:
    """Detached snapshot of an entitlement row."""
    user_id: int
    track: str
    plan_type: str
    provider_subscription_id: str
    status: str
    created_at: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Entitlement) -> "EntitlementRecord":
        return cls(
            user_id=row.user_id,
            track=row.track,
            plan_type=row.plan_type,
            provider_subscription_id=row.provider_subscription_id,
            status=row.status,
            created_at=row.created_at,
            end_date=row.end_date,
        )


@dataclass
class ProfileProjection:
    interview_tier: str = FREE_TIER
    interview_status: str = INACTIVE
    resume_tier: str = FREE_TIER
    resume_status: str = INACTIVE

    def tier_for(self, track: str) -> str:
        return self.resume_tier if track == RESUME_TRACK else self.interview_tier

    def status_for(self, track: str) -> str:
        return self.resume_status if track == RESUME_TRACK else self.interview_status

    def as_dict(self) -> Dict[str, str]:
        return {
            "interview_tier": self.interview_tier,
            "interview_status": self.interview_status,
            "resume_tier": self.resume_tier,
            "resume_status": self.resume_status,
        }


def get_entitlement(db: Session, provider_subscription_id: str) -> Optional[Entitlement]:
    return db.query(Entitlement).filter(
        Entitlement.provider_subscription_id == provider_subscription_id
    ).first()


def get_current_entitlement(
    db: Session,
    user_id: int,
    track: str,
    statuses: Sequence[str] = CURRENT_STATUSES,
) -> Optional[Entitlement]:
    """Newest entitlement of the user on a track whose status is in `statuses`."""
    return db.query(Entitlement).filter(
        Entitlement.user_id == user_id,
        Entitlement.track == track,
        Entitlement.status.in_(list(statuses)),
    ).order_by(Entitlement.id.desc()).first()


def list_entitlements(db: Session, user_id: int, track: Optional[str] = None) -> List[Entitlement]:
    query = db.query(Entitlement).filter(Entitlement.user_id == user_id)
    if track:
        query = query.filter(Entitlement.track == track)
    return query.order_by(Entitlement.id.desc()).all()


def upsert_entitlement(
    db: Session,
    provider_subscription_id: str,
    user_id: int,
    track: str,
    plan_type: str,
    status: str,
    end_date: Optional[datetime] = None,
    commit: bool = True,
) -> Entitlement:
    """Insert or update the entitlement row for a provider subscription."""
    row = get_entitlement(db, provider_subscription_id)
    if row is None:
        row = Entitlement(
            provider_subscription_id=provider_subscription_id,
            user_id=user_id,
            track=track,
            plan_type=plan_type,
            status=status,
            end_date=end_date,
        )
        db.add(row)
        logger.info(
            f"Entitlement created: subscription_id={provider_subscription_id}, "
            f"user_id={user_id}, track={track}, plan={plan_type}, status={status}"
        )
    else:
        row.user_id = user_id
        row.track = track
        row.plan_type = plan_type
        row.status = status
        if end_date is not None:
            row.end_date = end_date
        logger.info(
            f"Entitlement updated: subscription_id={provider_subscription_id}, "
            f"user_id={user_id}, plan={plan_type}, status={status}"
        )

    if commit:
        db.commit()
        db.refresh(row)
    else:
        db.flush()
    return row


def update_status(
    db: Session,
    provider_subscription_id: str,
    status: str,
    end_date: Optional[datetime] = None,
    refresh_projection: bool = True,
    only_from: Optional[Sequence[str]] = None,
) -> Optional[Entitlement]:
    """
    Set the status of an existing entitlement.

    Writing the status a row already has is a no-op. With `only_from`, a row
    in any other status is left as it is. Returns None when no row exists
    for the provider subscription id.
    """
    row = get_entitlement(db, provider_subscription_id)
    if row is None:
        logger.warning(f"Status write skipped, unknown subscription_id={provider_subscription_id}")
        return None

    if row.status == status and end_date is None:
        logger.debug(f"Status unchanged: subscription_id={provider_subscription_id}, status={status}")
        return row

    if only_from is not None and row.status != status and row.status not in only_from:
        logger.info(
            f"Status write skipped: subscription_id={provider_subscription_id}, "
            f"status={row.status}, wanted={status}"
        )
        return row

    previous = row.status
    row.status = status
    if end_date is not None:
        row.end_date = end_date
    db.flush()

    if refresh_projection:
        refresh_profile_projection(db, row.user_id, commit=False)

    db.commit()
    db.refresh(row)
    logger.info(
        f"Entitlement status changed: subscription_id={provider_subscription_id}, "
        f"user_id={row.user_id}, {previous} -> {status}"
    )
    return row


def mark_pending_upgrade(db: Session, user_id: int, track: str, exclude: Optional[str] = None) -> List[str]:
    """
    Provisionally mark the user's active rows on a track as pending_upgrade.

    Returns the provider subscription ids that were marked.
    """
    query = db.query(Entitlement).filter(
        Entitlement.user_id == user_id,
        Entitlement.track == track,
        Entitlement.status == ACTIVE,
    )
    if exclude:
        query = query.filter(Entitlement.provider_subscription_id != exclude)

    marked = []
    for row in query.all():
        row.status = PENDING_UPGRADE
        marked.append(row.provider_subscription_id)

    if marked:
        db.flush()
        refresh_profile_projection(db, user_id, commit=False)
        db.commit()
        logger.info(f"Marked pending_upgrade: user_id={user_id}, track={track}, subscription_ids={marked}")
    return marked


def restore_pending_upgrade(db: Session, user_id: int, track: Optional[str] = None) -> List[str]:
    """Put rows left in pending_upgrade back to active."""
    query = db.query(Entitlement).filter(
        Entitlement.user_id == user_id,
        Entitlement.status == PENDING_UPGRADE,
    )
    if track:
        query = query.filter(Entitlement.track == track)

    restored = []
    for row in query.all():
        row.status = ACTIVE
        restored.append(row.provider_subscription_id)

    if restored:
        db.flush()
        refresh_profile_projection(db, user_id, commit=False)
        db.commit()
        logger.info(f"Restored from pending_upgrade: user_id={user_id}, subscription_ids={restored}")
    return restored


def supersede_current(db: Session, user_id: int, track: str, keep: str) -> List[Entitlement]:
    """
    Cancel every other current row of the track so only `keep` remains current.

    Does not commit; the caller commits together with the new row.
    """
    rows = db.query(Entitlement).filter(
        Entitlement.user_id == user_id,
        Entitlement.track == track,
        Entitlement.status.in_(list(CURRENT_STATUSES)),
        Entitlement.provider_subscription_id != keep,
    ).all()
    for row in rows:
        row.status = CANCELED
        row.end_date = datetime.utcnow()
        logger.info(
            f"Superseded entitlement: subscription_id={row.provider_subscription_id}, "
            f"user_id={user_id}, track={track}, replaced_by={keep}"
        )
    db.flush()
    return rows


def compute_projection(db: Session, user_id: int) -> ProfileProjection:
    """Derive the profile projection from the entitlement rows."""
    values = {}
    for track in (INTERVIEW_TRACK, RESUME_TRACK):
        current = get_current_entitlement(db, user_id, track)
        if current is not None:
            tier, status = current.plan_type, current.status
        else:
            latest = db.query(Entitlement).filter(
                Entitlement.user_id == user_id,
                Entitlement.track == track,
            ).order_by(Entitlement.id.desc()).first()
            tier = FREE_TIER
            status = latest.status if latest else INACTIVE
        values[f"{track}_tier"] = tier
        values[f"{track}_status"] = status
    return ProfileProjection(**values)


def refresh_profile_projection(db: Session, user_id: int, commit: bool = True) -> ProfileProjection:
    """Recompute the projection and write it onto the user row."""
    projection = compute_projection(db, user_id)
    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        logger.warning(f"Projection refresh skipped, user not found: user_id={user_id}")
        return projection

    user.interview_tier = projection.interview_tier
    user.interview_status = projection.interview_status
    user.resume_tier = projection.resume_tier
    user.resume_status = projection.resume_status

    if commit:
        db.commit()
    else:
        db.flush()
    logger.debug(f"Projection refreshed: user_id={user_id}, {projection.as_dict()}")
    return projection


def get_profile_projection(db: Session, user_id: int) -> ProfileProjection:
    """Read the projection stored on the user row."""
    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        return ProfileProjection()
    return ProfileProjection(
        interview_tier=user.interview_tier or FREE_TIER,
        interview_status=user.interview_status or INACTIVE,
        resume_tier=user.resume_tier or FREE_TIER,
        resume_status=user.resume_status or INACTIVE,
    )
