"""
Tests for the entitlement store and profile projection.
"""
import asyncio

from app.db.models.entitlement import ACTIVE, CANCELED, PENDING_UPGRADE, SUSPENDED
from app.services import entitlement_repository as repo


def test_upsert_status_is_idempotent(make_user, add_entitlement, store, db_session):
    user = make_user()
    add_entitlement(user.id, "interview", "gold", "sub_gold", status=SUSPENDED)

    first = asyncio.run(store.upsert_entitlement_status("sub_gold", ACTIVE))
    projection_once = asyncio.run(store.get_profile_projection(user.id))
    second = asyncio.run(store.upsert_entitlement_status("sub_gold", ACTIVE))
    projection_twice = asyncio.run(store.get_profile_projection(user.id))

    assert first.status == second.status == ACTIVE
    assert projection_once == projection_twice
    assert projection_twice.interview_tier == "gold"
    assert projection_twice.interview_status == ACTIVE
    assert len(repo.list_entitlements(db_session, user.id)) == 1


def test_upsert_status_unknown_subscription(store):
    assert asyncio.run(store.upsert_entitlement_status("sub_missing", ACTIVE)) is None


def test_current_entitlement_filters_by_status(make_user, add_entitlement, store):
    user = make_user()
    add_entitlement(user.id, "interview", "bronze", "sub_old", status=CANCELED)
    add_entitlement(user.id, "interview", "gold", "sub_gold", status=ACTIVE)

    current = asyncio.run(store.get_current_entitlement(user.id, "interview"))
    assert current.provider_subscription_id == "sub_gold"

    assert asyncio.run(store.get_current_entitlement(user.id, "resume")) is None
    assert asyncio.run(store.get_current_entitlement(user.id, "interview", (SUSPENDED,))) is None


def test_projection_tracks_are_independent(make_user, add_entitlement, store):
    user = make_user()
    add_entitlement(user.id, "interview", "diamond", "sub_diamond")
    add_entitlement(user.id, "resume", "resume_basic", "sub_resume")

    projection = asyncio.run(store.get_profile_projection(user.id))

    assert projection.as_dict() == {
        "interview_tier": "diamond",
        "interview_status": ACTIVE,
        "resume_tier": "resume_basic",
        "resume_status": ACTIVE,
    }


def test_projection_falls_back_to_free_when_nothing_current(make_user, add_entitlement, store):
    user = make_user()
    add_entitlement(user.id, "resume", "resume_premium", "sub_resume")

    asyncio.run(store.upsert_entitlement_status("sub_resume", CANCELED))
    projection = asyncio.run(store.get_profile_projection(user.id))

    assert projection.resume_tier == "free"
    assert projection.resume_status == CANCELED
    assert projection.interview_tier == "free"
    assert projection.interview_status == "inactive"


def test_mark_and_restore_pending_upgrade(make_user, add_entitlement, db_session):
    user = make_user()
    add_entitlement(user.id, "interview", "gold", "sub_gold")

    marked = repo.mark_pending_upgrade(db_session, user.id, "interview", exclude="sub_diamond")
    assert marked == ["sub_gold"]
    assert repo.get_profile_projection(db_session, user.id).interview_status == PENDING_UPGRADE

    restored = repo.restore_pending_upgrade(db_session, user.id, "interview")
    assert restored == ["sub_gold"]
    projection = repo.get_profile_projection(db_session, user.id)
    assert projection.interview_tier == "gold"
    assert projection.interview_status == ACTIVE


def test_supersede_keeps_one_current_row(make_user, add_entitlement, db_session):
    user = make_user()
    add_entitlement(user.id, "interview", "gold", "sub_gold")
    add_entitlement(user.id, "interview", "diamond", "sub_diamond")

    superseded = repo.supersede_current(db_session, user.id, "interview", keep="sub_diamond")
    db_session.commit()

    assert [row.provider_subscription_id for row in superseded] == ["sub_gold"]
    assert repo.get_entitlement(db_session, "sub_gold").status == CANCELED
    assert repo.get_entitlement(db_session, "sub_gold").end_date is not None
    current = repo.get_current_entitlement(db_session, user.id, "interview")
    assert current.provider_subscription_id == "sub_diamond"
