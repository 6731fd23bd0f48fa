"""
Tests for redundant subscription detection and resolution.
"""
import asyncio

import pytest

from app.core.errors import NoActiveSubscription
from app.db.models.entitlement import ACTIVE, CANCELED, PAYMENT_FAILED, SUSPENDED
from app.services import entitlement_repository as repo
from app.services.cancellation import CancellationCoordinator
from app.services.entitlement_repository import EntitlementRecord
from app.services.redundancy import RedundancyResolver, evaluate_redundancy


def resume_record(plan_type="resume_basic", status=ACTIVE, subscription_id="sub_resume"):
    return EntitlementRecord(
        user_id=1,
        track="resume",
        plan_type=plan_type,
        provider_subscription_id=subscription_id,
        status=status,
    )


@pytest.fixture
def resolver(store, provider, fake_sleep):
    coordinator = CancellationCoordinator(store, provider)
    resolver = RedundancyResolver(store, coordinator, debounce=1.5, sleep=fake_sleep)
    coordinator.on_change = resolver.notify_change
    return resolver


@pytest.mark.parametrize("interview_tier", ["gold", "diamond", "megastar"])
@pytest.mark.parametrize("status", [ACTIVE, SUSPENDED])
def test_bundled_interview_tier_makes_paid_resume_redundant(interview_tier, status):
    result = evaluate_redundancy(interview_tier, resume_record(status=status))

    assert result.redundant is True
    assert result.resume_provider_subscription_id == "sub_resume"


@pytest.mark.parametrize("interview_tier", ["free", "bronze", None, "unknown"])
@pytest.mark.parametrize("plan_type", ["resume_basic", "resume_premium"])
def test_unbundled_interview_tier_is_never_redundant(interview_tier, plan_type):
    result = evaluate_redundancy(interview_tier, resume_record(plan_type=plan_type))

    assert result.redundant is False
    assert result.resume_provider_subscription_id is None


@pytest.mark.parametrize("resume", [
    None,
    resume_record(status=CANCELED),
    resume_record(status=PAYMENT_FAILED),
    resume_record(plan_type="free"),
])
def test_no_paid_active_resume_entitlement_is_not_redundant(resume):
    assert evaluate_redundancy("diamond", resume).redundant is False


def test_redundancy_message():
    result = evaluate_redundancy("gold", resume_record(plan_type="resume_premium"))

    assert result.message == (
        "Your Gold plan already includes resume features. "
        "You don't need to pay for a separate Resume Premium plan."
    )


def test_scenario_c_gold_with_standalone_resume_basic(make_user, add_entitlement, resolver):
    user = make_user()
    add_entitlement(user.id, "interview", "gold", "sub_gold")
    add_entitlement(user.id, "resume", "resume_basic", "sub_resume_basic")

    result = asyncio.run(resolver.status(user.id))

    assert result.redundant is True
    assert result.resume_provider_subscription_id == "sub_resume_basic"
    assert "Resume Basic" in result.message
    assert resolver.latest(user.id) == result


def test_suspended_interview_bundled_tier_still_counts(make_user, add_entitlement, resolver):
    user = make_user()
    add_entitlement(user.id, "interview", "diamond", "sub_diamond", status=SUSPENDED)
    add_entitlement(user.id, "resume", "resume_basic", "sub_resume")

    assert asyncio.run(resolver.status(user.id)).redundant is True


def test_debounced_check_waits_before_reading(make_user, add_entitlement, resolver, fake_sleep):
    user = make_user()
    add_entitlement(user.id, "interview", "megastar", "sub_megastar")
    add_entitlement(user.id, "resume", "resume_premium", "sub_resume")

    async def scenario():
        resolver.notify_change(user.id)
        resolver.notify_change(user.id)
        return await resolver.status(user.id)

    result = asyncio.run(scenario())

    assert result.redundant is True
    assert 1.5 in fake_sleep.calls
    assert resolver.latest(user.id) == result


def test_newer_change_restarts_debounce(make_user, store, provider):
    user = make_user()
    coordinator = CancellationCoordinator(store, provider)
    resolver = RedundancyResolver(store, coordinator, debounce=0.05)

    async def scenario():
        resolver.notify_change(user.id)
        first = resolver._pending[user.id]
        resolver.notify_change(user.id)
        second = resolver._pending[user.id]
        await asyncio.sleep(0)
        result = await resolver.status(user.id)
        return first, second, result

    first, second, result = asyncio.run(scenario())

    assert first.cancelled()
    assert second is not first
    assert result.redundant is False


def test_notify_change_outside_event_loop_is_ignored(make_user, resolver):
    user = make_user()

    resolver.notify_change(user.id)

    assert resolver.latest(user.id) is None


def test_resolve_cancels_redundant_resume_subscription(make_user, add_entitlement, resolver, provider, db_session):
    user = make_user()
    add_entitlement(user.id, "interview", "gold", "sub_gold")
    add_entitlement(user.id, "resume", "resume_basic", "sub_resume_basic")

    result = asyncio.run(resolver.resolve(user.id))

    assert result.provider_subscription_id == "sub_resume_basic"
    assert result.redundant is True
    assert provider.cancelled[0][0] == "sub_resume_basic"
    assert provider.cancelled[0][2] is True
    db_session.expire_all()
    assert repo.get_entitlement(db_session, "sub_resume_basic").status == CANCELED
    projection = repo.get_profile_projection(db_session, user.id)
    assert projection.resume_tier == "free"
    assert projection.interview_tier == "gold"


def test_resolve_without_redundancy(make_user, add_entitlement, resolver, provider):
    user = make_user()
    add_entitlement(user.id, "interview", "bronze", "sub_bronze")
    add_entitlement(user.id, "resume", "resume_basic", "sub_resume")

    with pytest.raises(NoActiveSubscription):
        asyncio.run(resolver.resolve(user.id))

    assert provider.cancelled == []
