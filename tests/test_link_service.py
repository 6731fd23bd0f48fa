"""
Tests for the server link function.
"""
from app.core.errors import ProviderError
from app.db.models.entitlement import ACTIVE, CANCELED
from app.schemas.billing import LinkRequest
from app.services import entitlement_repository as repo
from app.services.link_service import SUPERSEDED_REASON, link_subscription


def make_request(user_id, subscription_id, plan_type="gold", track="interview", is_upgrade=False):
    return LinkRequest(
        provider_subscription_id=subscription_id,
        user_id=user_id,
        plan_type=plan_type,
        track=track,
        is_upgrade=is_upgrade,
        is_new_subscription=not is_upgrade,
    )


def test_link_request_accepts_camel_case():
    request = LinkRequest.model_validate({
        "providerSubscriptionId": "sub_1",
        "userId": 7,
        "planType": "gold",
        "isUpgrade": True,
        "track": "interview",
        "isNewSubscription": False,
    })

    assert request.user_id == 7
    assert request.is_upgrade is True
    assert request.model_dump(by_alias=True)["providerSubscriptionId"] == "sub_1"


def test_link_new_subscription(make_user, provider, db_session):
    user = make_user()
    provider.add("sub_gold", "active", "gold", "interview")

    response = link_subscription(db_session, make_request(user.id, "sub_gold"), provider)

    assert response.success is True
    assert response.error is None
    row = repo.get_entitlement(db_session, "sub_gold")
    assert row.status == ACTIVE
    assert row.plan_type == "gold"
    assert repo.get_profile_projection(db_session, user.id).interview_tier == "gold"
    assert provider.cancelled == []


def test_link_is_repeatable(make_user, provider, db_session):
    user = make_user()
    provider.add("sub_gold", "trialing", "gold", "interview")

    first = link_subscription(db_session, make_request(user.id, "sub_gold"), provider)
    second = link_subscription(db_session, make_request(user.id, "sub_gold"), provider)

    assert first.success and second.success
    assert len(repo.list_entitlements(db_session, user.id)) == 1


def test_link_upgrade_supersedes_previous_plan(make_user, add_entitlement, provider, db_session):
    user = make_user()
    add_entitlement(user.id, "interview", "gold", "sub_gold")
    provider.add("sub_gold", "active", "gold", "interview")
    provider.add("sub_diamond", "active", "diamond", "interview")

    response = link_subscription(
        db_session, make_request(user.id, "sub_diamond", "diamond", is_upgrade=True), provider
    )

    assert response.success is True
    assert repo.get_entitlement(db_session, "sub_gold").status == CANCELED
    assert repo.get_entitlement(db_session, "sub_diamond").status == ACTIVE
    assert provider.cancelled == [("sub_gold", SUPERSEDED_REASON, False)]
    projection = repo.get_profile_projection(db_session, user.id)
    assert projection.interview_tier == "diamond"
    assert projection.interview_status == ACTIVE


def test_superseded_provider_cancel_failure_is_tolerated(make_user, add_entitlement, provider, db_session):
    user = make_user()
    add_entitlement(user.id, "resume", "resume_basic", "sub_basic")
    provider.add("sub_premium", "active", "resume_premium", "resume")
    provider.cancel_error = ProviderError("Network error")

    response = link_subscription(
        db_session, make_request(user.id, "sub_premium", "resume_premium", "resume", is_upgrade=True), provider
    )

    assert response.success is True
    assert repo.get_entitlement(db_session, "sub_basic").status == CANCELED
    assert repo.get_profile_projection(db_session, user.id).resume_tier == "resume_premium"


def test_link_refuses_inactive_subscription_and_restores_upgrade(make_user, add_entitlement, provider, db_session):
    user = make_user()
    add_entitlement(user.id, "interview", "gold", "sub_gold")
    repo.mark_pending_upgrade(db_session, user.id, "interview")
    provider.add("sub_diamond", "incomplete", "diamond", "interview")

    response = link_subscription(
        db_session, make_request(user.id, "sub_diamond", "diamond", is_upgrade=True), provider
    )

    assert response.success is False
    assert response.error == "Subscription is not active with the payment provider (status: incomplete)"
    assert repo.get_entitlement(db_session, "sub_diamond") is None
    projection = repo.get_profile_projection(db_session, user.id)
    assert projection.interview_tier == "gold"
    assert projection.interview_status == ACTIVE


def test_link_unknown_subscription(make_user, provider, db_session):
    user = make_user()

    response = link_subscription(db_session, make_request(user.id, "sub_missing"), provider)

    assert response.success is False
    assert "sub_missing" in response.error
    assert repo.list_entitlements(db_session, user.id) == []


def test_link_unknown_user(provider, db_session):
    provider.add("sub_gold", "active", "gold", "interview")

    response = link_subscription(db_session, make_request(999, "sub_gold"), provider)

    assert response.success is False
    assert response.error == "User not found"
    assert repo.get_entitlement(db_session, "sub_gold") is None


def test_link_prefers_provider_plan(make_user, provider, db_session):
    user = make_user()
    provider.add("sub_1", "active", "megastar", "interview")

    response = link_subscription(db_session, make_request(user.id, "sub_1", "gold"), provider)

    assert response.success is True
    assert repo.get_entitlement(db_session, "sub_1").plan_type == "megastar"
