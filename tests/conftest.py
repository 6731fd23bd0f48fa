"""
Shared fixtures: in-memory database, payment provider and link function fakes.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from typing import Callable, Dict, List, Optional, Tuple

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.errors import ProviderError
from app.db.base import Base
from app.db import models  # noqa: F401  registers all tables
from app.db.models.user import User
from app.schemas.billing import LinkRequest, LinkResponse
from app.services import entitlement_repository as repo
from app.services.entitlement_store import EntitlementStore
from app.services.intent_tracker import IntentTracker
from app.services.link_client import LinkClient
from app.services.reconciliation import InFlightRegistry
from app.services.stripe_service import PaymentProvider, ProviderSubscription, map_provider_status


# Setup in-memory SQLite database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


class FakeProvider(PaymentProvider):
    """In-memory payment provider."""

    def __init__(self):
        self.subscriptions: Dict[str, ProviderSubscription] = {}
        self.cancelled: List[Tuple[str, str, bool]] = []
        self.created: List[Tuple[str, str, Dict[str, str]]] = []
        self.cancel_error: Optional[ProviderError] = None
        self.create_error: Optional[ProviderError] = None

    def add(self, subscription_id, raw_status="active", plan_type=None, track=None, user_id=None):
        subscription = ProviderSubscription(
            id=subscription_id,
            raw_status=raw_status,
            status=map_provider_status(raw_status),
            plan_type=plan_type,
            track=track,
            user_id=user_id,
        )
        self.subscriptions[subscription_id] = subscription
        return subscription

    def get_subscription(self, subscription_id):
        if subscription_id not in self.subscriptions:
            raise ProviderError(f"No such subscription: '{subscription_id}'", code="resource_missing")
        return self.subscriptions[subscription_id]

    def get_or_create_customer(self, email, user_id, customer_id=None):
        return customer_id or f"cus_{user_id}"

    def create_subscription(self, price_id, customer_id, metadata):
        if self.create_error is not None:
            raise self.create_error
        subscription_id = f"sub_created_{len(self.created) + 1}"
        self.created.append((price_id, customer_id, metadata))
        self.add(subscription_id, "incomplete", metadata.get("plan_type"), metadata.get("track"))
        return subscription_id

    def cancel_subscription(self, subscription_id, reason, redundant=False):
        if self.cancel_error is not None:
            raise self.cancel_error
        self.cancelled.append((subscription_id, reason, redundant))
        if subscription_id in self.subscriptions:
            self.add(subscription_id, "canceled", self.subscriptions[subscription_id].plan_type)


class FakeLinkClient(LinkClient):
    """
    Link function stand-in.

    `handler` receives the request and returns a LinkResponse or raises;
    by default every link succeeds without writing anything.
    """

    def __init__(self, handler: Optional[Callable[[LinkRequest], LinkResponse]] = None):
        self.handler = handler
        self.requests: List[LinkRequest] = []

    async def link(self, request):
        self.requests.append(request)
        if self.handler is None:
            return LinkResponse(success=True)
        return self.handler(request)


class FakeSleep:
    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds):
        self.calls.append(seconds)

    @property
    def total(self):
        return sum(self.calls)


@pytest.fixture(scope="function", autouse=True)
def setup_db():
    """Create and drop tables for each test."""
    Base.metadata.create_all(bind=test_engine)
    yield
    Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def db_session():
    """Provide a database session for tests."""
    db = TestSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def session_factory():
    return TestSessionLocal


@pytest.fixture
def make_user(db_session):
    def _make_user(email="test@example.com", full_name="Test User"):
        user = User(full_name=full_name, email=email)
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make_user


@pytest.fixture
def add_entitlement(db_session):
    """Insert an entitlement row and refresh its owner's projection."""
    def _add(user_id, track, plan_type, subscription_id, status="active"):
        row = repo.upsert_entitlement(db_session, subscription_id, user_id, track, plan_type, status)
        repo.refresh_profile_projection(db_session, user_id)
        return row

    return _add


@pytest.fixture
def store():
    return EntitlementStore(TestSessionLocal)


@pytest.fixture
def intents(store):
    return IntentTracker(store, TestSessionLocal)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def link_client():
    return FakeLinkClient()


@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest.fixture
def registry():
    return InFlightRegistry()
