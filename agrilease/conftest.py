# agrilease/conftest.py
import os
from types import SimpleNamespace

import pytest

os.environ.setdefault("ENV", "test")
os.environ["SKIP_ENV_VALIDATION"] = "1"

from sqlalchemy import update

from agrilease.core.clock import utc_now
from agrilease.core.config import settings
from agrilease.core.database import dispose_engine, get_db_session, init_engine, reset_database
from agrilease.core.database import users as app_users
from agrilease.core.metrics import METRICS
from agrilease.features.users.repository import UserRepository
from agrilease.models.plan import Tier
from agrilease.models.user import SchemeFlags, SubscriptionStatus, UserRole
from agrilease.tests.mocks import FakeProvider


@pytest.fixture(scope="function", autouse=True)
def db(tmp_path, monkeypatch):
    """
    Fresh SQLite file database per test.

    A file (not :memory:) so the TestClient thread and the test share it.
    """
    url = f"sqlite:///{tmp_path / 'agrilease_test.db'}"
    monkeypatch.setenv("TEST_DATABASE_URL", url)
    dispose_engine()
    init_engine(url)
    reset_database()
    yield url
    dispose_engine()


@pytest.fixture(scope="function", autouse=True)
def isolated_settings(monkeypatch):
    """Provider and admin auth start unconfigured; tests opt in explicitly."""
    for key in ("STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET", "ADMIN_API_KEY"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", None)
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", None)
    monkeypatch.setattr(settings, "ADMIN_KEY", None)
    monkeypatch.setattr(settings, "JWT_SECRET", None)
    monkeypatch.setattr(settings, "ALLOW_HEADER_AUTH", True)
    monkeypatch.setattr(settings, "ENV", "test")
    yield


@pytest.fixture(scope="function", autouse=True)
def reset_metrics():
    METRICS.reset()
    yield


@pytest.fixture
def provider(monkeypatch):
    """Configure billing and route every provider call to an in-memory fake."""
    from agrilease.features.billing import service as billing_service

    fake = FakeProvider()
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_fake")
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "whsec_fake")
    monkeypatch.setattr(billing_service, "StripeProvider", lambda: fake)
    return fake


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from agrilease.main import app

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def make_user():
    def _make(
        user_id,
        *,
        role=UserRole.FARMER,
        region=None,
        customer_ref=None,
        tier=None,
        status=SubscriptionStatus.INACTIVE,
        beneficiary=False,
        priority=False,
        free_trial_used=False,
    ):
        with get_db_session() as session:
            repo = UserRepository(session)
            repo.create(
                user_id,
                now=utc_now(),
                role=role,
                region=region,
                scheme_flags=SchemeFlags(
                    is_beneficiary_discount_eligible=beneficiary,
                    is_priority_membership_eligible=priority,
                ),
            )
            session.execute(
                update(app_users)
                .where(app_users.c.user_id == user_id)
                .values(
                    payment_customer_ref=customer_ref,
                    subscription_tier=tier.value if tier else None,
                    subscription_status=status.value,
                    free_trial_used=free_trial_used,
                )
            )
            return repo.get(user_id)

    return _make


@pytest.fixture
def marketplace(make_user):
    """A landowner with one listing and a pro-subscribed farmer who can pay."""
    from agrilease.features.listings.service import create_listing
    from agrilease.models.listing import ListingCreate

    owner = make_user("owner_1", role=UserRole.LANDOWNER, region="Punjab")
    farmer = make_user(
        "farmer_1",
        region="Punjab",
        customer_ref="cus_farmer_1",
        tier=Tier.PRO,
        status=SubscriptionStatus.ACTIVE,
    )
    listing = create_listing(
        owner.user_id,
        ListingCreate(title="Canal-fed plot", region="Punjab", acreage=4.5, rent_per_acre=3000000),
    )
    return SimpleNamespace(owner=owner, farmer=farmer, listing=listing)


@pytest.fixture
def pending_request(marketplace):
    from agrilease.features.rentals.service import create_request
    from agrilease.models.rental import ProposedTerms, RentalRequestCreate

    return create_request(
        marketplace.farmer.user_id,
        RentalRequestCreate(
            listing_id=marketplace.listing.listing_id,
            proposed_terms=ProposedTerms(rent_per_acre=2800000, duration_months=12),
        ),
    )


@pytest.fixture
def accepted_request(marketplace, pending_request):
    from agrilease.features.rentals.service import accept_request

    return accept_request(pending_request.request_id, marketplace.owner.user_id)
