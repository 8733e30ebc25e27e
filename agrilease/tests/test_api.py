"""
HTTP surface tests: error envelope, auth, subscription gates, admin key and
the main endpoint flows through the FastAPI app.
"""
import asyncio
import time

import jwt
import pytest

from agrilease.core.config import settings
from agrilease.models.plan import Tier
from agrilease.models.user import SubscriptionStatus, UserRole
from agrilease.tests.mocks import VALID_SIGNATURE, event_body

JWT_SECRET = "test-secret-that-is-at-least-32-characters"


def _as(user_id):
    return {"X-User-Id": user_id}


def _bearer(sub, secret=JWT_SECRET, **claims):
    token = jwt.encode({"sub": sub, "exp": int(time.time()) + 300, **claims}, secret, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


class TestEnvelope:
    def test_not_found_uses_error_envelope(self, client):
        response = client.get("/api/listings/missing")
        assert response.status_code == 404
        body = response.json()
        assert body["error"]["code"] == "not_found"
        assert body["error"]["retryable"] is False
        assert body["error"]["request_id"] == response.headers["x-request-id"]

    def test_validation_error_is_400(self, client, marketplace):
        response = client.post("/api/listings", json={"title": "", "region": "Punjab"}, headers=_as("owner_1"))
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_incoming_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"x-request-id": "trace-abc"})
        assert response.headers["x-request-id"] == "trace-abc"

    def test_conflict_reports_current_status(self, client, marketplace, accepted_request):
        response = client.post(f"/api/rental-requests/{accepted_request.request_id}/accept", headers=_as("owner_1"))
        assert response.status_code == 409
        assert response.json()["error"]["current_status"] == "accepted"


class TestAuth:
    def test_missing_identity_is_401(self, client):
        response = client.get("/api/users/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_header_identity_creates_user(self, client):
        response = client.get("/api/users/me", headers=_as("new_farmer"))
        assert response.status_code == 200
        assert response.json()["user_id"] == "new_farmer"
        assert response.json()["subscription_status"] == "inactive"

    def test_bearer_token(self, client, monkeypatch):
        monkeypatch.setattr(settings, "JWT_SECRET", JWT_SECRET)
        response = client.get("/api/users/me", headers=_bearer("jwt_user", email="a@example.com"))
        assert response.status_code == 200
        assert response.json()["email"] == "a@example.com"

    def test_invalid_token_never_falls_back_to_header(self, client, monkeypatch):
        monkeypatch.setattr(settings, "JWT_SECRET", JWT_SECRET)
        headers = {**_bearer("jwt_user", secret="wrong-secret-wrong-secret-wrong!!"), **_as("jwt_user")}
        response = client.get("/api/users/me", headers=headers)
        assert response.status_code == 401

    def test_header_auth_disabled_in_production(self, client, monkeypatch):
        monkeypatch.setattr(settings, "ENV", "production")
        assert client.get("/api/users/me", headers=_as("farmer_1")).status_code == 401

    def test_user_lookup_runs_in_worker_thread(self, client, monkeypatch):
        from agrilease.features.users import service as users_service

        lookup = users_service.get_or_create_user
        threads = []

        def recording_lookup(*args, **kwargs):
            try:
                asyncio.get_running_loop()
                threads.append("event loop")
            except RuntimeError:
                threads.append("worker")
            return lookup(*args, **kwargs)

        monkeypatch.setattr(users_service, "get_or_create_user", recording_lookup)
        assert client.get("/api/users/me", headers=_as("farmer_1")).status_code == 200
        assert threads == ["worker"]

    def test_profile_update(self, client):
        response = client.patch(
            "/api/users/me",
            json={"role": "landowner", "region": "Bihar", "is_beneficiary_discount_eligible": True},
            headers=_as("someone"),
        )
        assert response.status_code == 200
        body = response.json()
        assert body["role"] == "landowner"
        assert body["scheme_flags"]["is_beneficiary_discount_eligible"] is True


class TestSubscriptionGate:
    def test_inactive_subscription_blocked(self, client, make_user, accepted_request):
        make_user("basic_farmer")
        response = client.post(
            "/api/payments/escrow/hold",
            json={"request_id": accepted_request.request_id, "amount": 500000},
            headers=_as("basic_farmer"),
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "subscription_required"

    def test_low_tier_blocked(self, client, make_user, accepted_request):
        make_user("basic_farmer", tier=Tier.BASIC, status=SubscriptionStatus.ACTIVE)
        response = client.post(
            "/api/payments/escrow/hold",
            json={"request_id": accepted_request.request_id, "amount": 500000},
            headers=_as("basic_farmer"),
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "subscription_tier_insufficient"


class TestAdmin:
    def test_unconfigured_admin_is_503(self, client):
        response = client.get("/api/payments/escrow")
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "admin_auth_unconfigured"

    def test_wrong_key_is_401(self, client, monkeypatch):
        monkeypatch.setattr(settings, "ADMIN_KEY", "admin-secret")
        response = client.get("/api/payments/escrow", headers={"X-Admin-Key": "nope"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "admin_unauthorized"

    def test_admin_lists_escrows(self, client, monkeypatch, provider, marketplace, accepted_request):
        monkeypatch.setattr(settings, "ADMIN_KEY", "admin-secret")
        hold = client.post(
            "/api/payments/escrow/hold",
            json={"request_id": accepted_request.request_id, "amount": 500000},
            headers=_as("farmer_1"),
        )
        assert hold.status_code == 201

        response = client.get("/api/payments/escrow?status=hold", headers={"X-Admin-Key": "admin-secret"})
        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 1
        assert body["escrows"][0]["escrow_id"] == hold.json()["escrow"]["escrow_id"]


class TestPricing:
    def test_national_plans_with_recommendation(self, client):
        response = client.get("/api/pricing/plans?farm_size_acres=5")
        assert response.status_code == 200
        body = response.json()
        assert body["currency"] == "INR"
        assert body["recommended_tier"] == "pro"
        assert [p["plan"]["tier"] for p in body["plans"]] == ["basic", "pro", "enterprise"]

    def test_region_plans(self, client):
        body = client.get("/api/pricing/punjab").json()
        assert body["region"] == "Punjab"
        assert len(body["plans"]) == 3

    def test_unknown_region_is_404(self, client):
        response = client.get("/api/pricing/atlantis")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "region_not_found"

    def test_calculate_with_discount(self, client):
        response = client.post(
            "/api/pricing/calculate",
            json={"region": "Punjab", "tier": "pro", "is_beneficiary_discount_eligible": True},
        )
        assert response.status_code == 200
        quote = response.json()
        assert quote["original_price"] == 129900
        assert quote["final_price"] == 103920
        assert quote["affordability_ratio"] == pytest.approx(103920 * 12 / 35000000 * 100)

    def test_calculate_falls_back_for_unknown_region(self, client):
        quote = client.post("/api/pricing/calculate", json={"region": "Atlantis", "tier": "basic"}).json()
        assert quote["plan"]["plan_id"] == "national-basic"

    def test_calculate_without_fallback(self, client):
        response = client.post(
            "/api/pricing/calculate",
            json={"region": "Atlantis", "tier": "basic", "fallback_to_national": False},
        )
        assert response.status_code == 404


class TestMarketplaceFlow:
    def test_listing_to_active_rental(self, client, provider, make_user):
        make_user("owner_9", role=UserRole.LANDOWNER)
        make_user("farmer_9", customer_ref="cus_farmer_9", tier=Tier.PRO, status=SubscriptionStatus.ACTIVE)

        listing = client.post(
            "/api/listings",
            json={"title": "Riverside plot", "region": "Bihar", "acreage": 3, "rent_per_acre": 2000000},
            headers=_as("owner_9"),
        )
        assert listing.status_code == 201
        listing_id = listing.json()["listing_id"]
        assert [item["listing_id"] for item in client.get("/api/listings?region=Bihar").json()] == [listing_id]

        created = client.post(
            "/api/rental-requests",
            json={"listing_id": listing_id, "proposed_terms": {"rent_per_acre": 1900000, "duration_months": 12}},
            headers=_as("farmer_9"),
        )
        assert created.status_code == 201
        request_id = created.json()["request_id"]

        assert client.post(f"/api/rental-requests/{request_id}/accept", headers=_as("owner_9")).json()["status"] == "accepted"

        hold = client.post(
            "/api/payments/escrow/hold",
            json={"request_id": request_id, "amount": 600000},
            headers=_as("farmer_9"),
        )
        assert hold.status_code == 201
        escrow_id = hold.json()["escrow"]["escrow_id"]

        forbidden = client.post("/api/payments/escrow/release", json={"escrow_id": escrow_id}, headers=_as("farmer_9"))
        assert forbidden.status_code == 403

        released = client.post("/api/payments/escrow/release", json={"escrow_id": escrow_id}, headers=_as("owner_9"))
        assert released.status_code == 200
        assert released.json()["status"] == "released"

        view = client.get(f"/api/payments/escrow/{escrow_id}", headers=_as("farmer_9")).json()
        assert view["request_status"] == "active"
        assert client.get(f"/api/listings/{listing_id}").json()["status"] == "leased"

        history = client.get("/api/payments/history", headers=_as("farmer_9")).json()
        assert [p["status"] for p in history] == ["completed"]

    def test_owner_lists_incoming_requests(self, client, marketplace, pending_request):
        response = client.get("/api/rental-requests?role=owner", headers=_as("owner_1"))
        assert [r["request_id"] for r in response.json()] == [pending_request.request_id]


class TestPayments:
    def test_subscription_endpoint(self, client, provider):
        response = client.post(
            "/api/payments/subscriptions",
            json={"tier": "basic", "billing_period": "monthly", "use_trial": True},
            headers=_as("farmer_new"),
        )
        assert response.status_code == 201
        assert response.json()["trial"] is True

        again = client.post("/api/payments/subscriptions", json={"tier": "pro"}, headers=_as("farmer_new"))
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "subscription_already_active"

    def test_provider_unavailable_is_503(self, client):
        response = client.post("/api/payments/create-intent", json={"amount": 10000}, headers=_as("farmer_new"))
        assert response.status_code == 503
        assert response.json()["error"]["retryable"] is True

    def test_webhook_endpoint(self, client, provider):
        client.post("/api/payments/create-intent", json={"amount": 10000}, headers=_as("farmer_new"))
        ref = client.get("/api/payments/history", headers=_as("farmer_new")).json()[0]["provider_ref"]
        body = event_body("evt_http_1", "payment_intent.succeeded", {"id": ref})

        first = client.post("/api/payments/webhook", content=body, headers={"stripe-signature": VALID_SIGNATURE})
        assert first.status_code == 200
        assert first.json()["applied"] is True

        replay = client.post("/api/payments/webhook", content=body, headers={"stripe-signature": VALID_SIGNATURE})
        assert replay.json()["duplicate"] is True

        forged = client.post("/api/payments/webhook", content=body, headers={"stripe-signature": "t=1,v1=forged"})
        assert forged.status_code == 400
        assert forged.json()["error"]["code"] == "invalid_signature"


class TestOperations:
    def test_root_and_liveness(self, client):
        assert client.get("/").json() == {"service": "agrilease", "status": "ok"}
        assert client.get("/healthz").json() == {"status": "ok"}

    def test_readiness(self, client):
        assert client.get("/readyz").status_code == 200

    def test_db_health_with_fixed_clock(self, client):
        body = client.get("/api/health/db?now=2026-01-01T00:00:00Z").json()
        assert body["ok"] is True
        assert body["db"]["latency_ms"] is None
        assert "escrows" in body["db"]["tables_present"]
        assert body["catalog_plans"] == 12
        assert body["computed_at"] == "2026-01-01T00:00:00Z"

    def test_metrics_exposition(self, client):
        client.get("/healthz")
        response = client.get("/metrics")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "http_requests_total" in response.text
        assert "catalog_plans_loaded 12.0" in response.text

    def test_metrics_label_routes_by_template(self, client, marketplace):
        listing_id = marketplace.listing.listing_id
        assert client.get(f"/api/listings/{listing_id}").status_code == 200
        text = client.get("/metrics").text
        assert 'route="/api/listings/{listing_id}"' in text
        assert listing_id not in text
        assert "http_request_latency_total" in text


class TestListings:
    def test_owner_toggles_availability(self, client, marketplace):
        listing_id = marketplace.listing.listing_id
        response = client.patch(
            f"/api/listings/{listing_id}/status", json={"status": "inactive"}, headers=_as("owner_1")
        )
        assert response.status_code == 200
        assert response.json()["status"] == "inactive"
        assert all(item["listing_id"] != listing_id for item in client.get("/api/listings").json())

    def test_leased_is_not_owner_settable(self, client, marketplace):
        response = client.patch(
            f"/api/listings/{marketplace.listing.listing_id}/status",
            json={"status": "leased"},
            headers=_as("owner_1"),
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_only_owner_changes_status(self, client, marketplace):
        response = client.patch(
            f"/api/listings/{marketplace.listing.listing_id}/status",
            json={"status": "inactive"},
            headers=_as("farmer_1"),
        )
        assert response.status_code == 403
