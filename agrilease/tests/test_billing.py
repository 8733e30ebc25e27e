"""
Billing orchestrator tests: customers, payment intents, subscriptions and
webhook reconciliation against the in-memory provider.
"""
from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select, update

from agrilease.core.clock import utc_now
from agrilease.core.database import get_db_session, payments, provider_events
from agrilease.core.database import users as app_users
from agrilease.core.errors import (
    InvalidSignatureError,
    ProviderOperationFailedError,
    ProviderUnavailableError,
    SubscriptionAlreadyActiveError,
    ValidationError,
)
from agrilease.core.metrics import webhook_events_total
from agrilease.features.billing import service as billing
from agrilease.features.billing.provider import ProviderError
from agrilease.features.pricing.catalog import build_catalog, default_plans
from agrilease.features.users.repository import UserRepository
from agrilease.models.payment import PaymentPurpose, PaymentStatus, PaymentType
from agrilease.models.plan import BillingPeriod, Tier
from agrilease.models.user import SubscriptionStatus
from agrilease.tests.mocks import VALID_SIGNATURE, event_body

PERIOD_START, PERIOD_END = 1767225600, 1769904000


@pytest.fixture
def catalog():
    return build_catalog(default_plans(7), "regional")


def _user(user_id):
    with get_db_session() as session:
        return UserRepository(session).get(user_id)


def _ledger_size():
    with get_db_session() as session:
        return session.execute(select(func.count()).select_from(provider_events)).scalar_one()


def _deliver(event_id, event_type, obj, signature=VALID_SIGNATURE):
    return billing.handle_provider_event(event_body(event_id, event_type, obj), signature)


class TestCustomers:
    def test_customer_created_once_and_persisted(self, provider, make_user):
        user = make_user("farmer_9")
        assert billing.ensure_customer_ref(user, provider) == "cus_farmer_9"
        assert _user("farmer_9").payment_customer_ref == "cus_farmer_9"

        assert billing.ensure_customer_ref(_user("farmer_9"), provider) == "cus_farmer_9"
        assert provider.called("ensure_customer") == 1

    def test_concurrent_winner_keeps_its_customer(self, provider, make_user):
        stale = make_user("farmer_9")
        with get_db_session() as session:
            session.execute(
                update(app_users).where(app_users.c.user_id == "farmer_9").values(payment_customer_ref="cus_winner")
            )
        assert billing.ensure_customer_ref(stale, provider) == "cus_winner"
        assert _user("farmer_9").payment_customer_ref == "cus_winner"


class TestPaymentIntents:
    def test_intent_creates_pending_mirror(self, provider, make_user):
        make_user("farmer_9")
        result = billing.create_payment_hold("farmer_9", 250000, PaymentPurpose.RENT, mode="upi")

        history = billing.get_payment_history("farmer_9")
        assert len(history) == 1
        payment = history[0]
        assert payment.payment_id == result.payment_id
        assert payment.provider_ref == result.provider_ref
        assert payment.status == PaymentStatus.PENDING
        assert payment.metadata["mode"] == "upi"
        assert result.client_token == f"{result.provider_ref}_secret"

    def test_minimum_amount(self, provider, make_user):
        make_user("farmer_9")
        with pytest.raises(ValidationError):
            billing.create_payment_hold("farmer_9", 50, PaymentPurpose.RENT)
        assert provider.calls == []

    def test_billing_disabled(self, make_user):
        make_user("farmer_9")
        with pytest.raises(ProviderUnavailableError):
            billing.create_payment_hold("farmer_9", 250000, PaymentPurpose.RENT)


class TestSubscriptions:
    def test_trial_with_income_support_discount(self, provider, make_user, catalog):
        make_user("farmer_9", region="Punjab", beneficiary=True)
        result = billing.create_subscription("farmer_9", Tier.PRO, BillingPeriod.MONTHLY, True, catalog)

        # Punjab pro is 129900; income support takes 20%
        assert result.amount == 103920
        assert result.trial
        assert result.status == SubscriptionStatus.ACTIVE

        _, call = [c for c in provider.calls if c[0] == "create_subscription"][0]
        assert call["trial_days"] == 7
        assert call["interval"] == "month"

        user = _user("farmer_9")
        assert user.free_trial_used
        assert user.subscription_tier == Tier.PRO
        assert user.subscription_ref == result.subscription_ref
        assert user.payment_customer_ref == "cus_farmer_9"

        (payment,) = billing.get_payment_history("farmer_9")
        assert payment.type == PaymentType.RECURRING
        assert payment.purpose == PaymentPurpose.SUBSCRIPTION
        assert payment.status == PaymentStatus.PENDING
        assert payment.invoice_ref is not None

    def test_active_user_rejected_before_provider_call(self, provider, make_user, catalog):
        make_user("farmer_9", region="Punjab")
        billing.create_subscription("farmer_9", Tier.PRO, BillingPeriod.MONTHLY, True, catalog)
        with pytest.raises(SubscriptionAlreadyActiveError):
            billing.create_subscription("farmer_9", Tier.PRO, BillingPeriod.MONTHLY, True, catalog)
        assert provider.called("create_subscription") == 1

    def test_used_trial_takes_provider_status(self, provider, make_user, catalog):
        make_user("farmer_9", free_trial_used=True)
        result = billing.create_subscription("farmer_9", Tier.BASIC, BillingPeriod.YEARLY, True, catalog)

        assert not result.trial
        assert result.amount == 99900
        assert result.status == SubscriptionStatus.INACTIVE
        _, call = [c for c in provider.calls if c[0] == "create_subscription"][0]
        assert call["trial_days"] is None
        assert call["interval"] == "year"

    def test_unknown_region_falls_back_to_national_plan(self, provider, make_user, catalog):
        make_user("farmer_9", region="Atlantis")
        provider.subscription_status = "active"
        result = billing.create_subscription("farmer_9", Tier.PRO, BillingPeriod.MONTHLY, False, catalog)
        assert result.amount == 49900
        assert result.status == SubscriptionStatus.ACTIVE

    def test_concurrent_creation_is_rejected(self, provider, make_user, catalog):
        make_user("farmer_9")
        with get_db_session() as session:
            session.execute(
                update(app_users).where(app_users.c.user_id == "farmer_9").values(subscription_claimed_at=utc_now())
            )
        with pytest.raises(billing.SubscriptionInProgressError) as exc:
            billing.create_subscription("farmer_9", Tier.BASIC, BillingPeriod.MONTHLY, False, catalog)
        assert exc.value.status_code == 409
        assert exc.value.retryable
        assert provider.called("create_subscription") == 0

    def test_provider_failure_releases_claim(self, provider, make_user, catalog):
        make_user("farmer_9")
        provider.failures["create_subscription"] = ProviderError("invalid price", retryable=False)
        with pytest.raises(ProviderOperationFailedError):
            billing.create_subscription("farmer_9", Tier.BASIC, BillingPeriod.MONTHLY, False, catalog)
        assert billing.get_payment_history("farmer_9") == []

        provider.failures.clear()
        result = billing.create_subscription("farmer_9", Tier.BASIC, BillingPeriod.MONTHLY, False, catalog)
        assert result.subscription_ref.startswith("sub_")

    def test_retry_after_incomplete_cancels_previous_subscription(self, provider, make_user, catalog):
        make_user("farmer_9")
        first = billing.create_subscription("farmer_9", Tier.BASIC, BillingPeriod.MONTHLY, False, catalog)
        assert first.status == SubscriptionStatus.INACTIVE

        second = billing.create_subscription("farmer_9", Tier.BASIC, BillingPeriod.MONTHLY, False, catalog)

        cancelled = [c["subscription_ref"] for name, c in provider.calls if name == "cancel_subscription"]
        assert cancelled == [first.subscription_ref]
        assert second.subscription_ref != first.subscription_ref
        assert _user("farmer_9").subscription_ref == second.subscription_ref

    def test_previous_subscription_cancel_failure_blocks_replacement(self, provider, make_user, catalog):
        make_user("farmer_9")
        first = billing.create_subscription("farmer_9", Tier.BASIC, BillingPeriod.MONTHLY, False, catalog)
        provider.failures["cancel_subscription"] = ProviderError("api error", retryable=True)

        with pytest.raises(ProviderOperationFailedError) as exc:
            billing.create_subscription("farmer_9", Tier.BASIC, BillingPeriod.MONTHLY, False, catalog)
        assert exc.value.retryable
        assert provider.called("create_subscription") == 1
        assert _user("farmer_9").subscription_ref == first.subscription_ref
        with get_db_session() as session:
            claimed_at = session.execute(
                select(app_users.c.subscription_claimed_at).where(app_users.c.user_id == "farmer_9")
            ).scalar_one()
        assert claimed_at is None

    def test_previous_subscription_missing_at_provider_is_replaced(self, provider, make_user, catalog):
        make_user("farmer_9")
        billing.create_subscription("farmer_9", Tier.BASIC, BillingPeriod.MONTHLY, False, catalog)
        provider.failures["cancel_subscription"] = ProviderError(
            "No such subscription", retryable=False, provider_code="resource_missing"
        )

        second = billing.create_subscription("farmer_9", Tier.BASIC, BillingPeriod.MONTHLY, False, catalog)
        assert provider.called("create_subscription") == 2
        assert _user("farmer_9").subscription_ref == second.subscription_ref


class TestWebhooks:
    def test_payment_success_applies_once(self, provider, make_user):
        make_user("farmer_9")
        hold = billing.create_payment_hold("farmer_9", 250000, PaymentPurpose.RENT)
        obj = {"id": hold.provider_ref, "amount_received": 250000}

        first = _deliver("evt_1", "payment_intent.succeeded", obj)
        assert first.applied and not first.duplicate
        assert first.command == "mark_payment_completed"

        replay = _deliver("evt_1", "payment_intent.succeeded", obj)
        assert replay.duplicate and not replay.applied
        assert _ledger_size() == 1
        assert billing.get_payment_history("farmer_9")[0].status == PaymentStatus.COMPLETED
        assert webhook_events_total.value({"kind": "payment_succeeded", "outcome": "duplicate"}) == 1

    def test_late_failure_does_not_undo_completion(self, provider, make_user):
        make_user("farmer_9")
        hold = billing.create_payment_hold("farmer_9", 250000, PaymentPurpose.RENT)
        _deliver("evt_1", "payment_intent.succeeded", {"id": hold.provider_ref})

        result = _deliver("evt_2", "payment_intent.payment_failed", {"id": hold.provider_ref})
        assert not result.applied
        payment = billing.get_payment_history("farmer_9")[0]
        assert payment.status == PaymentStatus.COMPLETED
        assert payment.failure_reason is None

    def test_failure_records_reason(self, provider, make_user):
        make_user("farmer_9")
        hold = billing.create_payment_hold("farmer_9", 250000, PaymentPurpose.RENT)
        _deliver(
            "evt_1",
            "payment_intent.payment_failed",
            {"id": hold.provider_ref, "last_payment_error": {"message": "Insufficient funds"}},
        )
        payment = billing.get_payment_history("farmer_9")[0]
        assert payment.status == PaymentStatus.FAILED
        assert payment.failure_reason == "Insufficient funds"

    def test_invalid_signature_records_nothing(self, provider):
        with pytest.raises(InvalidSignatureError):
            _deliver("evt_1", "payment_intent.succeeded", {"id": "pi_x"}, signature="t=1,v1=forged")
        assert _ledger_size() == 0

    def test_unhandled_event_is_recorded_as_noop(self, provider):
        result = _deliver("evt_1", "charge.dispute.created", {"id": "dp_1"})
        assert result.command == "noop"
        assert not result.applied
        assert _ledger_size() == 1

    def test_webhooks_need_configured_provider(self):
        with pytest.raises(ProviderUnavailableError):
            _deliver("evt_1", "payment_intent.succeeded", {"id": "pi_x"})

    def test_invoice_paid_completes_mirror_and_syncs_period(self, provider, make_user, catalog):
        make_user("farmer_9")
        sub = billing.create_subscription("farmer_9", Tier.BASIC, BillingPeriod.MONTHLY, False, catalog)
        (mirror,) = billing.get_payment_history("farmer_9")

        result = _deliver(
            "evt_inv_1",
            "invoice.payment_succeeded",
            {
                "id": mirror.invoice_ref,
                "subscription": sub.subscription_ref,
                "amount_paid": 9900,
                "currency": "inr",
                "lines": {"data": [{"period": {"start": PERIOD_START, "end": PERIOD_END}}]},
            },
        )

        assert result.applied
        (payment,) = billing.get_payment_history("farmer_9")
        assert payment.status == PaymentStatus.COMPLETED
        user = _user("farmer_9")
        assert user.subscription_status == SubscriptionStatus.ACTIVE
        assert user.subscription_period_end == datetime.fromtimestamp(PERIOD_END, timezone.utc)

    def test_renewal_invoice_adds_completed_payment(self, provider, make_user, catalog):
        make_user("farmer_9")
        sub = billing.create_subscription("farmer_9", Tier.BASIC, BillingPeriod.MONTHLY, False, catalog)
        body = {"id": "in_renewal_2", "subscription": sub.subscription_ref, "amount_paid": 9900, "currency": "inr"}

        assert _deliver("evt_inv_2", "invoice.payment_succeeded", body).applied
        # Same invoice under a new event id must not record a second renewal
        _deliver("evt_inv_2_retry", "invoice.payment_succeeded", body)

        renewals = [p for p in billing.get_payment_history("farmer_9") if p.invoice_ref == "in_renewal_2"]
        assert len(renewals) == 1
        assert renewals[0].status == PaymentStatus.COMPLETED
        assert renewals[0].amount == 9900
        assert renewals[0].metadata == {"renewal": True}

    def test_subscription_deleted_cancels_user(self, provider, make_user, catalog):
        make_user("farmer_9")
        sub = billing.create_subscription("farmer_9", Tier.BASIC, BillingPeriod.MONTHLY, True, catalog)
        assert _user("farmer_9").has_active_subscription

        assert _deliver("evt_del", "customer.subscription.deleted", {"id": sub.subscription_ref}).applied
        user = _user("farmer_9")
        assert user.subscription_status == SubscriptionStatus.CANCELLED
        assert user.subscription_ref is None

    def test_subscription_update_marks_past_due(self, provider, make_user, catalog):
        make_user("farmer_9")
        sub = billing.create_subscription("farmer_9", Tier.BASIC, BillingPeriod.MONTHLY, True, catalog)
        _deliver("evt_upd", "customer.subscription.updated", {"id": sub.subscription_ref, "status": "past_due"})
        assert _user("farmer_9").subscription_status == SubscriptionStatus.PAST_DUE


def test_payment_rows_never_leak_between_users(provider, make_user):
    make_user("farmer_9")
    make_user("farmer_10")
    billing.create_payment_hold("farmer_9", 250000, PaymentPurpose.RENT)
    assert billing.get_payment_history("farmer_10") == []
    with get_db_session() as session:
        assert session.execute(select(func.count()).select_from(payments)).scalar_one() == 1
