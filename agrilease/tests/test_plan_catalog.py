import pytest

from agrilease.core.database import get_db_session
from agrilease.core.errors import PlanNotFoundError, RegionNotFoundError, ValidationError
from agrilease.features.pricing.catalog import build_catalog, default_plans, load_catalog
from agrilease.features.pricing.repository import PlanRepository
from agrilease.models.plan import SubscriptionPlan, Tier


@pytest.fixture
def catalog():
    return build_catalog(default_plans(7), "regional")


def test_default_plans_cover_national_and_three_states(catalog):
    assert len(catalog) == 12
    assert catalog.regions() == ["Bihar", "Punjab", "Uttar Pradesh"]
    assert [p.tier for p in catalog.national_plans()] == [Tier.BASIC, Tier.PRO, Tier.ENTERPRISE]


def test_national_prices_and_income(catalog):
    basic = catalog.national(Tier.BASIC)
    assert (basic.monthly_price, basic.yearly_price) == (9900, 99900)
    assert basic.avg_region_income == 850000 * 12
    assert basic.is_national
    assert basic.free_trial_days == 7


def test_region_lookup_is_case_and_space_insensitive(catalog):
    plan = catalog.resolve("  uttar   PRADESH ", Tier.PRO)
    assert plan.region == "Uttar Pradesh"
    assert plan.monthly_price == 79900
    assert plan.yearly_price == 79900 * 10
    assert plan.plan_id == "uttar-pradesh-pro"


def test_unknown_region_raises_region_not_found(catalog):
    with pytest.raises(RegionNotFoundError):
        catalog.resolve("Atlantis", Tier.BASIC)
    with pytest.raises(RegionNotFoundError):
        catalog.plans_for_region("Atlantis")


def test_missing_region_uses_national(catalog):
    assert catalog.resolve(None, Tier.PRO).plan_id == "national-pro"


def test_fallback_when_region_lacks_tier():
    plans = [p for p in default_plans(0) if p.plan_id != "bihar-enterprise"]
    catalog = build_catalog(plans, "regional")
    with pytest.raises(PlanNotFoundError):
        catalog.resolve("Bihar", Tier.ENTERPRISE)
    assert catalog.resolve_with_fallback("Bihar", Tier.ENTERPRISE).plan_id == "national-enterprise"


def test_national_model_ignores_regional_rows():
    catalog = build_catalog(default_plans(0), "national")
    assert len(catalog) == 3
    assert catalog.resolve("Punjab", Tier.BASIC).plan_id == "national-basic"


def test_catalog_is_immutable(catalog):
    with pytest.raises(AttributeError):
        catalog._model = "national"


def test_duplicate_plans_rejected():
    plan = SubscriptionPlan(plan_id="a", tier=Tier.BASIC, name="A", monthly_price=1, yearly_price=10)
    with pytest.raises(ValidationError):
        build_catalog([plan, plan.model_copy(update={"plan_id": "b"})])


def test_unknown_pricing_model_rejected():
    with pytest.raises(ValidationError):
        build_catalog(default_plans(0), "per-district")


def test_provision_then_load_round_trips_from_database():
    with get_db_session() as session:
        repo = PlanRepository(session)
        assert repo.provision(default_plans(7)) == 12
        # Second provisioning leaves existing rows alone
        assert repo.provision(default_plans(30)) == 0

    with get_db_session() as session:
        catalog = load_catalog(session, "regional")

    assert len(catalog) == 12
    punjab = catalog.resolve("Punjab", Tier.ENTERPRISE)
    assert punjab.monthly_price == 179900
    assert punjab.free_trial_days == 7
    assert punjab.limits["multi_user"] == 3
