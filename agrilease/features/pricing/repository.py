from typing import Iterable, List

from sqlalchemy import func, insert, select

from agrilease.core.clock import utc_now
from agrilease.core.database import subscription_plans
from agrilease.core.repository import BaseRepository
from agrilease.models.plan import SubscriptionPlan, Tier


def _row_to_plan(row) -> SubscriptionPlan:
    return SubscriptionPlan(
        plan_id=row["plan_id"],
        tier=Tier(row["tier"]),
        name=row["name"],
        monthly_price=row["monthly_price"],
        yearly_price=row["yearly_price"],
        region=row["region"],
        avg_region_income=row["avg_region_income"],
        features=list(row["features"] or []),
        limits=dict(row["limits"] or {}),
        free_trial_days=row["free_trial_days"],
    )


class PlanRepository(BaseRepository[SubscriptionPlan]):
    def __init__(self, session):
        super().__init__(session, _row_to_plan)

    def list_all(self) -> List[SubscriptionPlan]:
        return self._all(
            select(subscription_plans).order_by(
                subscription_plans.c.region, subscription_plans.c.monthly_price
            )
        )

    def count(self) -> int:
        return self.session.execute(select(func.count()).select_from(subscription_plans)).scalar_one()

    def provision(self, plans: Iterable[SubscriptionPlan]) -> int:
        """Insert plans into an empty table. Existing rows are never touched."""
        if self.count() > 0:
            return 0
        now = utc_now()
        rows = [
            dict(
                plan_id=plan.plan_id,
                tier=plan.tier.value,
                name=plan.name,
                region=plan.region,
                monthly_price=plan.monthly_price,
                yearly_price=plan.yearly_price,
                avg_region_income=plan.avg_region_income,
                features=list(plan.features),
                limits=dict(plan.limits),
                free_trial_days=plan.free_trial_days,
                created_at=now,
            )
            for plan in plans
        ]
        if rows:
            self.session.execute(insert(subscription_plans), rows)
        return len(rows)
