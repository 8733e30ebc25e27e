"""
User repository.

Profile methods are used by the users service. The subscription methods
(customer ref, claim, activation, webhook sync) are reserved for the billing
orchestrator; nothing else writes subscription columns.
"""

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_, insert, or_, select, update

from agrilease.core.clock import as_utc
from agrilease.core.database import users as app_users
from agrilease.core.repository import BaseRepository
from agrilease.models.plan import Tier
from agrilease.models.user import SchemeFlags, SubscriptionStatus, User, UserRole


def _row_to_user(row) -> User:
    return User(
        user_id=row["user_id"],
        role=UserRole(row["role"]),
        region=row["region"],
        email=row["email"],
        full_name=row["full_name"],
        scheme_flags=SchemeFlags(
            is_beneficiary_discount_eligible=bool(row["is_beneficiary_discount_eligible"]),
            is_priority_membership_eligible=bool(row["is_priority_membership_eligible"]),
        ),
        subscription_tier=Tier(row["subscription_tier"]) if row["subscription_tier"] else None,
        subscription_status=SubscriptionStatus(row["subscription_status"]),
        subscription_period_start=as_utc(row["subscription_period_start"]),
        subscription_period_end=as_utc(row["subscription_period_end"]),
        payment_customer_ref=row["payment_customer_ref"],
        subscription_ref=row["subscription_ref"],
        free_trial_used=bool(row["free_trial_used"]),
        created_at=as_utc(row["created_at"]),
    )


class UserRepository(BaseRepository[User]):
    def __init__(self, session):
        super().__init__(session, _row_to_user)

    def get(self, user_id: str) -> Optional[User]:
        return self._one(select(app_users).where(app_users.c.user_id == user_id))

    def get_by_subscription_ref(self, subscription_ref: str) -> Optional[User]:
        return self._one(select(app_users).where(app_users.c.subscription_ref == subscription_ref))

    def get_by_customer_ref(self, customer_ref: str) -> Optional[User]:
        return self._one(select(app_users).where(app_users.c.payment_customer_ref == customer_ref))

    def create(
        self,
        user_id: str,
        *,
        now: datetime,
        role: UserRole = UserRole.FARMER,
        region: Optional[str] = None,
        email: Optional[str] = None,
        full_name: Optional[str] = None,
        scheme_flags: Optional[SchemeFlags] = None,
    ) -> User:
        flags = scheme_flags or SchemeFlags()
        self.session.execute(
            insert(app_users).values(
                user_id=user_id,
                role=role.value,
                region=region,
                email=email,
                full_name=full_name,
                is_beneficiary_discount_eligible=flags.is_beneficiary_discount_eligible,
                is_priority_membership_eligible=flags.is_priority_membership_eligible,
                subscription_status=SubscriptionStatus.INACTIVE.value,
                free_trial_used=False,
                created_at=now,
            )
        )
        return self.get(user_id)

    def update_profile(self, user_id: str, **fields) -> Optional[User]:
        values = {}
        for key, value in fields.items():
            if value is None:
                continue
            values[key] = value.value if isinstance(value, UserRole) else value
        if values:
            self.session.execute(
                update(app_users).where(app_users.c.user_id == user_id).values(**values)
            )
        return self.get(user_id)

    # --- billing-only writes -------------------------------------------------

    def set_payment_customer_ref(self, user_id: str, customer_ref: str) -> bool:
        """Persist the provider customer ref once; a concurrent winner keeps theirs."""
        return self._compare_and_swap(
            update(app_users)
            .where(and_(app_users.c.user_id == user_id, app_users.c.payment_customer_ref.is_(None)))
            .values(payment_customer_ref=customer_ref)
        )

    def claim_subscription(self, user_id: str, now: datetime, ttl_seconds: int) -> bool:
        """Take the per-user subscription-creation claim (stale claims expire)."""
        stale_before = now - timedelta(seconds=ttl_seconds)
        return self._compare_and_swap(
            update(app_users)
            .where(
                and_(
                    app_users.c.user_id == user_id,
                    app_users.c.subscription_status != SubscriptionStatus.ACTIVE.value,
                    or_(
                        app_users.c.subscription_claimed_at.is_(None),
                        app_users.c.subscription_claimed_at < stale_before,
                    ),
                )
            )
            .values(subscription_claimed_at=now)
        )

    def release_subscription_claim(self, user_id: str) -> None:
        self.session.execute(
            update(app_users)
            .where(app_users.c.user_id == user_id)
            .values(subscription_claimed_at=None)
        )

    def record_subscription(
        self,
        user_id: str,
        *,
        tier: Tier,
        status: SubscriptionStatus,
        subscription_ref: str,
        period_start: Optional[datetime],
        period_end: Optional[datetime],
        trial_used: bool,
    ) -> None:
        values = dict(
            subscription_tier=tier.value,
            subscription_status=status.value,
            subscription_ref=subscription_ref,
            subscription_period_start=period_start,
            subscription_period_end=period_end,
            subscription_claimed_at=None,
        )
        if trial_used:
            values["free_trial_used"] = True
        self.session.execute(
            update(app_users).where(app_users.c.user_id == user_id).values(**values)
        )

    def sync_subscription(
        self,
        subscription_ref: str,
        *,
        status: Optional[SubscriptionStatus] = None,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> bool:
        values = {}
        if status is not None:
            values["subscription_status"] = status.value
        if period_start is not None:
            values["subscription_period_start"] = period_start
        if period_end is not None:
            values["subscription_period_end"] = period_end
        if not values:
            return False
        result = self.session.execute(
            update(app_users)
            .where(app_users.c.subscription_ref == subscription_ref)
            .values(**values)
        )
        return result.rowcount > 0

    def cancel_subscription(self, subscription_ref: str) -> bool:
        result = self.session.execute(
            update(app_users)
            .where(app_users.c.subscription_ref == subscription_ref)
            .values(
                subscription_status=SubscriptionStatus.CANCELLED.value,
                subscription_ref=None,
            )
        )
        return result.rowcount > 0
