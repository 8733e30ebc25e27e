from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import and_, func, insert, or_, select, update

from agrilease.core.clock import as_utc
from agrilease.core.database import escrows
from agrilease.core.repository import BaseRepository
from agrilease.models.escrow import Escrow, EscrowAction, EscrowStatus

_FINAL_STATUS = {
    EscrowAction.RELEASE: EscrowStatus.RELEASED,
    EscrowAction.REFUND: EscrowStatus.REFUNDED,
}


def _row_to_escrow(row) -> Escrow:
    return Escrow(
        escrow_id=row["escrow_id"],
        request_id=row["request_id"],
        amount=row["amount"],
        currency=row["currency"],
        status=EscrowStatus(row["status"]),
        provider_hold_ref=row["provider_hold_ref"],
        release_conditions=row["release_conditions"],
        auto_release_date=as_utc(row["auto_release_date"]),
        pending_action=EscrowAction(row["pending_action"]) if row["pending_action"] else None,
        claimed_at=as_utc(row["claimed_at"]),
        created_at=as_utc(row["created_at"]),
        updated_at=as_utc(row["updated_at"]),
    )


class EscrowRepository(BaseRepository[Escrow]):
    def __init__(self, session):
        super().__init__(session, _row_to_escrow)

    def get(self, escrow_id: str) -> Optional[Escrow]:
        return self._one(select(escrows).where(escrows.c.escrow_id == escrow_id))

    def get_hold_for_request(self, request_id: str) -> Optional[Escrow]:
        return self._one(
            select(escrows).where(
                and_(escrows.c.request_id == request_id, escrows.c.status == EscrowStatus.HOLD.value)
            )
        )

    def insert(self, escrow: Escrow, now: datetime) -> Escrow:
        self.session.execute(
            insert(escrows).values(
                escrow_id=escrow.escrow_id,
                request_id=escrow.request_id,
                amount=escrow.amount,
                currency=escrow.currency,
                status=EscrowStatus.HOLD.value,
                provider_hold_ref=escrow.provider_hold_ref,
                release_conditions=escrow.release_conditions,
                auto_release_date=escrow.auto_release_date,
                created_at=now,
                updated_at=now,
            )
        )
        return self.get(escrow.escrow_id)

    def claim(self, escrow_id: str, action: EscrowAction, now: datetime, ttl_seconds: int) -> bool:
        """
        Take the per-escrow operation claim.

        Succeeds only while the escrow is on hold and no other operation holds
        a live claim. Claims older than ttl_seconds are considered abandoned.
        """
        stale_before = now - timedelta(seconds=ttl_seconds)
        return self._compare_and_swap(
            update(escrows)
            .where(
                and_(
                    escrows.c.escrow_id == escrow_id,
                    escrows.c.status == EscrowStatus.HOLD.value,
                    or_(
                        escrows.c.pending_action.is_(None),
                        escrows.c.claimed_at < stale_before,
                    ),
                )
            )
            .values(pending_action=action.value, claimed_at=now, updated_at=now)
        )

    def clear_claim(self, escrow_id: str, action: EscrowAction, now: datetime) -> None:
        self.session.execute(
            update(escrows)
            .where(and_(escrows.c.escrow_id == escrow_id, escrows.c.pending_action == action.value))
            .values(pending_action=None, claimed_at=None, updated_at=now)
        )

    def finalize(self, escrow_id: str, action: EscrowAction, now: datetime) -> bool:
        """hold -> released|refunded, only for the holder of the matching claim."""
        return self._compare_and_swap(
            update(escrows)
            .where(
                and_(
                    escrows.c.escrow_id == escrow_id,
                    escrows.c.status == EscrowStatus.HOLD.value,
                    escrows.c.pending_action == action.value,
                )
            )
            .values(
                status=_FINAL_STATUS[action].value,
                pending_action=None,
                claimed_at=None,
                updated_at=now,
            )
        )

    def list(
        self,
        status: Optional[EscrowStatus] = None,
        page: int = 1,
        limit: int = 20,
    ) -> List[Escrow]:
        stmt = select(escrows)
        if status is not None:
            stmt = stmt.where(escrows.c.status == status.value)
        stmt = stmt.order_by(escrows.c.created_at.desc()).offset((page - 1) * limit).limit(limit)
        return self._all(stmt)

    def count(self, status: Optional[EscrowStatus] = None) -> int:
        stmt = select(func.count()).select_from(escrows)
        if status is not None:
            stmt = stmt.where(escrows.c.status == status.value)
        return self.session.execute(stmt).scalar_one()

    def list_due_for_auto_release(self, now: datetime, limit: int = 100) -> List[Escrow]:
        return self._all(
            select(escrows)
            .where(
                and_(
                    escrows.c.status == EscrowStatus.HOLD.value,
                    escrows.c.auto_release_date.is_not(None),
                    escrows.c.auto_release_date <= now,
                )
            )
            .order_by(escrows.c.auto_release_date)
            .limit(limit)
        )
