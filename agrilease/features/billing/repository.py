from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import and_, insert, select, update

from agrilease.core.clock import as_utc
from agrilease.core.database import payments, provider_events
from agrilease.core.repository import BaseRepository
from agrilease.models.payment import Payment, PaymentPurpose, PaymentStatus, PaymentType


def _row_to_payment(row) -> Payment:
    return Payment(
        payment_id=row["payment_id"],
        user_id=row["user_id"],
        amount=row["amount"],
        currency=row["currency"],
        purpose=PaymentPurpose(row["purpose"]),
        type=PaymentType(row["type"]),
        status=PaymentStatus(row["status"]),
        provider_ref=row["provider_ref"],
        invoice_ref=row["invoice_ref"],
        failure_reason=row["failure_reason"],
        metadata=row["metadata"] or {},
        created_at=as_utc(row["created_at"]),
        updated_at=as_utc(row["updated_at"]),
    )


class PaymentRepository(BaseRepository[Payment]):
    def __init__(self, session):
        super().__init__(session, _row_to_payment)

    def get(self, payment_id: str) -> Optional[Payment]:
        return self._one(select(payments).where(payments.c.payment_id == payment_id))

    def get_by_provider_ref(self, provider_ref: str) -> Optional[Payment]:
        return self._one(
            select(payments)
            .where(payments.c.provider_ref == provider_ref)
            .order_by(payments.c.created_at.desc())
        )

    def get_by_invoice_ref(self, invoice_ref: str) -> Optional[Payment]:
        return self._one(select(payments).where(payments.c.invoice_ref == invoice_ref))

    def list_for_user(self, user_id: str, limit: int = 100) -> List[Payment]:
        return self._all(
            select(payments)
            .where(payments.c.user_id == user_id)
            .order_by(payments.c.created_at.desc())
            .limit(limit)
        )

    def insert(
        self,
        *,
        payment_id: str,
        user_id: str,
        amount: int,
        currency: str,
        purpose: PaymentPurpose,
        type: PaymentType,
        provider_ref: Optional[str],
        now: datetime,
        status: PaymentStatus = PaymentStatus.PENDING,
        invoice_ref: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Payment:
        self.session.execute(
            insert(payments).values(
                payment_id=payment_id,
                user_id=user_id,
                amount=amount,
                currency=currency,
                purpose=purpose.value,
                type=type.value,
                status=status.value,
                provider_ref=provider_ref,
                invoice_ref=invoice_ref,
                metadata=metadata or {},
                created_at=now,
                updated_at=now,
            )
        )
        return self.get(payment_id)

    def transition_by_provider_ref(
        self,
        provider_ref: str,
        from_statuses: Sequence[PaymentStatus],
        to_status: PaymentStatus,
        now: datetime,
        **values: Any,
    ) -> int:
        """Guarded status update; returns the number of rows moved."""
        result = self.session.execute(
            update(payments)
            .where(
                and_(
                    payments.c.provider_ref == provider_ref,
                    payments.c.status.in_([s.value for s in from_statuses]),
                )
            )
            .values(status=to_status.value, updated_at=now, **values)
        )
        return result.rowcount

    def complete_invoice(self, invoice_ref: str, now: datetime) -> int:
        result = self.session.execute(
            update(payments)
            .where(
                and_(
                    payments.c.invoice_ref == invoice_ref,
                    payments.c.status.in_([PaymentStatus.PENDING.value, PaymentStatus.FAILED.value]),
                )
            )
            .values(status=PaymentStatus.COMPLETED.value, failure_reason=None, updated_at=now)
        )
        return result.rowcount


class ProviderEventRepository:
    """Webhook idempotency ledger keyed by provider event id."""

    def __init__(self, session):
        self.session = session

    def exists(self, event_id: str) -> bool:
        row = self.session.execute(
            select(provider_events.c.event_id).where(provider_events.c.event_id == event_id)
        ).first()
        return row is not None

    def record(self, event_id: str, event_type: str, payload_hash: str, command: str, now: datetime) -> None:
        """Insert the ledger row; a duplicate event id raises IntegrityError."""
        self.session.execute(
            insert(provider_events).values(
                event_id=event_id,
                event_type=event_type,
                payload_hash=payload_hash,
                command=command,
                received_at=now,
                processed_at=now,
            )
        )
