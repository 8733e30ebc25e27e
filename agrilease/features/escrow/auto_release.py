"""
Auto-release job for escrow holds past their auto_release_date.

Not scheduled in-process: an external scheduler (cron, k8s CronJob) calls
run_auto_release_job periodically. Each due hold is released through the
normal release path with the landowner as actor, so claims, provider
capture and the request transition behave exactly as a manual release.
"""
from datetime import datetime
from typing import Any, Dict, Optional

from agrilease.core.clock import utc_now
from agrilease.core.database import get_db_session
from agrilease.core.errors import AppError
from agrilease.core.logging import log_event
from agrilease.features.escrow import service
from agrilease.features.escrow.repository import EscrowRepository
from agrilease.features.rentals.repository import RentalRequestRepository


def run_auto_release_job(now: Optional[datetime] = None, limit: int = 100) -> Dict[str, Any]:
    now = now or utc_now()
    with get_db_session() as session:
        due = EscrowRepository(session).list_due_for_auto_release(now, limit=limit)
        rentals = RentalRequestRepository(session)
        owners = {escrow.escrow_id: rentals.get(escrow.request_id).land_owner_id for escrow in due}

    released = []
    failed = []
    for escrow in due:
        try:
            service.release(escrow.escrow_id, owners[escrow.escrow_id], reason="auto_release")
            released.append(escrow.escrow_id)
        except AppError as e:
            # Claimed elsewhere or provider failure; the next run picks it up again
            failed.append({"escrow_id": escrow.escrow_id, "code": e.code, "retryable": e.retryable})
            log_event(
                "warning",
                "escrow.auto_release_failed",
                escrow_id=escrow.escrow_id,
                error_code=e.code,
            )

    log_event(
        "info",
        "escrow.auto_release_run",
        extra={"due": len(due), "released": len(released), "failed": len(failed)},
    )
    return {
        "due": len(due),
        "released": released,
        "failed": failed,
        "timestamp": now.isoformat(),
    }
