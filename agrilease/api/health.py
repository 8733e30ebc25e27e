"""
Operational endpoints: liveness, readiness, database diagnostics and the
Prometheus scrape target. None of them require authentication and none
return configuration values.
"""

import logging
import time
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import inspect

from agrilease.core.database import get_engine
from agrilease.core.logging import get_request_id, latency_bucket_ms
from agrilease.core.metrics import METRICS

logger = logging.getLogger("agrilease")

router = APIRouter(prefix="/api/health", tags=["health"])
root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = (
    "app_users",
    "listings",
    "rental_requests",
    "escrows",
    "payments",
    "subscription_plans",
    "provider_events",
)


class DBHealth(BaseModel):
    connected: bool
    latency_ms: Optional[float] = None  # omitted when the caller pins `now`
    tables_present: List[str] = []


class HealthResponse(BaseModel):
    ok: bool
    db: DBHealth
    catalog_plans: int
    computed_at: str


def probe_database() -> DBHealth:
    """Round-trip the database and list which marketplace tables exist."""
    start = time.perf_counter()
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
        inspector = inspect(engine)
        present = sorted(name for name in REQUIRED_TABLES if inspector.has_table(name))
    except Exception as e:
        logger.warning("health.db_unreachable", extra={"error_message": str(e)})
        return DBHealth(connected=False)
    return DBHealth(connected=True, latency_ms=(time.perf_counter() - start) * 1000, tables_present=present)


def _catalog_size(request: Request) -> Optional[int]:
    catalog = getattr(request.app.state, "catalog", None)
    return None if catalog is None else len(catalog)


def _not_ready(detail: str) -> JSONResponse:
    logger.warning("health.not_ready", extra={"detail": detail})
    return JSONResponse(status_code=503, content={"status": "error", "detail": detail})


@root_router.get("/healthz")
def healthz():
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz(request: Request):
    """Ready once the database answers, every table exists and plans are loaded."""
    db = probe_database()
    if not db.connected:
        return _not_ready("database unreachable")
    missing = [name for name in REQUIRED_TABLES if name not in db.tables_present]
    if missing:
        return _not_ready(f"missing tables: {', '.join(missing)}")
    if _catalog_size(request) is None:
        return _not_ready("plan catalog not loaded")
    return {"status": "ok"}


@router.get("/db", response_model=HealthResponse)
def health_db(request: Request, now: Optional[str] = Query(None)):
    """Database diagnostics.

    Passing ``now`` (ISO timestamp) pins ``computed_at`` and drops the
    measured latency so the response is deterministic.
    """
    db = probe_database()
    logger.info(
        "health.db",
        extra={
            "request_id": get_request_id(),
            "ok": db.connected,
            "latency_bucket": latency_bucket_ms(None if now else db.latency_ms),
        },
    )
    if now:
        db.latency_ms = None
    return HealthResponse(
        ok=db.connected,
        db=db,
        catalog_plans=_catalog_size(request) or 0,
        computed_at=now or datetime.now(timezone.utc).isoformat(),
    )


@root_router.get("/metrics")
def metrics_exposition():
    return Response(content=METRICS.export_prometheus(), media_type="text/plain; version=0.0.4")
