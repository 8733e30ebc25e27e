"""
Admin authentication for back-office endpoints (escrow listing).

Shared-secret X-Admin-Key header. The key comes from ADMIN_API_KEY or
settings.ADMIN_KEY; when neither is configured admin endpoints are closed.
All admin actors are identified by a short hash of the key, never the key.
"""
import hashlib
import hmac
import os
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from agrilease.core.config import settings
from agrilease.core.errors import AppError, UnauthorizedError


@dataclass
class AdminActor:
    """Represents an authenticated admin actor."""
    actor_id: str  # "admin:<hash>"
    auth_mechanism: str = "x_admin_key"


class AdminAuthUnconfiguredError(AppError):
    code = "admin_auth_unconfigured"
    status_code = 503


def get_admin_api_key() -> Optional[str]:
    """Prefer ADMIN_API_KEY env var; fall back to settings.ADMIN_KEY."""
    env_key = os.getenv("ADMIN_API_KEY")
    if env_key:
        return env_key
    return settings.ADMIN_KEY


def verify_admin_key(request: Request) -> Optional[AdminActor]:
    """Return AdminActor if the X-Admin-Key header matches, None otherwise."""
    expected_key = get_admin_api_key()
    if not expected_key:
        return None

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or not hmac.compare_digest(header_key, expected_key):
        return None

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(actor_id=f"admin:{key_hash}")


def require_admin(request: Request) -> AdminActor:
    """
    FastAPI dependency: Require admin authentication.

    Usage:
        @router.get("/escrow")
        def list_all(actor: AdminActor = Depends(require_admin)): ...
    """
    if not get_admin_api_key():
        raise AdminAuthUnconfiguredError("Admin authentication not configured")

    actor = verify_admin_key(request)
    if not actor:
        raise UnauthorizedError("Invalid or missing admin credentials", code="admin_unauthorized")
    return actor
