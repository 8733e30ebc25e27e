"""
Auth utilities for the AgriLease API.

Validates bearer JWTs (HS256, JWT_SECRET) and resolves the caller into an
AuthContext carrying role and subscription tier/status for downstream gates.
Falls back to the X-User-Id header outside production (tests, local dev).
"""
import logging
from dataclasses import dataclass
from typing import Callable, Optional

import jwt
from fastapi import Depends, Header, Request

from agrilease.core.config import settings
from agrilease.core.errors import PermissionError, UnauthorizedError
from agrilease.models.plan import TIER_RANK, Tier
from agrilease.models.user import SubscriptionStatus, UserRole

logger = logging.getLogger("agrilease")


@dataclass(frozen=True)
class AuthContext:
    """Verified caller identity plus the subscription facts gates need."""
    user_id: str
    role: UserRole
    tier: Optional[Tier]
    status: SubscriptionStatus
    auth_mechanism: str = "jwt"

    @property
    def tier_rank(self) -> int:
        return TIER_RANK.get(self.tier, 0) if self.tier else 0


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None


def verify_jwt(token: str) -> TokenClaims:
    """
    Verify a bearer JWT and extract the subject.

    Raises:
        UnauthorizedError: token invalid, expired, or auth not configured
    """
    if not settings.JWT_SECRET:
        raise UnauthorizedError("Bearer authentication is not configured")

    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            options={"verify_signature": True, "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug("auth.invalid_token", extra={"error_message": str(e)})
        raise UnauthorizedError("Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise UnauthorizedError("Token has no subject")
    return TokenClaims(user_id=str(user_id), email=payload.get("email"), name=payload.get("name"))


def header_auth_allowed() -> bool:
    return bool(settings.ALLOW_HEADER_AUTH) and not settings.is_production


def resolve_user_id(request: Request, x_user_id: Optional[str]) -> TokenClaims:
    """
    Priority:
    1. Bearer JWT from Authorization header (an invalid token never falls back)
    2. X-User-Id header, when header auth is allowed
    3. UnauthorizedError
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        if token:
            return verify_jwt(token)

    if x_user_id and header_auth_allowed():
        return TokenClaims(user_id=x_user_id.strip())

    raise UnauthorizedError("Missing Authorization (Bearer JWT) or X-User-Id header")


def get_current_user(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Dev/test user ID"),
) -> AuthContext:
    """FastAPI dependency: authenticated caller, upserted into app_users.

    Plain def: the user upsert is blocking database I/O, so FastAPI runs it
    in its threadpool.
    """
    from agrilease.features.users.service import get_or_create_user

    claims = resolve_user_id(request, x_user_id)
    user = get_or_create_user(claims.user_id, email=claims.email, full_name=claims.name)
    mechanism = "jwt" if request.headers.get("Authorization", "").startswith("Bearer ") else "header"
    return AuthContext(
        user_id=user.user_id,
        role=user.role,
        tier=user.subscription_tier,
        status=user.subscription_status,
        auth_mechanism=mechanism,
    )


def require_subscription(min_tier: Tier) -> Callable[..., AuthContext]:
    """
    Dependency factory: caller must hold an active subscription at or above min_tier.

    Usage:
        @router.post("/escrow/hold")
        def hold(ctx: AuthContext = Depends(require_subscription(Tier.PRO))): ...
    """
    required_rank = TIER_RANK[min_tier]

    def _dependency(ctx: AuthContext = Depends(get_current_user)) -> AuthContext:
        if ctx.status != SubscriptionStatus.ACTIVE:
            raise PermissionError("An active subscription is required", code="subscription_required")
        if ctx.tier_rank < required_rank:
            raise PermissionError(
                f"{min_tier.value.capitalize()} tier or above is required",
                code="subscription_tier_insufficient",
            )
        return ctx

    return _dependency
