from fastapi import APIRouter, Depends

from agrilease.core.auth import AuthContext, get_current_user
from agrilease.core.errors import NotFoundError
from agrilease.features.users import service as user_service
from agrilease.models.user import User, UserProfileUpdate

router = APIRouter(prefix="/api/users", tags=["users"])


@router.get("/me", response_model=User)
def get_me(ctx: AuthContext = Depends(get_current_user)):
    user = user_service.get_user(ctx.user_id)
    if user is None:
        raise NotFoundError(f"User {ctx.user_id} not found")
    return user


@router.patch("/me", response_model=User)
def update_me(body: UserProfileUpdate, ctx: AuthContext = Depends(get_current_user)):
    """Role, region, contact details and scheme flags. Subscription fields are read-only."""
    return user_service.update_profile(ctx.user_id, body)
