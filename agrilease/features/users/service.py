"""
User domain service.
- get_or_create_user(user_id)
- get_user(user_id)
- update_profile(user_id, changes)
"""

from typing import Optional

from sqlalchemy.exc import IntegrityError

from agrilease.core.clock import utc_now
from agrilease.core.database import get_db_session
from agrilease.core.errors import NotFoundError
from agrilease.features.users.repository import UserRepository
from agrilease.models.user import User, UserProfileUpdate


def get_user(user_id: str) -> Optional[User]:
    with get_db_session() as session:
        return UserRepository(session).get(user_id)


def get_or_create_user(
    user_id: str,
    email: Optional[str] = None,
    full_name: Optional[str] = None,
) -> User:
    existing = get_user(user_id)
    if existing:
        return existing

    try:
        with get_db_session() as session:
            return UserRepository(session).create(
                user_id,
                now=utc_now(),
                email=email,
                full_name=full_name,
            )
    except IntegrityError:
        # Concurrent first request for the same identity created the row
        user = get_user(user_id)
        if user is None:
            raise
        return user


def update_profile(user_id: str, changes: UserProfileUpdate) -> User:
    with get_db_session() as session:
        repo = UserRepository(session)
        if repo.get(user_id) is None:
            raise NotFoundError(f"User {user_id} not found")
        return repo.update_profile(user_id, **changes.model_dump(exclude_none=True))
