"""Repository for user database operations.

Writes are flushed, not committed: the caller owns the transaction.
"""

import uuid
from typing import Optional

from sqlalchemy import inspect, select
from sqlalchemy.ext.asyncio import AsyncSession

from convertviral.modules.auth.models import User


class UserRepository:
    """Repository for user operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, user_id: uuid.UUID) -> Optional[User]:
        """Get user by ID."""
        result = await self.session.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def update(self, user: User, **kwargs) -> User:
        """Apply ``kwargs`` to ``user`` and flush.

        Raises:
            TypeError: If a key is not a column of User
        """
        unknown = sorted(set(kwargs).difference(inspect(User).column_attrs.keys()))
        if unknown:
            raise TypeError(f"User has no column(s): {', '.join(unknown)}")
        for key, value in kwargs.items():
            setattr(user, key, value)
        await self.session.flush()
        return user
