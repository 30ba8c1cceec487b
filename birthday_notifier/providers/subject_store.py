from datetime import date
from typing import Any, Dict, Optional
import uuid

from sqlalchemy import select, delete, func, and_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from birthday_notifier.db.models import User, BirthdayNotification, OccurrenceStatus
from birthday_notifier.db.session import AsyncSessionLocal


class SubjectStore:
    """Reads and writes the users whose birthdays are being scheduled."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal):
        self.session_factory = session_factory

    async def find_by_id(self, user_id: uuid.UUID) -> Optional[User]:
        async with self.session_factory() as db:
            return await db.get(User, user_id)

    async def find_duplicate(
        self, first_name: str, last_name: str, birthday: date
    ) -> Optional[User]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(User).where(
                    and_(
                        User.first_name == first_name,
                        User.last_name == last_name,
                        User.birthday == birthday,
                    )
                )
            )
            return result.scalar_one_or_none()

    async def create(self, user: User) -> User:
        async with self.session_factory.begin() as db:
            db.add(user)
        return user

    async def update(self, user_id: uuid.UUID, changes: Dict[str, Any]) -> Optional[User]:
        async with self.session_factory.begin() as db:
            user = await db.get(User, user_id)
            if not user:
                return None
            for field, value in changes.items():
                setattr(user, field, value)
        return user

    async def delete(self, user_id: uuid.UUID) -> bool:
        """Delete a user together with all of their occurrences."""
        async with self.session_factory.begin() as db:
            user = await db.get(User, user_id)
            if not user:
                return False
            await db.execute(
                delete(BirthdayNotification).where(
                    BirthdayNotification.user_id == user_id
                )
            )
            await db.delete(user)
        return True

    async def count_pending_notifications(self, user_id: uuid.UUID) -> int:
        async with self.session_factory() as db:
            result = await db.execute(
                select(func.count(BirthdayNotification.id)).where(
                    and_(
                        BirthdayNotification.user_id == user_id,
                        BirthdayNotification.status == OccurrenceStatus.PENDING,
                    )
                )
            )
            return result.scalar_one()
