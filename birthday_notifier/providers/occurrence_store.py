from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence
import uuid

from sqlalchemy import select, update, delete, func, and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from birthday_notifier.db.models import (
    BirthdayNotification,
    OccurrenceStatus,
)
from birthday_notifier.db.session import AsyncSessionLocal
from birthday_notifier.utils.datetime_utils import to_naive_utc
from birthday_notifier.utils.errors import PersistenceError


class OccurrenceStore:
    """
    Durable access to birthday notification occurrences.

    Every method runs in its own short transaction, so a caller never holds
    a database lock while it waits on anything else (in particular the
    outbound webhook call).
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal):
        self.session_factory = session_factory

    async def create(self, occurrence: BirthdayNotification) -> BirthdayNotification:
        async with self.session_factory.begin() as db:
            db.add(occurrence)
        return occurrence

    async def create_many(self, occurrences: Sequence[BirthdayNotification]) -> int:
        if not occurrences:
            return 0
        async with self.session_factory.begin() as db:
            db.add_all(list(occurrences))
        return len(occurrences)

    async def exists(self, user_id: uuid.UUID, scheduled_at: datetime) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                select(BirthdayNotification.id).where(
                    and_(
                        BirthdayNotification.user_id == user_id,
                        BirthdayNotification.scheduled_at == to_naive_utc(scheduled_at),
                    )
                )
            )
            return result.first() is not None

    async def find_by_id(self, occurrence_id: uuid.UUID) -> Optional[BirthdayNotification]:
        async with self.session_factory() as db:
            return await db.get(BirthdayNotification, occurrence_id)

    async def find_by_user(self, user_id: uuid.UUID) -> List[BirthdayNotification]:
        async with self.session_factory() as db:
            result = await db.scalars(
                select(BirthdayNotification)
                .where(BirthdayNotification.user_id == user_id)
                .order_by(BirthdayNotification.scheduled_at)
            )
            return list(result.all())

    async def find_by_status_and_window(
        self, status: OccurrenceStatus, start: datetime, end: datetime
    ) -> List[BirthdayNotification]:
        """Occurrences in ``status`` with ``start <= scheduled_at <= end``."""
        async with self.session_factory() as db:
            result = await db.scalars(
                select(BirthdayNotification)
                .where(
                    and_(
                        BirthdayNotification.status == status,
                        BirthdayNotification.scheduled_at >= to_naive_utc(start),
                        BirthdayNotification.scheduled_at <= to_naive_utc(end),
                    )
                )
                .order_by(BirthdayNotification.scheduled_at)
            )
            return list(result.all())

    async def find_by_status_and_stale_before(
        self, status: OccurrenceStatus, threshold: datetime, max_attempts: int
    ) -> List[BirthdayNotification]:
        """Occurrences in ``status`` scheduled before ``threshold`` with attempts left."""
        async with self.session_factory() as db:
            result = await db.scalars(
                select(BirthdayNotification)
                .where(
                    and_(
                        BirthdayNotification.status == status,
                        BirthdayNotification.scheduled_at < to_naive_utc(threshold),
                        BirthdayNotification.attempt_count < max_attempts,
                    )
                )
                .order_by(BirthdayNotification.scheduled_at)
            )
            return list(result.all())

    async def find_stuck_in_flight(
        self, claimed_before: datetime, max_attempts: int
    ) -> List[BirthdayNotification]:
        """In-flight occurrences whose claim is older than ``claimed_before``."""
        async with self.session_factory() as db:
            result = await db.scalars(
                select(BirthdayNotification)
                .where(
                    and_(
                        BirthdayNotification.status == OccurrenceStatus.IN_FLIGHT,
                        BirthdayNotification.claimed_at < to_naive_utc(claimed_before),
                        BirthdayNotification.attempt_count < max_attempts,
                    )
                )
                .order_by(BirthdayNotification.scheduled_at)
            )
            return list(result.all())

    async def update_status(
        self,
        occurrence_id: uuid.UUID,
        new_status: OccurrenceStatus,
        fields: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Unconditionally set the status (and any extra columns) of one occurrence."""
        values = {"status": new_status, **(fields or {})}
        try:
            async with self.session_factory.begin() as db:
                await db.execute(
                    update(BirthdayNotification)
                    .where(BirthdayNotification.id == occurrence_id)
                    .values(**values)
                )
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Failed to update occurrence {occurrence_id} to {new_status.value}: {e}"
            ) from e

    async def lock_and_update_if_status(
        self,
        occurrence_id: uuid.UUID,
        expected_status: OccurrenceStatus,
        new_status: OccurrenceStatus,
        fields: Optional[Dict[str, Any]] = None,
        *,
        increment_attempts: bool = False,
        max_attempts: Optional[int] = None,
        claimed_before: Optional[datetime] = None,
        expected_attempts: Optional[int] = None,
    ) -> bool:
        """
        Atomically move an occurrence from ``expected_status`` to ``new_status``.

        Implemented as a single conditional UPDATE, which the database applies
        under its own row lock: of any number of concurrent callers, at most one
        sees a matching row. Returns True only for that caller.

        Args:
            occurrence_id: Occurrence to transition
            expected_status: Status the row must still have
            new_status: Status to write
            fields: Extra columns to write alongside the status
            increment_attempts: Add one to attempt_count in the same statement
            max_attempts: Only match rows whose attempt_count is below this budget
            claimed_before: Only match rows claimed before this instant
            expected_attempts: Only match rows whose attempt_count equals this value
        """
        conditions = [
            BirthdayNotification.id == occurrence_id,
            BirthdayNotification.status == expected_status,
        ]
        if max_attempts is not None:
            conditions.append(BirthdayNotification.attempt_count < max_attempts)
        if claimed_before is not None:
            conditions.append(
                BirthdayNotification.claimed_at < to_naive_utc(claimed_before)
            )
        if expected_attempts is not None:
            conditions.append(BirthdayNotification.attempt_count == expected_attempts)

        values: Dict[str, Any] = {"status": new_status, **(fields or {})}
        if increment_attempts:
            values["attempt_count"] = BirthdayNotification.attempt_count + 1

        try:
            async with self.session_factory.begin() as db:
                result = await db.execute(
                    update(BirthdayNotification)
                    .where(and_(*conditions))
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount == 1
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Failed to transition occurrence {occurrence_id} "
                f"from {expected_status.value} to {new_status.value}: {e}"
            ) from e

    async def count_by_status(self, status: OccurrenceStatus) -> int:
        async with self.session_factory() as db:
            result = await db.execute(
                select(func.count(BirthdayNotification.id)).where(
                    BirthdayNotification.status == status
                )
            )
            return result.scalar_one()

    async def count_exhausted(self, max_attempts: int) -> int:
        async with self.session_factory() as db:
            result = await db.execute(
                select(func.count(BirthdayNotification.id)).where(
                    and_(
                        BirthdayNotification.status == OccurrenceStatus.FAILED,
                        BirthdayNotification.attempt_count >= max_attempts,
                    )
                )
            )
            return result.scalar_one()

    async def list_exhausted(
        self, max_attempts: int, limit: int = 100, offset: int = 0
    ) -> List[BirthdayNotification]:
        """Failed occurrences that will not be retried again."""
        async with self.session_factory() as db:
            result = await db.scalars(
                select(BirthdayNotification)
                .where(
                    and_(
                        BirthdayNotification.status == OccurrenceStatus.FAILED,
                        BirthdayNotification.attempt_count >= max_attempts,
                    )
                )
                .order_by(BirthdayNotification.scheduled_at.desc())
                .limit(limit)
                .offset(offset)
            )
            return list(result.all())

    async def delete_pending_for_user(self, user_id: uuid.UUID) -> int:
        async with self.session_factory.begin() as db:
            result = await db.execute(
                delete(BirthdayNotification).where(
                    and_(
                        BirthdayNotification.user_id == user_id,
                        BirthdayNotification.status == OccurrenceStatus.PENDING,
                    )
                )
            )
            return result.rowcount
