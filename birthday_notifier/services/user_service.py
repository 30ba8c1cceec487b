from datetime import datetime
from typing import Any, Callable, Dict
import uuid

from fastapi import Depends
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from birthday_notifier.config.settings import settings
from birthday_notifier.db.models import User
from birthday_notifier.db.session import get_session_factory
from birthday_notifier.providers.occurrence_store import OccurrenceStore
from birthday_notifier.providers.subject_store import SubjectStore
from birthday_notifier.schemas.user_schemas import (
    CreateUserRequest,
    UpdateUserRequest,
    UserResponse,
)
from birthday_notifier.services.planner import OccurrencePlanner, resolve_timezone
from birthday_notifier.utils.datetime_utils import utc_now
from birthday_notifier.utils.errors import ConflictError, NotFoundError
from birthday_notifier.utils.logging import get_logger

logger = get_logger()

DUPLICATE_USER_MESSAGE = "User with this name and birthday already exists"


class UserService:
    """Service for registering users and keeping their birthday occurrences in step"""

    def __init__(
        self,
        subjects: SubjectStore,
        planner: OccurrencePlanner,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.subjects = subjects
        self.planner = planner
        self._clock = clock

    async def create_user(self, user_data: CreateUserRequest) -> UserResponse:
        resolve_timezone(user_data.timezone)

        existing = await self.subjects.find_duplicate(
            user_data.first_name, user_data.last_name, user_data.birthday
        )
        if existing:
            raise ConflictError(DUPLICATE_USER_MESSAGE, error_code="USER_EXISTS")

        user = User(id=uuid.uuid4(), **user_data.model_dump())
        try:
            await self.subjects.create(user)
        except IntegrityError as e:
            raise ConflictError(DUPLICATE_USER_MESSAGE, error_code="USER_EXISTS") from e

        result = await self.planner.schedule_for_subject(user, self._clock())
        logger.info(f"Created user {user.id} with {result.created} scheduled notifications")

        return self._to_response(user, pending=result.created)

    async def get_user(self, user_id: uuid.UUID) -> UserResponse:
        user = await self.subjects.find_by_id(user_id)
        if not user:
            raise NotFoundError("User not found", error_code="USER_NOT_FOUND")

        pending = await self.subjects.count_pending_notifications(user_id)
        return self._to_response(user, pending=pending)

    async def update_user(
        self, user_id: uuid.UUID, update_data: UpdateUserRequest
    ) -> UserResponse:
        user = await self.subjects.find_by_id(user_id)
        if not user:
            raise NotFoundError("User not found", error_code="USER_NOT_FOUND")

        if update_data.timezone is not None:
            resolve_timezone(update_data.timezone)

        changes: Dict[str, Any] = update_data.model_dump(exclude_none=True)
        reschedule = (
            changes.get("birthday", user.birthday) != user.birthday
            or changes.get("timezone", user.timezone) != user.timezone
        )

        try:
            updated = await self.subjects.update(user_id, changes)
        except IntegrityError as e:
            raise ConflictError(DUPLICATE_USER_MESSAGE, error_code="USER_EXISTS") from e
        if not updated:
            raise NotFoundError("User not found", error_code="USER_NOT_FOUND")

        if reschedule:
            await self.planner.reschedule_for_subject(updated, self._clock())

        pending = await self.subjects.count_pending_notifications(user_id)
        return self._to_response(updated, pending=pending)

    async def delete_user(self, user_id: uuid.UUID) -> None:
        deleted = await self.subjects.delete(user_id)
        if not deleted:
            raise NotFoundError("User not found", error_code="USER_NOT_FOUND")
        logger.info(f"Deleted user {user_id} and their notifications")

    @staticmethod
    def _to_response(user: User, pending: int) -> UserResponse:
        return UserResponse(
            id=user.id,
            first_name=user.first_name,
            last_name=user.last_name,
            birthday=user.birthday,
            location=user.location,
            timezone=user.timezone,
            pending_notifications=pending,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


def get_user_service(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> UserService:
    """Dependency to get the user service instance"""
    planner = OccurrencePlanner(
        OccurrenceStore(session_factory),
        horizon_years=settings.PLANNING_HORIZON_YEARS,
        notification_hour=settings.NOTIFICATION_HOUR,
        notification_minute=settings.NOTIFICATION_MINUTE,
    )
    return UserService(SubjectStore(session_factory), planner)
