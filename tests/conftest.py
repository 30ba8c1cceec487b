import uuid
from datetime import date, datetime
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from birthday_notifier.db.models import (
    Base,
    BirthdayNotification,
    OccurrenceStatus,
    User,
)
from birthday_notifier.db.session import build_session_factory
from birthday_notifier.providers.occurrence_store import OccurrenceStore
from birthday_notifier.providers.subject_store import SubjectStore
from birthday_notifier.services.delivery_gateway import DeliveryGateway
from birthday_notifier.services.scheduler_service import (
    BirthdaySchedulerService,
    SchedulerConfig,
)
from birthday_notifier.utils.datetime_utils import to_naive_utc
from helpers import FakeClock, FakeTransport, RecordingSleep


# Test database setup
@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """File-backed SQLite so concurrent sessions see each other's commits."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'birthday_notifier_test.db'}",
        connect_args={"timeout": 30},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(test_engine)


@pytest.fixture
def occurrence_store(session_factory) -> OccurrenceStore:
    return OccurrenceStore(session_factory)


@pytest.fixture
def subject_store(session_factory) -> SubjectStore:
    return SubjectStore(session_factory)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport([200])


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def gateway(transport, recording_sleep) -> DeliveryGateway:
    return DeliveryGateway(
        transport,
        max_send_retries=3,
        timeout_seconds=1.0,
        base_delay_seconds=5.0,
        sleep=recording_sleep,
    )


@pytest.fixture
def scheduler_config() -> SchedulerConfig:
    return SchedulerConfig(max_retry_attempts=3, batch_size=10)


@pytest.fixture
def scheduler(
    occurrence_store, subject_store, gateway, scheduler_config, clock
) -> BirthdaySchedulerService:
    return BirthdaySchedulerService(
        occurrence_store, subject_store, gateway, scheduler_config, clock=clock
    )


# Test data factories
@pytest_asyncio.fixture
async def sample_user(subject_store: SubjectStore) -> User:
    """Create a sample user for testing."""
    user = User(
        id=uuid.uuid4(),
        first_name="John",
        last_name="Doe",
        birthday=date(1990, 6, 15),
        location="New York, USA",
        timezone="America/New_York",
    )
    return await subject_store.create(user)


@pytest_asyncio.fixture
async def make_occurrence(occurrence_store: OccurrenceStore):
    """Factory persisting one occurrence with the given state."""

    async def _make(
        user_id: uuid.UUID,
        scheduled_at: datetime,
        status: OccurrenceStatus = OccurrenceStatus.PENDING,
        attempt_count: int = 0,
        claimed_at: Optional[datetime] = None,
    ) -> BirthdayNotification:
        occurrence = BirthdayNotification(
            id=uuid.uuid4(),
            user_id=user_id,
            scheduled_at=to_naive_utc(scheduled_at),
            status=status,
            attempt_count=attempt_count,
            claimed_at=to_naive_utc(claimed_at) if claimed_at else None,
        )
        return await occurrence_store.create(occurrence)

    return _make
