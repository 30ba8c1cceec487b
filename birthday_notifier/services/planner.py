from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import uuid

from dateutil.relativedelta import relativedelta

from birthday_notifier.db.models import BirthdayNotification, OccurrenceStatus, User
from birthday_notifier.providers.occurrence_store import OccurrenceStore
from birthday_notifier.utils.datetime_utils import to_naive_utc, to_utc
from birthday_notifier.utils.errors import PlanningError
from birthday_notifier.utils.logging import get_logger

logger = get_logger()


def resolve_timezone(name: str) -> ZoneInfo:
    """Return the ZoneInfo for an IANA identifier or raise PlanningError."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise PlanningError(
            f"Invalid timezone provided: {name}", error_code="INVALID_TIMEZONE"
        ) from e


def localize(local_date: date, at: time, zone: ZoneInfo) -> datetime:
    """
    Attach ``zone`` to the wall-clock time ``local_date`` + ``at``.

    Wall-clock times inside a spring-forward gap do not exist; they are
    shifted forward by the length of the gap (02:30 on a one-hour gap
    becomes 03:30), which is what the earlier offset yields once the
    instant is normalised through UTC.
    """
    naive = datetime.combine(local_date, at)
    aware = naive.replace(tzinfo=zone)
    normalized = aware.astimezone(timezone.utc).astimezone(zone)
    if normalized.replace(tzinfo=None) != naive:
        return normalized
    return aware


def plan_occurrence_times(
    birthday: date,
    timezone_name: str,
    horizon_years: int,
    now: datetime,
    hour: int = 9,
    minute: int = 0,
) -> List[datetime]:
    """
    Compute the UTC instants at which a birthday alert should fire.

    One candidate per calendar year, starting with the current year in the
    subject's timezone and spanning ``horizon_years`` years. The anniversary
    is projected onto each year (29 February falls on 28 February in common
    years), localised at ``hour:minute`` and converted to UTC. Candidates
    that are not strictly after ``now`` are dropped.

    Args:
        birthday: Anniversary date; only month and day are used
        timezone_name: IANA timezone identifier of the subject
        horizon_years: Number of calendar years to plan
        now: Reference instant (naive values are treated as UTC)
        hour: Local hour of the alert
        minute: Local minute of the alert

    Returns:
        List[datetime]: Timezone-aware UTC instants in ascending order
    """
    zone = resolve_timezone(timezone_name)
    now_utc = to_utc(now)
    current_year = now_utc.astimezone(zone).year
    at = time(hour=hour, minute=minute)

    instants = []
    for offset in range(horizon_years):
        local_date = birthday + relativedelta(year=current_year + offset)
        instant = localize(local_date, at, zone).astimezone(timezone.utc)
        if instant > now_utc:
            instants.append(instant)
    return instants


@dataclass(frozen=True)
class PlanningResult:
    user_id: uuid.UUID
    created: int
    skipped_existing: int
    removed_pending: int = 0


class OccurrencePlanner:
    """Turns a subject's birthday into persisted, de-duplicated occurrences."""

    def __init__(
        self,
        store: OccurrenceStore,
        horizon_years: int = 5,
        notification_hour: int = 9,
        notification_minute: int = 0,
    ):
        self.store = store
        self.horizon_years = horizon_years
        self.notification_hour = notification_hour
        self.notification_minute = notification_minute

    async def plan(
        self,
        user_id: uuid.UUID,
        birthday: date,
        timezone_name: str,
        now: datetime,
        horizon_years: Optional[int] = None,
    ) -> List[BirthdayNotification]:
        """Build candidates that do not already exist for ``user_id``; nothing is saved."""
        instants = plan_occurrence_times(
            birthday,
            timezone_name,
            self.horizon_years if horizon_years is None else horizon_years,
            now,
            self.notification_hour,
            self.notification_minute,
        )

        candidates = []
        for instant in instants:
            if await self.store.exists(user_id, instant):
                continue
            candidates.append(
                BirthdayNotification(
                    id=uuid.uuid4(),
                    user_id=user_id,
                    scheduled_at=to_naive_utc(instant),
                    status=OccurrenceStatus.PENDING,
                    attempt_count=0,
                )
            )
        return candidates

    async def schedule_for_subject(self, user: User, now: datetime) -> PlanningResult:
        candidates = await self.plan(user.id, user.birthday, user.timezone, now)
        created = await self.store.create_many(candidates)
        skipped = self._planned_count(user, now) - created

        logger.info(
            f"Scheduled {created} birthday notifications for user {user.id} "
            f"({skipped} already existed)"
        )
        return PlanningResult(user_id=user.id, created=created, skipped_existing=skipped)

    async def reschedule_for_subject(self, user: User, now: datetime) -> PlanningResult:
        """Replace a subject's pending occurrences after a birthday or timezone change."""
        # Validate before discarding anything
        resolve_timezone(user.timezone)

        removed = await self.store.delete_pending_for_user(user.id)
        result = await self.schedule_for_subject(user, now)

        logger.info(
            f"Rescheduled birthday notifications for user {user.id}: "
            f"removed {removed} pending, created {result.created}"
        )
        return PlanningResult(
            user_id=user.id,
            created=result.created,
            skipped_existing=result.skipped_existing,
            removed_pending=removed,
        )

    def _planned_count(self, user: User, now: datetime) -> int:
        return len(
            plan_occurrence_times(
                user.birthday,
                user.timezone,
                self.horizon_years,
                now,
                self.notification_hour,
                self.notification_minute,
            )
        )
