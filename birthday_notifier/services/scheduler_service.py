import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from birthday_notifier.config.settings import Settings
from birthday_notifier.db.models import (
    BirthdayNotification,
    DeliveryErrorKind,
    OccurrenceStatus,
)
from birthday_notifier.db.session import AsyncSessionLocal
from birthday_notifier.providers.occurrence_store import OccurrenceStore
from birthday_notifier.providers.subject_store import SubjectStore
from birthday_notifier.services.delivery_gateway import (
    DeliveryGateway,
    NotificationMessage,
    build_delivery_gateway,
)
from birthday_notifier.utils.context import set_tick_request_id
from birthday_notifier.utils.datetime_utils import (
    format_utc,
    to_naive_utc,
    to_utc,
    utc_now,
)
from birthday_notifier.utils.errors import PersistenceError
from birthday_notifier.utils.logging import get_logger

DELIVERY_FAILED_MESSAGE = "Failed to send notification after retries"


@dataclass(frozen=True)
class SchedulerConfig:
    notification_hour: int = 9
    notification_minute: int = 0
    max_retry_attempts: int = 3
    batch_size: int = 10
    dispatch_interval_seconds: int = 60
    recovery_interval_seconds: int = 3600
    missed_threshold_seconds: int = 3600
    stale_in_flight_seconds: int = 1800

    @classmethod
    def from_settings(cls, settings: Settings) -> "SchedulerConfig":
        return cls(
            notification_hour=settings.NOTIFICATION_HOUR,
            notification_minute=settings.NOTIFICATION_MINUTE,
            max_retry_attempts=settings.MAX_RETRY_ATTEMPTS,
            batch_size=settings.DISPATCH_BATCH_SIZE,
            dispatch_interval_seconds=settings.DISPATCH_INTERVAL_SECONDS,
            recovery_interval_seconds=settings.RECOVERY_INTERVAL_MINUTES * 60,
            missed_threshold_seconds=settings.MISSED_THRESHOLD_MINUTES * 60,
            stale_in_flight_seconds=settings.STALE_IN_FLIGHT_MINUTES * 60,
        )


@dataclass
class TickSummary:
    """Outcome counters for one dispatch tick or recovery sweep."""

    kind: str
    request_id: str
    found: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    skipped_busy: bool = False
    errors: List[Dict[str, str]] = field(default_factory=list)

    def record(self, outcome: str) -> None:
        if outcome == "sent":
            self.sent += 1
        elif outcome == "failed":
            self.failed += 1
        else:
            self.skipped += 1

    def to_dict(self) -> Dict[str, object]:
        return {
            "kind": self.kind,
            "request_id": self.request_id,
            "found": self.found,
            "sent": self.sent,
            "failed": self.failed,
            "skipped": self.skipped,
            "skipped_busy": self.skipped_busy,
            "errors": self.errors,
        }


def chunk(items: Sequence[BirthdayNotification], size: int) -> List[List[BirthdayNotification]]:
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


class BirthdaySchedulerService:
    """
    Drives birthday occurrences from pending to sent.

    Two periodic loops share one state machine:

    - the dispatch tick (every minute, on the minute) picks up pending
      occurrences scheduled within the last minute and delivers them in
      concurrent batches of ``batch_size``;
    - the recovery sweep (hourly by default) re-drives occurrences that are
      overdue by more than ``missed_threshold_seconds`` and still have
      attempts left, one at a time. This covers pending rows missed by the
      dispatch tick, failed rows, and in-flight rows abandoned by a crashed
      process.

    An occurrence is claimed with a conditional update (expected status ->
    in_flight, attempt_count + 1) committed before the webhook is called.
    Whoever loses that race does nothing, so concurrent ticks, sweeps and
    even separate processes never send the same occurrence twice.
    """

    def __init__(
        self,
        store: OccurrenceStore,
        subjects: SubjectStore,
        gateway: DeliveryGateway,
        config: SchedulerConfig = SchedulerConfig(),
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.subjects = subjects
        self.gateway = gateway
        self.config = config
        self._clock = clock

        self._tasks: List[asyncio.Task] = []
        self._stop_event: Optional[asyncio.Event] = None
        self._dispatch_busy = False
        self._recovery_busy = False
        self.is_running = False

    # Lifecycle

    def start(self) -> None:
        """Start both periodic loops on the running event loop."""
        logger = get_logger()
        if self.is_running:
            logger.info("Scheduler is already running")
            return

        logger.info("Starting Birthday Scheduler Service...")
        stop_event = asyncio.Event()
        self._stop_event = stop_event
        self._tasks = [
            asyncio.create_task(
                self._run_periodic(
                    "dispatch",
                    self.config.dispatch_interval_seconds,
                    self.dispatch_tick,
                    stop_event,
                ),
                name="birthday-dispatch-loop",
            ),
            asyncio.create_task(
                self._run_periodic(
                    "recovery",
                    self.config.recovery_interval_seconds,
                    self.recovery_sweep,
                    stop_event,
                ),
                name="birthday-recovery-loop",
            ),
        ]
        self.is_running = True
        logger.info("Birthday Scheduler Service started successfully")

    async def stop(self) -> None:
        """Stop scheduling new ticks and let a tick that is already running finish."""
        logger = get_logger()
        if not self.is_running:
            logger.info("Scheduler is not running")
            return

        logger.info("Stopping Birthday Scheduler Service...")
        if self._stop_event is not None:
            self._stop_event.set()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self.is_running = False
        logger.info("Birthday Scheduler Service stopped")

    def _seconds_until_next_tick(self, interval: int) -> float:
        delay = interval - (time.time() % interval)
        return delay if delay > 0 else float(interval)

    async def _run_periodic(
        self,
        name: str,
        interval: int,
        tick: Callable[[], Awaitable[TickSummary]],
        stop_event: asyncio.Event,
    ) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(
                    stop_event.wait(),
                    timeout=self._seconds_until_next_tick(interval),
                )
                break
            except asyncio.TimeoutError:
                pass

            try:
                await tick()
            except Exception as e:
                get_logger().exception(f"Error in {name} loop: {str(e)}")

    # Ticks

    async def dispatch_tick(self) -> TickSummary:
        """Deliver pending occurrences scheduled within the last dispatch interval."""
        request_id = set_tick_request_id("dispatch")
        logger = get_logger().bind(request_id=request_id)
        summary = TickSummary(kind="dispatch", request_id=request_id)

        if self._dispatch_busy:
            logger.warning("Previous dispatch tick still running, skipping this one")
            summary.skipped_busy = True
            return summary

        self._dispatch_busy = True
        try:
            now = self._clock()
            window_start = now - timedelta(seconds=self.config.dispatch_interval_seconds)
            due = await self.store.find_by_status_and_window(
                OccurrenceStatus.PENDING, window_start, now
            )
            summary.found = len(due)
            logger.info(f"Found {len(due)} notifications to process")

            for batch in chunk(due, self.config.batch_size):
                outcomes = await asyncio.gather(
                    *(self.process_occurrence(occurrence) for occurrence in batch)
                )
                for outcome in outcomes:
                    summary.record(outcome)
        except Exception as e:
            logger.exception(f"Error processing scheduled notifications: {str(e)}")
            summary.errors.append({"error": str(e)})
        finally:
            self._dispatch_busy = False

        logger.info(
            f"Dispatch tick completed: found={summary.found} sent={summary.sent} "
            f"failed={summary.failed} skipped={summary.skipped}"
        )
        return summary

    async def recovery_sweep(self) -> TickSummary:
        """Retry overdue occurrences that still have attempts left."""
        request_id = set_tick_request_id("recovery")
        logger = get_logger().bind(request_id=request_id)
        summary = TickSummary(kind="recovery", request_id=request_id)

        if self._recovery_busy:
            logger.warning("Previous recovery sweep still running, skipping this one")
            summary.skipped_busy = True
            return summary

        self._recovery_busy = True
        try:
            candidates = await self._find_recovery_candidates()
            summary.found = len(candidates)
            logger.info(f"Found {len(candidates)} missed notifications to recover")

            for occurrence in candidates:
                outcome = await self.process_occurrence(occurrence, recovery=True)
                summary.record(outcome)
        except Exception as e:
            logger.exception(f"Error processing missed notifications: {str(e)}")
            summary.errors.append({"error": str(e)})
        finally:
            self._recovery_busy = False

        logger.info(
            f"Recovery sweep completed: found={summary.found} sent={summary.sent} "
            f"failed={summary.failed} skipped={summary.skipped}"
        )
        return summary

    async def _find_recovery_candidates(self) -> List[BirthdayNotification]:
        now = self._clock()
        overdue_before = now - timedelta(seconds=self.config.missed_threshold_seconds)
        stale_before = now - timedelta(seconds=self.config.stale_in_flight_seconds)
        budget = self.config.max_retry_attempts

        pending = await self.store.find_by_status_and_stale_before(
            OccurrenceStatus.PENDING, overdue_before, budget
        )
        failed = await self.store.find_by_status_and_stale_before(
            OccurrenceStatus.FAILED, overdue_before, budget
        )
        stuck = await self.store.find_stuck_in_flight(stale_before, budget)

        return sorted(pending + failed + stuck, key=lambda o: o.scheduled_at)

    # State machine

    async def _claim(self, occurrence: BirthdayNotification, recovery: bool) -> bool:
        claimed_at = to_naive_utc(self._clock())
        fields = {"claimed_at": claimed_at, "error_kind": None, "last_error": None}

        if occurrence.status == OccurrenceStatus.IN_FLIGHT:
            # Only reclaim if nobody has touched the claim since we read it
            stale_before = self._clock() - timedelta(
                seconds=self.config.stale_in_flight_seconds
            )
            return await self.store.lock_and_update_if_status(
                occurrence.id,
                OccurrenceStatus.IN_FLIGHT,
                OccurrenceStatus.IN_FLIGHT,
                fields,
                increment_attempts=True,
                max_attempts=self.config.max_retry_attempts,
                claimed_before=stale_before,
            )

        expected = occurrence.status if recovery else OccurrenceStatus.PENDING
        return await self.store.lock_and_update_if_status(
            occurrence.id,
            expected,
            OccurrenceStatus.IN_FLIGHT,
            fields,
            increment_attempts=True,
            max_attempts=self.config.max_retry_attempts,
        )

    async def process_occurrence(
        self, occurrence: BirthdayNotification, recovery: bool = False
    ) -> str:
        """
        Run one occurrence through claim -> deliver -> record.

        Returns:
            str: "sent", "failed" or "skipped" (lost the claim or budget spent)
        """
        logger = get_logger()
        suffix = " (recovery)" if recovery else ""
        claimed = False

        try:
            claimed = await self._claim(occurrence, recovery)
            if not claimed:
                logger.debug(
                    f"Notification {occurrence.id} already claimed or exhausted, skipping{suffix}"
                )
                return "skipped"

            user = await self.subjects.find_by_id(occurrence.user_id)
            if not user:
                logger.error(f"User not found for notification {occurrence.id}")
                await self.store.update_status(
                    occurrence.id,
                    OccurrenceStatus.FAILED,
                    {
                        "error_kind": DeliveryErrorKind.SUBJECT_MISSING,
                        "last_error": f"User {occurrence.user_id} not found",
                    },
                )
                return "failed"

            success = await self.gateway.deliver(
                NotificationMessage(
                    full_name=user.full_name,
                    user_id=str(occurrence.user_id),
                    scheduled_at=to_utc(occurrence.scheduled_at),
                )
            )

            if success:
                await self.store.update_status(
                    occurrence.id,
                    OccurrenceStatus.SENT,
                    {"sent_at": to_naive_utc(self._clock()), "error_kind": None, "last_error": None},
                )
            else:
                await self.store.update_status(
                    occurrence.id,
                    OccurrenceStatus.FAILED,
                    {
                        "error_kind": DeliveryErrorKind.TRANSPORT,
                        "last_error": DELIVERY_FAILED_MESSAGE,
                    },
                )

            logger.info(
                f"Notification {'sent' if success else 'failed'} for user {occurrence.user_id}{suffix}"
            )
            return "sent" if success else "failed"

        except Exception as e:
            logger.error(f"Error processing notification {occurrence.id}: {str(e)}")
            await self._mark_failed_after_error(occurrence, e, claimed)
            return "failed"

    async def _mark_failed_after_error(
        self, occurrence: BirthdayNotification, error: Exception, claimed: bool
    ) -> None:
        kind = (
            DeliveryErrorKind.PERSISTENCE
            if isinstance(error, PersistenceError)
            else DeliveryErrorKind.INTERNAL
        )
        fields = {"error_kind": kind, "last_error": str(error) or type(error).__name__}
        try:
            if claimed:
                await self.store.update_status(occurrence.id, OccurrenceStatus.FAILED, fields)
            else:
                # The claim itself blew up. Every claim bumps attempt_count, so a row
                # still matching the snapshot has not been taken by another actor.
                recorded = await self.store.lock_and_update_if_status(
                    occurrence.id,
                    occurrence.status,
                    OccurrenceStatus.FAILED,
                    fields,
                    expected_attempts=occurrence.attempt_count,
                )
                if not recorded:
                    get_logger().warning(
                        f"Notification {occurrence.id} changed hands, leaving it as is"
                    )
        except Exception as e:
            get_logger().exception(
                f"Could not record failure for notification {occurrence.id}: {str(e)}"
            )

    # Status

    def next_dispatch_at(self) -> datetime:
        now = self._clock()
        interval = self.config.dispatch_interval_seconds
        return now + timedelta(seconds=interval - (now.timestamp() % interval))

    async def get_status(self) -> Dict[str, object]:
        pending_count = await self.store.count_by_status(OccurrenceStatus.PENDING)
        failed_count = await self.store.count_by_status(OccurrenceStatus.FAILED)
        exhausted_count = await self.store.count_exhausted(self.config.max_retry_attempts)
        in_flight_count = await self.store.count_by_status(OccurrenceStatus.IN_FLIGHT)

        return {
            "isRunning": self.is_running,
            "nextScheduledCheck": format_utc(self.next_dispatch_at()),
            "pendingCount": pending_count,
            "failedCount": failed_count,
            "exhaustedCount": exhausted_count,
            "inFlightCount": in_flight_count,
        }


def build_scheduler_service(
    settings: Settings,
    gateway: Optional[DeliveryGateway] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> BirthdaySchedulerService:
    """Wire the scheduler, defaulting to the application session factory."""
    session_factory = session_factory or AsyncSessionLocal
    return BirthdaySchedulerService(
        store=OccurrenceStore(session_factory),
        subjects=SubjectStore(session_factory),
        gateway=gateway or build_delivery_gateway(settings),
        config=SchedulerConfig.from_settings(settings),
    )
