from datetime import timedelta
from typing import Union

from celery.schedules import crontab
from .settings import settings

# Basic Celery Configuration
broker_url = settings.redis_url
result_backend = settings.redis_url

# Task Discovery
include = ["birthday_notifier.tasks"]

# Timezone Configuration
timezone = "UTC"
enable_utc = True

# Task Result Configuration
result_expires = 3600

# Task Serialization
task_serializer = "json"
accept_content = ["json"]
result_serializer = "json"

# Task Execution Configuration
task_track_started = True
task_time_limit = 10 * 60  # 10 minutes
task_soft_time_limit = 8 * 60  # 8 minutes

# Worker Configuration
worker_prefetch_multiplier = 1
worker_max_tasks_per_child = 1000

# Ticks are never retried by Celery; a missed tick is picked up by the recovery sweep
task_acks_late = False
task_max_retries = 0


def _recovery_schedule(interval_minutes: int) -> Union[crontab, timedelta]:
    if interval_minutes < 60 and 60 % interval_minutes == 0:
        return crontab(minute=f"*/{interval_minutes}")
    if interval_minutes % 60 == 0 and 24 % (interval_minutes // 60) == 0:
        return crontab(minute=0, hour=f"*/{interval_minutes // 60}")
    return timedelta(minutes=interval_minutes)


beat_schedule = {
    # Dispatch tick - every minute, on the minute
    "birthday-dispatch-tick": {
        "task": "birthday_notifier.tasks.cron.dispatch_tick.dispatch_tick_task",
        "schedule": crontab(minute="*"),
        "args": ("dispatch_tick_cron",),
    },
    # Recovery sweep - hourly by default
    "birthday-recovery-sweep": {
        "task": "birthday_notifier.tasks.cron.recovery_sweep.recovery_sweep_task",
        "schedule": _recovery_schedule(settings.RECOVERY_INTERVAL_MINUTES),
        "args": ("recovery_sweep_cron",),
    },
}

# Default Queue
task_default_queue = "birthday_notifier"

# Beat Scheduler Configuration
beat_schedule_filename = "tmp/celerybeat-schedule"
