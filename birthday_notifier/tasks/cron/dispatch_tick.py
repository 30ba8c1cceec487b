import asyncio

from birthday_notifier.celery import celery

from .tick_runner import run_scheduler_tick


@celery.task(bind=True)
def dispatch_tick_task(self, request_id: str):
    """
    Deliver birthday notifications that fell due during the last minute.

    Scheduled by Celery Beat every minute on the minute when
    SCHEDULER_MODE is ``celery``.

    Args:
        request_id: The request ID for tracking purposes (provided by Celery Beat configuration)
    """
    return asyncio.run(run_scheduler_tick("dispatch", request_id))
