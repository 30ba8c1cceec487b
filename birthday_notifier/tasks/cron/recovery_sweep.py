import asyncio

from birthday_notifier.celery import celery

from .tick_runner import run_scheduler_tick


@celery.task(bind=True)
def recovery_sweep_task(self, request_id: str):
    """
    Retry birthday notifications that were missed, failed or abandoned in flight.

    Args:
        request_id: The request ID for tracking purposes (provided by Celery Beat configuration)
    """
    return asyncio.run(run_scheduler_tick("recovery", request_id))
