from fastapi import APIRouter, Query, Request

from birthday_notifier.schemas.user_schemas import OccurrenceResponse
from birthday_notifier.services.scheduler_service import BirthdaySchedulerService
from birthday_notifier.utils.responses import ResponseBuilder

scheduler_router = APIRouter()


def _scheduler(request: Request) -> BirthdaySchedulerService:
    return request.app.state.scheduler


@scheduler_router.get("/status")
async def get_scheduler_status(request: Request):
    """
    Operational view of the birthday scheduler.

    Counts are read from the database, so in Celery mode they reflect the
    work done by the beat-driven workers even though ``isRunning`` is false
    for the API process.
    """
    scheduler_status = await _scheduler(request).get_status()

    return ResponseBuilder.success(
        request=request,
        data=scheduler_status,
        message="Scheduler status retrieved",
    )


@scheduler_router.get("/exhausted")
async def list_exhausted_notifications(
    request: Request,
    limit: int = Query(default=50, ge=1, le=100, description="Maximum number of notifications to return"),
    offset: int = Query(default=0, ge=0, description="Offset for pagination"),
):
    """Failed notifications whose retry budget is spent; these need manual attention."""
    scheduler = _scheduler(request)
    occurrences = await scheduler.store.list_exhausted(
        scheduler.config.max_retry_attempts, limit=limit, offset=offset
    )
    total = await scheduler.store.count_exhausted(scheduler.config.max_retry_attempts)

    return ResponseBuilder.success(
        request=request,
        data={
            "notifications": [
                OccurrenceResponse.model_validate(o.to_dict()).model_dump(by_alias=True)
                for o in occurrences
            ],
            "total": total,
            "limit": limit,
            "offset": offset,
            "hasMore": offset + len(occurrences) < total,
        },
        message=f"Retrieved {len(occurrences)} exhausted notifications",
    )
