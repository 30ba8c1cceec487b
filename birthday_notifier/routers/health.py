from fastapi import APIRouter, Request

from birthday_notifier.config.settings import settings
from birthday_notifier.utils.datetime_utils import utc_now
from birthday_notifier.utils.responses import ResponseBuilder

health_router = APIRouter()


@health_router.get("")
async def health_check(request: Request):
    """
    Basic health check endpoint

    Returns application status and basic system information
    """
    return ResponseBuilder.success(
        request=request,
        data={
            "status": "healthy",
            "service": settings.NAME,
            "version": settings.VERSION,
            "timestamp": utc_now().isoformat(),
        },
        message="Service is healthy",
    )
