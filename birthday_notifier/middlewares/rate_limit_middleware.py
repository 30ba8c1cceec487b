from typing import Callable, Optional

from fastapi import Request, Response, status
from starlette.middleware.base import BaseHTTPMiddleware

from birthday_notifier.utils.logging import get_logger
from birthday_notifier.utils.rate_limiter import RateLimiter
from birthday_notifier.utils.responses import ResponseBuilder

logger = get_logger()

UNKNOWN_CLIENT = "unknown"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Rejects callers that exceed the sliding-window ceiling with 429."""

    def __init__(self, app, limiter: Optional[RateLimiter] = None):
        super().__init__(app)
        self.limiter = limiter or RateLimiter()

    @staticmethod
    def client_key(request: Request) -> str:
        return request.client.host if request.client else UNKNOWN_CLIENT

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        key = self.client_key(request)

        if not self.limiter.allow(key):
            retry_after = self.limiter.retry_after(key)
            logger.warning(f"Rate limit exceeded for {key} on {request.url.path}")
            return ResponseBuilder.error(
                request=request,
                message="Too many requests",
                error_code="RATE_LIMITED",
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                meta={"retry_after": retry_after},
                headers={"Retry-After": str(retry_after)},
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self.limiter.max_requests)
        response.headers["X-RateLimit-Remaining"] = str(self.limiter.remaining(key))
        return response
