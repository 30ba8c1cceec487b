from typing import Callable, Dict, Optional
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

BASE_SECURITY_HEADERS = {
    # Prevent clickjacking attacks
    "X-Frame-Options": "DENY",
    # Prevent MIME type sniffing
    "X-Content-Type-Options": "nosniff",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds security headers to every response; HSTS only outside development."""

    def __init__(
        self,
        app,
        enforce_https: bool = False,
        custom_headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(app)

        self.headers = dict(BASE_SECURITY_HEADERS)
        if enforce_https:
            self.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        if custom_headers:
            self.headers.update(custom_headers)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)

        for header_name, header_value in self.headers.items():
            response.headers[header_name] = header_value

        return response
