import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

import httpx

from birthday_notifier.config.settings import Settings
from birthday_notifier.utils.circuit_breaker import CircuitBreaker
from birthday_notifier.utils.datetime_utils import to_utc, utc_now
from birthday_notifier.utils.errors import CircuitOpenError, DeliveryConfigurationError
from birthday_notifier.utils.logging import get_logger

logger = get_logger()

USER_AGENT = "BirthdayNotificationService/1.0"


@dataclass(frozen=True)
class NotificationMessage:
    full_name: str
    user_id: str
    scheduled_at: datetime

    def render(self) -> str:
        return f"Hey, {self.full_name} it's your birthday"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "message": self.render(),
            "userId": self.user_id,
            "timestamp": utc_now().isoformat(),
            "scheduledAt": to_utc(self.scheduled_at).isoformat(),
        }


class Transport(Protocol):
    async def send(self, payload: Dict[str, Any], timeout: float) -> int:
        """Deliver ``payload`` and return an HTTP-style status code."""
        ...


def validate_endpoint(url: str) -> httpx.URL:
    """Parse a webhook URL, raising DeliveryConfigurationError if it is unusable."""
    if not url or not url.strip():
        raise DeliveryConfigurationError("Webhook URL is not configured")
    try:
        parsed = httpx.URL(url.strip())
    except (httpx.InvalidURL, TypeError) as e:
        raise DeliveryConfigurationError(f"Malformed webhook URL: {url}") from e
    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise DeliveryConfigurationError(
            f"Webhook URL must be an absolute http(s) URL: {url}"
        )
    return parsed


class WebhookTransport:
    """POSTs JSON payloads to a single webhook endpoint."""

    def __init__(self, url: str, client: Optional[httpx.AsyncClient] = None):
        self.url = validate_endpoint(url)
        self._client = client

    async def send(self, payload: Dict[str, Any], timeout: float) -> int:
        headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
        if self._client is not None:
            response = await self._client.post(
                self.url, json=payload, headers=headers, timeout=timeout
            )
            return response.status_code

        async with httpx.AsyncClient() as client:
            response = await client.post(
                self.url, json=payload, headers=headers, timeout=timeout
            )
            return response.status_code


class DeliveryAttemptError(Exception):
    """A single send attempt did not produce a 2xx response."""


class DeliveryGateway:
    """
    Sends one birthday message and reports whether it was delivered.

    Up to ``max_send_retries`` attempts are made, each bounded by
    ``timeout_seconds``. Attempt ``n`` that fails is followed by a pause of
    ``base_delay_seconds * n`` before the next one. Ordinary transport
    failures never escape as exceptions; they end in a False verdict.
    """

    def __init__(
        self,
        transport: Transport,
        max_send_retries: int = 3,
        timeout_seconds: float = 10.0,
        base_delay_seconds: float = 5.0,
        circuit_breaker: Optional[CircuitBreaker] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_send_retries < 1:
            raise DeliveryConfigurationError("max_send_retries must be at least 1")
        self.transport = transport
        self.max_send_retries = max_send_retries
        self.timeout_seconds = timeout_seconds
        self.base_delay_seconds = base_delay_seconds
        self.circuit_breaker = circuit_breaker
        self._sleep = sleep

    async def _attempt(self, payload: Dict[str, Any]) -> None:
        status_code = await asyncio.wait_for(
            self.transport.send(payload, self.timeout_seconds),
            timeout=self.timeout_seconds,
        )
        if not 200 <= status_code < 300:
            raise DeliveryAttemptError(f"HTTP {status_code}")

    async def deliver(self, message: NotificationMessage) -> bool:
        payload = message.to_payload()

        for attempt in range(1, self.max_send_retries + 1):
            try:
                if self.circuit_breaker is not None:
                    await self.circuit_breaker.call(lambda: self._attempt(payload))
                else:
                    await self._attempt(payload)

                logger.info(
                    f"Birthday notification sent successfully for user {message.user_id}"
                )
                return True

            except CircuitOpenError as e:
                logger.warning(
                    f"Attempt {attempt} skipped for user {message.user_id}: {e.message}"
                )
            except (httpx.HTTPError, asyncio.TimeoutError, DeliveryAttemptError) as e:
                logger.warning(
                    f"Attempt {attempt} failed for user {message.user_id}: "
                    f"{type(e).__name__}: {e}"
                )

            if attempt < self.max_send_retries:
                await self._sleep(self.base_delay_seconds * attempt)

        logger.error(
            f"All {self.max_send_retries} attempts failed for user {message.user_id}"
        )
        return False

    async def probe(self) -> bool:
        """Send one test payload; used only for startup diagnostics."""
        payload = {
            "message": "Test message from Birthday Notification Service",
            "userId": "test-user",
            "timestamp": utc_now().isoformat(),
        }
        try:
            status_code = await asyncio.wait_for(
                self.transport.send(payload, self.timeout_seconds),
                timeout=self.timeout_seconds,
            )
        except (httpx.HTTPError, asyncio.TimeoutError) as e:
            logger.warning(f"Webhook test failed: {type(e).__name__}: {e}")
            return False
        return 200 <= status_code < 300


def build_delivery_gateway(settings: Settings) -> DeliveryGateway:
    """Wire a webhook-backed gateway from application settings."""
    breaker = None
    if settings.CIRCUIT_BREAKER_ENABLED:
        breaker = CircuitBreaker(
            failure_threshold=settings.CIRCUIT_BREAKER_FAILURE_THRESHOLD,
            reset_timeout=settings.CIRCUIT_BREAKER_RESET_SECONDS,
            name="webhook",
        )

    return DeliveryGateway(
        WebhookTransport(settings.WEBHOOK_URL),
        max_send_retries=settings.MAX_SEND_RETRIES,
        timeout_seconds=settings.SEND_TIMEOUT_SECONDS,
        base_delay_seconds=settings.SEND_RETRY_BASE_DELAY_SECONDS,
        circuit_breaker=breaker,
    )
