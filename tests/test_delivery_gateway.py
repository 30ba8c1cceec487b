import asyncio
import json
from datetime import datetime, timezone

import httpx
import pytest

from birthday_notifier.services.delivery_gateway import (
    USER_AGENT,
    DeliveryGateway,
    NotificationMessage,
    WebhookTransport,
    validate_endpoint,
)
from birthday_notifier.utils.circuit_breaker import CircuitBreaker, CircuitState
from birthday_notifier.utils.errors import DeliveryConfigurationError
from helpers import FakeTransport, RecordingSleep

WEBHOOK_URL = "https://hooks.example.com/birthday"


@pytest.fixture
def message() -> NotificationMessage:
    return NotificationMessage(
        full_name="John Doe",
        user_id="7f9c24e8-3b12-4fef-91e0-3fb8c1a0a2a1",
        scheduled_at=datetime(2024, 6, 15, 13, 0, tzinfo=timezone.utc),
    )


def make_gateway(transport, sleep=None, **kwargs) -> DeliveryGateway:
    return DeliveryGateway(
        transport,
        max_send_retries=kwargs.pop("max_send_retries", 3),
        timeout_seconds=kwargs.pop("timeout_seconds", 1.0),
        base_delay_seconds=kwargs.pop("base_delay_seconds", 5.0),
        sleep=sleep or RecordingSleep(),
        **kwargs,
    )


class TestNotificationMessage:
    def test_renders_birthday_text(self, message):
        assert message.render() == "Hey, John Doe it's your birthday"

    def test_payload_fields(self, message):
        payload = message.to_payload()

        assert payload["message"] == "Hey, John Doe it's your birthday"
        assert payload["userId"] == message.user_id
        assert payload["scheduledAt"] == "2024-06-15T13:00:00+00:00"
        assert "timestamp" in payload


class TestDeliveryRetries:
    @pytest.mark.asyncio
    async def test_first_attempt_success(self, message):
        transport = FakeTransport([200])
        sleep = RecordingSleep()

        assert await make_gateway(transport, sleep).deliver(message) is True
        assert len(transport.sent) == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_exhausts_exactly_max_send_retries(self, message):
        transport = FakeTransport([500])
        sleep = RecordingSleep()

        assert await make_gateway(transport, sleep).deliver(message) is False
        assert len(transport.sent) == 3
        # base_delay * attempt between attempts, none after the last one
        assert sleep.delays == [5.0, 10.0]

    @pytest.mark.asyncio
    async def test_success_on_final_attempt_returns_true(self, message):
        transport = FakeTransport([503, httpx.ConnectError("refused"), 201])

        assert await make_gateway(transport).deliver(message) is True
        assert len(transport.sent) == 3

    @pytest.mark.asyncio
    async def test_transport_exceptions_are_not_raised(self, message):
        transport = FakeTransport([httpx.ReadTimeout("slow"), httpx.ConnectError("down")])

        assert await make_gateway(transport).deliver(message) is False
        assert len(transport.sent) == 3

    @pytest.mark.asyncio
    async def test_redirect_status_is_a_failure(self, message):
        transport = FakeTransport([302])

        assert await make_gateway(transport, max_send_retries=1).deliver(message) is False

    @pytest.mark.asyncio
    async def test_each_attempt_is_bounded_by_timeout(self, message):
        class HangingTransport:
            calls = 0

            async def send(self, payload, timeout):
                HangingTransport.calls += 1
                await asyncio.sleep(10)
                return 200

        gateway = make_gateway(HangingTransport(), timeout_seconds=0.01, max_send_retries=2)

        assert await gateway.deliver(message) is False
        assert HangingTransport.calls == 2

    def test_at_least_one_attempt_is_required(self):
        with pytest.raises(DeliveryConfigurationError):
            DeliveryGateway(FakeTransport(), max_send_retries=0)


class TestCircuitBreakerIntegration:
    @pytest.mark.asyncio
    async def test_open_breaker_counts_as_failed_attempt_without_sending(self, message):
        breaker = CircuitBreaker(failure_threshold=2, reset_timeout=60.0)
        transport = FakeTransport([500])
        gateway = make_gateway(transport, circuit_breaker=breaker)

        assert await gateway.deliver(message) is False

        # Two real sends opened the breaker; the third attempt was rejected
        assert len(transport.sent) == 2
        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_success_keeps_breaker_closed(self, message):
        breaker = CircuitBreaker(failure_threshold=2)
        gateway = make_gateway(FakeTransport([500, 200]), circuit_breaker=breaker)

        assert await gateway.deliver(message) is True
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0


class TestProbe:
    @pytest.mark.asyncio
    async def test_probe_success(self):
        transport = FakeTransport([200])

        assert await make_gateway(transport).probe() is True
        assert transport.sent[0]["userId"] == "test-user"

    @pytest.mark.asyncio
    async def test_probe_failure_never_raises(self):
        assert await make_gateway(FakeTransport([httpx.ConnectError("down")])).probe() is False
        assert await make_gateway(FakeTransport([404])).probe() is False

    @pytest.mark.asyncio
    async def test_probe_sends_once(self):
        transport = FakeTransport([500])

        await make_gateway(transport).probe()

        assert len(transport.sent) == 1


class TestWebhookTransport:
    @pytest.mark.parametrize("url", ["", "   ", "not a url", "ftp://files.example.com/x", "http://"])
    def test_malformed_endpoint_is_rejected(self, url):
        with pytest.raises(DeliveryConfigurationError):
            validate_endpoint(url)

    def test_valid_endpoint(self):
        assert validate_endpoint(f"  {WEBHOOK_URL} ").host == "hooks.example.com"

    @pytest.mark.asyncio
    async def test_posts_json_payload(self, message):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["method"] = request.method
            captured["url"] = str(request.url)
            captured["user_agent"] = request.headers["User-Agent"]
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"ok": True})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            transport = WebhookTransport(WEBHOOK_URL, client=client)
            status_code = await transport.send(message.to_payload(), timeout=5.0)

        assert status_code == 200
        assert captured["method"] == "POST"
        assert captured["url"] == WEBHOOK_URL
        assert captured["user_agent"] == USER_AGENT
        assert captured["body"]["message"] == "Hey, John Doe it's your birthday"

    @pytest.mark.asyncio
    async def test_gateway_over_mock_webhook(self, message):
        statuses = iter([502, 200])

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(next(statuses))

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            gateway = make_gateway(WebhookTransport(WEBHOOK_URL, client=client))
            assert await gateway.deliver(message) is True
