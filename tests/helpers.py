from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Sequence, Union

# A birthday alert instant used across the scheduler tests
NOW = datetime(2024, 6, 15, 9, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock whose current instant is moved by the test."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeTransport:
    """
    Transport double that records every payload.

    ``responses`` is consumed one item per send: an int is returned as the
    HTTP status, an exception instance is raised. The last item repeats.
    """

    def __init__(self, responses: Sequence[Union[int, Exception]] = (200,)):
        self.responses = list(responses)
        self.sent: List[Dict[str, Any]] = []

    async def send(self, payload: Dict[str, Any], timeout: float) -> int:
        self.sent.append(payload)
        index = min(len(self.sent) - 1, len(self.responses) - 1)
        response = self.responses[index]
        if isinstance(response, Exception):
            raise response
        return response


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
