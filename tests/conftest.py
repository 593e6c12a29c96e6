"""Shared fixtures: a controllable clock and a scriptable fake transport."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import pytest

from uploadqueue.errors import TransportError
from uploadqueue.sync.store import JobStore
from uploadqueue.sync.transport import TransportResponse


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self) -> None:
        self.now = datetime(2026, 1, 24, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeRequest:
    """Cancel handle that records whether it was cancelled."""

    def __init__(self) -> None:
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


@dataclass
class FakeCall:
    """One send() call, which a test can finish by hand."""

    payload: bytes
    job_id: str
    on_progress: object
    on_terminal: object
    request: FakeRequest = field(default_factory=FakeRequest)

    def progress(self, fraction: float) -> None:
        self.on_progress(fraction)

    def succeed(self, data: dict | None = None) -> None:
        if data is None:
            data = {
                "public_id": self.job_id,
                "secure_url": f"https://sink.test/{self.job_id}",
                "version": 1,
            }
        self.on_terminal(TransportResponse(data=data))

    def fail(self, message: str = "network unreachable") -> None:
        self.on_terminal(TransportResponse(error=TransportError(message)))


class FakeTransport:
    """Transport double.

    Each send() consumes the next mode from ``script`` (falling back to
    ``default``):
      - "success": report progress 0.5 and 1.0, then succeed
      - "fail": fail immediately
      - "hold": do nothing; the test finishes the call through ``calls``
    """

    def __init__(self, default: str = "success", script: list[str] | None = None) -> None:
        self.default = default
        self.script = list(script or [])
        self.calls: list[FakeCall] = []
        self.closed = False

    def send(self, payload, job_id, on_progress, on_terminal) -> FakeRequest:
        call = FakeCall(payload, job_id, on_progress, on_terminal)
        self.calls.append(call)

        mode = self.script.pop(0) if self.script else self.default
        if mode == "success":
            call.progress(0.5)
            call.progress(1.0)
            call.succeed()
        elif mode == "fail":
            call.fail()
        return call.request

    async def close(self) -> None:
        self.closed = True

    @property
    def job_ids(self) -> list[str]:
        return [call.job_id for call in self.calls]


async def settle(rounds: int = 20) -> None:
    """Let callbacks marshalled onto the loop run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path, clock) -> JobStore:
    return JobStore("TestStore", root=tmp_path, clock=clock)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()
