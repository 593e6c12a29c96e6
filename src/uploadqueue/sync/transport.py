"""Transport capability consumed by the upload orchestrator.

A transport sends one payload to the remote sink, reports progress while the
bytes go out and finishes with exactly one terminal callback carrying either
the sink's response data or a TransportError. Callbacks may be invoked from
any thread.
"""

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from uploadqueue.errors import TransportError

ProgressCallback = Callable[[float], None]


@dataclass
class TransportResponse:
    """Terminal outcome of a transport call."""

    data: dict[str, Any] | None = None
    error: TransportError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


TerminalCallback = Callable[[TransportResponse], None]


@runtime_checkable
class CancelHandle(Protocol):
    """Handle for an outstanding transport call."""

    def cancel(self) -> None:
        """Request cancellation. Must not block; best effort only."""
        ...


@runtime_checkable
class UploadTransport(Protocol):
    """Sends payloads to the remote sink."""

    def send(
        self,
        payload: bytes,
        job_id: str,
        on_progress: ProgressCallback,
        on_terminal: TerminalCallback,
    ) -> CancelHandle:
        """Start sending a payload.

        Args:
            payload: Bytes to deliver
            job_id: Job identifier, used by the sink as idempotency key
            on_progress: Called with the fraction sent so far (0.0 - 1.0)
            on_terminal: Called once when the call succeeds, fails or is cancelled

        Returns:
            Handle that cancels the call
        """
        ...
