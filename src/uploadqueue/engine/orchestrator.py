"""Upload orchestrator driving queued jobs through the transport."""

import asyncio
import inspect
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from uploadqueue.errors import (
    NotFoundError,
    PersistenceError,
    TransportError,
    UploadQueueError,
    ValidationError,
)
from uploadqueue.logging import log_upload_failed, log_upload_success
from uploadqueue.sync.models import JobState, UploadResult
from uploadqueue.sync.registry import RequestRegistry
from uploadqueue.sync.store import JobStore, validate_job_id
from uploadqueue.sync.transport import CancelHandle, TransportResponse, UploadTransport

logger = logging.getLogger(__name__)

DEFAULT_RETRY_DELAY = 60.0

DoneCallback = Callable[[UploadResult], None]
ProgressCallback = Callable[[float], None]
FailureCallback = Callable[[UploadQueueError], None]


@dataclass
class _Attempt:
    """Bookkeeping for one transport call."""

    job_id: str
    on_progress: ProgressCallback | None = None
    on_done: DoneCallback | None = None
    token: int | None = None
    started: float = field(default_factory=time.monotonic)


class UploadOrchestrator:
    """Moves jobs from the store through the transport, one call per job.

    Every completion, and every failure after a cool-down, re-drives the
    queue with exactly one upload_pending_jobs() call. The result is a
    self-sustaining chain that uploads one job at a time.

    All public methods must be called from the event loop the orchestrator
    runs on. Transport callbacks may arrive on any thread and are marshalled
    back onto that loop before they touch the store.

    Example:
        async with UploadOrchestrator(store, HttpTransport(url)) as orchestrator:
            orchestrator.submit(data, "photo-1", on_done=print)
    """

    def __init__(
        self,
        store: JobStore,
        transport: UploadTransport,
        retry_delay: float = DEFAULT_RETRY_DELAY,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            store: Job store owning the queue's namespace
            transport: Transport delivering payloads to the sink
            retry_delay: Seconds to wait after a failure before re-driving
        """
        self.store = store
        self.transport = transport
        self.retry_delay = retry_delay
        self.registry = RequestRegistry()

        self._loop: asyncio.AbstractEventLoop | None = None
        self._failure_callbacks: list[FailureCallback] = []
        self._retry_handles: set[asyncio.TimerHandle] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def in_flight(self) -> set[str]:
        """Ids of jobs with a transport call outstanding."""
        return self.registry.job_ids()

    @property
    def pending_retries(self) -> int:
        """Number of scheduled post-failure re-drives."""
        return len(self._retry_handles)

    def on_failure(self, callback: FailureCallback) -> None:
        """Register a callback invoked with the error of every failed upload."""
        self._failure_callbacks.append(callback)

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    # --- Lifecycle ---

    async def start(self) -> None:
        """Bind to the running loop and re-drive whatever is pending."""
        self._get_loop()
        logger.info("Upload orchestrator started, store=%s", self.store.path)
        self.upload_pending_jobs()

    async def close(self) -> None:
        """Stop re-driving, cancel in-flight uploads and close the transport.

        Callbacks arriving after close are ignored. Jobs interrupted here stay
        in the store and are picked up again on the next start.
        """
        if self._closed:
            return
        self._closed = True

        for handle in self._retry_handles:
            handle.cancel()
        self._retry_handles.clear()

        cancelled = self.registry.cancel_all()

        close = getattr(self.transport, "close", None)
        if close is not None:
            result = close()
            if inspect.isawaitable(result):
                await result

        logger.info("Upload orchestrator stopped, cancelled_uploads=%d", cancelled)

    async def __aenter__(self) -> "UploadOrchestrator":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # --- Public operations ---

    def submit(
        self,
        payload: bytes,
        job_id: str,
        on_progress: ProgressCallback | None = None,
        on_done: DoneCallback | None = None,
    ) -> CancelHandle | None:
        """Queue a payload and start uploading it right away.

        Args:
            payload: Opaque payload bytes
            job_id: Unique job id, also the sink's idempotency key
            on_progress: Called with the fraction uploaded so far
            on_done: Called once with the UploadResult

        Returns:
            Handle of the transport call, or None if the job could not be
            persisted (on_done receives a PersistenceError in that case)

        Raises:
            ValidationError: If the id or payload is malformed
            RuntimeError: If the orchestrator has been closed
        """
        if self._closed:
            raise RuntimeError("Upload orchestrator is closed")
        validate_job_id(job_id)
        if not isinstance(payload, (bytes, bytearray, memoryview)):
            raise ValidationError("Payload must be bytes")
        payload = bytes(payload)

        self._get_loop()
        if not self.store.enqueue(job_id, payload):
            error = PersistenceError(f"Failed to persist job {job_id}")
            self._notify_done(on_done, UploadResult.failed(job_id, error))
            return None

        return self._send(payload, _Attempt(job_id, on_progress, on_done))

    def delete(self, job_id: str) -> None:
        """Cancel any upload in flight for job_id and remove the job and payload.

        Does not wait for the transport to acknowledge the cancel. If the
        upload already succeeded server-side, its late success is discarded
        because the job no longer exists.
        """
        if self.registry.cancel(job_id):
            logger.info("Cancelled in-flight upload: job_id=%s", job_id)
        self.store.remove(job_id, delete_payload=True)

    def upload_pending_jobs(self) -> CancelHandle | None:
        """Submit the next eligible job from the store, if there is one.

        Jobs that already have an upload in flight are never picked, so each
        job has at most one outstanding transport call.
        """
        if self._closed:
            return None

        candidate = self.store.next_pending_job(exclude=self.registry.job_ids())
        if candidate is None:
            logger.debug("No pending jobs to upload")
            return None

        job, payload = candidate
        logger.info("Re-driving job: job_id=%s, state=%s", job.id, job.state.value)
        return self.submit(payload, job.id)

    def has_uploaded_all(self) -> bool:
        """True when no job is waiting for or in the middle of an upload."""
        return self.store.has_all_completed()

    # --- Transport plumbing ---

    def _send(self, payload: bytes, attempt: _Attempt) -> CancelHandle | None:
        job_id = attempt.job_id

        # At most one outstanding call per job
        if self.registry.cancel(job_id):
            logger.info("Superseding in-flight upload: job_id=%s", job_id)

        try:
            handle = self.transport.send(
                payload,
                job_id,
                lambda fraction: self._dispatch(self._handle_progress, attempt, fraction),
                lambda response: self._dispatch(self._handle_terminal, attempt, response),
            )
        except Exception as e:
            logger.error("Transport failed to start upload: job_id=%s, error=%s", job_id, e)
            self._handle_failure(attempt, TransportError(f"Failed to start upload: {e}"))
            return None

        attempt.token = self.registry.register(job_id, handle).token
        return handle

    def _dispatch(self, callback: Callable[..., None], *args: Any) -> None:
        """Run a transport callback on the orchestrator's loop."""
        try:
            self._get_loop().call_soon_threadsafe(callback, *args)
        except RuntimeError:
            logger.debug("Event loop closed, dropping transport callback")

    def _is_current(self, attempt: _Attempt) -> bool:
        return attempt.token is not None and self.registry.is_current(
            attempt.job_id, attempt.token
        )

    def _handle_progress(self, attempt: _Attempt, fraction: float) -> None:
        if self._closed or not self._is_current(attempt):
            return

        # Every progress report re-stamps processing_started_at
        if self.store.get(attempt.job_id) is not None:
            self.store.update_state(attempt.job_id, JobState.PROCESSING)

        if attempt.on_progress:
            try:
                attempt.on_progress(fraction)
            except Exception:
                logger.exception("Progress callback failed: job_id=%s", attempt.job_id)

    def _handle_terminal(self, attempt: _Attempt, response: TransportResponse) -> None:
        if self._closed:
            return

        job_id = attempt.job_id
        current = self.registry.get(job_id)
        if current is not None and current.token != attempt.token:
            # A newer submit for the same id owns the job now
            logger.debug("Dropping result of superseded upload: job_id=%s", job_id)
            self._notify_done(
                attempt.on_done,
                UploadResult.failed(
                    job_id, TransportError("Upload superseded", retryable=False)
                ),
            )
            return

        self.registry.pop(job_id, attempt.token)

        if response.ok:
            self._handle_success(attempt, response.data or {})
        else:
            self._handle_failure(
                attempt, response.error or TransportError("Unknown transport error")
            )

    def _handle_success(self, attempt: _Attempt, data: dict[str, Any]) -> None:
        job_id = attempt.job_id
        result = UploadResult.from_response(job_id, data)

        # The job may have been deleted while the upload was in flight
        if result.remote_id is None or self.store.get(job_id) is None:
            self._handle_failure(
                attempt,
                NotFoundError(
                    "Server did not return required data or job was deleted locally"
                ),
            )
            return

        self.store.update_state(job_id, JobState.COMPLETE)
        log_upload_success(
            logger,
            job_id,
            result.remote_id,
            round((time.monotonic() - attempt.started) * 1000, 1),
        )
        self._notify_done(attempt.on_done, result)

        self.upload_pending_jobs()

    def _handle_failure(self, attempt: _Attempt, error: UploadQueueError) -> None:
        job_id = attempt.job_id

        # No-op for deleted jobs, so a failure never re-creates one
        self.store.mark_failed(job_id)

        log_upload_failed(logger, job_id, str(error), retry_in=self.retry_delay)
        self._notify_done(attempt.on_done, UploadResult.failed(job_id, error))

        for callback in self._failure_callbacks:
            try:
                callback(error)
            except Exception:
                logger.exception("Failure callback raised: job_id=%s", job_id)

        self._schedule_redrive()

    def _schedule_redrive(self) -> None:
        """Re-drive the queue once retry_delay has elapsed."""
        if self._closed:
            return

        handle: asyncio.TimerHandle | None = None

        def fire() -> None:
            self._retry_handles.discard(handle)
            self.upload_pending_jobs()

        handle = self._get_loop().call_later(self.retry_delay, fire)
        self._retry_handles.add(handle)

    @staticmethod
    def _notify_done(on_done: DoneCallback | None, result: UploadResult) -> None:
        if on_done is None:
            return
        try:
            on_done(result)
        except Exception:
            logger.exception("Completion callback failed: job_id=%s", result.job_id)
