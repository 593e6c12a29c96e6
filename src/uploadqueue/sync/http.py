"""Async HTTP transport that delivers payloads to the remote sink."""

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any
from urllib.parse import quote

import httpx

from uploadqueue import __version__
from uploadqueue.errors import TransportError
from uploadqueue.sync.transport import (
    ProgressCallback,
    TerminalCallback,
    TransportResponse,
)

logger = logging.getLogger(__name__)


class HttpUploadRequest:
    """Cancel handle for one HTTP upload task."""

    def __init__(self, job_id: str, task: asyncio.Task) -> None:
        self.job_id = job_id
        self._task = task

    @property
    def done(self) -> bool:
        return self._task.done()

    def cancel(self) -> None:
        """Cancel the upload without waiting for it to stop.

        Safe to call from any thread.
        """
        if not self._task.done():
            self._task.get_loop().call_soon_threadsafe(self._task.cancel)


class HttpTransport:
    """Async HTTP transport with exponential backoff retry.

    Uploads go out as ``PUT {server_url}/uploads/{job_id}`` with the raw
    payload as body and the job id as ``Idempotency-Key``, so a payload sent
    twice after a crash is stored once by the sink. The id is percent-encoded
    in both places. Retries on transient failures (5xx, connection errors,
    timeouts) but not on client errors (4xx).

    Must be used from inside a running event loop.
    """

    def __init__(
        self,
        server_url: str,
        max_retries: int = 3,
        timeout: float = 30.0,
        chunk_size: int = 64 * 1024,
        backoff: float = 1.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the transport.

        Args:
            server_url: Base URL of the sink (e.g., http://localhost:8000)
            max_retries: Maximum number of attempts per upload
            timeout: Request timeout in seconds
            chunk_size: Bytes per streamed chunk, one progress report each
            backoff: Multiplier for the 2**attempt second retry delay
            client: Preconfigured client, mostly for tests
        """
        self.server_url = server_url.rstrip("/")
        self.max_retries = max_retries
        self.timeout = timeout
        self.chunk_size = chunk_size
        self.backoff = backoff

        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            headers={
                "User-Agent": f"uploadqueue/{__version__}",
            },
        )
        self._tasks: set[asyncio.Task] = set()

    def send(
        self,
        payload: bytes,
        job_id: str,
        on_progress: ProgressCallback,
        on_terminal: TerminalCallback,
    ) -> HttpUploadRequest:
        """Start uploading a payload in the background.

        Returns:
            Handle that cancels the upload; cancellation is reported to
            on_terminal as a non-retryable TransportError
        """
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._run(payload, job_id, on_progress, on_terminal))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return HttpUploadRequest(job_id, task)

    async def _run(
        self,
        payload: bytes,
        job_id: str,
        on_progress: ProgressCallback,
        on_terminal: TerminalCallback,
    ) -> None:
        try:
            response = await self.upload(payload, job_id, on_progress)
        except asyncio.CancelledError:
            on_terminal(
                TransportResponse(
                    error=TransportError("Upload cancelled", retryable=False)
                )
            )
            raise
        except Exception as e:
            logger.error("Upload crashed: job_id=%s, error=%s", job_id, e)
            response = TransportResponse(
                error=TransportError(f"Upload failed: {e}", retryable=False)
            )
        on_terminal(response)

    async def upload(
        self,
        payload: bytes,
        job_id: str,
        on_progress: ProgressCallback | None = None,
    ) -> TransportResponse:
        """Upload payload bytes to the sink with retry.

        Args:
            payload: Bytes to upload
            job_id: Job identifier, used in the URL and as idempotency key
            on_progress: Optional callback with the fraction sent so far

        Returns:
            TransportResponse with the sink's JSON body or an error
        """
        # Ids may hold characters that are not valid in a URL path or a header
        remote_key = quote(job_id, safe="")
        attempt = 0
        last_error: TransportError | None = None

        while attempt < self.max_retries:
            attempt += 1

            try:
                response = await self._client.put(
                    f"{self.server_url}/uploads/{remote_key}",
                    content=self._stream(payload, on_progress),
                    headers={
                        "Content-Type": "application/octet-stream",
                        "Content-Length": str(len(payload)),
                        "Idempotency-Key": remote_key,
                    },
                )

                if response.status_code == 200 or response.status_code == 201:
                    return TransportResponse(data=self._parse_body(response))

                # 4xx errors - don't retry (client error)
                if 400 <= response.status_code < 500:
                    return TransportResponse(
                        error=TransportError(
                            f"Client error: {response.status_code} - {response.text}",
                            status_code=response.status_code,
                            retryable=False,
                        )
                    )

                # 5xx errors - retry with backoff
                last_error = TransportError(
                    f"Server error: {response.status_code}",
                    status_code=response.status_code,
                )

            except httpx.ConnectError as e:
                last_error = TransportError(f"Connection error: {e}")
            except httpx.TimeoutException as e:
                last_error = TransportError(f"Timeout: {e}")
            except httpx.HTTPError as e:
                last_error = TransportError(f"HTTP error: {e}")

            logger.debug(
                "Upload attempt failed: job_id=%s, attempt=%d, error=%s",
                job_id, attempt, last_error,
            )

            # Exponential backoff before retry
            if attempt < self.max_retries:
                await asyncio.sleep(self.backoff * 2**attempt)

        return TransportResponse(
            error=last_error or TransportError("Max retries exceeded")
        )

    async def _stream(
        self,
        payload: bytes,
        on_progress: ProgressCallback | None,
    ) -> AsyncIterator[bytes]:
        """Yield the payload in chunks, reporting progress after each one."""
        total = len(payload)
        sent = 0
        for start in range(0, total, self.chunk_size):
            chunk = payload[start : start + self.chunk_size]
            yield chunk
            sent += len(chunk)
            if on_progress:
                on_progress(sent / total)

    @staticmethod
    def _parse_body(response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    async def check_server(self) -> bool:
        """Check if the sink is available.

        Returns:
            True if the sink responds to its health check, False otherwise
        """
        try:
            response = await self._client.get(
                f"{self.server_url}/health/ready",
                timeout=httpx.Timeout(5.0),
            )
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    async def close(self) -> None:
        """Cancel running uploads and close the HTTP client."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "HttpTransport":
        """Enter async context manager."""
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        """Exit async context manager."""
        await self.close()
