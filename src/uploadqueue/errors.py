"""Error types raised and reported by the upload queue.

Validation errors are raised synchronously. Everything else is recovered
locally and handed to callers through completion callbacks.
"""


class UploadQueueError(Exception):
    """Base class for all upload queue errors."""

    pass


class ValidationError(UploadQueueError, ValueError):
    """Raised when a job id, payload or namespace is malformed.

    Nothing is persisted or sent when this is raised.
    """

    pass


class PersistenceError(UploadQueueError):
    """Raised when a job record or payload cannot be written to disk."""

    pass


class TransportError(UploadQueueError):
    """The remote call failed, timed out or was cancelled.

    Attributes:
        status_code: HTTP status returned by the sink, if any
        retryable: Whether repeating the same request might succeed
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retryable: bool = True,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class NotFoundError(UploadQueueError):
    """The job was deleted locally while its upload was in flight.

    Also used when the sink answers without identifying the stored payload.
    """

    pass
