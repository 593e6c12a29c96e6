"""Job records and upload results."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from uploadqueue.errors import UploadQueueError


class JobState(str, Enum):
    """Lifecycle state of a queued upload."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Job:
    """One payload's upload intent.

    The id doubles as the payload file name and as the idempotency key
    sent to the remote sink.
    """

    id: str
    state: JobState = JobState.PENDING
    enqueued_at: datetime = field(default_factory=utcnow)
    processing_started_at: datetime | None = None
    last_error_at: datetime | None = None
    retry_count: int = 0  # reserved, nothing increments it yet

    @property
    def is_active(self) -> bool:
        """True while the job still needs to be delivered."""
        return self.state in (JobState.PENDING, JobState.PROCESSING)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for JSON serialization."""
        return {
            "id": self.id,
            "state": self.state.value,
            "enqueued_at": self.enqueued_at.isoformat(),
            "processing_started_at": (
                self.processing_started_at.isoformat()
                if self.processing_started_at
                else None
            ),
            "last_error_at": (
                self.last_error_at.isoformat() if self.last_error_at else None
            ),
            "retry_count": self.retry_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Job":
        """Create Job from dict."""
        return cls(
            id=data["id"],
            state=JobState(data["state"]),
            enqueued_at=_parse_time(data["enqueued_at"]),
            processing_started_at=_parse_time(data.get("processing_started_at")),
            last_error_at=_parse_time(data.get("last_error_at")),
            retry_count=int(data.get("retry_count", 0)),
        )


@dataclass
class UploadResult:
    """Outcome of one upload attempt, handed to the caller's completion callback."""

    job_id: str
    success: bool
    remote_id: str | None = None
    remote_url: str | None = None
    version: str | None = None
    error: UploadQueueError | None = None

    @classmethod
    def from_response(cls, job_id: str, data: dict[str, Any]) -> "UploadResult":
        """Normalize a sink response into a successful result."""
        remote_id = data.get("public_id") or data.get("id")
        version = data.get("version")
        return cls(
            job_id=job_id,
            success=True,
            remote_id=str(remote_id) if remote_id is not None else None,
            remote_url=data.get("secure_url") or data.get("url"),
            version=str(version) if version is not None else None,
        )

    @classmethod
    def failed(cls, job_id: str, error: UploadQueueError) -> "UploadResult":
        """Build a failed result carrying the error."""
        return cls(job_id=job_id, success=False, error=error)
