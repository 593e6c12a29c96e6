"""Sync module for the persistent job store and upload transport."""

from uploadqueue.sync.http import HttpTransport, HttpUploadRequest
from uploadqueue.sync.models import Job, JobState, UploadResult
from uploadqueue.sync.registry import RequestRegistry
from uploadqueue.sync.store import JobStore
from uploadqueue.sync.transport import CancelHandle, TransportResponse, UploadTransport

__all__ = [
    "CancelHandle",
    "HttpTransport",
    "HttpUploadRequest",
    "Job",
    "JobState",
    "JobStore",
    "RequestRegistry",
    "TransportResponse",
    "UploadResult",
    "UploadTransport",
]
