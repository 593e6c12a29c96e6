"""File-backed persistent store for queued upload jobs.

Each namespace owns a directory with two areas:

    <root>/<namespace>/jobs/<job_id>.json      serialized Job records
    <root>/<namespace>/payloads/<job_id>.bin   payload blobs

Records are kept in memory and written through on every mutation, so the
queue survives process restarts. Only one JobStore may own a namespace at a
time.
"""

import json
import logging
import os
import shutil
import threading
from collections.abc import Callable, Collection
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path

from uploadqueue.errors import ValidationError
from uploadqueue.logging import log_job_enqueued, log_job_removed, log_state_change
from uploadqueue.sync.models import Job, JobState, utcnow

logger = logging.getLogger(__name__)

JOBS_DIR = "jobs"
PAYLOADS_DIR = "payloads"
RECORD_SUFFIX = ".json"
PAYLOAD_SUFFIX = ".bin"

# A job left in PROCESSING this long is assumed abandoned and may be re-driven
STALE_PROCESSING_AFTER = timedelta(minutes=2)


def validate_job_id(job_id: str) -> str:
    """Check that a job id can be used as a single file name.

    Args:
        job_id: Caller supplied job identifier

    Returns:
        The job id unchanged

    Raises:
        ValidationError: If the id is empty or contains path components
    """
    if not isinstance(job_id, str) or not job_id:
        raise ValidationError("Job id cannot be empty")
    if job_id in (".", "..") or "/" in job_id or "\\" in job_id or "\x00" in job_id:
        raise ValidationError(f"Job id is not a valid file name: {job_id!r}")
    return job_id


class JobStore:
    """Durable table of upload jobs plus their payload blobs.

    On construction all persisted records are loaded and every job found in
    PROCESSING is reset to PENDING: the store cannot tell a transfer that is
    still running from one that died with the previous process.

    I/O failures are logged and reported as False return values; they are
    never raised to the caller.
    """

    def __init__(
        self,
        folder_name: str | None,
        root: Path | None = None,
        load_jobs: bool = True,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Open (and create if needed) the store for a namespace.

        Args:
            folder_name: Namespace directory under the root
            root: Parent directory, defaults to the configured data directory
            load_jobs: Load and recover persisted jobs. Pass False to only
                read payloads without touching the job records.
            clock: Returns the current aware UTC time

        Raises:
            ValidationError: If folder_name is missing or not a plain name
        """
        if not folder_name or not isinstance(folder_name, str):
            raise ValidationError("Store folder name is required")
        if folder_name in (".", "..") or "/" in folder_name or "\\" in folder_name:
            raise ValidationError(f"Invalid store folder name: {folder_name!r}")

        if root is None:
            from uploadqueue.config import get_settings

            root = get_settings().data_path

        self.folder_name = folder_name
        self._path = Path(root).expanduser() / folder_name
        self._clock = clock or utcnow
        self._lock = threading.RLock()
        self._jobs: dict[str, Job] = {}

        if load_jobs:
            self.create_store()
            for job in sorted(self._load_jobs(), key=lambda j: j.enqueued_at):
                self._jobs[job.id] = job
            recovered = self.reset_processing_jobs()
            logger.info(
                "Job store opened: path=%s, jobs=%d, recovered=%d",
                self._path, len(self._jobs), recovered,
            )

    # --- Layout ---

    @property
    def path(self) -> Path:
        """Root directory of this namespace."""
        return self._path

    @property
    def exists(self) -> bool:
        """Whether the namespace directory exists on disk."""
        return self._path.is_dir()

    @property
    def jobs_dir(self) -> Path:
        return self._path / JOBS_DIR

    @property
    def payloads_dir(self) -> Path:
        return self._path / PAYLOADS_DIR

    def create_store(self) -> bool:
        """Create the namespace directory and its two areas.

        Returns:
            True if the directories exist afterwards
        """
        try:
            self.jobs_dir.mkdir(parents=True, exist_ok=True)
            self.payloads_dir.mkdir(parents=True, exist_ok=True)
            return True
        except OSError as e:
            logger.error("Failed to create store at %s: %s", self._path, e)
            return False

    def _record_path(self, job_id: str) -> Path:
        return self.jobs_dir / f"{job_id}{RECORD_SUFFIX}"

    def payload_path(self, job_id: str) -> Path | None:
        """Path of the payload blob for a job id, or None for an invalid id."""
        try:
            validate_job_id(job_id)
        except ValidationError:
            return None
        return self.payloads_dir / f"{job_id}{PAYLOAD_SUFFIX}"

    # --- Persistence helpers ---

    @staticmethod
    def _write_atomic(path: Path, data: bytes) -> None:
        """Write data so readers only ever see the old or the new content."""
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.tmp")
        try:
            with open(tmp_path, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        finally:
            tmp_path.unlink(missing_ok=True)

    def _save(self, job: Job) -> bool:
        """Write the full job record to disk."""
        try:
            data = json.dumps(job.to_dict()).encode("utf-8")
            self._write_atomic(self._record_path(job.id), data)
            return True
        except OSError as e:
            logger.error("Failed to save job %s: %s", job.id, e)
            return False

    def _load_jobs(self) -> list[Job]:
        """Read every persisted job record.

        Undecodable records are skipped with a warning.
        """
        if not self.jobs_dir.is_dir():
            return []

        jobs = []
        for path in sorted(self.jobs_dir.glob(f"*{RECORD_SUFFIX}")):
            if path.name.startswith("."):
                continue
            try:
                with open(path, "rb") as f:
                    jobs.append(Job.from_dict(json.load(f)))
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning("Skipping unreadable job record %s: %s", path.name, e)
        return jobs

    # --- Jobs ---

    def reset_processing_jobs(self) -> int:
        """Force every PROCESSING job back to PENDING.

        Returns:
            Number of jobs reset
        """
        count = 0
        with self._lock:
            for job in list(self._jobs.values()):
                if job.state == JobState.PROCESSING:
                    if self.update_state(job.id, JobState.PENDING):
                        count += 1
        return count

    def enqueue(self, job_id: str, payload: bytes) -> bool:
        """Store a payload and (re)create its job in PENDING.

        An existing job with the same id is replaced: enqueue is an upsert.

        Args:
            job_id: Unique job identifier, used as the file name
            payload: Opaque payload bytes

        Returns:
            True on success, False if the id is invalid or nothing could be
            persisted (the store is left unchanged in that case)
        """
        try:
            validate_job_id(job_id)
        except ValidationError as e:
            logger.warning("Rejected enqueue: %s", e)
            return False
        if not isinstance(payload, (bytes, bytearray, memoryview)):
            logger.warning("Rejected enqueue for %s: payload is not bytes", job_id)
            return False

        payload = bytes(payload)
        with self._lock:
            try:
                self._write_atomic(self.payload_path(job_id), payload)
            except OSError as e:
                logger.error("Failed to save payload for %s: %s", job_id, e)
                return False

            job = Job(id=job_id, state=JobState.PENDING, enqueued_at=self._clock())
            if not self._save(job):
                return False

            replaced = self._jobs.pop(job_id, None) is not None
            self._jobs[job_id] = job

        log_job_enqueued(logger, job_id, len(payload), replaced=replaced)
        return True

    def update_state(self, job_id: str, state: JobState) -> bool:
        """Move a job to a new state and persist it.

        Entering PROCESSING stamps processing_started_at. A COMPLETE job never
        moves backward.

        Returns:
            True if the job was updated and saved
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return False
            if job.state == JobState.COMPLETE and state != JobState.COMPLETE:
                logger.debug("Ignoring %s -> %s for completed job", job_id, state.value)
                return False

            previous = replace(job)
            job.state = state
            if state == JobState.PROCESSING:
                job.processing_started_at = self._clock()

            if not self._save(job):
                self._jobs[job_id] = previous
                return False

        if previous.state != state:
            log_state_change(logger, job_id, previous.state.value, state.value)
        return True

    def mark_failed(self, job_id: str) -> bool:
        """Record a failed attempt: stamp last_error_at and return to PENDING.

        Returns:
            False if the job is unknown, already complete, or cannot be saved
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state == JobState.COMPLETE:
                return False

            previous = replace(job)
            job.state = JobState.PENDING
            job.last_error_at = self._clock()

            if not self._save(job):
                self._jobs[job_id] = previous
                return False

        if previous.state != JobState.PENDING:
            log_state_change(
                logger, job_id, previous.state.value, JobState.PENDING.value, "failure"
            )
        return True

    def get(self, job_id: str) -> Job | None:
        """Fetch a copy of the job with this id, or None."""
        with self._lock:
            job = self._jobs.get(job_id)
            return replace(job) if job else None

    def remove(self, job_id: str, delete_payload: bool = False) -> None:
        """Remove a job record. Unknown ids are ignored.

        Args:
            job_id: Job identifier
            delete_payload: Also delete the payload blob, even when no record
                exists for it. Payloads are otherwise kept for local reuse.
        """
        with self._lock:
            existed = self._jobs.pop(job_id, None) is not None
            try:
                validate_job_id(job_id)
            except ValidationError:
                return

            try:
                self._record_path(job_id).unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Failed to delete job record %s: %s", job_id, e)

            payload_deleted = delete_payload and self.remove_payload(job_id)

        if existed or payload_deleted:
            log_job_removed(logger, job_id, payload_deleted)

    def all_jobs(self) -> list[Job]:
        """All jobs ordered by enqueue time, oldest first."""
        with self._lock:
            return [
                replace(job)
                for job in sorted(self._jobs.values(), key=lambda j: j.enqueued_at)
            ]

    def next_job(self) -> tuple[Job, bytes] | None:
        """Oldest job in any state together with its payload.

        Returns:
            None if the store is empty or the oldest job has no payload
        """
        jobs = self.all_jobs()
        if not jobs:
            return None
        payload = self.payload(jobs[0].id)
        if payload is None:
            return None
        return jobs[0], payload

    def next_job_path(self) -> tuple[Job, Path] | None:
        """Like next_job but returns the payload path instead of its bytes."""
        jobs = self.all_jobs()
        if not jobs:
            return None
        path = self.payload_path(jobs[0].id)
        if path is None or not path.is_file():
            return None
        return jobs[0], path

    def next_pending_job(
        self,
        exclude: Collection[str] = (),
    ) -> tuple[Job, bytes] | None:
        """Pick the next job that should be uploaded.

        The oldest PENDING job wins. Without one, the oldest PROCESSING job
        whose transfer started at least STALE_PROCESSING_AFTER ago is treated
        as abandoned and returned instead. Jobs whose payload is missing are
        skipped.

        Args:
            exclude: Job ids that must not be returned, e.g. ones with an
                upload already in flight

        Returns:
            (job, payload) or None if nothing is eligible
        """
        jobs = [job for job in self.all_jobs() if job.id not in exclude]
        now = self._clock()

        pending = [job for job in jobs if job.state == JobState.PENDING]
        stale = [
            job
            for job in jobs
            if job.state == JobState.PROCESSING
            and job.processing_started_at is not None
            and now - job.processing_started_at >= STALE_PROCESSING_AFTER
        ]

        for job in pending + stale:
            payload = self.payload(job.id)
            if payload is not None:
                return job, payload
            logger.warning("Job %s has no payload, skipping", job.id)
        return None

    def has_all_completed(self) -> bool:
        """True when no job is PENDING or PROCESSING."""
        with self._lock:
            return not any(job.is_active for job in self._jobs.values())

    def get_stats(self) -> dict[str, int]:
        """Job counts per state plus the total."""
        stats = {state.value: 0 for state in JobState}
        with self._lock:
            for job in self._jobs.values():
                stats[job.state.value] += 1
            stats["total"] = len(self._jobs)
        return stats

    # --- Payloads ---

    def payload(self, job_id: str) -> bytes | None:
        """Read the payload blob for a job id, or None if absent."""
        path = self.payload_path(job_id)
        if path is None:
            return None
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("Failed to read payload for %s: %s", job_id, e)
            return None

    def remove_payload(self, job_id: str) -> bool:
        """Delete the payload blob for a job id.

        Returns:
            True if a blob was found and deleted
        """
        path = self.payload_path(job_id)
        if path is None:
            return False
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning("Failed to delete payload for %s: %s", job_id, e)
            return False

    def remove_all_payloads(self) -> bool:
        """Delete every payload blob in the namespace.

        Returns:
            False if the payload area does not exist
        """
        if not self.payloads_dir.is_dir():
            return False
        for path in self.payloads_dir.iterdir():
            if path.is_file():
                try:
                    path.unlink()
                except OSError as e:
                    logger.warning("Failed to delete payload %s: %s", path.name, e)
        return True

    def delete_storage(self) -> bool:
        """Remove the namespace directory and forget all jobs.

        Returns:
            False if there was nothing to delete or removal failed
        """
        with self._lock:
            self._jobs.clear()
            if not self.exists:
                return False
            try:
                shutil.rmtree(self._path)
            except OSError as e:
                logger.error("Failed to delete store at %s: %s", self._path, e)
                return False
        logger.info("Job store deleted: path=%s", self._path)
        return True
