"""Tests for the upload orchestrator state machine."""

import asyncio
import threading

import pytest
from conftest import FakeTransport, settle

from uploadqueue.engine import UploadOrchestrator
from uploadqueue.errors import (
    NotFoundError,
    PersistenceError,
    TransportError,
    ValidationError,
)
from uploadqueue.sync.models import JobState
from uploadqueue.sync.transport import TransportResponse


class TestSubmitSuccess:
    """Uploads that succeed."""

    @pytest.mark.asyncio
    async def test_upload_completes_job(self, store, transport):
        """Verify a successful upload completes the job."""
        orchestrator = UploadOrchestrator(store, transport)
        results = []
        progress = []

        handle = orchestrator.submit(
            b"image", "A", on_progress=progress.append, on_done=results.append
        )
        await settle()

        assert handle is transport.calls[0].request
        assert store.get("A").state == JobState.COMPLETE
        assert store.next_pending_job() is None
        assert orchestrator.has_uploaded_all() is True
        assert progress == [0.5, 1.0]
        assert len(results) == 1
        assert results[0].success is True
        assert results[0].remote_id == "A"
        assert results[0].remote_url == "https://sink.test/A"
        assert results[0].version == "1"
        assert orchestrator.in_flight == set()

    @pytest.mark.asyncio
    async def test_payload_sent_and_kept_after_completion(self, store, transport):
        """Verify the payload is sent and kept on disk after completion."""
        orchestrator = UploadOrchestrator(store, transport)

        orchestrator.submit(b"image", "A")
        await settle()

        assert transport.calls[0].payload == b"image"
        assert store.payload("A") == b"image"

    @pytest.mark.asyncio
    async def test_progress_marks_job_processing(self, store, clock):
        """Verify the first progress report marks the job processing."""
        transport = FakeTransport(default="hold")
        orchestrator = UploadOrchestrator(store, transport)

        orchestrator.submit(b"image", "A")
        await settle()
        assert store.get("A").state == JobState.PENDING

        transport.calls[0].progress(0.3)
        await settle()

        job = store.get("A")
        assert job.state == JobState.PROCESSING
        assert job.processing_started_at == clock.now
        assert orchestrator.has_uploaded_all() is False
        assert orchestrator.in_flight == {"A"}

    @pytest.mark.asyncio
    async def test_each_progress_restamps_processing_start(self, store, clock):
        """Verify a slow transfer keeps its job from looking abandoned."""
        transport = FakeTransport(default="hold")
        orchestrator = UploadOrchestrator(store, transport)

        orchestrator.submit(b"image", "A")
        transport.calls[0].progress(0.1)
        await settle()

        clock.advance(150)
        transport.calls[0].progress(0.9)
        await settle()

        assert store.get("A").processing_started_at == clock.now
        assert store.next_pending_job() is None

    @pytest.mark.asyncio
    async def test_completion_continues_with_next_pending_job(self, store, clock, transport):
        """Verify completing one job starts the next pending one."""
        store.enqueue("P1", b"1")
        clock.advance(1)
        store.enqueue("P2", b"2")
        orchestrator = UploadOrchestrator(store, transport)

        await orchestrator.start()
        await settle()

        assert transport.job_ids == ["P1", "P2"]
        assert store.get("P1").state == JobState.COMPLETE
        assert store.get("P2").state == JobState.COMPLETE
        assert orchestrator.has_uploaded_all() is True

    @pytest.mark.asyncio
    async def test_callbacks_from_other_threads_are_marshalled(self, store):
        """Verify callbacks from a worker thread are handled on the loop."""
        transport = FakeTransport(default="hold")
        orchestrator = UploadOrchestrator(store, transport)
        results = []

        orchestrator.submit(b"image", "A", on_done=results.append)
        call = transport.calls[0]

        def finish() -> None:
            call.progress(1.0)
            call.succeed()

        worker = threading.Thread(target=finish)
        worker.start()
        worker.join()
        await settle()

        assert results[0].success is True
        assert store.get("A").state == JobState.COMPLETE


class TestSubmitFailure:
    """Uploads that fail and are retried after the cool-down."""

    @pytest.mark.asyncio
    async def test_failure_resets_job_and_retries_after_delay(self, store):
        """Verify a failed job returns to pending and is retried after the delay."""
        transport = FakeTransport(script=["fail"], default="success")
        orchestrator = UploadOrchestrator(store, transport, retry_delay=0.05)
        results = []
        failures = []
        orchestrator.on_failure(failures.append)

        orchestrator.submit(b"image", "B", on_done=results.append)
        await settle()

        job = store.get("B")
        assert job.state == JobState.PENDING
        assert job.last_error_at is not None
        assert results[0].success is False
        assert isinstance(results[0].error, TransportError)
        assert len(failures) == 1
        assert orchestrator.pending_retries == 1
        assert len(transport.calls) == 1

        await asyncio.sleep(0.1)
        await settle()

        assert transport.job_ids == ["B", "B"]
        assert store.get("B").state == JobState.COMPLETE
        assert orchestrator.pending_retries == 0

    @pytest.mark.asyncio
    async def test_no_immediate_retry(self, store):
        """Verify nothing is resent before the retry delay."""
        transport = FakeTransport(default="fail")
        orchestrator = UploadOrchestrator(store, transport, retry_delay=60)

        orchestrator.submit(b"image", "B")
        await settle()

        assert len(transport.calls) == 1
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_response_without_remote_id_is_a_failure(self, store):
        """Verify a success without a remote id is treated as failure."""
        transport = FakeTransport(default="hold")
        orchestrator = UploadOrchestrator(store, transport, retry_delay=60)
        results = []

        orchestrator.submit(b"image", "A", on_done=results.append)
        transport.calls[0].succeed({"secure_url": "https://sink.test/A"})
        await settle()

        assert isinstance(results[0].error, NotFoundError)
        assert store.get("A").state == JobState.PENDING
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_transport_raising_takes_failure_path(self, store):
        """Verify a transport that raises on send fails the job."""
        class BrokenTransport:
            def send(self, payload, job_id, on_progress, on_terminal):
                raise ConnectionError("no route")

        orchestrator = UploadOrchestrator(store, BrokenTransport(), retry_delay=60)
        results = []

        handle = orchestrator.submit(b"image", "A", on_done=results.append)

        assert handle is None
        assert isinstance(results[0].error, TransportError)
        assert store.get("A").state == JobState.PENDING
        assert orchestrator.pending_retries == 1
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_break_queue(self, store):
        """Verify exceptions in caller callbacks are contained."""
        transport = FakeTransport(default="fail")
        orchestrator = UploadOrchestrator(store, transport, retry_delay=60)

        def explode(error):
            raise RuntimeError("callback bug")

        orchestrator.on_failure(explode)
        orchestrator.submit(b"image", "A", on_done=explode)
        await settle()

        assert store.get("A").state == JobState.PENDING
        assert orchestrator.pending_retries == 1
        await orchestrator.close()


class TestDelete:
    """Deleting jobs, including while their upload is in flight."""

    @pytest.mark.asyncio
    async def test_delete_before_success_discards_completion(self, store):
        """Verify a late success for a deleted job does not recreate it."""
        transport = FakeTransport(default="hold")
        orchestrator = UploadOrchestrator(store, transport, retry_delay=60)
        results = []

        orchestrator.submit(b"image", "C", on_done=results.append)
        call = transport.calls[0]

        orchestrator.delete("C")
        call.succeed()
        await settle()

        assert call.request.cancelled is True
        assert store.get("C") is None
        assert store.payload("C") is None
        assert results[0].success is False
        assert isinstance(results[0].error, NotFoundError)
        assert orchestrator.in_flight == set()
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_delete_ignores_late_progress(self, store):
        """Verify progress after delete is ignored."""
        transport = FakeTransport(default="hold")
        orchestrator = UploadOrchestrator(store, transport, retry_delay=60)

        orchestrator.submit(b"image", "C")
        call = transport.calls[0]
        orchestrator.delete("C")
        call.progress(0.9)
        await settle()

        assert store.get("C") is None
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_delete_unknown_job(self, store, transport):
        """Verify deleting an unknown job is a no-op."""
        orchestrator = UploadOrchestrator(store, transport)

        orchestrator.delete("missing")

        assert store.all_jobs() == []

    @pytest.mark.asyncio
    async def test_delete_only_cancels_matching_job(self, store):
        """Verify delete cancels only the matching upload."""
        transport = FakeTransport(default="hold")
        orchestrator = UploadOrchestrator(store, transport)

        orchestrator.submit(b"1", "first")
        orchestrator.submit(b"2", "second")
        orchestrator.delete("second")

        assert transport.calls[0].request.cancelled is False
        assert transport.calls[1].request.cancelled is True
        assert orchestrator.in_flight == {"first"}
        await orchestrator.close()


class TestInFlightInvariant:
    """At most one outstanding transport call per job id."""

    @pytest.mark.asyncio
    async def test_resubmit_supersedes_outstanding_call(self, store):
        """Verify resubmitting a job cancels its earlier call."""
        transport = FakeTransport(default="hold")
        orchestrator = UploadOrchestrator(store, transport)
        first_results = []
        second_results = []

        orchestrator.submit(b"v1", "A", on_done=first_results.append)
        orchestrator.submit(b"v2", "A", on_done=second_results.append)
        first, second = transport.calls

        assert first.request.cancelled is True
        assert len(orchestrator.registry) == 1

        first.succeed()
        await settle()

        assert first_results[0].success is False
        assert store.get("A").state == JobState.PENDING
        assert orchestrator.in_flight == {"A"}

        second.succeed()
        await settle()

        assert second_results[0].success is True
        assert store.get("A").state == JobState.COMPLETE
        assert store.payload("A") == b"v2"

    @pytest.mark.asyncio
    async def test_redrive_skips_job_in_flight(self, store):
        """Verify re-driving never starts a second call for a job."""
        transport = FakeTransport(default="hold")
        orchestrator = UploadOrchestrator(store, transport)

        orchestrator.submit(b"image", "A")

        assert orchestrator.upload_pending_jobs() is None
        assert len(transport.calls) == 1
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_redrive_picks_stale_processing_job(self, store, clock, transport):
        """Verify an abandoned processing job is re-driven."""
        store.enqueue("X", b"x")
        store.update_state("X", JobState.PROCESSING)
        clock.advance(121)
        orchestrator = UploadOrchestrator(store, transport)

        orchestrator.upload_pending_jobs()
        await settle()

        assert transport.job_ids == ["X"]
        assert store.get("X").state == JobState.COMPLETE

    @pytest.mark.asyncio
    async def test_redrive_with_empty_store_is_noop(self, store, transport):
        """Verify re-driving an empty store does nothing."""
        orchestrator = UploadOrchestrator(store, transport)

        assert orchestrator.upload_pending_jobs() is None
        assert transport.calls == []


class TestValidation:
    """Synchronous rejection of malformed submissions."""

    @pytest.mark.asyncio
    async def test_empty_id_rejected(self, store, transport):
        """Verify an empty job id raises ValidationError."""
        orchestrator = UploadOrchestrator(store, transport)

        with pytest.raises(ValidationError):
            orchestrator.submit(b"image", "")

        assert store.all_jobs() == []
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_non_bytes_payload_rejected(self, store, transport):
        """Verify a non-bytes payload is rejected."""
        orchestrator = UploadOrchestrator(store, transport)

        with pytest.raises(ValidationError):
            orchestrator.submit("text", "A")

        assert store.get("A") is None

    @pytest.mark.asyncio
    async def test_persistence_failure_reported(self, store, transport, monkeypatch):
        """Verify a failed enqueue is reported through on_done."""
        orchestrator = UploadOrchestrator(store, transport)
        monkeypatch.setattr(store, "enqueue", lambda job_id, payload: False)
        results = []

        handle = orchestrator.submit(b"image", "A", on_done=results.append)

        assert handle is None
        assert isinstance(results[0].error, PersistenceError)
        assert transport.calls == []


class TestLifecycle:
    """Start and close."""

    @pytest.mark.asyncio
    async def test_close_cancels_timers_and_uploads(self, store):
        """Verify close cancels retry timers and in-flight uploads."""
        transport = FakeTransport(script=["fail", "hold"])
        orchestrator = UploadOrchestrator(store, transport, retry_delay=0.05)

        orchestrator.submit(b"1", "A")
        await settle()
        orchestrator.submit(b"2", "B")
        assert orchestrator.pending_retries == 1

        await orchestrator.close()
        await asyncio.sleep(0.1)
        await settle()

        assert orchestrator.pending_retries == 0
        assert transport.calls[1].request.cancelled is True
        assert len(transport.calls) == 2
        assert transport.closed is True

    @pytest.mark.asyncio
    async def test_callbacks_after_close_are_ignored(self, store):
        """Verify transport callbacks after close change nothing."""
        transport = FakeTransport(default="hold")
        orchestrator = UploadOrchestrator(store, transport)

        orchestrator.submit(b"1", "A")
        await orchestrator.close()
        transport.calls[0].on_terminal(TransportResponse(data={"public_id": "A"}))
        await settle()

        assert store.get("A").state == JobState.PENDING

    @pytest.mark.asyncio
    async def test_submit_after_close_raises(self, store, transport):
        """Verify submit fails once closed."""
        orchestrator = UploadOrchestrator(store, transport)
        await orchestrator.close()

        with pytest.raises(RuntimeError):
            orchestrator.submit(b"1", "A")

    @pytest.mark.asyncio
    async def test_context_manager_redrives_on_start(self, store, transport):
        """Verify entering the context uploads pending jobs."""
        store.enqueue("queued", b"q")

        async with UploadOrchestrator(store, transport) as orchestrator:
            await settle()
            assert orchestrator.has_uploaded_all() is True

        assert transport.job_ids == ["queued"]
        assert transport.closed is True
