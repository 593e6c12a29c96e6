"""Job management CLI commands: submit, delete, list and run."""

import asyncio
import json
import logging
import signal
from pathlib import Path

import typer

from uploadqueue.config import Settings, get_settings
from uploadqueue.engine import UploadOrchestrator
from uploadqueue.errors import ValidationError
from uploadqueue.sync import HttpTransport, JobState, JobStore, UploadResult

logger = logging.getLogger(__name__)


def _output(data: dict | list, as_json: bool, human_message: str) -> None:
    """Output data as JSON or human-readable format."""
    if as_json:
        typer.echo(json.dumps(data))
    else:
        typer.echo(human_message)


def _open_store(settings: Settings) -> JobStore:
    return JobStore(settings.namespace, root=settings.data_path)


def _build_orchestrator(settings: Settings, store: JobStore) -> UploadOrchestrator:
    transport = HttpTransport(
        server_url=settings.server_url,
        max_retries=settings.max_retries,
        timeout=settings.upload_timeout,
    )
    return UploadOrchestrator(store, transport, retry_delay=settings.retry_delay)


def _result_dict(result: UploadResult) -> dict:
    return {
        "job_id": result.job_id,
        "success": result.success,
        "remote_id": result.remote_id,
        "remote_url": result.remote_url,
        "version": result.version,
        "error": str(result.error) if result.error else None,
    }


def submit(
    file: Path = typer.Argument(
        ...,
        exists=True,
        dir_okay=False,
        readable=True,
        help="File whose bytes should be uploaded",
    ),
    job_id: str = typer.Option(
        None,
        "--id",
        "-i",
        help="Job id (default: the file name)",
    ),
    output_json: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output in JSON format",
    ),
) -> None:
    """Queue a file and upload it now.

    If the upload fails the job stays queued and is retried by 'uploadqueue run'.
    """
    settings = get_settings()
    job_id = job_id or file.name
    payload = file.read_bytes()

    async def _submit() -> UploadResult:
        store = _open_store(settings)
        done: asyncio.Future[UploadResult] = asyncio.get_running_loop().create_future()

        def on_done(result: UploadResult) -> None:
            if not done.done():
                done.set_result(result)

        orchestrator = _build_orchestrator(settings, store)
        try:
            orchestrator.submit(payload, job_id, on_done=on_done)
            return await done
        finally:
            await orchestrator.close()

    try:
        result = asyncio.run(_submit())
    except ValidationError as e:
        _output({"status": "error", "message": str(e)}, output_json, f"Invalid job: {e}")
        raise typer.Exit(1)

    if result.success:
        _output(
            _result_dict(result),
            output_json,
            f"Uploaded {job_id} -> {result.remote_url or result.remote_id}",
        )
    else:
        _output(
            _result_dict(result),
            output_json,
            f"Upload of {job_id} failed: {result.error}. The job stays queued.",
        )
        raise typer.Exit(1)


def delete(
    job_id: str = typer.Argument(..., help="Job id to delete"),
    keep_payload: bool = typer.Option(
        False,
        "--keep-payload",
        help="Keep the stored payload on disk",
    ),
    output_json: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output in JSON format",
    ),
) -> None:
    """Remove a job (and by default its payload) from the queue."""
    store = _open_store(get_settings())
    existed = store.get(job_id) is not None
    store.remove(job_id, delete_payload=not keep_payload)

    _output(
        {"status": "deleted" if existed else "not_found", "job_id": job_id},
        output_json,
        f"Deleted {job_id}" if existed else f"No job named {job_id}",
    )


def list_jobs(
    state: JobState = typer.Option(
        None,
        "--state",
        "-s",
        help="Only show jobs in this state",
    ),
    output_json: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output in JSON format",
    ),
) -> None:
    """List queued jobs, oldest first."""
    store = _open_store(get_settings())
    jobs = [job for job in store.all_jobs() if state is None or job.state == state]

    if output_json:
        typer.echo(json.dumps([job.to_dict() for job in jobs]))
        return

    if not jobs:
        typer.echo("Queue is empty.")
        return

    for job in jobs:
        typer.echo(
            f"{job.id:<36} {job.state.value:<10} {job.enqueued_at.isoformat()}"
        )


def run(
    timeout: float = typer.Option(
        None,
        "--timeout",
        "-t",
        help="Give up after this many seconds (default: run until drained)",
    ),
    output_json: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output in JSON format",
    ),
) -> None:
    """Upload pending jobs until the queue is drained.

    Failed uploads are retried after the configured retry delay.
    Press Ctrl+C to stop; unfinished jobs stay queued.
    """
    settings = get_settings()

    async def _drain() -> bool:
        store = _open_store(settings)
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGTERM, stop.set)
        except (NotImplementedError, RuntimeError):
            pass

        deadline = loop.time() + timeout if timeout else None
        async with _build_orchestrator(settings, store) as orchestrator:
            while not stop.is_set() and not orchestrator.has_uploaded_all():
                if deadline is not None and loop.time() >= deadline:
                    break
                if not orchestrator.in_flight and not orchestrator.pending_retries:
                    orchestrator.upload_pending_jobs()
                    if not orchestrator.in_flight and not orchestrator.pending_retries:
                        # Unfinished jobs remain but none can be uploaded
                        logger.warning(
                            "No uploadable jobs left, stopping: stats=%s",
                            store.get_stats(),
                        )
                        break
                await asyncio.sleep(0.5)
            return orchestrator.has_uploaded_all()

    try:
        drained = asyncio.run(_drain())
    except KeyboardInterrupt:
        drained = False

    stats = _open_store(settings).get_stats()
    _output(
        {"status": "drained" if drained else "incomplete", **stats},
        output_json,
        "All jobs uploaded."
        if drained
        else f"Stopped with {stats['pending'] + stats['processing']} jobs left.",
    )
    if not drained:
        raise typer.Exit(1)
