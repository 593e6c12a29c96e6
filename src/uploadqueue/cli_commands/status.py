"""Status command for the uploadqueue CLI."""

import asyncio
import json

import typer

from uploadqueue.config import get_settings
from uploadqueue.sync import HttpTransport, JobStore


async def _check_server(server_url: str) -> bool:
    async with HttpTransport(server_url) as transport:
        return await transport.check_server()


def status_command(
    check: bool = typer.Option(
        False,
        "--check",
        "-c",
        help="Also check whether the upload server is reachable",
    ),
    output_json: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output in JSON format",
    ),
) -> None:
    """Show queue status.

    Displays job counts per state and whether everything has been uploaded.
    """
    settings = get_settings()
    store = JobStore(settings.namespace, root=settings.data_path)
    stats = store.get_stats()

    status_data = {
        "namespace": settings.namespace,
        "path": str(store.path),
        "all_uploaded": store.has_all_completed(),
        "queue": stats,
    }
    if check:
        status_data["server_reachable"] = asyncio.run(_check_server(settings.server_url))

    if output_json:
        typer.echo(json.dumps(status_data))
        return

    typer.echo("")
    typer.echo("Upload Queue Status")
    typer.echo("-------------------")
    typer.echo(f"Namespace: {settings.namespace} ({store.path})")
    typer.echo(f"Pending: {stats['pending']}")
    typer.echo(f"Processing: {stats['processing']}")
    typer.echo(f"Complete: {stats['complete']}")
    if check:
        reachable = "yes" if status_data["server_reachable"] else "no"
        typer.echo(f"Server reachable: {reachable}")
    typer.echo("")

    if not status_data["all_uploaded"]:
        typer.echo("Upload pending jobs with: uploadqueue run")
