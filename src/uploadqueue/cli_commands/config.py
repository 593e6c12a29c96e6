"""Configuration CLI commands."""

import json

import typer

from uploadqueue.config import get_settings

config_app = typer.Typer(
    name="config",
    help="Configuration management - view settings.",
    no_args_is_help=True,
)


@config_app.command()
def show(
    output_json: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output in JSON format",
    ),
) -> None:
    """Show current configuration."""
    settings = get_settings()

    config_data = {
        "server_url": settings.server_url,
        "upload_timeout": settings.upload_timeout,
        "max_retries": settings.max_retries,
        "retry_delay": settings.retry_delay,
        "data_dir": str(settings.data_path),
        "namespace": settings.namespace,
        "log_level": settings.log_level,
        "log_file": str(settings.log_file) if settings.log_file else None,
    }

    if output_json:
        typer.echo(json.dumps(config_data, indent=2))
    else:
        typer.echo("")
        typer.echo("Upload Queue Configuration")
        typer.echo("--------------------------")
        typer.echo(f"Server URL: {settings.server_url}")
        typer.echo(f"Upload timeout: {settings.upload_timeout}s")
        typer.echo(f"Max retries: {settings.max_retries}")
        typer.echo(f"Retry delay: {settings.retry_delay}s")
        typer.echo(f"Data directory: {settings.data_path}")
        typer.echo(f"Namespace: {settings.namespace}")
        typer.echo(f"Log level: {settings.log_level}")
        typer.echo("")
        typer.echo("Set values using environment variables with UPLOADQUEUE_ prefix")
        typer.echo("Example: UPLOADQUEUE_RETRY_DELAY=30")
