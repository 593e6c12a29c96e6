"""uploadqueue CLI - command-line interface for the upload queue."""

import typer

from uploadqueue import __version__
from uploadqueue.cli_commands import (
    config_app,
    delete,
    list_jobs,
    run,
    status_command,
    submit,
)
from uploadqueue.config import get_settings
from uploadqueue.logging import setup_logging

app = typer.Typer(
    name="uploadqueue",
    help="Durable upload queue - deliver files to a remote sink, even when offline.",
    no_args_is_help=True,
)

# Register subcommands
app.add_typer(config_app, name="config")


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"uploadqueue {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """Durable upload queue."""
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_file, queue_id=settings.namespace)


app.command(name="submit")(submit)
app.command(name="delete")(delete)
app.command(name="list")(list_jobs)
app.command(name="run")(run)
app.command(name="status")(status_command)


if __name__ == "__main__":
    app()
