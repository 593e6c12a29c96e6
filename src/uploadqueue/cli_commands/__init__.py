"""CLI command modules for uploadqueue."""

from uploadqueue.cli_commands.config import config_app
from uploadqueue.cli_commands.jobs import delete, list_jobs, run, submit
from uploadqueue.cli_commands.status import status_command

__all__ = ["config_app", "delete", "list_jobs", "run", "status_command", "submit"]
