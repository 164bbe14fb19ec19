"""CLI entrypoint for content-tasks."""

from pathlib import Path

import rich_click as click

from content_tasks import __version__
from content_tasks.controllers import (
    TaskQueueCliController,
    TasksInspectCommand,
    TasksListCommand,
    TasksStatsCommand,
)
from content_tasks.taskqueue.models import TaskStatus

click.rich_click.USE_MARKDOWN = True
TASKS_CONTROLLER = TaskQueueCliController()

_STATE_FILE_HELP = "Task queue state file (defaults to CONTENT_TASKS_STATE_FILE)."


@click.group()
@click.version_option(version=__version__, prog_name="content-tasks")
def content_tasks() -> None:
    """Content backend background task tools."""


@content_tasks.group()
def tasks() -> None:
    """Inspect persisted task queue state."""


@tasks.command("stats")
@click.option("--state-file", type=click.Path(path_type=Path), default=None, help=_STATE_FILE_HELP)
def tasks_stats(state_file: Path | None) -> None:
    """Show task counts per status and persistence health."""

    _emit_lines(TASKS_CONTROLLER.stats(TasksStatsCommand(state_file=state_file)))


@tasks.command("list")
@click.option("--state-file", type=click.Path(path_type=Path), default=None, help=_STATE_FILE_HELP)
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus]),
    default=None,
    help="Only show tasks in this status.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=50,
    show_default=True,
    help="Maximum number of tasks to show, newest first.",
)
def tasks_list(state_file: Path | None, status: str | None, limit: int) -> None:
    """List persisted tasks."""

    _emit_lines(
        TASKS_CONTROLLER.list_tasks(
            TasksListCommand(state_file=state_file, status=status, limit=limit),
        ),
    )


@tasks.command("inspect")
@click.option("--state-file", type=click.Path(path_type=Path), default=None, help=_STATE_FILE_HELP)
@click.argument("task_id")
def tasks_inspect(state_file: Path | None, task_id: str) -> None:
    """Show one task record in full."""

    result = TASKS_CONTROLLER.inspect_task(
        TasksInspectCommand(state_file=state_file, task_id=task_id),
    )
    _emit_lines(result.lines)
    if not result.found:
        raise click.ClickException(f"Task not found: {task_id}")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    content_tasks()
