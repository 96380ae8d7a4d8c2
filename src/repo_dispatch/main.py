"""CLI entrypoint for repo-dispatch."""

from pathlib import Path

import rich_click as click

from repo_dispatch import __version__
from repo_dispatch.actions.base import ActionConfigError, UnknownActionError
from repo_dispatch.controllers import (
    CleanupJobsCommand,
    EnqueueCommand,
    InspectJobCommand,
    ListJobsCommand,
    RepoDispatchCliController,
    RunCommand,
    StatsCommand,
    WorkdirCheckCommand,
)
from repo_dispatch.queue.models import JobStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = RepoDispatchCliController()


@click.group()
@click.version_option(version=__version__, prog_name="repo-dispatch")
def repo_dispatch() -> None:
    """Durable job scheduler for repository event actions."""


@repo_dispatch.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--dry-run/--no-dry-run",
    default=None,
    help="Log what actions would run instead of running them. Overrides REPO_DISPATCH_DRY_RUN.",
)
def run(db_path: Path | None, dry_run: bool | None) -> None:
    """Run the scheduler until SIGINT/SIGTERM."""

    try:
        lines = CONTROLLER.run(RunCommand(db_path=db_path, dry_run=dry_run))
    except (ActionConfigError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@repo_dispatch.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--action", "action_name", required=True, help="Configured action name.")
@click.option(
    "--event",
    "event_json",
    default=None,
    help="Event payload as a JSON object.",
)
@click.option(
    "--event-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="Read the event payload from a JSON file.",
)
def enqueue(
    db_path: Path | None,
    action_name: str,
    event_json: str | None,
    event_file: Path | None,
) -> None:
    """Queue an action for an event."""

    if (event_json is None) == (event_file is None):
        raise click.UsageError("Pass exactly one of --event or --event-file.")
    payload = event_json if event_json is not None else event_file.read_text("utf-8")
    try:
        lines = CONTROLLER.enqueue(
            EnqueueCommand(db_path=db_path, action_name=action_name, event_json=payload),
        )
    except (UnknownActionError, ActionConfigError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@repo_dispatch.command("jobs")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent jobs, newest first."""

    _emit_lines(CONTROLLER.list_jobs(ListJobsCommand(db_path=db_path, status=status, limit=limit)))


@repo_dispatch.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", type=int, required=True, help="Job id.")
def inspect(db_path: Path | None, job_id: int) -> None:
    """Inspect one job with its state history."""

    _emit_lines(CONTROLLER.inspect_job(InspectJobCommand(db_path=db_path, job_id=job_id)))


@repo_dispatch.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def stats(db_path: Path | None) -> None:
    """Show job counts per status."""

    _emit_lines(CONTROLLER.stats(StatsCommand(db_path=db_path)))


@repo_dispatch.command("cleanup-jobs")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--older-than-days",
    type=click.IntRange(min=0),
    default=None,
    help="Defaults to REPO_DISPATCH_QUEUE_JOB_RETENTION_DAYS.",
)
def cleanup_jobs(db_path: Path | None, older_than_days: int | None) -> None:
    """Delete completed and failed jobs that finished before the cutoff."""

    _emit_lines(
        CONTROLLER.cleanup_jobs(
            CleanupJobsCommand(db_path=db_path, older_than_days=older_than_days),
        ),
    )


@repo_dispatch.command("workdir-check")
@click.option(
    "--cleanup/--no-cleanup",
    default=False,
    show_default=True,
    help="Evict old directories if usage is over the threshold.",
)
def workdir_check(cleanup: bool) -> None:
    """Report work directory usage, optionally enforcing the quota once."""

    _emit_lines(CONTROLLER.workdir_check(WorkdirCheckCommand(cleanup=cleanup)))


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    repo_dispatch()
