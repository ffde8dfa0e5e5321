"""CLI entrypoint for autofill-queue."""

import logging
from collections.abc import Callable

import rich_click as click

from autofill_queue import __version__
from autofill_queue.jobs.controllers import (
    JobEnqueueCommand,
    JobFailedCommand,
    JobInspectCommand,
    JobListCommand,
    JobPruneCommand,
    JobQueueCliController,
    JobRecoverCommand,
    JobStatsCommand,
    JobStatusCommand,
    JobWorkerCommand,
)
from autofill_queue.jobs.errors import JobQueueError

click.rich_click.USE_MARKDOWN = True
JOBS_CONTROLLER = JobQueueCliController()
STATUS_CHOICES = ["pending", "processing", "completed", "failed"]

db_url_option = click.option(
    "--db-url",
    default=None,
    help="Database URL (defaults to AUTOFILL_QUEUE_DATABASE_URL).",
)


@click.group()
@click.version_option(version=__version__, prog_name="autofill-queue")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def autofill_queue(log_level: str) -> None:
    """Form submission job queue CLI."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@autofill_queue.group()
def jobs() -> None:
    """Job queue commands."""


@jobs.command("enqueue")
@db_url_option
@click.option("--payload", required=True, help="Form payload as a JSON object.")
@click.option("--reference", default=None, help="Source reference, e.g. a captcha id.")
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1),
    default=None,
    help="Attempt cap (defaults to AUTOFILL_QUEUE_MAX_ATTEMPTS).",
)
def jobs_enqueue(
    db_url: str | None,
    payload: str,
    reference: str | None,
    max_attempts: int | None,
) -> None:
    """Queue a form submission."""

    _emit_lines(
        lambda: JOBS_CONTROLLER.enqueue(
            JobEnqueueCommand(
                db_url=db_url,
                payload=payload,
                reference=reference,
                max_attempts=max_attempts,
            ),
        ),
    )


@jobs.command("list")
@db_url_option
@click.option(
    "--status",
    type=click.Choice(STATUS_CHOICES, case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=100),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
@click.option(
    "--offset",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Jobs to skip, newest first.",
)
def jobs_list(db_url: str | None, status: str | None, limit: int, offset: int) -> None:
    """List jobs, newest first."""

    _emit_lines(
        lambda: JOBS_CONTROLLER.list_jobs(
            JobListCommand(db_url=db_url, status=status, limit=limit, offset=offset),
        ),
    )


@jobs.command("inspect")
@db_url_option
@click.option("--job-id", required=True, help="Job id.")
def jobs_inspect(db_url: str | None, job_id: str) -> None:
    """Inspect one job with its error logs and event history."""

    _emit_lines(
        lambda: JOBS_CONTROLLER.inspect_job(JobInspectCommand(db_url=db_url, job_id=job_id)),
    )


@jobs.command("status")
@db_url_option
@click.option("--reference", required=True, help="Source reference used at enqueue.")
def jobs_status(db_url: str | None, reference: str) -> None:
    """Show the latest job for a source reference."""

    _emit_lines(
        lambda: JOBS_CONTROLLER.job_status(JobStatusCommand(db_url=db_url, reference=reference)),
    )


@jobs.command("stats")
@db_url_option
def jobs_stats(db_url: str | None) -> None:
    """Show queue counts and success rate."""

    _emit_lines(lambda: JOBS_CONTROLLER.stats(JobStatsCommand(db_url=db_url)))


@jobs.command("failed")
@db_url_option
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs_failed(db_url: str | None, limit: int) -> None:
    """List permanently failed jobs, most recent first."""

    _emit_lines(lambda: JOBS_CONTROLLER.failed_jobs(JobFailedCommand(db_url=db_url, limit=limit)))


@jobs.command("worker")
@db_url_option
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one dispatch round or loop until idle.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed jobs in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive empty polls before the loop exits.",
)
@click.option(
    "--forever",
    is_flag=True,
    default=False,
    help="Keep polling in loop mode until SIGINT/SIGTERM.",
)
def jobs_worker(
    db_url: str | None,
    once: bool,
    max_jobs: int | None,
    max_idle_polls: int,
    forever: bool,
) -> None:
    """Run the job dispatcher."""

    _emit_lines(
        lambda: JOBS_CONTROLLER.run_worker(
            JobWorkerCommand(
                db_url=db_url,
                once=once,
                max_jobs=max_jobs,
                max_idle_polls=None if forever else max_idle_polls,
            ),
        ),
    )


@jobs.command("recover")
@db_url_option
@click.option(
    "--stale-minutes",
    type=click.IntRange(min=1),
    default=None,
    help="Staleness threshold (defaults to AUTOFILL_QUEUE_STALE_AFTER_SECONDS).",
)
@click.option(
    "--all",
    "all_processing",
    is_flag=True,
    default=False,
    help="Reset every processing job regardless of age. Stop all workers first.",
)
def jobs_recover(db_url: str | None, stale_minutes: int | None, all_processing: bool) -> None:
    """Return jobs stuck in processing to pending."""

    if all_processing and stale_minutes is not None:
        raise click.UsageError("--all and --stale-minutes are mutually exclusive.")
    _emit_lines(
        lambda: JOBS_CONTROLLER.recover(
            JobRecoverCommand(
                db_url=db_url,
                stale_minutes=stale_minutes,
                all_processing=all_processing,
            ),
        ),
    )


@jobs.command("prune")
@db_url_option
@click.option(
    "--days",
    type=click.IntRange(min=0),
    default=None,
    help="Retention window (defaults to AUTOFILL_QUEUE_COMPLETED_RETENTION_DAYS).",
)
@click.option("--dry-run", is_flag=True, default=False, help="Only count matching jobs.")
def jobs_prune(db_url: str | None, days: int | None, dry_run: bool) -> None:
    """Delete completed jobs past the retention window."""

    _emit_lines(
        lambda: JOBS_CONTROLLER.prune(JobPruneCommand(db_url=db_url, days=days, dry_run=dry_run)),
    )


def _emit_lines(produce: Callable[[], list[str]]) -> None:
    try:
        lines = produce()
    except (JobQueueError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    autofill_queue()
