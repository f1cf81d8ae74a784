"""CLI entrypoint for proposal-engine."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from proposal_engine import __version__
from proposal_engine.workflow.controllers import (
    ThreadHistoryCommand,
    ThreadInspectCommand,
    ThreadPruneCommand,
    ThreadsExpireCommand,
    ThreadsListCommand,
    WorkflowCliController,
    WorkflowContinueCommand,
    WorkflowEditCommand,
    WorkflowResolveStaleCommand,
    WorkflowResumeCommand,
    WorkflowStartCommand,
)
from proposal_engine.workflow.models import WorkflowError

click.rich_click.USE_MARKDOWN = True
WORKFLOW_CONTROLLER = WorkflowCliController()

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)
thread_id_option = click.option(
    "--thread-id",
    required=True,
    help="Thread id, for example proposal_42.",
)


@click.group()
@click.version_option(version=__version__, prog_name="proposal-engine")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for engine diagnostics.",
)
def proposal_engine(log_level: str) -> None:
    """Proposal workflow engine CLI."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@proposal_engine.group()
def workflow() -> None:
    """Run and steer proposal threads."""


@workflow.command("start")
@db_path_option
@click.option("--proposal-id", required=True, help="Logical proposal id.")
@click.option("--component", default=None, help="Thread id component prefix.")
@click.option("--suffix", default=None, help="Optional thread id suffix.")
@click.option(
    "--document-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="Source document (funding call) to load.",
)
@click.option(
    "--section",
    "sections",
    multiple=True,
    help="Required proposal section. Can be repeated; defaults to the dependency map order.",
)
def workflow_start(  # noqa: PLR0913
    db_path: Path | None,
    proposal_id: str,
    component: str | None,
    suffix: str | None,
    document_file: Path | None,
    sections: tuple[str, ...],
) -> None:
    """Start a new proposal thread and run it to its first review gate."""

    _run(
        lambda: WORKFLOW_CONTROLLER.start(
            WorkflowStartCommand(
                db_path=db_path,
                proposal_id=proposal_id,
                component=component,
                suffix=suffix,
                document_file=document_file,
                sections=sections,
            ),
        ),
    )


@workflow.command("resume")
@db_path_option
@thread_id_option
@click.option(
    "--action",
    required=True,
    help="Review decision: approve or revise (synonyms such as lgtm or modify are accepted).",
)
@click.option("--comments", default=None, help="Revision guidance for the generator.")
@click.option("--target", default=None, help="Artifact under review; defaults to the pending one.")
def workflow_resume(
    db_path: Path | None,
    thread_id: str,
    action: str,
    comments: str | None,
    target: str | None,
) -> None:
    """Apply review feedback to an interrupted thread and continue."""

    _run(
        lambda: WORKFLOW_CONTROLLER.resume(
            WorkflowResumeCommand(
                db_path=db_path,
                thread_id=thread_id,
                action=action,
                comments=comments,
                target=target,
            ),
        ),
    )


@workflow.command("continue")
@db_path_option
@thread_id_option
def workflow_continue(db_path: Path | None, thread_id: str) -> None:
    """Re-enter a thread at the pending steps of its latest checkpoint."""

    _run(
        lambda: WORKFLOW_CONTROLLER.continue_thread(
            WorkflowContinueCommand(db_path=db_path, thread_id=thread_id),
        ),
    )


@workflow.command("edit")
@db_path_option
@thread_id_option
@click.option("--artifact", required=True, help="Stage or section id to edit.")
@click.option(
    "--content-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    required=True,
    help="File with the replacement content.",
)
def workflow_edit(
    db_path: Path | None,
    thread_id: str,
    artifact: str,
    content_file: Path,
) -> None:
    """Replace an artifact's content and mark its dependents stale."""

    _run(
        lambda: WORKFLOW_CONTROLLER.edit(
            WorkflowEditCommand(
                db_path=db_path,
                thread_id=thread_id,
                artifact=artifact,
                content_file=content_file,
            ),
        ),
    )


@workflow.command("resolve-stale")
@db_path_option
@thread_id_option
@click.option("--artifact", required=True, help="Stale artifact id.")
@click.option(
    "--regenerate/--keep",
    required=True,
    help="Regenerate the artifact or keep its current version.",
)
def workflow_resolve_stale(
    db_path: Path | None,
    thread_id: str,
    artifact: str,
    regenerate: bool,
) -> None:
    """Resolve a stale artifact."""

    _run(
        lambda: WORKFLOW_CONTROLLER.resolve_stale(
            WorkflowResolveStaleCommand(
                db_path=db_path,
                thread_id=thread_id,
                artifact=artifact,
                regenerate=regenerate,
            ),
        ),
    )


@proposal_engine.group()
def threads() -> None:
    """Inspect and maintain checkpointed threads."""


@threads.command("list")
@db_path_option
@click.option("--component", default=None, help="Optional component filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max threads to print.",
)
def threads_list(db_path: Path | None, component: str | None, limit: int) -> None:
    """List threads by last activity."""

    _run(
        lambda: WORKFLOW_CONTROLLER.list_threads(
            ThreadsListCommand(db_path=db_path, component=component, limit=limit),
        ),
    )


@threads.command("inspect")
@db_path_option
@thread_id_option
def threads_inspect(db_path: Path | None, thread_id: str) -> None:
    """Show the latest state of one thread."""

    _run(
        lambda: WORKFLOW_CONTROLLER.inspect(
            ThreadInspectCommand(db_path=db_path, thread_id=thread_id),
        ),
    )


@threads.command("history")
@db_path_option
@thread_id_option
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=None,
    help="Max checkpoints to print.",
)
@click.option(
    "--ascending/--descending",
    default=False,
    show_default=True,
    help="Oldest first instead of newest first.",
)
def threads_history(
    db_path: Path | None,
    thread_id: str,
    limit: int | None,
    ascending: bool,
) -> None:
    """List checkpoints of one thread."""

    _run(
        lambda: WORKFLOW_CONTROLLER.history(
            ThreadHistoryCommand(
                db_path=db_path,
                thread_id=thread_id,
                limit=limit,
                ascending=ascending,
            ),
        ),
    )


@threads.command("delete")
@db_path_option
@thread_id_option
def threads_delete(db_path: Path | None, thread_id: str) -> None:
    """Delete a thread and all of its checkpoints."""

    _run(
        lambda: WORKFLOW_CONTROLLER.delete(
            ThreadInspectCommand(db_path=db_path, thread_id=thread_id),
        ),
    )


@threads.command("prune")
@db_path_option
@thread_id_option
@click.option(
    "--keep-last",
    type=click.IntRange(min=1),
    required=True,
    help="Number of newest checkpoints to keep.",
)
def threads_prune(db_path: Path | None, thread_id: str, keep_last: int) -> None:
    """Delete all but the newest checkpoints of a thread."""

    _run(
        lambda: WORKFLOW_CONTROLLER.prune(
            ThreadPruneCommand(db_path=db_path, thread_id=thread_id, keep_last=keep_last),
        ),
    )


@threads.command("expire")
@db_path_option
@click.option(
    "--idle-hours",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Idle time before a thread expires. Defaults to PROPOSAL_ENGINE_THREAD_IDLE_HOURS.",
)
@click.option("--component", default=None, help="Optional component filter.")
def threads_expire(db_path: Path | None, idle_hours: float | None, component: str | None) -> None:
    """Delete threads with no checkpoint written within the idle window."""

    _run(
        lambda: WORKFLOW_CONTROLLER.expire(
            ThreadsExpireCommand(db_path=db_path, idle_hours=idle_hours, component=component),
        ),
    )


def _run(operation: Callable[[], list[str]]) -> None:
    try:
        lines = operation()
    except (WorkflowError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    proposal_engine()
