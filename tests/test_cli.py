from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from proposal_engine.main import proposal_engine
from proposal_engine.workflow.models import Checkpoint
from proposal_engine.workflow.repository import CheckpointRepository

pytestmark = [
    allure.epic("Workflow Runtime"),
    allure.feature("CLI Ops"),
]


@pytest.fixture(autouse=True)
def _fast_retries(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PROPOSAL_ENGINE_RETRY_BASE_DELAY_MS", "1")
    monkeypatch.setenv("PROPOSAL_ENGINE_RETRY_MAX_DELAY_MS", "2")
    monkeypatch.delenv("PROPOSAL_ENGINE_REQUIRED_SECTIONS", raising=False)
    monkeypatch.delenv("PROPOSAL_ENGINE_BACKEND", raising=False)
    monkeypatch.delenv("PROPOSAL_ENGINE_THREAD_IDLE_HOURS", raising=False)


def _invoke(runner: CliRunner, *args: str):
    return runner.invoke(proposal_engine, list(args))


def _start(runner: CliRunner, db_path: Path, *extra: str):
    return _invoke(
        runner,
        "workflow",
        "start",
        "--db-path",
        str(db_path),
        "--proposal-id",
        "42",
        "--section",
        "problem_statement",
        *extra,
    )


def _approve(runner: CliRunner, db_path: Path, target: str | None = None):
    args = ["workflow", "resume", "--db-path", str(db_path), "--thread-id", "proposal_42"]
    args += ["--action", "approve"]
    if target:
        args += ["--target", target]
    return _invoke(runner, *args)


def test_workflow_start_resume_and_inspect(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"
    document = tmp_path / "call.txt"
    document.write_text("Funding call for rural clinics", encoding="utf-8")

    started = _start(runner, db_path, "--document-file", str(document))
    assert started.exit_code == 0, started.output
    assert "Thread started: thread_id=proposal_42 status=awaiting_review" in started.output
    assert "Steps: load_document, research" in started.output
    assert "Awaiting review: artifact=research score=1.0 passed=True" in started.output

    for stage in ("research", "solution"):
        resumed = _approve(runner, db_path, stage)
        assert resumed.exit_code == 0, resumed.output

    revised = _invoke(
        runner,
        "workflow",
        "resume",
        "--db-path",
        str(db_path),
        "--thread-id",
        "proposal_42",
        "--action",
        "request changes",
        "--comments",
        "cite the clinic survey",
    )
    assert revised.exit_code == 0, revised.output
    assert "Awaiting review: artifact=connections" in revised.output
    assert "Steps: connections\n" in revised.output

    _approve(runner, db_path)
    completed = _approve(runner, db_path)
    assert completed.exit_code == 0, completed.output
    assert "status=complete" in completed.output

    inspected = _invoke(
        runner,
        "threads",
        "inspect",
        "--db-path",
        str(db_path),
        "--thread-id",
        "proposal_42",
    )
    assert inspected.exit_code == 0, inspected.output
    assert "Status: complete" in inspected.output
    assert "Document: 42 (loaded)" in inspected.output
    assert "  problem_statement: approved" in inspected.output
    assert "  research: approved" in inspected.output


def test_edit_and_resolve_stale_from_cli(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"
    _start(runner, db_path)
    for _ in range(4):
        _approve(runner, db_path)

    replacement = tmp_path / "research.md"
    replacement.write_text("New research notes", encoding="utf-8")
    edited = _invoke(
        runner,
        "workflow",
        "edit",
        "--db-path",
        str(db_path),
        "--thread-id",
        "proposal_42",
        "--artifact",
        "research",
        "--content-file",
        str(replacement),
    )
    assert edited.exit_code == 0, edited.output
    assert "Stale artifacts: connections, problem_statement, solution" in edited.output

    kept = _invoke(
        runner,
        "workflow",
        "resolve-stale",
        "--db-path",
        str(db_path),
        "--thread-id",
        "proposal_42",
        "--artifact",
        "solution",
        "--keep",
    )
    assert kept.exit_code == 0, kept.output
    assert "Stale artifact resolved (keep)" in kept.output
    assert "Blocked sections: problem_statement" in kept.output
    assert "Stale artifacts: connections, problem_statement" in kept.output


def test_threads_list_history_prune_and_delete(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"
    _start(runner, db_path)

    listed = _invoke(runner, "threads", "list", "--db-path", str(db_path))
    assert listed.exit_code == 0, listed.output
    assert "Threads: 1" in listed.output
    assert "- proposal_42 component=proposal checkpoints=3" in listed.output

    history = _invoke(
        runner,
        "threads",
        "history",
        "--db-path",
        str(db_path),
        "--thread-id",
        "proposal_42",
        "--ascending",
    )
    assert history.exit_code == 0, history.output
    assert "Checkpoints: 3" in history.output
    assert "source=input" in history.output.splitlines()[1]

    pruned = _invoke(
        runner,
        "threads",
        "prune",
        "--db-path",
        str(db_path),
        "--thread-id",
        "proposal_42",
        "--keep-last",
        "1",
    )
    assert pruned.exit_code == 0, pruned.output
    assert "Thread pruned: proposal_42 deleted=2 kept_last=1" in pruned.output

    resumed = _approve(runner, db_path)
    assert resumed.exit_code == 0, resumed.output
    assert "Awaiting review: artifact=solution" in resumed.output

    deleted = _invoke(
        runner,
        "threads",
        "delete",
        "--db-path",
        str(db_path),
        "--thread-id",
        "proposal_42",
    )
    assert deleted.exit_code == 0, deleted.output
    assert "Thread deleted: proposal_42 checkpoints=3" in deleted.output

    empty = _invoke(runner, "threads", "list", "--db-path", str(db_path))
    assert "No threads found." in empty.output
    missing = _invoke(
        runner,
        "threads",
        "history",
        "--db-path",
        str(db_path),
        "--thread-id",
        "proposal_42",
    )
    assert "Thread not found: proposal_42" in missing.output


def test_threads_expire_removes_only_idle_threads(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"
    _start(runner, db_path)
    repository = CheckpointRepository(db_path)
    repository.put(
        "proposal_9",
        Checkpoint(
            thread_id="proposal_9",
            checkpoint_id="abandoned",
            values={},
            created_at=datetime(2020, 1, 1, tzinfo=UTC),
        ),
    )
    repository.close()

    expired = _invoke(
        runner,
        "threads",
        "expire",
        "--db-path",
        str(db_path),
        "--idle-hours",
        "1",
    )
    assert expired.exit_code == 0, expired.output
    assert "Threads expired: 1 idle_hours=1" in expired.output
    assert "- proposal_9" in expired.output

    listed = _invoke(runner, "threads", "list", "--db-path", str(db_path))
    assert "- proposal_42 " in listed.output
    assert "proposal_9" not in listed.output

    again = _invoke(runner, "threads", "expire", "--db-path", str(db_path))
    assert again.exit_code == 0, again.output
    assert "No threads idle for more than 24h." in again.output


def test_cli_reports_workflow_errors_as_click_failures(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"
    _start(runner, db_path)

    duplicate = _start(runner, db_path)
    assert duplicate.exit_code != 0
    assert "already exists" in duplicate.output

    unknown_action = _invoke(
        runner,
        "workflow",
        "resume",
        "--db-path",
        str(db_path),
        "--thread-id",
        "proposal_42",
        "--action",
        "maybe",
    )
    assert unknown_action.exit_code != 0
    assert "Unsupported feedback action" in unknown_action.output

    missing = _invoke(
        runner,
        "workflow",
        "continue",
        "--db-path",
        str(db_path),
        "--thread-id",
        "proposal_7",
    )
    assert missing.exit_code != 0
    assert "No checkpoints for thread proposal_7" in missing.output


def test_version_option() -> None:
    result = CliRunner().invoke(proposal_engine, ["--version"])
    assert result.exit_code == 0
    assert "proposal-engine" in result.output
