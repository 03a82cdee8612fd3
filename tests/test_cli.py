from __future__ import annotations

import json
from pathlib import Path

import allure
from click.testing import CliRunner, Result

from subagent_orchestrator.main import cli

pytestmark = [
    allure.epic("Operator CLI"),
    allure.feature("Commands"),
]


def _invoke(runner: CliRunner, state_dir: Path, group: str, command: str, *args: str) -> Result:
    return runner.invoke(cli, [group, command, "--state-dir", str(state_dir), *args])


def test_manual_dispatch_bind_progress_and_status(tmp_path: Path) -> None:
    runner = CliRunner()
    state_dir = tmp_path / "state"

    dispatched = _invoke(
        runner,
        state_dir,
        "tasks",
        "orchestrate",
        "--description",
        "Summarize repo",
        "--subtask-count",
        "2",
        "--format",
        "json",
    )
    assert dispatched.exit_code == 0, dispatched.output
    payload = json.loads(dispatched.output)
    assert payload["mode"] == "manual"
    assert payload["model"] == "anthropic/claude-sonnet-4-5"
    assert payload["status"] == "pending"
    first, second = payload["sub_task_ids"]
    assert payload["instructions"][0]["bind_command"]["sub_task_id"] == first

    bound = _invoke(runner, state_dir, "tasks", "bind", "--sub-task-id", first, "--session-id", "s1")
    assert bound.exit_code == 0
    assert f"Session bound: sub_task_id={first} session=s1 status=running" in bound.output

    rebound = _invoke(
        runner,
        state_dir,
        "tasks",
        "bind",
        "--sub-task-id",
        first,
        "--session-id",
        "s2",
    )
    assert rebound.exit_code == 1
    assert "Error [already_bound]" in rebound.output

    reported = _invoke(
        runner,
        state_dir,
        "progress",
        "report",
        "--sub-task-id",
        first,
        "--main-task-id",
        payload["task_id"],
        "--step",
        "5",
        "--total-steps",
        "5",
        "--status",
        "completed",
        "--message",
        "done",
    )
    assert reported.exit_code == 0
    assert "step=5/5 status=completed" in reported.output

    shown = _invoke(runner, state_dir, "progress", "show", "--sub-task-id", first)
    assert f"{first}: completed step 5/5 (100%) - done" in shown.output

    status = _invoke(runner, state_dir, "tasks", "status", "--task-id", payload["task_id"])
    assert status.exit_code == 0
    assert f"Task {payload['task_id']}: status=running" in status.output
    assert "progress=50% (1/2)" in status.output
    assert f"  - {second}: pending" in status.output

    as_json = _invoke(runner, state_dir, "tasks", "status", "--session-id", "s1", "--format", "json")
    task = json.loads(as_json.output)["tasks"][0]
    assert task["sub_tasks"][0]["status"] == "completed"
    assert task["sub_tasks"][0]["progress"]["message"] == "done"

    activity = _invoke(runner, state_dir, "maintenance", "activity")
    assert "task_dispatched" in activity.output
    assert "subagent_completed" in activity.output


def test_session_commands_without_gateway(tmp_path: Path) -> None:
    runner = CliRunner()
    state_dir = tmp_path / "state"

    aborted = _invoke(runner, state_dir, "tasks", "abort", "--session-id", "s1")
    assert aborted.exit_code == 1
    assert "Error [capability_unavailable]" in aborted.output

    ended = _invoke(runner, state_dir, "tasks", "session-end", "--session-id", "ghost")
    assert ended.exit_code == 0
    assert "Session ghost is not tracked; ignored." in ended.output

    missing = _invoke(runner, state_dir, "tasks", "status", "--task-id", "task-missing")
    assert missing.exit_code == 1
    assert "Error [not_found]: Task not found: task-missing" in missing.output

    empty = _invoke(runner, state_dir, "tasks", "status")
    assert empty.exit_code == 0
    assert "No tasks found." in empty.output


def test_model_commands(tmp_path: Path) -> None:
    runner = CliRunner()
    state_dir = tmp_path / "state"

    listed = _invoke(runner, state_dir, "models", "list")
    assert "Models (4):" in listed.output

    added = _invoke(
        runner,
        state_dir,
        "models",
        "add",
        "--model-id",
        "local-llm",
        "--speed",
        "fast",
        "--cost",
        "very_low",
        "--context-length",
        "short",
        "--reasoning",
        "basic",
        "--extra",
        "vision=true",
    )
    assert added.exit_code == 0, added.output
    assert "Model saved: local-llm" in added.output

    invalid = _invoke(
        runner,
        state_dir,
        "models",
        "add",
        "--model-id",
        "broken",
        "--speed",
        "warp",
        "--cost",
        "low",
        "--context-length",
        "short",
        "--reasoning",
        "basic",
    )
    assert invalid.exit_code == 1
    assert "Error [validation]" in invalid.output

    preferred = _invoke(
        runner,
        state_dir,
        "models",
        "prefer",
        "--model-id",
        "local-llm",
        "--note",
        "offline only",
    )
    assert preferred.exit_code == 0
    assert "note='offline only'" in _invoke(runner, state_dir, "models", "list").output

    removed = _invoke(runner, state_dir, "models", "remove", "--model-id", "local-llm")
    assert removed.exit_code == 0
    missing = _invoke(runner, state_dir, "models", "remove", "--model-id", "local-llm")
    assert missing.exit_code == 1
    assert "Error [not_found]" in missing.output

    replaced = _invoke(
        runner,
        state_dir,
        "models",
        "replace",
        "--model-id",
        "a",
        "--model-id",
        "b",
    )
    assert "Model pool replaced (2): a, b" in replaced.output
    reset = _invoke(runner, state_dir, "models", "reset")
    assert "Model pool reset to 4 defaults." in reset.output


def test_maintenance_commands(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("SUBAGENT_ORCH_CLEANUP_ON_START", "false")
    runner = CliRunner()
    state_dir = tmp_path / "state"

    cleanup = _invoke(runner, state_dir, "maintenance", "cleanup", "--report-only")
    assert cleanup.exit_code == 0
    assert "Would delete tasks older than 7 days: 0" in cleanup.output

    cleanup_json = _invoke(
        runner,
        state_dir,
        "maintenance",
        "cleanup",
        "--older-than-days",
        "3",
        "--format",
        "json",
    )
    report = json.loads(cleanup_json.output)
    assert report["older_than_days"] == 3
    assert report["triggered_by"] == "manual"

    out_of_range = _invoke(runner, state_dir, "maintenance", "cleanup", "--older-than-days", "0")
    assert out_of_range.exit_code == 1
    assert "Error [validation]" in out_of_range.output

    timeouts = _invoke(runner, state_dir, "maintenance", "timeouts")
    assert "No sub-tasks running longer than 120 minutes." in timeouts.output

    too_short = _invoke(runner, state_dir, "maintenance", "timeouts", "--timeout-minutes", "3")
    assert too_short.exit_code == 1

    served = _invoke(runner, state_dir, "maintenance", "serve", "--run-seconds", "0")
    assert served.exit_code == 0
    assert "Cleanup timer stopped" in served.output

    activity = _invoke(runner, state_dir, "maintenance", "activity", "--limit", "5")
    assert "cleanup_executed" in activity.output


def test_invalid_configuration_is_reported(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("SUBAGENT_ORCH_TASK_MAX_AGE_DAYS", "900")

    result = _invoke(CliRunner(), tmp_path / "state", "models", "list")

    assert result.exit_code == 1
    assert "Error [validation]: Invalid configuration" in result.output


def test_serve_reports_disabled_auto_cleanup(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("SUBAGENT_ORCH_AUTO_CLEANUP", "false")
    runner = CliRunner()
    state_dir = tmp_path / "state"

    served = _invoke(runner, state_dir, "maintenance", "serve", "--run-seconds", "0")

    assert served.exit_code == 0
    assert "Auto cleanup is disabled" in served.output
    assert "Cleanup timer stopped" not in served.output
    activity = _invoke(runner, state_dir, "maintenance", "activity")
    assert "cleanup_executed" not in activity.output
