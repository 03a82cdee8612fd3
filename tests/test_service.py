from __future__ import annotations

from collections.abc import Iterator

import allure
import pytest

from subagent_orchestrator.config import CleanupSettings, Settings
from subagent_orchestrator.orchestrator.gateway import HistoryMessage, NullSessionGateway
from subagent_orchestrator.orchestrator.models import (
    ErrorKind,
    MainTaskStatus,
    OrchestratorError,
    ProgressReport,
    ProgressStatus,
    SubTaskStatus,
)
from subagent_orchestrator.orchestrator.services import (
    PLAN_STEPS,
    ROLE_PROMPT,
    OrchestrateRequest,
    OrchestratorService,
)

pytestmark = [
    allure.epic("Task Lifecycle"),
    allure.feature("Orchestrator Service"),
]

SONNET = "anthropic/claude-sonnet-4-5"


@pytest.fixture()
def manual_service(settings: Settings, clock) -> Iterator[OrchestratorService]:
    orchestrator = OrchestratorService.from_settings(
        settings,
        gateway=NullSessionGateway(),
        clock=clock,
    )
    try:
        yield orchestrator
    finally:
        orchestrator.close()


def _write_progress(service: OrchestratorService, sub_task, status: ProgressStatus) -> None:
    service.ledger.write_progress(
        ProgressReport(
            sub_task_id=sub_task.sub_task_id,
            main_task_id=sub_task.main_task_id,
            current_step=5,
            total_steps=5,
            status=status,
            message="all done",
            timestamp=0,
            percentage=100,
        ),
    )


def test_orchestrate_without_spawn_returns_manual_instructions(
    manual_service: OrchestratorService,
) -> None:
    result = manual_service.orchestrate(
        OrchestrateRequest(description="Summarize repo", subtask_count=3),
    )

    assert result.manual
    assert result.model.model_id == SONNET
    assert result.task.status is MainTaskStatus.PENDING
    assert [sub.status for sub in result.task.sub_tasks] == [SubTaskStatus.PENDING] * 3
    first = result.task.sub_tasks[0]
    assert first.task_description == 'Execute part 1 of task "Summarize repo"'
    assert first.role_prompt == ROLE_PROMPT
    assert first.steps == list(PLAN_STEPS)
    assert first.model_id == SONNET
    assert result.progress_dir.is_dir()

    instruction = result.instructions[0].to_dict()
    assert instruction["sub_task_id"] == first.sub_task_id
    assert instruction["spawn_command"]["tool"] == "sessions_spawn"
    assert instruction["spawn_command"]["params"]["model"] == SONNET
    assert str(result.progress_dir / f"{first.sub_task_id}.json") in instruction["task"]
    assert instruction["bind_command"]["sub_task_id"] == first.sub_task_id
    assert manual_service.activity.tail(1)[0]["event_type"] == "task_dispatched"


def test_double_bind_keeps_first_session(manual_service: OrchestratorService) -> None:
    result = manual_service.orchestrate(OrchestrateRequest(description="demo"))
    sub_task_id = result.task.sub_tasks[0].sub_task_id

    bound = manual_service.bind_session(sub_task_id, "s1")
    with pytest.raises(OrchestratorError) as error:
        manual_service.bind_session(sub_task_id, "s2")

    assert bound.status is SubTaskStatus.RUNNING
    assert error.value.kind is ErrorKind.ALREADY_BOUND
    snapshot = manual_service.status(task_id=result.task.task_id)[0]
    assert snapshot.task.sub_tasks[0].child_session_id == "s1"
    assert snapshot.task.status is MainTaskStatus.RUNNING


def test_status_reconciles_completed_progress_once(manual_service: OrchestratorService) -> None:
    result = manual_service.orchestrate(OrchestrateRequest(description="demo"))
    sub_task = manual_service.bind_session(result.task.sub_tasks[0].sub_task_id, "s1")
    _write_progress(manual_service, sub_task, ProgressStatus.COMPLETED)

    first = manual_service.status(task_id=result.task.task_id)[0]
    second = manual_service.status(task_id=result.task.task_id)[0]

    assert first.task.status is MainTaskStatus.COMPLETED
    assert first.progress[sub_task.sub_task_id] is not None
    assert second.task == first.task
    by_session = manual_service.status(session_id="s1")[0]
    assert by_session.task.task_id == result.task.task_id


@pytest.mark.parametrize("literal", ["NaN", "Infinity", "1e400"])
def test_status_survives_non_finite_progress(
    manual_service: OrchestratorService,
    literal: str,
) -> None:
    result = manual_service.orchestrate(OrchestrateRequest(description="demo"))
    sub_task = manual_service.bind_session(result.task.sub_tasks[0].sub_task_id, "s1")
    manual_service.ledger.progress_path(sub_task.sub_task_id).write_text(
        f'{{"sub_task_id": "{sub_task.sub_task_id}", "main_task_id": "{sub_task.main_task_id}", '
        f'"status": "completed", "current_step": {literal}, "total_steps": 5, '
        f'"timestamp": 0, "percentage": 100}}',
        "utf-8",
    )

    snapshot = manual_service.status(task_id=result.task.task_id)[0]

    assert snapshot.progress[sub_task.sub_task_id] is None
    assert snapshot.task.sub_tasks[0].status is SubTaskStatus.RUNNING
    assert snapshot.task.status is MainTaskStatus.RUNNING


def test_status_filters_and_unknown_ids(manual_service: OrchestratorService, clock) -> None:
    pending = manual_service.orchestrate(OrchestrateRequest(description="a")).task
    clock.advance(seconds=1)
    running = manual_service.orchestrate(OrchestrateRequest(description="b")).task
    manual_service.bind_session(running.sub_tasks[0].sub_task_id, "s1")

    snapshots = manual_service.status(status_filter="running")

    assert [snapshot.task.task_id for snapshot in snapshots] == [running.task_id]
    assert [s.task.task_id for s in manual_service.status()] == [pending.task_id, running.task_id]
    for kwargs in ({"task_id": "task-missing"}, {"session_id": "nobody"}):
        with pytest.raises(OrchestratorError) as error:
            manual_service.status(**kwargs)
        assert error.value.kind is ErrorKind.NOT_FOUND


@pytest.mark.parametrize(
    "request_kwargs",
    [
        {"description": "   "},
        {"description": "x", "subtask_count": 0},
        {"description": "x", "subtask_count": 6},
        {"description": "x", "priority": "urgent"},
        {"description": "x", "difficulty": "extreme"},
    ],
)
def test_invalid_orchestrate_requests_persist_nothing(
    manual_service: OrchestratorService,
    request_kwargs,
) -> None:
    with pytest.raises(OrchestratorError) as error:
        manual_service.orchestrate(OrchestrateRequest(**request_kwargs))

    assert error.value.kind is ErrorKind.VALIDATION
    assert manual_service.store.get_all_tasks() == []


def test_no_candidate_lists_available_models(manual_service: OrchestratorService) -> None:
    with pytest.raises(OrchestratorError) as error:
        manual_service.orchestrate(
            OrchestrateRequest(description="x", difficulty="complex", cost_preference="low"),
        )

    assert error.value.kind is ErrorKind.NO_CANDIDATE
    assert SONNET in error.value.details["available_models"]
    assert manual_service.store.get_all_tasks() == []


def test_orchestrate_spawns_and_binds_each_sub_task(service: OrchestratorService, gateway) -> None:
    result = service.orchestrate(OrchestrateRequest(description="demo", subtask_count=2))

    assert not result.manual
    assert list(result.spawned.values()) == ["session-1", "session-2"]
    assert [request.model for request in gateway.spawned] == [SONNET, SONNET]
    assert "Progress Report" in gateway.spawned[0].task
    assert gateway.spawned[0].role_prompt == ROLE_PROMPT
    assert result.task.status is MainTaskStatus.RUNNING
    assert [sub.child_session_id for sub in result.task.sub_tasks] == ["session-1", "session-2"]
    events = [entry["event_type"] for entry in service.activity.tail(10)]
    assert events == ["task_dispatched", "subagent_spawned", "subagent_spawned"]


def test_spawn_failure_marks_sub_task_failed(service: OrchestratorService, gateway) -> None:
    gateway.fail_spawn = True

    result = service.orchestrate(OrchestrateRequest(description="demo"))

    sub_task = result.task.sub_tasks[0]
    assert result.spawn_failures == {sub_task.sub_task_id: "spawn refused"}
    assert sub_task.status is SubTaskStatus.FAILED
    assert sub_task.error_log == "Spawn failed: spawn refused"
    assert result.task.status is MainTaskStatus.FAILED


def test_abort_session(service: OrchestratorService, gateway, clock) -> None:
    result = service.orchestrate(OrchestrateRequest(description="demo"))
    clock.advance(minutes=3)

    aborted = service.abort_session("session-1")
    again = service.abort_session("session-1")

    assert gateway.killed == ["session-1"]
    assert aborted.sub_task.status is SubTaskStatus.ABORTED
    assert aborted.sub_task.actual_duration_ms == 3 * 60_000
    assert not aborted.already_terminal
    assert again.already_terminal
    assert service.store.get_task(result.task.task_id).status is MainTaskStatus.ABORTED


def test_abort_failure_leaves_status(service: OrchestratorService, gateway) -> None:
    result = service.orchestrate(OrchestrateRequest(description="demo"))
    gateway.fail_kill = True

    with pytest.raises(OrchestratorError) as error:
        service.abort_session("session-1")

    assert error.value.kind is ErrorKind.GATEWAY_FAILED
    task = service.store.get_task(result.task.task_id)
    assert task.sub_tasks[0].status is SubTaskStatus.RUNNING
    assert service.activity.tail(1)[0]["event_type"] == "error"


def test_session_operations_need_capabilities(manual_service: OrchestratorService) -> None:
    for call in (
        lambda: manual_service.abort_session("s1"),
        lambda: manual_service.inject_message("s1", "hi"),
        lambda: manual_service.fetch_history("s1"),
    ):
        with pytest.raises(OrchestratorError) as error:
            call()
        assert error.value.kind is ErrorKind.CAPABILITY_UNAVAILABLE


def test_inject_message(service: OrchestratorService, gateway) -> None:
    service.orchestrate(OrchestrateRequest(description="demo"))

    service.inject_message("session-1", "focus on tests")

    assert gateway.sent == [("session-1", "focus on tests")]
    assert service.activity.tail(1)[0]["message"] == "focus on tests"
    with pytest.raises(OrchestratorError) as unknown:
        service.inject_message("nobody", "hi")
    assert unknown.value.kind is ErrorKind.NOT_FOUND

    service.abort_session("session-1")
    with pytest.raises(OrchestratorError) as finished:
        service.inject_message("session-1", "too late")
    assert finished.value.kind is ErrorKind.NOT_RUNNING
    assert len(gateway.sent) == 1


def test_fetch_history(service: OrchestratorService, gateway) -> None:
    service.orchestrate(OrchestrateRequest(description="demo"))
    gateway.messages = [
        HistoryMessage(timestamp=None, role="user", content=str(index)) for index in range(5)
    ]

    sub_task, messages = service.fetch_history("session-1", limit=2)

    assert sub_task.child_session_id == "session-1"
    assert [message.content for message in messages] == ["3", "4"]
    for limit in (0, 501):
        with pytest.raises(OrchestratorError) as error:
            service.fetch_history("session-1", limit=limit)
        assert error.value.kind is ErrorKind.VALIDATION
    gateway.fail_history = True
    with pytest.raises(OrchestratorError) as failed:
        service.fetch_history("session-1")
    assert failed.value.kind is ErrorKind.GATEWAY_FAILED


def test_session_end_completes_and_removes_progress(service: OrchestratorService, clock) -> None:
    result = service.orchestrate(OrchestrateRequest(description="demo"))
    sub_task = result.task.sub_tasks[0]
    _write_progress(service, sub_task, ProgressStatus.IN_PROGRESS)
    clock.advance(minutes=2)

    ended = service.handle_session_end("session-1")

    assert ended is not None
    assert ended.status is SubTaskStatus.COMPLETED
    assert ended.actual_duration_ms == 2 * 60_000
    assert service.ledger.read_progress(sub_task.sub_task_id) is None
    assert service.handle_session_end("unknown-session") is None


def test_session_end_keeps_failure_from_progress(service: OrchestratorService) -> None:
    result = service.orchestrate(OrchestrateRequest(description="demo"))
    _write_progress(service, result.task.sub_tasks[0], ProgressStatus.FAILED)

    ended = service.handle_session_end("session-1", duration_ms=1234)

    assert ended is not None
    assert ended.status is SubTaskStatus.FAILED
    assert ended.error_log == "all done"


def test_check_timeouts_uses_configured_defaults(service: OrchestratorService, clock) -> None:
    service.orchestrate(OrchestrateRequest(description="demo"))
    clock.advance(minutes=121)

    report = service.check_timeouts()

    assert report.timeout_minutes == 120
    assert not report.auto_abort
    assert len(report.entries) == 1


def test_start_respects_auto_cleanup_flag(state_dir, clock) -> None:
    disabled = Settings(state_dir=state_dir, cleanup=CleanupSettings(enable_auto_cleanup=False))
    off = OrchestratorService.from_settings(disabled, gateway=NullSessionGateway(), clock=clock)
    with off:
        assert off.start() is False
        assert not off.scheduler.running

    enabled = Settings(state_dir=state_dir, cleanup=CleanupSettings(run_on_start=False))
    on = OrchestratorService.from_settings(enabled, gateway=NullSessionGateway(), clock=clock)
    with on:
        assert on.start() is True
        assert on.scheduler.running
    assert not on.scheduler.running
