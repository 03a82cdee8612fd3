from __future__ import annotations

import allure

from subagent_orchestrator.orchestrator.activity_log import ActivityLog
from subagent_orchestrator.orchestrator.models import (
    MainTaskStatus,
    ProgressReport,
    ProgressStatus,
    SubTaskStatus,
)
from subagent_orchestrator.orchestrator.progress import ProgressLedger
from subagent_orchestrator.orchestrator.reconcile import ProgressReconciler
from subagent_orchestrator.orchestrator.task_store import TaskStore

pytestmark = [
    allure.epic("Task Lifecycle"),
    allure.feature("Progress Reconciliation"),
]

STEPS = ("one", "two", "three", "four", "five")


def _write(
    ledger: ProgressLedger,
    sub_task_id: str,
    main_task_id: str,
    status: ProgressStatus,
    *,
    step: int = 1,
    message: str = "",
) -> None:
    ledger.write_progress(
        ProgressReport(
            sub_task_id=sub_task_id,
            main_task_id=main_task_id,
            current_step=step,
            total_steps=len(STEPS),
            status=status,
            message=message,
            timestamp=0,
            percentage=step * 20,
        ),
    )


def _reconciler(store, ledger, activity, clock) -> ProgressReconciler:
    return ProgressReconciler(store=store, ledger=ledger, activity=activity, clock=clock)


def _sub(store: TaskStore, sub_task_id: str):
    pair = store.find_sub_task(sub_task_id)
    assert pair is not None
    return pair[1]


def test_completed_record_completes_running_sub_task_once(
    store: TaskStore,
    ledger: ProgressLedger,
    activity: ActivityLog,
    clock,
) -> None:
    main_task = store.create_main_task("demo")
    sub_task = store.create_sub_task(main_task.task_id, "part", "role", STEPS, "out")
    store.bind_session(sub_task.sub_task_id, "s1")
    _write(ledger, sub_task.sub_task_id, main_task.task_id, ProgressStatus.COMPLETED, step=5)
    clock.advance(minutes=4)
    reconciler = _reconciler(store, ledger, activity, clock)

    first = reconciler.reconcile()
    completed = _sub(store, sub_task.sub_task_id)
    clock.advance(minutes=1)
    second = reconciler.reconcile()

    assert first.transitions == 1
    assert second.examined == 0
    assert completed.status is SubTaskStatus.COMPLETED
    assert completed.ended_at == clock.now.replace(minute=4)
    assert completed.actual_duration_ms == 4 * 60_000
    assert _sub(store, sub_task.sub_task_id) == completed
    assert store.get_task(main_task.task_id).status is MainTaskStatus.COMPLETED
    assert ledger.read_progress(sub_task.sub_task_id) is not None
    events = [entry["event_type"] for entry in activity.tail(10)]
    assert events == ["subagent_completed"]


def test_failed_record_copies_message_into_error_log(
    store: TaskStore,
    ledger: ProgressLedger,
    activity: ActivityLog,
    clock,
) -> None:
    main_task = store.create_main_task("demo")
    sub_task = store.create_sub_task(main_task.task_id, "part", "role", STEPS, "out")
    store.bind_session(sub_task.sub_task_id, "s1")
    _write(
        ledger,
        sub_task.sub_task_id,
        main_task.task_id,
        ProgressStatus.FAILED,
        step=2,
        message="disk full",
    )

    _reconciler(store, ledger, activity, clock).reconcile()

    failed = _sub(store, sub_task.sub_task_id)
    assert failed.status is SubTaskStatus.FAILED
    assert failed.error_log == "disk full"
    assert failed.ended_at == clock()
    assert store.get_task(main_task.task_id).error_summary == "disk full"


def test_in_progress_record_starts_pending_and_tracks_step(
    store: TaskStore,
    ledger: ProgressLedger,
    activity: ActivityLog,
    clock,
) -> None:
    main_task = store.create_main_task("demo")
    sub_task = store.create_sub_task(main_task.task_id, "part", "role", STEPS, "out")
    reconciler = _reconciler(store, ledger, activity, clock)
    _write(ledger, sub_task.sub_task_id, main_task.task_id, ProgressStatus.IN_PROGRESS, step=2)

    started = reconciler.reconcile()
    running = _sub(store, sub_task.sub_task_id)
    assert started.transitions == 1
    assert running.status is SubTaskStatus.RUNNING
    assert running.started_at == clock()
    assert running.current_step_index == 1

    clock.advance(minutes=2)
    _write(ledger, sub_task.sub_task_id, main_task.task_id, ProgressStatus.IN_PROGRESS, step=99)
    stepped = reconciler.reconcile()
    tracked = _sub(store, sub_task.sub_task_id)
    assert stepped.step_updates == 1
    assert tracked.current_step_index == len(STEPS) - 1
    assert tracked.started_at == running.started_at

    assert reconciler.reconcile().step_updates == 0


def test_aborted_record_and_terminal_sub_tasks_are_ignored(
    store: TaskStore,
    ledger: ProgressLedger,
    activity: ActivityLog,
    clock,
) -> None:
    main_task = store.create_main_task("demo")
    live = store.create_sub_task(main_task.task_id, "part", "role", STEPS, "out")
    done = store.create_sub_task(main_task.task_id, "part", "role", STEPS, "out")
    store.bind_session(live.sub_task_id, "s1")
    store.update_sub_task_status(done.sub_task_id, "aborted")
    _write(ledger, live.sub_task_id, main_task.task_id, ProgressStatus.ABORTED)
    _write(ledger, done.sub_task_id, main_task.task_id, ProgressStatus.COMPLETED)

    summary = _reconciler(store, ledger, activity, clock).reconcile()

    assert summary.transitions == 0
    assert _sub(store, live.sub_task_id).status is SubTaskStatus.RUNNING
    assert _sub(store, done.sub_task_id).status is SubTaskStatus.ABORTED


def test_one_bad_sub_task_does_not_stop_the_rest(
    store: TaskStore,
    ledger: ProgressLedger,
    activity: ActivityLog,
    clock,
) -> None:
    main_task = store.create_main_task("demo")
    first = store.create_sub_task(main_task.task_id, "part", "role", STEPS, "out")
    second = store.create_sub_task(main_task.task_id, "part", "role", STEPS, "out")
    _write(ledger, first.sub_task_id, main_task.task_id, ProgressStatus.COMPLETED)
    _write(ledger, second.sub_task_id, main_task.task_id, ProgressStatus.COMPLETED)
    broken = store.find_sub_task(first.sub_task_id)
    assert broken is not None
    stale_main, stale_first = broken
    stale_first.sub_task_id = "bad/../id"

    summary = _reconciler(store, ledger, activity, clock).reconcile(
        [(stale_main, stale_first), (stale_main, _sub(store, second.sub_task_id))],
    )

    assert summary.errors == 1
    assert summary.transitions == 1
    assert _sub(store, second.sub_task_id).status is SubTaskStatus.COMPLETED


def test_stale_view_of_finished_sub_task_records_nothing(
    store: TaskStore,
    ledger: ProgressLedger,
    activity: ActivityLog,
    clock,
) -> None:
    main_task = store.create_main_task("demo")
    sub_task = store.create_sub_task(main_task.task_id, "part", "role", STEPS, "out")
    store.bind_session(sub_task.sub_task_id, "s1")
    stale_pairs = store.list_sub_tasks([SubTaskStatus.RUNNING])
    store.update_sub_task_status(sub_task.sub_task_id, SubTaskStatus.ABORTED, ended_at=clock())
    _write(ledger, sub_task.sub_task_id, main_task.task_id, ProgressStatus.COMPLETED, step=5)

    summary = _reconciler(store, ledger, activity, clock).reconcile(stale_pairs)

    assert summary.examined == 1
    assert summary.transitions == 0
    assert _sub(store, sub_task.sub_task_id).status is SubTaskStatus.ABORTED
    assert activity.tail(10) == []
