"""Fold progress ledger records into the task store."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from subagent_orchestrator.orchestrator.activity_log import ActivityEvent, ActivityLog
from subagent_orchestrator.orchestrator.models import (
    MainTaskView,
    OrchestratorError,
    ProgressReport,
    ProgressStatus,
    SubTaskStatus,
    SubTaskView,
)
from subagent_orchestrator.orchestrator.progress import ProgressLedger
from subagent_orchestrator.orchestrator.task_store import TaskStore, UpdateOutcome
from subagent_orchestrator.storage.common import utc_now

logger = logging.getLogger(__name__)

RECONCILABLE_STATUSES = (SubTaskStatus.PENDING, SubTaskStatus.RUNNING, SubTaskStatus.FROZEN)


@dataclass(slots=True)
class ReconcileSummary:
    examined: int = 0
    transitions: int = 0
    step_updates: int = 0
    errors: int = 0


def step_index_for(report: ProgressReport, sub_task: SubTaskView) -> int:
    """Map the 1-based reported step onto a bounded 0-based plan index."""

    last_index = max(len(sub_task.steps) - 1, 0)
    return min(max(report.current_step - 1, 0), last_index)


class ProgressReconciler:
    """Apply worker progress to non-terminal sub-tasks.

    Never writes to the ledger; running it twice over the same records changes
    nothing the second time.
    """

    def __init__(
        self,
        *,
        store: TaskStore,
        ledger: ProgressLedger,
        activity: ActivityLog,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.activity = activity
        self._clock = clock

    def reconcile(
        self,
        pairs: Iterable[tuple[MainTaskView, SubTaskView]] | None = None,
    ) -> ReconcileSummary:
        if pairs is None:
            pairs = self.store.list_sub_tasks(RECONCILABLE_STATUSES)
        summary = ReconcileSummary()
        for main_task, sub_task in pairs:
            if sub_task.status not in RECONCILABLE_STATUSES:
                continue
            summary.examined += 1
            try:
                outcome = self.reconcile_sub_task(main_task, sub_task)
            except (OrchestratorError, SQLAlchemyError, OSError):
                summary.errors += 1
                logger.exception("Failed to reconcile sub-task %s", sub_task.sub_task_id)
                continue
            if outcome == "transition":
                summary.transitions += 1
            elif outcome == "step":
                summary.step_updates += 1
        return summary

    def reconcile_main_task(self, main_task: MainTaskView) -> ReconcileSummary:
        return self.reconcile((main_task, sub_task) for sub_task in main_task.sub_tasks)

    def reconcile_sub_task(self, main_task: MainTaskView, sub_task: SubTaskView) -> str | None:
        """Reconcile one sub-task; returns ``"transition"``, ``"step"`` or ``None``."""

        report = self.ledger.read_progress(sub_task.sub_task_id)
        if report is None:
            return None
        now = self._clock()

        if report.status is ProgressStatus.COMPLETED:
            updates: dict[str, object] = {"ended_at": now}
            if sub_task.started_at is not None:
                updates["actual_duration_ms"] = _elapsed_ms(sub_task.started_at, now)
            outcome = self.store.apply_sub_task_status(
                sub_task.sub_task_id,
                SubTaskStatus.COMPLETED,
                **updates,
            )
            if outcome is not UpdateOutcome.APPLIED:
                return None
            self.activity.record(
                ActivityEvent.SUBAGENT_COMPLETED,
                task_id=main_task.task_id,
                sub_task_id=sub_task.sub_task_id,
                child_session_id=sub_task.child_session_id,
                status=SubTaskStatus.COMPLETED.value,
            )
            return "transition"

        if report.status is ProgressStatus.FAILED:
            outcome = self.store.apply_sub_task_status(
                sub_task.sub_task_id,
                SubTaskStatus.FAILED,
                ended_at=now,
                error_log=report.message,
            )
            if outcome is not UpdateOutcome.APPLIED:
                return None
            self.activity.record(
                ActivityEvent.SUBAGENT_FAILED,
                task_id=main_task.task_id,
                sub_task_id=sub_task.sub_task_id,
                child_session_id=sub_task.child_session_id,
                status=SubTaskStatus.FAILED.value,
                error=report.message,
            )
            return "transition"

        if report.status is not ProgressStatus.IN_PROGRESS:
            return None

        step_index = step_index_for(report, sub_task)
        if sub_task.status is SubTaskStatus.PENDING:
            updates = {"current_step_index": step_index}
            if sub_task.started_at is None:
                updates["started_at"] = now
            outcome = self.store.apply_sub_task_status(
                sub_task.sub_task_id,
                SubTaskStatus.RUNNING,
                **updates,
            )
            if outcome is not UpdateOutcome.APPLIED:
                return None
            self.activity.record(
                ActivityEvent.SUBAGENT_RUNNING,
                task_id=main_task.task_id,
                sub_task_id=sub_task.sub_task_id,
                child_session_id=sub_task.child_session_id,
                status=SubTaskStatus.RUNNING.value,
            )
            return "transition"

        if step_index != sub_task.current_step_index:
            self.store.update_sub_task_status(
                sub_task.sub_task_id,
                sub_task.status,
                current_step_index=step_index,
            )
            return "step"
        return None


def _elapsed_ms(started_at: datetime, now: datetime) -> int:
    return max(int((now - started_at).total_seconds() * 1000), 0)
