"""Detect (and optionally abort) sub-tasks running past the session timeout."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from subagent_orchestrator.config import TIMEOUT_MINUTES_RANGE
from subagent_orchestrator.orchestrator.activity_log import ActivityEvent, ActivityLog
from subagent_orchestrator.orchestrator.gateway import GatewayError, SessionGateway
from subagent_orchestrator.orchestrator.models import (
    ErrorKind,
    OrchestratorError,
    SubTaskStatus,
    TimeoutEntry,
    TimeoutReport,
)
from subagent_orchestrator.orchestrator.task_store import TaskStore
from subagent_orchestrator.storage.common import utc_now

logger = logging.getLogger(__name__)


def validate_timeout_minutes(value: int) -> int:
    low, high = TIMEOUT_MINUTES_RANGE
    if not low <= value <= high:
        raise OrchestratorError(
            ErrorKind.VALIDATION,
            f"Timeout must be within {low}-{high} minutes, got {value}",
            {"timeout_minutes": value},
        )
    return value


class TimeoutDetector:
    def __init__(  # noqa: PLR0913
        self,
        *,
        store: TaskStore,
        gateway: SessionGateway,
        activity: ActivityLog,
        default_timeout_minutes: int = 120,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.activity = activity
        self.default_timeout_minutes = default_timeout_minutes
        self._clock = clock

    def check(
        self,
        timeout_minutes: int | None = None,
        *,
        auto_abort: bool = False,
    ) -> TimeoutReport:
        """Report running sub-tasks past the threshold.

        Report-only unless ``auto_abort``; aborting requires the kill capability.
        A kill failure leaves the sub-task untouched and is counted as failed.
        """

        minutes = validate_timeout_minutes(
            self.default_timeout_minutes if timeout_minutes is None else timeout_minutes,
        )
        if auto_abort and not self.gateway.capabilities.kill:
            raise OrchestratorError(
                ErrorKind.CAPABILITY_UNAVAILABLE,
                "Auto-abort requires the session kill capability.",
                {"capability": "kill"},
            )

        now = self._clock()
        report = TimeoutReport(timeout_minutes=minutes, auto_abort=auto_abort)
        for main_task, sub_task in self.store.get_timeout_subtasks(timedelta(minutes=minutes)):
            started_at = sub_task.started_at or now
            elapsed_ms = max(int((now - started_at).total_seconds() * 1000), 0)
            report.entries.append(
                TimeoutEntry(
                    main_task_id=main_task.task_id,
                    sub_task_id=sub_task.sub_task_id,
                    child_session_id=sub_task.child_session_id,
                    elapsed_ms=elapsed_ms,
                ),
            )
            if not auto_abort or sub_task.status.is_terminal:
                continue
            if not sub_task.child_session_id:
                logger.warning(
                    "Timed-out sub-task %s has no bound session; cannot abort.",
                    sub_task.sub_task_id,
                )
                report.failed.append(sub_task.sub_task_id)
                continue
            try:
                self.gateway.kill(sub_task.child_session_id)
            except GatewayError as error:
                logger.warning(
                    "Failed to abort timed-out session %s: %s",
                    sub_task.child_session_id,
                    error,
                )
                report.failed.append(sub_task.sub_task_id)
                continue

            self.store.update_sub_task_status(
                sub_task.sub_task_id,
                SubTaskStatus.ABORTED,
                ended_at=now,
                actual_duration_ms=elapsed_ms,
            )
            self.activity.record(
                ActivityEvent.SUBAGENT_ABORTED,
                task_id=main_task.task_id,
                sub_task_id=sub_task.sub_task_id,
                child_session_id=sub_task.child_session_id,
                status=SubTaskStatus.ABORTED.value,
                message=f"Timed out after {elapsed_ms // 60_000} minutes",
            )
            report.aborted.append(sub_task.sub_task_id)
        return report
