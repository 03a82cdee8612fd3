"""Reclamation of aged tasks and finished progress records, on demand or on a timer."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import datetime, timedelta

from subagent_orchestrator.config import TASK_MAX_AGE_DAYS_RANGE, CleanupSettings
from subagent_orchestrator.orchestrator.activity_log import ActivityEvent, ActivityLog
from subagent_orchestrator.orchestrator.models import (
    CleanupReport,
    ErrorKind,
    OrchestratorError,
    SubTaskStatus,
    ZombieCandidate,
)
from subagent_orchestrator.orchestrator.progress import ProgressLedger
from subagent_orchestrator.orchestrator.task_store import TaskStore
from subagent_orchestrator.storage.common import utc_now

logger = logging.getLogger(__name__)


def validate_older_than_days(value: int) -> int:
    low, high = TASK_MAX_AGE_DAYS_RANGE
    if not low <= value <= high:
        raise OrchestratorError(
            ErrorKind.VALIDATION,
            f"older_than_days must be within {low}-{high}, got {value}",
            {"older_than_days": value},
        )
    return value


class ReclamationScheduler:
    """Runs the cleanup sequence manually or from an owned timer thread.

    Sequence: aged main tasks, terminal progress records, zombie scan. Each step
    is isolated so one failure does not skip the rest.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: TaskStore,
        ledger: ProgressLedger,
        activity: ActivityLog,
        settings: CleanupSettings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.activity = activity
        self.settings = settings
        self._clock = clock
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._run_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run(
        self,
        *,
        older_than_days: int | None = None,
        include_progress: bool = True,
        report_only: bool = False,
        triggered_by: str = "manual",
    ) -> CleanupReport:
        days = validate_older_than_days(
            self.settings.task_max_age_days if older_than_days is None else older_than_days,
        )
        started = time.monotonic()
        report = CleanupReport(
            report_only=report_only,
            triggered_by=triggered_by,
            older_than_days=days,
        )
        with self._run_lock:
            try:
                report.deleted_tasks = self.store.delete_old_tasks(
                    timedelta(days=days),
                    dry_run=report_only,
                )
            except Exception as error:
                logger.exception("Task reclamation step failed")
                report.errors.append(f"tasks: {error}")

            if include_progress:
                try:
                    report.progress = self.ledger.cleanup_completed_progress(dry_run=report_only)
                except Exception as error:
                    logger.exception("Progress cleanup step failed")
                    report.errors.append(f"progress: {error}")

            try:
                report.zombies = self.find_zombies()
            except Exception as error:
                logger.exception("Zombie scan failed")
                report.errors.append(f"zombies: {error}")

        report.duration_ms = int((time.monotonic() - started) * 1000)
        if not report_only:
            self.activity.record(
                ActivityEvent.CLEANUP_EXECUTED,
                deleted_tasks=report.deleted_tasks,
                cleaned_progress=report.progress.removed if report.progress else 0,
                zombie_count=len(report.zombies),
                zombies=[zombie.sub_task_id for zombie in report.zombies],
                errors=report.errors or None,
                triggered_by=triggered_by,
                duration_ms=report.duration_ms,
            )
        logger.info(
            "Cleanup (%s%s): deleted_tasks=%d progress_removed=%d zombies=%d errors=%d",
            triggered_by,
            ", report-only" if report_only else "",
            report.deleted_tasks,
            report.progress.removed if report.progress else 0,
            len(report.zombies),
            len(report.errors),
        )
        return report

    def find_zombies(self) -> list[ZombieCandidate]:
        """Running sub-tasks with no readable progress record past the grace period."""

        now = self._clock()
        grace = timedelta(minutes=self.settings.zombie_grace_minutes)
        zombies: list[ZombieCandidate] = []
        for main_task, sub_task in self.store.list_sub_tasks([SubTaskStatus.RUNNING]):
            if sub_task.started_at is None or now - sub_task.started_at <= grace:
                continue
            if self.ledger.read_progress(sub_task.sub_task_id) is not None:
                continue
            zombies.append(
                ZombieCandidate(
                    main_task_id=main_task.task_id,
                    sub_task_id=sub_task.sub_task_id,
                    child_session_id=sub_task.child_session_id,
                    elapsed_ms=int((now - sub_task.started_at).total_seconds() * 1000),
                ),
            )
        if zombies:
            logger.warning(
                "Detected %d running sub-tasks without progress: %s",
                len(zombies),
                ", ".join(zombie.sub_task_id for zombie in zombies),
            )
        return zombies

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop,
            daemon=True,
            name="subagent-cleanup",
        )
        self._thread.start()
        logger.info(
            "Cleanup timer started (interval=%.0fs, run_on_start=%s)",
            self.settings.interval_seconds,
            self.settings.run_on_start,
        )

    def stop(self, timeout: float = 15.0) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("Cleanup timer stopped")

    def _loop(self) -> None:
        if self.settings.run_on_start:
            self._tick()
        while not self._stop.wait(timeout=self.settings.interval_seconds):
            self._tick()

    def _tick(self) -> None:
        try:
            self.run(triggered_by="timer")
        except Exception:
            logger.exception("Scheduled cleanup failed")
