"""Use-case services for sub-task orchestration."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from types import TracebackType
from typing import Any

from subagent_orchestrator.config import Settings
from subagent_orchestrator.orchestrator.activity_log import ActivityEvent, ActivityLog
from subagent_orchestrator.orchestrator.cleanup import ReclamationScheduler
from subagent_orchestrator.orchestrator.gateway import (
    GatewayCapabilities,
    GatewayError,
    HistoryMessage,
    SessionGateway,
    SpawnRequest,
    build_gateway,
)
from subagent_orchestrator.orchestrator.models import (
    CleanupReport,
    ErrorKind,
    MainTaskStatus,
    MainTaskView,
    ModelConfig,
    OrchestratorError,
    Priority,
    ProgressReport,
    SubTaskStatus,
    SubTaskView,
    TimeoutReport,
)
from subagent_orchestrator.orchestrator.progress import (
    ProgressLedger,
    build_progress_instructions,
)
from subagent_orchestrator.orchestrator.reconcile import ProgressReconciler
from subagent_orchestrator.orchestrator.registry import ModelPreferenceNotes, ModelRegistry
from subagent_orchestrator.orchestrator.task_store import TaskStore
from subagent_orchestrator.orchestrator.timeouts import TimeoutDetector
from subagent_orchestrator.storage.common import utc_now

logger = logging.getLogger(__name__)

MAX_SUBTASKS = 5
HISTORY_LIMIT_RANGE = (1, 500)
SPAWN_TOOL_NAME = "sessions_spawn"
ROLE_PROMPT = (
    "You are an efficient AI assistant, please complete the task strictly according to "
    "instructions and report results upon completion."
)
PLAN_STEPS = (
    "Analyze task requirements",
    "Plan execution steps",
    "Execute task",
    "Verify results",
    "Report completion",
)


@dataclass(slots=True)
class OrchestrateRequest:
    """High-level command to split and dispatch one main task."""

    description: str
    priority: str = Priority.MEDIUM.value
    allowed_models: tuple[str, ...] | None = None
    subtask_count: int = 1
    difficulty: str = "medium"
    cost_preference: str = "medium"
    required_capabilities: tuple[str, ...] = ("reasoning",)


@dataclass(slots=True)
class SubTaskInstruction:
    """Manual spawn + bind instructions for hosts without a spawn capability."""

    sub_task_id: str
    task: str
    original_task: str
    suggested_model: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "sub_task_id": self.sub_task_id,
            "task": self.task,
            "original_task": self.original_task,
            "suggested_model": self.suggested_model,
            "spawn_command": {
                "tool": SPAWN_TOOL_NAME,
                "params": {"task": self.task, "model": self.suggested_model},
            },
            "bind_command": {
                "sub_task_id": self.sub_task_id,
                "session_id": "<session id returned by the spawn>",
            },
        }


@dataclass(slots=True)
class OrchestrateResult:
    task: MainTaskView
    model: ModelConfig
    progress_dir: Path
    spawned: dict[str, str] = field(default_factory=dict)
    spawn_failures: dict[str, str] = field(default_factory=dict)
    instructions: list[SubTaskInstruction] = field(default_factory=list)

    @property
    def manual(self) -> bool:
        return bool(self.instructions)


@dataclass(slots=True)
class TaskSnapshot:
    """Main task plus the current progress record of each sub-task."""

    task: MainTaskView
    progress: dict[str, ProgressReport | None] = field(default_factory=dict)


@dataclass(slots=True)
class AbortResult:
    main_task_id: str
    sub_task: SubTaskView
    already_terminal: bool


def plan_sub_task_description(description: str, index: int) -> str:
    return f'Execute part {index} of task "{description}"'


def plan_expected_outcome(index: int) -> str:
    return f"Execution result for part {index} of the task"


class OrchestratorService:
    """Coordinates the task store, model pool, ledger and session gateway."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: TaskStore,
        registry: ModelRegistry,
        preferences: ModelPreferenceNotes,
        ledger: ProgressLedger,
        activity: ActivityLog,
        gateway: SessionGateway,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.registry = registry
        self.preferences = preferences
        self.ledger = ledger
        self.activity = activity
        self.gateway = gateway
        self.settings = settings
        self._clock = clock
        self.reconciler = ProgressReconciler(
            store=store,
            ledger=ledger,
            activity=activity,
            clock=clock,
        )
        self.timeouts = TimeoutDetector(
            store=store,
            gateway=gateway,
            activity=activity,
            default_timeout_minutes=settings.timeouts.session_timeout_minutes,
            clock=clock,
        )
        self.scheduler = ReclamationScheduler(
            store=store,
            ledger=ledger,
            activity=activity,
            settings=settings.cleanup,
            clock=clock,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        gateway: SessionGateway | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> OrchestratorService:
        """Wire every component from settings and migrate the store."""

        settings.state_dir.mkdir(parents=True, exist_ok=True)
        store = TaskStore(
            settings.db_path,
            busy_timeout_ms=settings.sqlite_busy_timeout_ms,
            clock=clock,
        )
        store.init_schema()
        return cls(
            store=store,
            registry=ModelRegistry(settings.models_path),
            preferences=ModelPreferenceNotes(settings.preferences_path),
            ledger=ProgressLedger(settings.resolved_progress_dir),
            activity=ActivityLog(settings.resolved_logs_dir, clock=clock),
            gateway=gateway if gateway is not None else build_gateway(settings.gateway),
            settings=settings,
            clock=clock,
        )

    @property
    def capabilities(self) -> GatewayCapabilities:
        return self.gateway.capabilities

    def start(self) -> bool:
        """Start the cleanup timer when auto cleanup is enabled."""

        if not self.settings.cleanup.enable_auto_cleanup:
            logger.info("Auto cleanup is disabled; cleanup timer not started.")
            return False
        self.scheduler.start()
        return True

    def close(self) -> None:
        self.scheduler.stop()
        self.store.close()

    def __enter__(self) -> OrchestratorService:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()

    def orchestrate(self, request: OrchestrateRequest) -> OrchestrateResult:
        """Create a main task with uniform sub-tasks and dispatch them.

        Inputs and model choice are validated before anything is persisted.
        """

        description = request.description.strip()
        if not description:
            raise OrchestratorError(ErrorKind.VALIDATION, "Task description must not be empty.")
        if not 1 <= request.subtask_count <= MAX_SUBTASKS:
            raise OrchestratorError(
                ErrorKind.VALIDATION,
                f"subtask_count must be within 1-{MAX_SUBTASKS}, got {request.subtask_count}",
                {"subtask_count": request.subtask_count},
            )
        try:
            priority = Priority(request.priority)
        except ValueError as error:
            raise OrchestratorError(
                ErrorKind.VALIDATION,
                f"Unknown priority: {request.priority}",
                {"priority": request.priority},
            ) from error

        model = self.registry.select_model(
            request.difficulty,
            request.required_capabilities,
            request.cost_preference,
            list(request.allowed_models) if request.allowed_models else None,
        )
        if model is None:
            available = [item.model_id for item in self.registry.list()]
            raise OrchestratorError(
                ErrorKind.NO_CANDIDATE,
                "No model satisfies the requested constraints. Available models: "
                + (", ".join(available) or "none"),
                {
                    "available_models": available,
                    "allowed_models": list(request.allowed_models or ()),
                    "difficulty": request.difficulty,
                    "cost_preference": request.cost_preference,
                    "required_capabilities": list(request.required_capabilities),
                },
            )

        main_task = self.store.create_main_task(description, priority)
        sub_tasks: list[SubTaskView] = []
        for index in range(1, request.subtask_count + 1):
            sub_task = self.store.create_sub_task(
                main_task.task_id,
                plan_sub_task_description(description, index),
                ROLE_PROMPT,
                PLAN_STEPS,
                plan_expected_outcome(index),
                model_id=model.model_id,
            )
            if sub_task is None:
                raise OrchestratorError(
                    ErrorKind.NOT_FOUND,
                    f"Main task disappeared during dispatch: {main_task.task_id}",
                    {"task_id": main_task.task_id},
                )
            sub_tasks.append(sub_task)

        self.activity.record(
            ActivityEvent.TASK_DISPATCHED,
            task_id=main_task.task_id,
            priority=priority.value,
            assigned_model=model.model_id,
            message=description,
            subtask_count=len(sub_tasks),
        )

        progress_dir = self.ledger.progress_dir
        self.ledger.ensure_dir()
        result = OrchestrateResult(task=main_task, model=model, progress_dir=progress_dir)
        can_spawn = self.gateway.capabilities.spawn
        for sub_task in sub_tasks:
            task_text = sub_task.task_description + build_progress_instructions(
                sub_task.sub_task_id,
                main_task.task_id,
                len(sub_task.steps),
                progress_dir,
            )
            if can_spawn:
                self._spawn(main_task, sub_task, task_text, model, result)
            else:
                result.instructions.append(
                    SubTaskInstruction(
                        sub_task_id=sub_task.sub_task_id,
                        task=task_text,
                        original_task=description,
                        suggested_model=model.model_id,
                    ),
                )

        refreshed = self.store.get_task(main_task.task_id)
        if refreshed is not None:
            result.task = refreshed
        return result

    def _spawn(
        self,
        main_task: MainTaskView,
        sub_task: SubTaskView,
        task_text: str,
        model: ModelConfig,
        result: OrchestrateResult,
    ) -> None:
        try:
            session_id = self.gateway.spawn(
                SpawnRequest(
                    sub_task_id=sub_task.sub_task_id,
                    main_task_id=main_task.task_id,
                    task=task_text,
                    model=model.model_id,
                    role_prompt=sub_task.role_prompt,
                ),
            )
        except GatewayError as error:
            logger.warning("Spawn failed for sub-task %s: %s", sub_task.sub_task_id, error)
            self.store.update_sub_task_status(
                sub_task.sub_task_id,
                SubTaskStatus.FAILED,
                ended_at=self._clock(),
                error_log=f"Spawn failed: {error}",
            )
            self.activity.record(
                ActivityEvent.SUBAGENT_FAILED,
                task_id=main_task.task_id,
                sub_task_id=sub_task.sub_task_id,
                assigned_model=model.model_id,
                error=str(error),
            )
            result.spawn_failures[sub_task.sub_task_id] = str(error)
            return

        self.store.bind_session(sub_task.sub_task_id, session_id, model_id=model.model_id)
        self.activity.record(
            ActivityEvent.SUBAGENT_SPAWNED,
            task_id=main_task.task_id,
            sub_task_id=sub_task.sub_task_id,
            child_session_id=session_id,
            assigned_model=model.model_id,
            status=SubTaskStatus.RUNNING.value,
        )
        result.spawned[sub_task.sub_task_id] = session_id

    def status(
        self,
        task_id: str | None = None,
        session_id: str | None = None,
        status_filter: MainTaskStatus | str | None = None,
    ) -> list[TaskSnapshot]:
        """Reconcile against the ledger, then snapshot the requested tasks."""

        if task_id:
            task = self.store.get_task(task_id)
            if task is None:
                raise OrchestratorError(
                    ErrorKind.NOT_FOUND,
                    f"Task not found: {task_id}",
                    {"task_id": task_id},
                )
            self.reconciler.reconcile_main_task(task)
            tasks = [self.store.get_task(task_id) or task]
        elif session_id:
            pair = self.store.get_task_by_session_id(session_id)
            if pair is None:
                raise OrchestratorError(
                    ErrorKind.NOT_FOUND,
                    f"No task bound to session: {session_id}",
                    {"session_id": session_id},
                )
            main_task = pair[0]
            self.reconciler.reconcile_main_task(main_task)
            tasks = [self.store.get_task(main_task.task_id) or main_task]
        else:
            self.reconciler.reconcile()
            tasks = self.store.get_all_tasks(status=status_filter)

        return [
            TaskSnapshot(
                task=task,
                progress={
                    sub_task.sub_task_id: self.ledger.read_progress(sub_task.sub_task_id)
                    for sub_task in task.sub_tasks
                },
            )
            for task in tasks
        ]

    def bind_session(self, sub_task_id: str, session_id: str) -> SubTaskView:
        sub_task = self.store.bind_session(sub_task_id, session_id.strip())
        self.activity.record(
            ActivityEvent.SUBAGENT_BOUND,
            task_id=sub_task.main_task_id,
            sub_task_id=sub_task.sub_task_id,
            child_session_id=sub_task.child_session_id,
            assigned_model=sub_task.model_id,
            status=sub_task.status.value,
        )
        return sub_task

    def abort_session(self, session_id: str) -> AbortResult:
        """Kill a child session and mark its sub-task aborted.

        A sub-task already in a terminal state is reported as-is. A failed kill
        leaves the stored status untouched.
        """

        self._require_capability("kill")
        main_task, sub_task = self._resolve_session(session_id)
        self.reconciler.reconcile([(main_task, sub_task)])
        sub_task = self._reload_sub_task(sub_task)
        if sub_task.status.is_terminal:
            return AbortResult(
                main_task_id=main_task.task_id,
                sub_task=sub_task,
                already_terminal=True,
            )

        bound_session = sub_task.child_session_id or session_id
        try:
            self.gateway.kill(bound_session)
        except GatewayError as error:
            self.activity.record(
                ActivityEvent.ERROR,
                task_id=main_task.task_id,
                sub_task_id=sub_task.sub_task_id,
                child_session_id=bound_session,
                error=f"abort failed: {error}",
            )
            raise OrchestratorError(
                ErrorKind.GATEWAY_FAILED,
                f"Failed to abort session {bound_session}: {error}",
                {"session_id": bound_session, "status": sub_task.status.value},
            ) from error

        now = self._clock()
        updates: dict[str, Any] = {"ended_at": now}
        if sub_task.started_at is not None:
            updates["actual_duration_ms"] = max(
                int((now - sub_task.started_at).total_seconds() * 1000),
                0,
            )
        self.store.update_sub_task_status(sub_task.sub_task_id, SubTaskStatus.ABORTED, **updates)
        self.activity.record(
            ActivityEvent.SUBAGENT_ABORTED,
            task_id=main_task.task_id,
            sub_task_id=sub_task.sub_task_id,
            child_session_id=bound_session,
            status=SubTaskStatus.ABORTED.value,
        )
        return AbortResult(
            main_task_id=main_task.task_id,
            sub_task=self._reload_sub_task(sub_task),
            already_terminal=False,
        )

    def inject_message(self, session_id: str, message: str) -> SubTaskView:
        self._require_capability("send")
        if not message.strip():
            raise OrchestratorError(ErrorKind.VALIDATION, "Message must not be empty.")
        main_task, sub_task = self._resolve_session(session_id)
        self.reconciler.reconcile([(main_task, sub_task)])
        sub_task = self._reload_sub_task(sub_task)
        if sub_task.status.is_terminal:
            raise OrchestratorError(
                ErrorKind.NOT_RUNNING,
                f"Sub-task {sub_task.sub_task_id} is {sub_task.status.value}; "
                "messages can only be sent to live sessions.",
                {"sub_task_id": sub_task.sub_task_id, "status": sub_task.status.value},
            )

        bound_session = sub_task.child_session_id or session_id
        try:
            self.gateway.send(bound_session, message)
        except GatewayError as error:
            raise OrchestratorError(
                ErrorKind.GATEWAY_FAILED,
                f"Failed to send message to session {bound_session}: {error}",
                {"session_id": bound_session},
            ) from error
        self.activity.record(
            ActivityEvent.MESSAGE_INJECTED,
            task_id=main_task.task_id,
            sub_task_id=sub_task.sub_task_id,
            child_session_id=bound_session,
            message=message,
        )
        return sub_task

    def fetch_history(
        self,
        session_id: str,
        *,
        include_tools: bool = False,
        limit: int = 50,
    ) -> tuple[SubTaskView, list[HistoryMessage]]:
        self._require_capability("history")
        low, high = HISTORY_LIMIT_RANGE
        if not low <= limit <= high:
            raise OrchestratorError(
                ErrorKind.VALIDATION,
                f"History limit must be within {low}-{high}, got {limit}",
                {"limit": limit},
            )
        _, sub_task = self._resolve_session(session_id)
        bound_session = sub_task.child_session_id or session_id
        try:
            messages = self.gateway.history(
                bound_session,
                include_tools=include_tools,
                limit=limit,
            )
        except GatewayError as error:
            raise OrchestratorError(
                ErrorKind.GATEWAY_FAILED,
                f"Failed to fetch history for session {bound_session}: {error}",
                {"session_id": bound_session},
            ) from error
        return sub_task, messages

    def handle_session_end(
        self,
        session_id: str,
        duration_ms: int | None = None,
    ) -> SubTaskView | None:
        """Close out a finished child session; unknown sessions are ignored."""

        pair = self.store.get_task_by_session_id(session_id)
        if pair is None:
            logger.debug("Session end for unknown session %s ignored.", session_id)
            return None
        main_task, sub_task = pair
        self.reconciler.reconcile([pair])
        sub_task = self._reload_sub_task(sub_task)
        if not sub_task.status.is_terminal:
            now = self._clock()
            if duration_ms is None and sub_task.started_at is not None:
                duration_ms = max(int((now - sub_task.started_at).total_seconds() * 1000), 0)
            self.store.update_sub_task_status(
                sub_task.sub_task_id,
                SubTaskStatus.COMPLETED,
                ended_at=now,
                actual_duration_ms=duration_ms,
            )
            self.activity.record(
                ActivityEvent.SUBAGENT_COMPLETED,
                task_id=main_task.task_id,
                sub_task_id=sub_task.sub_task_id,
                child_session_id=sub_task.child_session_id,
                status=SubTaskStatus.COMPLETED.value,
                duration_ms=duration_ms,
            )
            sub_task = self._reload_sub_task(sub_task)

        try:
            self.ledger.remove_progress(sub_task.sub_task_id)
        except OSError:
            logger.warning(
                "Could not remove progress record for %s",
                sub_task.sub_task_id,
                exc_info=True,
            )
        return sub_task

    def check_timeouts(
        self,
        timeout_minutes: int | None = None,
        *,
        auto_abort: bool | None = None,
    ) -> TimeoutReport:
        return self.timeouts.check(
            timeout_minutes,
            auto_abort=self.settings.timeouts.auto_abort if auto_abort is None else auto_abort,
        )

    def run_cleanup(
        self,
        *,
        older_than_days: int | None = None,
        include_progress: bool = True,
        report_only: bool = False,
    ) -> CleanupReport:
        return self.scheduler.run(
            older_than_days=older_than_days,
            include_progress=include_progress,
            report_only=report_only,
            triggered_by="manual",
        )

    def list_models(self) -> list[ModelConfig]:
        return self.registry.list()

    def add_model(self, model_id: str, capabilities: dict[str, Any]) -> ModelConfig:
        return self.registry.add(model_id, capabilities)

    def remove_model(self, model_id: str) -> None:
        self.registry.remove(model_id)

    def replace_models(self, model_ids: Sequence[str]) -> list[ModelConfig]:
        return self.registry.replace_all(model_ids)

    def reset_models(self) -> list[ModelConfig]:
        return self.registry.reset()

    def set_model_preference(self, model_id: str, note: str) -> dict[str, str]:
        return self.preferences.set(model_id, note)

    def list_model_preferences(self) -> dict[str, str]:
        return self.preferences.list()

    def _require_capability(self, name: str) -> None:
        if not getattr(self.gateway.capabilities, name):
            raise OrchestratorError(
                ErrorKind.CAPABILITY_UNAVAILABLE,
                f"The host does not provide the session {name} capability.",
                {"capability": name},
            )

    def _resolve_session(self, session_id: str) -> tuple[MainTaskView, SubTaskView]:
        pair = self.store.get_task_by_session_id(session_id)
        if pair is None:
            raise OrchestratorError(
                ErrorKind.NOT_FOUND,
                f"No sub-task bound to session: {session_id}",
                {"session_id": session_id},
            )
        return pair

    def _reload_sub_task(self, sub_task: SubTaskView) -> SubTaskView:
        pair = self.store.find_sub_task(sub_task.sub_task_id)
        return pair[1] if pair is not None else sub_task
