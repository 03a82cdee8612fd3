"""Controllers for orchestrator CLI commands."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from subagent_orchestrator.config import Settings
from subagent_orchestrator.orchestrator.activity_log import ActivityLog
from subagent_orchestrator.orchestrator.gateway import SessionGateway
from subagent_orchestrator.orchestrator.models import (
    CleanupReport,
    ErrorKind,
    OrchestratorError,
    ProgressReport,
    ProgressStatus,
    SubTaskStatus,
    SubTaskView,
    TimeoutReport,
)
from subagent_orchestrator.orchestrator.progress import ProgressLedger
from subagent_orchestrator.orchestrator.registry import format_model_line
from subagent_orchestrator.orchestrator.services import (
    OrchestrateRequest,
    OrchestrateResult,
    OrchestratorService,
    TaskSnapshot,
)
from subagent_orchestrator.storage.common import to_epoch_ms, utc_now

logger = logging.getLogger(__name__)

MESSAGE_PREVIEW_CHARS = 50


@dataclass(slots=True)
class OrchestrateCommand:
    """CLI input for task decomposition and dispatch."""

    state_dir: Path | None
    description: str
    priority: str = "medium"
    allowed_models: tuple[str, ...] = ()
    subtask_count: int = 1
    difficulty: str = "medium"
    cost_preference: str = "medium"
    required_capabilities: tuple[str, ...] = ("reasoning",)
    output_format: str = "table"


@dataclass(slots=True)
class StatusCommand:
    """CLI input for status queries."""

    state_dir: Path | None
    task_id: str | None = None
    session_id: str | None = None
    status_filter: str | None = None
    output_format: str = "table"


@dataclass(slots=True)
class BindCommand:
    state_dir: Path | None
    sub_task_id: str
    session_id: str


@dataclass(slots=True)
class SessionCommand:
    """CLI input for operations addressed by child session id."""

    state_dir: Path | None
    session_id: str


@dataclass(slots=True)
class InjectCommand:
    state_dir: Path | None
    session_id: str
    message: str


@dataclass(slots=True)
class HistoryCommand:
    state_dir: Path | None
    session_id: str
    include_tools: bool = False
    limit: int = 50


@dataclass(slots=True)
class SessionEndCommand:
    state_dir: Path | None
    session_id: str
    duration_ms: int | None = None


@dataclass(slots=True)
class ProgressReportCommand:
    """CLI input used by workers to write their progress record."""

    state_dir: Path | None
    sub_task_id: str
    main_task_id: str
    step: int
    total_steps: int
    status: str
    message: str = ""
    percentage: float | None = None


@dataclass(slots=True)
class ProgressShowCommand:
    state_dir: Path | None
    sub_task_id: str | None = None


@dataclass(slots=True)
class ModelsCommand:
    state_dir: Path | None


@dataclass(slots=True)
class ModelAddCommand:
    state_dir: Path | None
    model_id: str
    speed: str
    cost: str
    context_length: str
    reasoning: str
    extra: tuple[str, ...] = ()


@dataclass(slots=True)
class ModelRemoveCommand:
    state_dir: Path | None
    model_id: str


@dataclass(slots=True)
class ModelReplaceCommand:
    state_dir: Path | None
    model_ids: tuple[str, ...]


@dataclass(slots=True)
class ModelPreferCommand:
    state_dir: Path | None
    model_id: str
    note: str


@dataclass(slots=True)
class TimeoutsCommand:
    """CLI input for timeout detection."""

    state_dir: Path | None
    timeout_minutes: int | None = None
    auto_abort: bool | None = None
    output_format: str = "table"


@dataclass(slots=True)
class CleanupCommand:
    """CLI input for on-demand reclamation."""

    state_dir: Path | None
    older_than_days: int | None = None
    include_progress: bool = True
    report_only: bool = False
    output_format: str = "table"


@dataclass(slots=True)
class ServeCommand:
    state_dir: Path | None
    run_seconds: float | None = None


@dataclass(slots=True)
class ActivityCommand:
    state_dir: Path | None
    limit: int = 20


@dataclass(slots=True)
class CommandResult:
    """Rendered command output plus failure details for the CLI exit code."""

    lines: list[str] = field(default_factory=list)
    success: bool = True
    error: OrchestratorError | None = None


class OrchestratorCliController:
    """Coordinates orchestration, progress, model and maintenance CLI operations."""

    def __init__(
        self,
        *,
        gateway_factory: Callable[[Settings], SessionGateway] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._gateway_factory = gateway_factory
        self._clock = clock

    def orchestrate(self, command: OrchestrateCommand) -> CommandResult:
        def _run(service: OrchestratorService) -> list[str]:
            result = service.orchestrate(
                OrchestrateRequest(
                    description=command.description,
                    priority=command.priority,
                    allowed_models=command.allowed_models or None,
                    subtask_count=command.subtask_count,
                    difficulty=command.difficulty,
                    cost_preference=command.cost_preference,
                    required_capabilities=command.required_capabilities,
                ),
            )
            if command.output_format == "json":
                return [_dump_json(_orchestrate_payload(result))]
            return _orchestrate_lines(result)

        return self._execute(command.state_dir, _run, output_format=command.output_format)

    def status(self, command: StatusCommand) -> CommandResult:
        def _run(service: OrchestratorService) -> list[str]:
            snapshots = service.status(
                task_id=command.task_id,
                session_id=command.session_id,
                status_filter=command.status_filter,
            )
            if command.output_format == "json":
                return [_dump_json({"tasks": [_snapshot_payload(item) for item in snapshots]})]
            if not snapshots:
                return ["No tasks found."]
            lines: list[str] = []
            for snapshot in snapshots:
                if lines:
                    lines.append("")
                lines.extend(_snapshot_lines(snapshot))
            return lines

        return self._execute(command.state_dir, _run, output_format=command.output_format)

    def bind(self, command: BindCommand) -> CommandResult:
        def _run(service: OrchestratorService) -> list[str]:
            sub_task = service.bind_session(command.sub_task_id, command.session_id)
            return [
                "Session bound: "
                f"sub_task_id={sub_task.sub_task_id} session={sub_task.child_session_id} "
                f"status={sub_task.status.value}",
            ]

        return self._execute(command.state_dir, _run)

    def abort(self, command: SessionCommand) -> CommandResult:
        def _run(service: OrchestratorService) -> list[str]:
            result = service.abort_session(command.session_id)
            if result.already_terminal:
                return [
                    f"Sub-task {result.sub_task.sub_task_id} already "
                    f"{result.sub_task.status.value}; nothing to abort.",
                ]
            return [
                "Session aborted: "
                f"sub_task_id={result.sub_task.sub_task_id} "
                f"session={result.sub_task.child_session_id} "
                f"status={result.sub_task.status.value}",
            ]

        return self._execute(command.state_dir, _run)

    def inject(self, command: InjectCommand) -> CommandResult:
        def _run(service: OrchestratorService) -> list[str]:
            sub_task = service.inject_message(command.session_id, command.message)
            return [
                f"Message sent to session {sub_task.child_session_id} "
                f"(sub_task_id={sub_task.sub_task_id}).",
            ]

        return self._execute(command.state_dir, _run)

    def history(self, command: HistoryCommand) -> CommandResult:
        def _run(service: OrchestratorService) -> list[str]:
            sub_task, messages = service.fetch_history(
                command.session_id,
                include_tools=command.include_tools,
                limit=command.limit,
            )
            lines = [
                f"History for session {sub_task.child_session_id} "
                f"(sub_task_id={sub_task.sub_task_id}, messages={len(messages)}):",
            ]
            for message in messages:
                stamp = f"[{message.timestamp}] " if message.timestamp else ""
                lines.append(f"{stamp}{message.role}: {message.content}")
            return lines

        return self._execute(command.state_dir, _run)

    def session_end(self, command: SessionEndCommand) -> CommandResult:
        def _run(service: OrchestratorService) -> list[str]:
            sub_task = service.handle_session_end(command.session_id, command.duration_ms)
            if sub_task is None:
                return [f"Session {command.session_id} is not tracked; ignored."]
            return [
                "Session ended: "
                f"sub_task_id={sub_task.sub_task_id} status={sub_task.status.value} "
                f"duration_ms={sub_task.actual_duration_ms}",
            ]

        return self._execute(command.state_dir, _run)

    def progress_report(self, command: ProgressReportCommand) -> CommandResult:
        try:
            settings = _load_settings(command.state_dir)
            status = _parse_progress_status(command.status)
            if command.total_steps < 1 or not 0 <= command.step <= command.total_steps:
                raise OrchestratorError(
                    ErrorKind.VALIDATION,
                    "step must be within 0..total_steps and total_steps must be >= 1",
                    {"step": command.step, "total_steps": command.total_steps},
                )
            percentage = (
                command.percentage
                if command.percentage is not None
                else round(command.step / command.total_steps * 100)
            )
            report = ProgressReport(
                sub_task_id=command.sub_task_id,
                main_task_id=command.main_task_id,
                current_step=command.step,
                total_steps=command.total_steps,
                status=status,
                message=command.message,
                timestamp=to_epoch_ms(self._clock()),
                percentage=float(percentage),
            )
            path = ProgressLedger(settings.resolved_progress_dir).write_progress(report)
        except OrchestratorError as error:
            return _error_result(error)
        return CommandResult(
            lines=[
                f"Progress recorded: sub_task_id={report.sub_task_id} "
                f"step={report.current_step}/{report.total_steps} status={report.status.value} "
                f"path={path}",
            ],
        )

    def progress_show(self, command: ProgressShowCommand) -> CommandResult:
        try:
            settings = _load_settings(command.state_dir)
            ledger = ProgressLedger(settings.resolved_progress_dir)
            if command.sub_task_id:
                report = ledger.read_progress(command.sub_task_id)
                if report is None:
                    raise OrchestratorError(
                        ErrorKind.NOT_FOUND,
                        f"No readable progress record for {command.sub_task_id}",
                        {"sub_task_id": command.sub_task_id},
                    )
                reports = [report]
            else:
                reports = ledger.read_all_progress()
        except OrchestratorError as error:
            return _error_result(error)
        if not reports:
            return CommandResult(lines=["No progress records."])
        return CommandResult(lines=[_progress_line(report) for report in reports])

    def list_models(self, command: ModelsCommand) -> CommandResult:
        def _run(service: OrchestratorService) -> list[str]:
            models = service.list_models()
            notes = service.list_model_preferences()
            lines = [f"Models ({len(models)}):"]
            for model in models:
                line = f"- {format_model_line(model)}"
                if model.model_id in notes:
                    line += f" note={notes[model.model_id]!r}"
                lines.append(line)
            return lines

        return self._execute(command.state_dir, _run)

    def add_model(self, command: ModelAddCommand) -> CommandResult:
        def _run(service: OrchestratorService) -> list[str]:
            capabilities: dict[str, Any] = _parse_extra(command.extra)
            capabilities.update(
                {
                    "speed": command.speed,
                    "cost": command.cost,
                    "context_length": command.context_length,
                    "reasoning": command.reasoning,
                },
            )
            model = service.add_model(command.model_id, capabilities)
            return [f"Model saved: {format_model_line(model)}"]

        return self._execute(command.state_dir, _run)

    def remove_model(self, command: ModelRemoveCommand) -> CommandResult:
        def _run(service: OrchestratorService) -> list[str]:
            service.remove_model(command.model_id)
            return [f"Model removed: {command.model_id}"]

        return self._execute(command.state_dir, _run)

    def replace_models(self, command: ModelReplaceCommand) -> CommandResult:
        def _run(service: OrchestratorService) -> list[str]:
            models = service.replace_models(command.model_ids)
            return [
                f"Model pool replaced ({len(models)}): "
                + ", ".join(model.model_id for model in models),
            ]

        return self._execute(command.state_dir, _run)

    def reset_models(self, command: ModelsCommand) -> CommandResult:
        def _run(service: OrchestratorService) -> list[str]:
            models = service.reset_models()
            return [f"Model pool reset to {len(models)} defaults."]

        return self._execute(command.state_dir, _run)

    def prefer_model(self, command: ModelPreferCommand) -> CommandResult:
        def _run(service: OrchestratorService) -> list[str]:
            service.set_model_preference(command.model_id, command.note)
            return [f"Preference saved for {command.model_id}."]

        return self._execute(command.state_dir, _run)

    def timeouts(self, command: TimeoutsCommand) -> CommandResult:
        def _run(service: OrchestratorService) -> list[str]:
            report = service.check_timeouts(
                command.timeout_minutes,
                auto_abort=command.auto_abort,
            )
            if command.output_format == "json":
                return [_dump_json(_timeout_payload(report))]
            return _timeout_lines(report)

        return self._execute(command.state_dir, _run, output_format=command.output_format)

    def cleanup(self, command: CleanupCommand) -> CommandResult:
        def _run(service: OrchestratorService) -> list[str]:
            report = service.run_cleanup(
                older_than_days=command.older_than_days,
                include_progress=command.include_progress,
                report_only=command.report_only,
            )
            if command.output_format == "json":
                return [_dump_json(_cleanup_payload(report))]
            return _cleanup_lines(report)

        return self._execute(command.state_dir, _run, output_format=command.output_format)

    def serve(
        self,
        command: ServeCommand,
        *,
        stop_event: threading.Event | None = None,
    ) -> CommandResult:
        """Run the cleanup timer in the foreground until interrupted."""

        stop = stop_event or threading.Event()

        def _run(service: OrchestratorService) -> list[str]:
            if not service.start():
                return [
                    "Auto cleanup is disabled (SUBAGENT_ORCH_AUTO_CLEANUP=false); "
                    "cleanup timer not started.",
                ]
            try:
                stop.wait(timeout=command.run_seconds)
            except KeyboardInterrupt:
                logger.info("Interrupted; stopping cleanup timer.")
            finally:
                service.scheduler.stop()
            return [
                "Cleanup timer stopped "
                f"(interval={service.settings.cleanup.interval_seconds:.0f}s).",
            ]

        return self._execute(command.state_dir, _run)

    def activity(self, command: ActivityCommand) -> CommandResult:
        try:
            settings = _load_settings(command.state_dir)
        except OrchestratorError as error:
            return _error_result(error)
        entries = ActivityLog(settings.resolved_logs_dir).tail(command.limit)
        if not entries:
            return CommandResult(lines=["No activity recorded."])
        return CommandResult(lines=[_activity_line(entry) for entry in entries])

    def _execute(
        self,
        state_dir: Path | None,
        action: Callable[[OrchestratorService], list[str]],
        *,
        output_format: str = "table",
    ) -> CommandResult:
        try:
            settings = _load_settings(state_dir)
            with self._service(settings) as service:
                return CommandResult(lines=action(service))
        except OrchestratorError as error:
            return _error_result(error, output_format=output_format)

    @contextmanager
    def _service(self, settings: Settings) -> Iterator[OrchestratorService]:
        gateway = self._gateway_factory(settings) if self._gateway_factory else None
        service = OrchestratorService.from_settings(settings, gateway=gateway, clock=self._clock)
        try:
            yield service
        finally:
            service.close()


def _load_settings(state_dir: Path | None) -> Settings:
    try:
        settings = Settings.from_env(state_dir=state_dir)
        settings.validate()
    except ValueError as error:
        raise OrchestratorError(
            ErrorKind.VALIDATION,
            f"Invalid configuration: {error}",
        ) from error
    return settings


def _error_result(error: OrchestratorError, *, output_format: str = "table") -> CommandResult:
    if output_format == "json":
        line = _dump_json({"error": error.to_dict()})
    else:
        line = f"Error [{error.kind.value}]: {error.message}"
    return CommandResult(lines=[line], success=False, error=error)


def _dump_json(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, indent=2, default=str)


def _parse_progress_status(value: str) -> ProgressStatus:
    try:
        return ProgressStatus(value)
    except ValueError as error:
        raise OrchestratorError(
            ErrorKind.VALIDATION,
            f"Unknown progress status: {value}",
            {"status": value},
        ) from error


def _parse_extra(items: tuple[str, ...]) -> dict[str, Any]:
    extra: dict[str, Any] = {}
    for item in items:
        key, sep, raw_value = item.partition("=")
        if not sep or not key.strip():
            raise OrchestratorError(
                ErrorKind.VALIDATION,
                f"Capability extension must look like key=value, got {item!r}",
            )
        try:
            value: Any = json.loads(raw_value)
        except ValueError:
            value = raw_value
        extra[key.strip()] = value
    return extra


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _sub_task_payload(sub_task: SubTaskView) -> dict[str, Any]:
    return {
        "sub_task_id": sub_task.sub_task_id,
        "position": sub_task.position,
        "status": sub_task.status.value,
        "child_session_id": sub_task.child_session_id,
        "model_id": sub_task.model_id,
        "task_description": sub_task.task_description,
        "steps": sub_task.steps,
        "current_step_index": sub_task.current_step_index,
        "started_at": _iso(sub_task.started_at),
        "ended_at": _iso(sub_task.ended_at),
        "actual_duration_ms": sub_task.actual_duration_ms,
        "error_log": sub_task.error_log,
        "expected_outcome": sub_task.expected_outcome,
    }


def _snapshot_payload(snapshot: TaskSnapshot) -> dict[str, Any]:
    task = snapshot.task
    sub_tasks = []
    for sub_task in task.sub_tasks:
        payload = _sub_task_payload(sub_task)
        report = snapshot.progress.get(sub_task.sub_task_id)
        payload["progress"] = report.to_dict() if report is not None else None
        sub_tasks.append(payload)
    return {
        "task_id": task.task_id,
        "description": task.description,
        "priority": task.priority.value,
        "status": task.status.value,
        "created_at": _iso(task.created_at),
        "completed_at": _iso(task.completed_at),
        "error_summary": task.error_summary,
        "sub_tasks": sub_tasks,
    }


def _snapshot_lines(snapshot: TaskSnapshot) -> list[str]:
    task = snapshot.task
    total = len(task.sub_tasks)
    completed = sum(1 for item in task.sub_tasks if item.status is SubTaskStatus.COMPLETED)
    percent = round(completed / total * 100) if total else 0
    lines = [
        f"Task {task.task_id}: status={task.status.value} priority={task.priority.value} "
        f"progress={percent}% ({completed}/{total})",
        f"  Description: {task.description}",
    ]
    if task.error_summary:
        lines.append(f"  Error: {task.error_summary}")
    for sub_task in task.sub_tasks:
        line = f"  - {sub_task.sub_task_id}: {sub_task.status.value}"
        report = snapshot.progress.get(sub_task.sub_task_id)
        if report is not None:
            line += (
                f" step {report.current_step}/{report.total_steps} ({report.percentage:.0f}%)"
            )
        if sub_task.child_session_id:
            line += f" [{sub_task.child_session_id}]"
        if sub_task.model_id:
            line += f" ({sub_task.model_id})"
        if report is not None and report.message:
            preview = report.message[:MESSAGE_PREVIEW_CHARS]
            suffix = "..." if len(report.message) > MESSAGE_PREVIEW_CHARS else ""
            line += f" - {preview}{suffix}"
        lines.append(line)
    return lines


def _orchestrate_payload(result: OrchestrateResult) -> dict[str, Any]:
    return {
        "task_id": result.task.task_id,
        "status": result.task.status.value,
        "model": result.model.model_id,
        "mode": "manual" if result.manual else "spawned",
        "progress_dir": str(result.progress_dir),
        "sub_task_ids": [item.sub_task_id for item in result.task.sub_tasks],
        "spawned": result.spawned,
        "spawn_failures": result.spawn_failures,
        "instructions": [item.to_dict() for item in result.instructions],
    }


def _orchestrate_lines(result: OrchestrateResult) -> list[str]:
    lines = [
        "Task dispatched: "
        f"task_id={result.task.task_id} sub_tasks={len(result.task.sub_tasks)} "
        f"model={result.model.model_id} status={result.task.status.value}",
        f"Progress dir: {result.progress_dir}",
    ]
    for sub_task_id, session_id in result.spawned.items():
        lines.append(f"Spawned: {sub_task_id} -> session {session_id}")
    for sub_task_id, error in result.spawn_failures.items():
        lines.append(f"Spawn failed: {sub_task_id}: {error}")
    if result.instructions:
        lines.append(
            "Spawn capability unavailable. Spawn each sub-task manually, then bind it with "
            "`subagent-orchestrator tasks bind --sub-task-id <id> --session-id <session>`.",
        )
        for instruction in result.instructions:
            lines.append(
                f"- {instruction.sub_task_id}: model={instruction.suggested_model} "
                f"tool={instruction.to_dict()['spawn_command']['tool']}",
            )
    return lines


def _progress_line(report: ProgressReport) -> str:
    return (
        f"{report.sub_task_id}: {report.status.value} "
        f"step {report.current_step}/{report.total_steps} ({report.percentage:.0f}%)"
        + (f" - {report.message[:MESSAGE_PREVIEW_CHARS]}" if report.message else "")
    )


def _timeout_payload(report: TimeoutReport) -> dict[str, Any]:
    return {
        "timeout_minutes": report.timeout_minutes,
        "auto_abort": report.auto_abort,
        "timed_out": [
            {
                "main_task_id": entry.main_task_id,
                "sub_task_id": entry.sub_task_id,
                "child_session_id": entry.child_session_id,
                "elapsed_ms": entry.elapsed_ms,
            }
            for entry in report.entries
        ],
        "aborted": report.aborted,
        "failed": report.failed,
    }


def _timeout_lines(report: TimeoutReport) -> list[str]:
    if not report.entries:
        return [f"No sub-tasks running longer than {report.timeout_minutes} minutes."]
    lines = [
        f"Timed-out sub-tasks (> {report.timeout_minutes} min): {len(report.entries)}",
    ]
    for entry in report.entries:
        lines.append(
            f"- {entry.sub_task_id} (task {entry.main_task_id}) "
            f"session={entry.child_session_id or '-'} "
            f"elapsed={entry.elapsed_ms // 60_000}m",
        )
    if report.auto_abort:
        lines.append(f"Aborted: {len(report.aborted)} Failed: {len(report.failed)}")
    else:
        lines.append("Report only; pass --auto-abort to terminate these sessions.")
    return lines


def _cleanup_payload(report: CleanupReport) -> dict[str, Any]:
    progress = report.progress
    return {
        "report_only": report.report_only,
        "triggered_by": report.triggered_by,
        "older_than_days": report.older_than_days,
        "deleted_tasks": report.deleted_tasks,
        "progress": (
            {
                "removed": progress.removed,
                "skipped_corrupt": progress.skipped_corrupt,
                "missing_status": progress.missing_status,
                "preserved": progress.preserved,
            }
            if progress is not None
            else None
        ),
        "zombies": [
            {
                "main_task_id": zombie.main_task_id,
                "sub_task_id": zombie.sub_task_id,
                "child_session_id": zombie.child_session_id,
                "elapsed_ms": zombie.elapsed_ms,
            }
            for zombie in report.zombies
        ],
        "errors": report.errors,
        "duration_ms": report.duration_ms,
    }


def _cleanup_lines(report: CleanupReport) -> list[str]:
    verb = "Would delete" if report.report_only else "Deleted"
    lines = [f"{verb} tasks older than {report.older_than_days} days: {report.deleted_tasks}"]
    if report.progress is not None:
        progress_verb = "would remove" if report.report_only else "removed"
        lines.append(
            f"Progress records: {progress_verb}={report.progress.removed} "
            f"preserved={report.progress.preserved} "
            f"corrupt={report.progress.skipped_corrupt} "
            f"missing_status={len(report.progress.missing_status)}",
        )
    lines.append(f"Zombie sub-tasks: {len(report.zombies)}")
    for zombie in report.zombies:
        lines.append(
            f"- {zombie.sub_task_id} session={zombie.child_session_id or '-'} "
            f"elapsed={zombie.elapsed_ms // 60_000}m",
        )
    for error in report.errors:
        lines.append(f"Step error: {error}")
    return lines


def _activity_line(entry: dict[str, Any]) -> str:
    head = f"{entry.get('timestamp_iso', '?')} {entry.get('event_type', '?')}"
    details = " ".join(
        f"{key}={entry[key]}"
        for key in ("task_id", "sub_task_id", "child_session_id", "status", "message", "error")
        if entry.get(key) is not None
    )
    return f"{head} {details}".rstrip()
