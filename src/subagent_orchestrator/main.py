"""CLI entrypoint for subagent-orchestrator."""

import logging
import os
from pathlib import Path

import rich_click as click

from subagent_orchestrator import __version__
from subagent_orchestrator.orchestrator.controllers import (
    ActivityCommand,
    BindCommand,
    CleanupCommand,
    CommandResult,
    HistoryCommand,
    InjectCommand,
    ModelAddCommand,
    ModelPreferCommand,
    ModelRemoveCommand,
    ModelReplaceCommand,
    ModelsCommand,
    OrchestrateCommand,
    OrchestratorCliController,
    ProgressReportCommand,
    ProgressShowCommand,
    ServeCommand,
    SessionCommand,
    SessionEndCommand,
    StatusCommand,
    TimeoutsCommand,
)

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]
FORMAT_CHOICE = click.Choice(["table", "json"], case_sensitive=False)


@click.group()
@click.version_option(version=__version__, prog_name="subagent-orchestrator")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Logging level. Defaults to SUBAGENT_ORCH_LOG_LEVEL or WARNING.",
)
def cli(log_level: str | None) -> None:
    """Parallel sub-task orchestrator CLI."""

    level = (log_level or os.getenv("SUBAGENT_ORCH_LOG_LEVEL") or "WARNING").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.group()
def tasks() -> None:
    """Task dispatch, status and session commands."""


@tasks.command("orchestrate")
@click.option("--state-dir", type=click.Path(path_type=Path), default=None, help="State directory.")
@click.option("--description", required=True, help="Main task description.")
@click.option(
    "--priority",
    type=click.Choice(["high", "medium", "low"], case_sensitive=False),
    default="medium",
    show_default=True,
)
@click.option(
    "--subtask-count",
    type=click.IntRange(min=1, max=5),
    default=1,
    show_default=True,
    help="Number of uniform sub-tasks.",
)
@click.option(
    "--allowed-model",
    "allowed_models",
    multiple=True,
    help="Restrict selection to this model id. Can be repeated.",
)
@click.option(
    "--difficulty",
    type=click.Choice(["basic", "medium", "complex"], case_sensitive=False),
    default="medium",
    show_default=True,
)
@click.option(
    "--cost",
    "cost_preference",
    type=click.Choice(["low", "medium", "high"], case_sensitive=False),
    default="medium",
    show_default=True,
)
@click.option(
    "--require",
    "required_capabilities",
    multiple=True,
    help="Required capability tag. Can be repeated; defaults to `reasoning`.",
)
@click.option("--format", "output_format", type=FORMAT_CHOICE, default="table", show_default=True)
def tasks_orchestrate(  # noqa: PLR0913
    state_dir: Path | None,
    description: str,
    priority: str,
    subtask_count: int,
    allowed_models: tuple[str, ...],
    difficulty: str,
    cost_preference: str,
    required_capabilities: tuple[str, ...],
    output_format: str,
) -> None:
    """Split a task into sub-tasks, pick a model and dispatch them."""

    _emit_result(
        ORCHESTRATOR_CONTROLLER.orchestrate(
            OrchestrateCommand(
                state_dir=state_dir,
                description=description,
                priority=priority.lower(),
                allowed_models=allowed_models,
                subtask_count=subtask_count,
                difficulty=difficulty.lower(),
                cost_preference=cost_preference.lower(),
                required_capabilities=required_capabilities or ("reasoning",),
                output_format=output_format.lower(),
            ),
        ),
    )


@tasks.command("status")
@click.option("--state-dir", type=click.Path(path_type=Path), default=None, help="State directory.")
@click.option("--task-id", default=None, help="Main task id.")
@click.option("--session-id", default=None, help="Child session id.")
@click.option(
    "--status",
    "status_filter",
    type=click.Choice(["pending", "running", "completed", "failed", "aborted"]),
    default=None,
    help="Only list main tasks in this status.",
)
@click.option("--format", "output_format", type=FORMAT_CHOICE, default="table", show_default=True)
def tasks_status(
    state_dir: Path | None,
    task_id: str | None,
    session_id: str | None,
    status_filter: str | None,
    output_format: str,
) -> None:
    """Reconcile progress and show task status."""

    _emit_result(
        ORCHESTRATOR_CONTROLLER.status(
            StatusCommand(
                state_dir=state_dir,
                task_id=task_id,
                session_id=session_id,
                status_filter=status_filter,
                output_format=output_format.lower(),
            ),
        ),
    )


@tasks.command("bind")
@click.option("--state-dir", type=click.Path(path_type=Path), default=None, help="State directory.")
@click.option("--sub-task-id", required=True, help="Sub-task id.")
@click.option("--session-id", required=True, help="Child session id returned by the spawn.")
def tasks_bind(state_dir: Path | None, sub_task_id: str, session_id: str) -> None:
    """Bind a manually spawned session to its sub-task."""

    _emit_result(
        ORCHESTRATOR_CONTROLLER.bind(
            BindCommand(state_dir=state_dir, sub_task_id=sub_task_id, session_id=session_id),
        ),
    )


@tasks.command("abort")
@click.option("--state-dir", type=click.Path(path_type=Path), default=None, help="State directory.")
@click.option("--session-id", required=True, help="Child session id.")
def tasks_abort(state_dir: Path | None, session_id: str) -> None:
    """Terminate a child session and mark its sub-task aborted."""

    _emit_result(
        ORCHESTRATOR_CONTROLLER.abort(SessionCommand(state_dir=state_dir, session_id=session_id)),
    )


@tasks.command("inject")
@click.option("--state-dir", type=click.Path(path_type=Path), default=None, help="State directory.")
@click.option("--session-id", required=True, help="Child session id.")
@click.option("--message", required=True, help="Message to deliver.")
def tasks_inject(state_dir: Path | None, session_id: str, message: str) -> None:
    """Send a message into a running child session."""

    _emit_result(
        ORCHESTRATOR_CONTROLLER.inject(
            InjectCommand(state_dir=state_dir, session_id=session_id, message=message),
        ),
    )


@tasks.command("history")
@click.option("--state-dir", type=click.Path(path_type=Path), default=None, help="State directory.")
@click.option("--session-id", required=True, help="Child session id.")
@click.option("--include-tools", is_flag=True, default=False, help="Include tool messages.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
)
def tasks_history(
    state_dir: Path | None,
    session_id: str,
    include_tools: bool,
    limit: int,
) -> None:
    """Show recent messages of a child session."""

    _emit_result(
        ORCHESTRATOR_CONTROLLER.history(
            HistoryCommand(
                state_dir=state_dir,
                session_id=session_id,
                include_tools=include_tools,
                limit=limit,
            ),
        ),
    )


@tasks.command("session-end")
@click.option("--state-dir", type=click.Path(path_type=Path), default=None, help="State directory.")
@click.option("--session-id", required=True, help="Child session id that ended.")
@click.option(
    "--duration-ms",
    type=click.IntRange(min=0),
    default=None,
    help="Session duration reported by the host.",
)
def tasks_session_end(state_dir: Path | None, session_id: str, duration_ms: int | None) -> None:
    """Record that a child session ended."""

    _emit_result(
        ORCHESTRATOR_CONTROLLER.session_end(
            SessionEndCommand(
                state_dir=state_dir,
                session_id=session_id,
                duration_ms=duration_ms,
            ),
        ),
    )


@cli.group()
def progress() -> None:
    """Progress ledger commands."""


@progress.command("report")
@click.option("--state-dir", type=click.Path(path_type=Path), default=None, help="State directory.")
@click.option("--sub-task-id", required=True, help="Sub-task id.")
@click.option("--main-task-id", required=True, help="Main task id.")
@click.option("--step", type=click.IntRange(min=0), required=True, help="Current step (1-based).")
@click.option("--total-steps", type=click.IntRange(min=1), required=True)
@click.option(
    "--status",
    type=click.Choice(["in_progress", "completed", "failed", "aborted"]),
    default="in_progress",
    show_default=True,
)
@click.option("--message", default="", help="What was just done, or the failure reason.")
@click.option(
    "--percentage",
    type=click.FloatRange(min=0, max=100),
    default=None,
    help="Defaults to step / total_steps.",
)
def progress_report(  # noqa: PLR0913
    state_dir: Path | None,
    sub_task_id: str,
    main_task_id: str,
    step: int,
    total_steps: int,
    status: str,
    message: str,
    percentage: float | None,
) -> None:
    """Write a progress record for a sub-task (used by workers)."""

    _emit_result(
        ORCHESTRATOR_CONTROLLER.progress_report(
            ProgressReportCommand(
                state_dir=state_dir,
                sub_task_id=sub_task_id,
                main_task_id=main_task_id,
                step=step,
                total_steps=total_steps,
                status=status,
                message=message,
                percentage=percentage,
            ),
        ),
    )


@progress.command("show")
@click.option("--state-dir", type=click.Path(path_type=Path), default=None, help="State directory.")
@click.option("--sub-task-id", default=None, help="Show one record instead of all.")
def progress_show(state_dir: Path | None, sub_task_id: str | None) -> None:
    """Show progress records."""

    _emit_result(
        ORCHESTRATOR_CONTROLLER.progress_show(
            ProgressShowCommand(state_dir=state_dir, sub_task_id=sub_task_id),
        ),
    )


@cli.group()
def models() -> None:
    """Model registry commands."""


@models.command("list")
@click.option("--state-dir", type=click.Path(path_type=Path), default=None, help="State directory.")
def models_list(state_dir: Path | None) -> None:
    """List registered models in selection order."""

    _emit_result(ORCHESTRATOR_CONTROLLER.list_models(ModelsCommand(state_dir=state_dir)))


@models.command("add")
@click.option("--state-dir", type=click.Path(path_type=Path), default=None, help="State directory.")
@click.option("--model-id", required=True, help="Model id.")
@click.option("--speed", required=True, help="very_fast | fast | medium | slow")
@click.option("--cost", required=True, help="very_low | low | medium | high")
@click.option("--context-length", required=True, help="short | medium | long")
@click.option("--reasoning", required=True, help="basic | medium | advanced | complex")
@click.option(
    "--extra",
    multiple=True,
    help="Extra capability as key=value (JSON values accepted). Can be repeated.",
)
def models_add(  # noqa: PLR0913
    state_dir: Path | None,
    model_id: str,
    speed: str,
    cost: str,
    context_length: str,
    reasoning: str,
    extra: tuple[str, ...],
) -> None:
    """Add a model or overwrite an existing one."""

    _emit_result(
        ORCHESTRATOR_CONTROLLER.add_model(
            ModelAddCommand(
                state_dir=state_dir,
                model_id=model_id,
                speed=speed,
                cost=cost,
                context_length=context_length,
                reasoning=reasoning,
                extra=extra,
            ),
        ),
    )


@models.command("remove")
@click.option("--state-dir", type=click.Path(path_type=Path), default=None, help="State directory.")
@click.option("--model-id", required=True, help="Model id.")
def models_remove(state_dir: Path | None, model_id: str) -> None:
    """Remove a model."""

    _emit_result(
        ORCHESTRATOR_CONTROLLER.remove_model(
            ModelRemoveCommand(state_dir=state_dir, model_id=model_id),
        ),
    )


@models.command("replace")
@click.option("--state-dir", type=click.Path(path_type=Path), default=None, help="State directory.")
@click.option(
    "--model-id",
    "model_ids",
    multiple=True,
    help="Model id for the new pool. Can be repeated.",
)
def models_replace(state_dir: Path | None, model_ids: tuple[str, ...]) -> None:
    """Replace the whole pool with the given ids (flat medium profile)."""

    _emit_result(
        ORCHESTRATOR_CONTROLLER.replace_models(
            ModelReplaceCommand(state_dir=state_dir, model_ids=model_ids),
        ),
    )


@models.command("reset")
@click.option("--state-dir", type=click.Path(path_type=Path), default=None, help="State directory.")
def models_reset(state_dir: Path | None) -> None:
    """Restore the built-in default models."""

    _emit_result(ORCHESTRATOR_CONTROLLER.reset_models(ModelsCommand(state_dir=state_dir)))


@models.command("prefer")
@click.option("--state-dir", type=click.Path(path_type=Path), default=None, help="State directory.")
@click.option("--model-id", required=True, help="Model id.")
@click.option("--note", required=True, help="Free-text preference note.")
def models_prefer(state_dir: Path | None, model_id: str, note: str) -> None:
    """Save an operator note for a model."""

    _emit_result(
        ORCHESTRATOR_CONTROLLER.prefer_model(
            ModelPreferCommand(state_dir=state_dir, model_id=model_id, note=note),
        ),
    )


@cli.group()
def maintenance() -> None:
    """Timeout detection and cleanup commands."""


@maintenance.command("timeouts")
@click.option("--state-dir", type=click.Path(path_type=Path), default=None, help="State directory.")
@click.option(
    "--timeout-minutes",
    type=int,
    default=None,
    help="Threshold in minutes (5-1440). Defaults to SUBAGENT_ORCH_SESSION_TIMEOUT_MINUTES.",
)
@click.option(
    "--auto-abort/--report-only",
    default=None,
    help="Kill timed-out sessions. Defaults to SUBAGENT_ORCH_AUTO_ABORT_TIMEOUT.",
)
@click.option("--format", "output_format", type=FORMAT_CHOICE, default="table", show_default=True)
def maintenance_timeouts(
    state_dir: Path | None,
    timeout_minutes: int | None,
    auto_abort: bool | None,
    output_format: str,
) -> None:
    """Find running sub-tasks past the timeout."""

    _emit_result(
        ORCHESTRATOR_CONTROLLER.timeouts(
            TimeoutsCommand(
                state_dir=state_dir,
                timeout_minutes=timeout_minutes,
                auto_abort=auto_abort,
                output_format=output_format.lower(),
            ),
        ),
    )


@maintenance.command("cleanup")
@click.option("--state-dir", type=click.Path(path_type=Path), default=None, help="State directory.")
@click.option(
    "--older-than-days",
    type=int,
    default=None,
    help="Delete tasks older than this (1-365). Defaults to SUBAGENT_ORCH_TASK_MAX_AGE_DAYS.",
)
@click.option(
    "--include-progress/--skip-progress",
    default=True,
    show_default=True,
    help="Also remove finished progress records.",
)
@click.option("--report-only", is_flag=True, default=False, help="Count without deleting.")
@click.option("--format", "output_format", type=FORMAT_CHOICE, default="table", show_default=True)
def maintenance_cleanup(
    state_dir: Path | None,
    older_than_days: int | None,
    include_progress: bool,
    report_only: bool,
    output_format: str,
) -> None:
    """Reclaim aged tasks and finished progress records."""

    _emit_result(
        ORCHESTRATOR_CONTROLLER.cleanup(
            CleanupCommand(
                state_dir=state_dir,
                older_than_days=older_than_days,
                include_progress=include_progress,
                report_only=report_only,
                output_format=output_format.lower(),
            ),
        ),
    )


@maintenance.command("serve")
@click.option("--state-dir", type=click.Path(path_type=Path), default=None, help="State directory.")
@click.option(
    "--run-seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Stop after this many seconds instead of waiting for Ctrl+C.",
)
def maintenance_serve(state_dir: Path | None, run_seconds: float | None) -> None:
    """Run the periodic cleanup timer in the foreground."""

    _emit_result(
        ORCHESTRATOR_CONTROLLER.serve(ServeCommand(state_dir=state_dir, run_seconds=run_seconds)),
    )


@maintenance.command("activity")
@click.option("--state-dir", type=click.Path(path_type=Path), default=None, help="State directory.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=20,
    show_default=True,
)
def maintenance_activity(state_dir: Path | None, limit: int) -> None:
    """Show the latest activity log entries."""

    _emit_result(
        ORCHESTRATOR_CONTROLLER.activity(ActivityCommand(state_dir=state_dir, limit=limit)),
    )


def _emit_result(result: CommandResult) -> None:
    if result.success:
        _emit_lines(result.lines)
        return
    for line in result.lines:
        click.echo(line, err=True)
    raise SystemExit(1)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    cli()
