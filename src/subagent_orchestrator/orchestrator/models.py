"""Domain models for main tasks, sub-tasks, models and progress reports."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class SubTaskStatus(str, Enum):
    """Durable sub-task lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    FROZEN = "frozen"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_SUB_TASK_STATUSES


TERMINAL_SUB_TASK_STATUSES = frozenset(
    {SubTaskStatus.COMPLETED, SubTaskStatus.FAILED, SubTaskStatus.ABORTED},
)

ALLOWED_TRANSITIONS: dict[SubTaskStatus, frozenset[SubTaskStatus]] = {
    SubTaskStatus.PENDING: frozenset(
        {
            SubTaskStatus.RUNNING,
            SubTaskStatus.COMPLETED,
            SubTaskStatus.FAILED,
            SubTaskStatus.ABORTED,
        },
    ),
    SubTaskStatus.RUNNING: frozenset(
        {
            SubTaskStatus.FROZEN,
            SubTaskStatus.COMPLETED,
            SubTaskStatus.FAILED,
            SubTaskStatus.ABORTED,
        },
    ),
    SubTaskStatus.FROZEN: frozenset(
        {
            SubTaskStatus.RUNNING,
            SubTaskStatus.COMPLETED,
            SubTaskStatus.FAILED,
            SubTaskStatus.ABORTED,
        },
    ),
    SubTaskStatus.COMPLETED: frozenset(),
    SubTaskStatus.FAILED: frozenset(),
    SubTaskStatus.ABORTED: frozenset(),
}


class MainTaskStatus(str, Enum):
    """Main task status derived from its sub-tasks."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in {MainTaskStatus.COMPLETED, MainTaskStatus.FAILED, MainTaskStatus.ABORTED}


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ProgressStatus(str, Enum):
    """Status values a worker may put into its progress record."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self is not ProgressStatus.IN_PROGRESS


class Speed(str, Enum):
    VERY_FAST = "very_fast"
    FAST = "fast"
    MEDIUM = "medium"
    SLOW = "slow"


class Cost(str, Enum):
    VERY_LOW = "very_low"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ContextLength(str, Enum):
    SHORT = "short"
    MEDIUM = "medium"
    LONG = "long"


class Reasoning(str, Enum):
    BASIC = "basic"
    MEDIUM = "medium"
    ADVANCED = "advanced"
    COMPLEX = "complex"


class Difficulty(str, Enum):
    """Requested task difficulty used for reasoning-tier selection."""

    BASIC = "basic"
    MEDIUM = "medium"
    COMPLEX = "complex"


class CostPreference(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ErrorKind(str, Enum):
    """Stable error classification surfaced to callers."""

    NOT_FOUND = "not_found"
    CAPABILITY_UNAVAILABLE = "capability_unavailable"
    VALIDATION = "validation"
    NO_CANDIDATE = "no_candidate"
    ALREADY_BOUND = "already_bound"
    NOT_RUNNING = "not_running"
    CORRUPTION = "corruption"
    GATEWAY_FAILED = "gateway_failed"


class OrchestratorError(RuntimeError):
    """Operation failure with a stable kind and structured details."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind.value, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


@dataclass(slots=True)
class SubTaskView:
    """Readable sub-task view for services and CLI."""

    sub_task_id: str
    main_task_id: str
    position: int
    child_session_id: str | None
    model_id: str | None
    task_description: str
    role_prompt: str
    steps: list[str]
    current_step_index: int
    status: SubTaskStatus
    started_at: datetime | None
    ended_at: datetime | None
    estimated_duration_ms: int | None
    actual_duration_ms: int | None
    error_log: str | None
    expected_outcome: str
    updated_at: datetime


@dataclass(slots=True)
class MainTaskView:
    """Main task with its ordered sub-tasks."""

    task_id: str
    description: str
    priority: Priority
    status: MainTaskStatus
    created_at: datetime
    completed_at: datetime | None
    updated_at: datetime
    error_summary: str | None = None
    sub_tasks: list[SubTaskView] = field(default_factory=list)


@dataclass(slots=True)
class ModelCapabilities:
    """Capability profile of one execution model."""

    speed: Speed
    cost: Cost
    context_length: ContextLength
    reasoning: Reasoning
    extra: dict[str, Any] = field(default_factory=dict)

    def has_capability(self, name: str) -> bool:
        if name in {"speed", "cost", "context_length", "reasoning"}:
            return bool(getattr(self, name))
        return bool(self.extra.get(name))

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.extra)
        payload.update(
            {
                "speed": self.speed.value,
                "cost": self.cost.value,
                "context_length": self.context_length.value,
                "reasoning": self.reasoning.value,
            },
        )
        return payload


@dataclass(slots=True)
class ModelConfig:
    model_id: str
    capabilities: ModelCapabilities

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.model_id, "capabilities": self.capabilities.to_dict()}


@dataclass(slots=True)
class ProgressReport:
    """Worker-written progress record for one sub-task."""

    sub_task_id: str
    main_task_id: str
    current_step: int
    total_steps: int
    status: ProgressStatus
    message: str
    timestamp: int
    percentage: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "sub_task_id": self.sub_task_id,
            "main_task_id": self.main_task_id,
            "current_step": self.current_step,
            "total_steps": self.total_steps,
            "status": self.status.value,
            "message": self.message,
            "timestamp": self.timestamp,
            "percentage": self.percentage,
        }


@dataclass(slots=True)
class ProgressCleanupReport:
    """Outcome of a terminal-progress sweep."""

    removed: int = 0
    skipped_corrupt: int = 0
    missing_status: list[str] = field(default_factory=list)
    preserved: int = 0


@dataclass(slots=True)
class TimeoutEntry:
    main_task_id: str
    sub_task_id: str
    child_session_id: str | None
    elapsed_ms: int


@dataclass(slots=True)
class TimeoutReport:
    """Timed-out sub-tasks found by one check."""

    timeout_minutes: int
    auto_abort: bool
    entries: list[TimeoutEntry] = field(default_factory=list)
    aborted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ZombieCandidate:
    """Running sub-task with no readable progress past the grace period."""

    main_task_id: str
    sub_task_id: str
    child_session_id: str | None
    elapsed_ms: int


@dataclass(slots=True)
class CleanupReport:
    """Counts for one reclamation run."""

    report_only: bool
    triggered_by: str
    older_than_days: int
    deleted_tasks: int = 0
    progress: ProgressCleanupReport | None = None
    zombies: list[ZombieCandidate] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0
