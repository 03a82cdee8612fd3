"""Runtime configuration for the sub-task orchestrator."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

TIMEOUT_MINUTES_RANGE = (5, 1440)
TASK_MAX_AGE_DAYS_RANGE = (1, 365)


@dataclass(slots=True)
class CleanupSettings:
    """Reclamation scheduler settings."""

    enable_auto_cleanup: bool = True
    interval_seconds: float = 6 * 60 * 60
    task_max_age_days: int = 7
    zombie_grace_minutes: int = 10
    run_on_start: bool = True


@dataclass(slots=True)
class TimeoutSettings:
    """Timeout detector defaults."""

    session_timeout_minutes: int = 120
    auto_abort: bool = False


@dataclass(slots=True)
class GatewaySettings:
    """Command templates for external session capabilities.

    An empty template means the capability is unavailable in this host.
    """

    spawn_command: str = ""
    send_command: str = ""
    history_command: str = ""
    kill_command: str = ""
    command_timeout_seconds: float = 30.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    state_dir: Path = Path(".subagent_orchestrator")
    progress_dir: Path | None = None
    logs_dir: Path | None = None
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "WARNING"
    cleanup: CleanupSettings = field(default_factory=CleanupSettings)
    timeouts: TimeoutSettings = field(default_factory=TimeoutSettings)
    gateway: GatewaySettings = field(default_factory=GatewaySettings)

    @property
    def db_path(self) -> Path:
        return self.state_dir / "tasks.db"

    @property
    def models_path(self) -> Path:
        return self.state_dir / "models.json"

    @property
    def preferences_path(self) -> Path:
        return self.state_dir / "model_preferences.json"

    @property
    def resolved_progress_dir(self) -> Path:
        return self.progress_dir if self.progress_dir is not None else self.state_dir / "progress"

    @property
    def resolved_logs_dir(self) -> Path:
        return self.logs_dir if self.logs_dir is not None else self.state_dir / "logs"

    @classmethod
    def from_env(cls, state_dir: Path | None = None) -> Settings:
        """Load settings from environment with local-development defaults."""

        return cls(
            state_dir=state_dir
            or Path(os.getenv("SUBAGENT_ORCH_STATE_DIR", ".subagent_orchestrator")),
            progress_dir=_env_path("SUBAGENT_ORCH_PROGRESS_DIR"),
            logs_dir=_env_path("SUBAGENT_ORCH_LOGS_DIR"),
            sqlite_busy_timeout_ms=int(os.getenv("SUBAGENT_ORCH_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            log_level=os.getenv("SUBAGENT_ORCH_LOG_LEVEL", "WARNING").strip().upper(),
            cleanup=CleanupSettings(
                enable_auto_cleanup=_env_bool("SUBAGENT_ORCH_AUTO_CLEANUP", default=True),
                interval_seconds=float(
                    os.getenv("SUBAGENT_ORCH_CLEANUP_INTERVAL_SECONDS", str(6 * 60 * 60)),
                ),
                task_max_age_days=int(os.getenv("SUBAGENT_ORCH_TASK_MAX_AGE_DAYS", "7")),
                zombie_grace_minutes=int(os.getenv("SUBAGENT_ORCH_ZOMBIE_GRACE_MINUTES", "10")),
                run_on_start=_env_bool("SUBAGENT_ORCH_CLEANUP_ON_START", default=True),
            ),
            timeouts=TimeoutSettings(
                session_timeout_minutes=int(
                    os.getenv("SUBAGENT_ORCH_SESSION_TIMEOUT_MINUTES", "120"),
                ),
                auto_abort=_env_bool("SUBAGENT_ORCH_AUTO_ABORT_TIMEOUT", default=False),
            ),
            gateway=GatewaySettings(
                spawn_command=os.getenv("SUBAGENT_ORCH_SPAWN_COMMAND", "").strip(),
                send_command=os.getenv("SUBAGENT_ORCH_SEND_COMMAND", "").strip(),
                history_command=os.getenv("SUBAGENT_ORCH_HISTORY_COMMAND", "").strip(),
                kill_command=os.getenv("SUBAGENT_ORCH_KILL_COMMAND", "").strip(),
                command_timeout_seconds=float(
                    os.getenv("SUBAGENT_ORCH_GATEWAY_TIMEOUT_SECONDS", "30"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any value is out of its valid range."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("SUBAGENT_ORCH_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.cleanup.interval_seconds <= 0:
            raise ValueError("SUBAGENT_ORCH_CLEANUP_INTERVAL_SECONDS must be > 0.")
        low, high = TASK_MAX_AGE_DAYS_RANGE
        if not low <= self.cleanup.task_max_age_days <= high:
            raise ValueError(f"SUBAGENT_ORCH_TASK_MAX_AGE_DAYS must be within {low}-{high}.")
        low, high = TIMEOUT_MINUTES_RANGE
        if not low <= self.timeouts.session_timeout_minutes <= high:
            raise ValueError(
                f"SUBAGENT_ORCH_SESSION_TIMEOUT_MINUTES must be within {low}-{high}.",
            )
        if self.cleanup.zombie_grace_minutes <= 0:
            raise ValueError("SUBAGENT_ORCH_ZOMBIE_GRACE_MINUTES must be > 0.")
        if self.cleanup.zombie_grace_minutes >= self.timeouts.session_timeout_minutes:
            raise ValueError(
                "SUBAGENT_ORCH_ZOMBIE_GRACE_MINUTES must be shorter than "
                "SUBAGENT_ORCH_SESSION_TIMEOUT_MINUTES.",
            )
        if self.gateway.command_timeout_seconds <= 0:
            raise ValueError("SUBAGENT_ORCH_GATEWAY_TIMEOUT_SECONDS must be > 0.")


def _env_path(name: str) -> Path | None:
    value = os.getenv(name, "").strip()
    return Path(value) if value else None


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
