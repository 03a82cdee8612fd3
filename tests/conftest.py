"""Shared test fixtures."""

from __future__ import annotations

import os
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from subagent_orchestrator.config import Settings
from subagent_orchestrator.orchestrator.activity_log import ActivityLog
from subagent_orchestrator.orchestrator.gateway import (
    GatewayCapabilities,
    GatewayError,
    HistoryMessage,
    SpawnRequest,
)
from subagent_orchestrator.orchestrator.progress import ProgressLedger
from subagent_orchestrator.orchestrator.services import OrchestratorService
from subagent_orchestrator.orchestrator.task_store import TaskStore

START = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@dataclass
class FakeGateway:
    """In-memory session gateway recording every call."""

    spawn_enabled: bool = True
    send_enabled: bool = True
    history_enabled: bool = True
    kill_enabled: bool = True
    fail_spawn: bool = False
    fail_send: bool = False
    fail_history: bool = False
    fail_kill: bool = False
    spawned: list[SpawnRequest] = field(default_factory=list)
    sent: list[tuple[str, str]] = field(default_factory=list)
    killed: list[str] = field(default_factory=list)
    messages: list[HistoryMessage] = field(default_factory=list)

    @property
    def capabilities(self) -> GatewayCapabilities:
        return GatewayCapabilities(
            spawn=self.spawn_enabled,
            send=self.send_enabled,
            history=self.history_enabled,
            kill=self.kill_enabled,
        )

    def spawn(self, request: SpawnRequest) -> str:
        if self.fail_spawn:
            raise GatewayError("spawn refused")
        self.spawned.append(request)
        return f"session-{len(self.spawned)}"

    def send(self, session_id: str, message: str) -> None:
        if self.fail_send:
            raise GatewayError("send refused")
        self.sent.append((session_id, message))

    def history(
        self,
        session_id: str,
        *,
        include_tools: bool = False,
        limit: int = 50,
    ) -> list[HistoryMessage]:
        if self.fail_history:
            raise GatewayError("history refused")
        return self.messages[-limit:]

    def kill(self, session_id: str) -> None:
        if self.fail_kill:
            raise GatewayError("kill refused")
        self.killed.append(session_id)


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("SUBAGENT_ORCH_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def state_dir(tmp_path: Path) -> Path:
    return tmp_path / "state"


@pytest.fixture()
def settings(state_dir: Path) -> Settings:
    return Settings(state_dir=state_dir)


@pytest.fixture()
def store(tmp_path: Path, clock: FakeClock) -> Iterator[TaskStore]:
    task_store = TaskStore(tmp_path / "tasks.db", clock=clock)
    task_store.init_schema()
    try:
        yield task_store
    finally:
        task_store.close()


@pytest.fixture()
def ledger(tmp_path: Path) -> ProgressLedger:
    progress_ledger = ProgressLedger(tmp_path / "progress")
    progress_ledger.ensure_dir()
    return progress_ledger


@pytest.fixture()
def activity(tmp_path: Path, clock: FakeClock) -> ActivityLog:
    return ActivityLog(tmp_path / "logs", clock=clock)


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def service(
    settings: Settings,
    gateway: FakeGateway,
    clock: FakeClock,
) -> Iterator[OrchestratorService]:
    orchestrator = OrchestratorService.from_settings(settings, gateway=gateway, clock=clock)
    try:
        yield orchestrator
    finally:
        orchestrator.close()
