"""Session gateway: spawn, message, history and kill for child sessions."""

from __future__ import annotations

import json
import logging
import os
import shlex
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from subagent_orchestrator.config import GatewaySettings

logger = logging.getLogger(__name__)

SUPPORTED_PLACEHOLDERS = frozenset(
    {"model", "payload", "payload_file", "session_id", "message", "limit", "include_tools"},
)


class GatewayError(RuntimeError):
    """External session call failed."""


@dataclass(slots=True, frozen=True)
class GatewayCapabilities:
    spawn: bool = False
    send: bool = False
    history: bool = False
    kill: bool = False


@dataclass(slots=True)
class SpawnRequest:
    """Everything a host needs to start one child session."""

    sub_task_id: str
    main_task_id: str
    task: str
    model: str
    role_prompt: str = ""


@dataclass(slots=True)
class HistoryMessage:
    timestamp: str | None
    role: str
    content: str


class SessionGateway(Protocol):
    """Host-provided child session capabilities."""

    @property
    def capabilities(self) -> GatewayCapabilities: ...

    def spawn(self, request: SpawnRequest) -> str: ...

    def send(self, session_id: str, message: str) -> None: ...

    def history(
        self,
        session_id: str,
        *,
        include_tools: bool = False,
        limit: int = 50,
    ) -> list[HistoryMessage]: ...

    def kill(self, session_id: str) -> None: ...


class NullSessionGateway:
    """Host without session capabilities; orchestration falls back to manual spawn."""

    @property
    def capabilities(self) -> GatewayCapabilities:
        return GatewayCapabilities()

    def spawn(self, request: SpawnRequest) -> str:
        raise GatewayError("spawn capability is not available")

    def send(self, session_id: str, message: str) -> None:
        raise GatewayError("send capability is not available")

    def history(
        self,
        session_id: str,
        *,
        include_tools: bool = False,
        limit: int = 50,
    ) -> list[HistoryMessage]:
        raise GatewayError("history capability is not available")

    def kill(self, session_id: str) -> None:
        raise GatewayError("kill capability is not available")


class CommandSessionGateway:
    """Back each capability with a configured shell command template."""

    def __init__(self, settings: GatewaySettings) -> None:
        self.settings = settings

    @property
    def capabilities(self) -> GatewayCapabilities:
        return GatewayCapabilities(
            spawn=bool(self.settings.spawn_command),
            send=bool(self.settings.send_command),
            history=bool(self.settings.history_command),
            kill=bool(self.settings.kill_command),
        )

    def spawn(self, request: SpawnRequest) -> str:
        payload = json.dumps(
            {
                "sub_task_id": request.sub_task_id,
                "main_task_id": request.main_task_id,
                "task": request.task,
                "model": request.model,
                "role_prompt": request.role_prompt,
            },
            ensure_ascii=False,
        )
        with tempfile.TemporaryDirectory(prefix="subagent-spawn-") as tmp_dir:
            payload_file = Path(tmp_dir) / "payload.json"
            payload_file.write_text(payload, "utf-8")
            stdout = self._run(
                "spawn",
                self.settings.spawn_command,
                {
                    "model": request.model,
                    "payload": payload,
                    "payload_file": str(payload_file),
                },
            )
        lines = [line.strip() for line in stdout.splitlines() if line.strip()]
        if not lines:
            raise GatewayError("spawn command printed no session id")
        return lines[-1]

    def send(self, session_id: str, message: str) -> None:
        self._run(
            "send",
            self.settings.send_command,
            {"session_id": session_id, "message": message},
        )

    def history(
        self,
        session_id: str,
        *,
        include_tools: bool = False,
        limit: int = 50,
    ) -> list[HistoryMessage]:
        stdout = self._run(
            "history",
            self.settings.history_command,
            {
                "session_id": session_id,
                "limit": str(limit),
                "include_tools": "true" if include_tools else "false",
            },
        )
        return parse_history_output(stdout)

    def kill(self, session_id: str) -> None:
        self._run("kill", self.settings.kill_command, {"session_id": session_id})

    def _run(self, capability: str, template: str, values: dict[str, str]) -> str:
        if not template:
            raise GatewayError(f"{capability} capability is not available")
        argv = build_command_args(template, values)
        logger.debug("Running %s command: %s", capability, argv[0])
        try:
            completed = subprocess.run(  # noqa: S603
                argv,
                capture_output=True,
                text=True,
                timeout=self.settings.command_timeout_seconds,
                env=os.environ.copy(),
                check=False,
            )
        except FileNotFoundError as error:
            raise GatewayError(f"{capability} command not found: {argv[0]}") from error
        except subprocess.TimeoutExpired as error:
            raise GatewayError(
                f"{capability} command timed out after "
                f"{self.settings.command_timeout_seconds:g}s",
            ) from error
        if completed.returncode != 0:
            stderr = (completed.stderr or "").strip()
            raise GatewayError(
                f"{capability} command exited with {completed.returncode}"
                + (f": {stderr[:500]}" if stderr else ""),
            )
        return completed.stdout or ""


def build_command_args(template: str, values: dict[str, str]) -> list[str]:
    """Render a command template with shell-quoted placeholder values."""

    stripped = template.strip()
    if not stripped:
        raise GatewayError("command template is empty")
    quoted = {name: shlex.quote(values.get(name, "")) for name in SUPPORTED_PLACEHOLDERS}
    try:
        rendered = stripped.format(**quoted)
    except (KeyError, IndexError) as error:
        raise GatewayError(f"Unsupported command template placeholder: {error}") from error
    argv = shlex.split(rendered)
    if not argv:
        raise GatewayError("command template rendered empty command")
    return argv


def parse_history_output(stdout: str) -> list[HistoryMessage]:
    """Parse history as a JSON array or an object with a ``messages`` array."""

    try:
        payload: Any = json.loads(stdout or "[]")
    except ValueError as error:
        raise GatewayError(f"history output is not valid JSON: {error}") from error
    if isinstance(payload, dict):
        payload = payload.get("messages", [])
    if not isinstance(payload, list):
        raise GatewayError("history output must be a list of messages")

    messages: list[HistoryMessage] = []
    for item in payload:
        if not isinstance(item, dict):
            continue
        content = item.get("content", "")
        if not isinstance(content, str):
            content = json.dumps(content, ensure_ascii=False, indent=2)
        timestamp = item.get("timestamp")
        messages.append(
            HistoryMessage(
                timestamp=str(timestamp) if timestamp is not None else None,
                role=str(item.get("role", "unknown")),
                content=content,
            ),
        )
    return messages


def build_gateway(settings: GatewaySettings) -> SessionGateway:
    """Command gateway when any template is configured, otherwise the null gateway."""

    if any(
        (
            settings.spawn_command,
            settings.send_command,
            settings.history_command,
            settings.kill_command,
        ),
    ):
        return CommandSessionGateway(settings)
    return NullSessionGateway()
