"""Append-only JSON Lines activity log."""

from __future__ import annotations

import json
import logging
import threading
from collections import deque
from collections.abc import Callable
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from subagent_orchestrator.storage.common import to_epoch_ms, utc_now

logger = logging.getLogger(__name__)

ACTIVITY_LOG_FILENAME = "task_activity.jsonl"
MESSAGE_PREVIEW_CHARS = 200


class ActivityEvent(str, Enum):
    TASK_DISPATCHED = "task_dispatched"
    SUBAGENT_SPAWNED = "subagent_spawned"
    SUBAGENT_BOUND = "subagent_bound"
    SUBAGENT_RUNNING = "subagent_running"
    SUBAGENT_COMPLETED = "subagent_completed"
    SUBAGENT_FAILED = "subagent_failed"
    SUBAGENT_ABORTED = "subagent_aborted"
    MESSAGE_INJECTED = "message_injected"
    CLEANUP_EXECUTED = "cleanup_executed"
    ERROR = "error"


class ActivityLog:
    """Diagnostic event stream; append failures never reach callers."""

    def __init__(
        self,
        logs_dir: Path,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.path = logs_dir / ACTIVITY_LOG_FILENAME
        self._clock = clock
        self._lock = threading.Lock()

    def record(self, event_type: ActivityEvent, **fields: Any) -> None:
        now = self._clock()
        entry: dict[str, Any] = {
            "timestamp": to_epoch_ms(now),
            "timestamp_iso": now.isoformat(),
            "event_type": event_type.value,
        }
        entry.update({key: value for key, value in fields.items() if value is not None})
        if isinstance(entry.get("message"), str):
            entry["message"] = entry["message"][:MESSAGE_PREVIEW_CHARS]
        try:
            line = json.dumps(entry, ensure_ascii=False, sort_keys=True, default=str)
            with self._lock:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
        except (OSError, TypeError, ValueError):
            logger.exception("Failed to append %s entry to %s", event_type.value, self.path)

    def tail(self, limit: int = 20) -> list[dict[str, Any]]:
        """Return the last ``limit`` parsable entries, oldest first."""

        if limit <= 0 or not self.path.exists():
            return []
        entries: deque[dict[str, Any]] = deque(maxlen=limit)
        with self.path.open(encoding="utf-8", errors="replace") as handle:
            for line in handle:
                stripped = line.strip()
                if not stripped:
                    continue
                try:
                    payload = json.loads(stripped)
                except ValueError:
                    logger.debug("Skipping corrupt activity line in %s", self.path)
                    continue
                if isinstance(payload, dict):
                    entries.append(payload)
        return list(entries)
