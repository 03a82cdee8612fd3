"""File-based progress ledger written by external workers."""

from __future__ import annotations

import logging
import math
from pathlib import Path
from typing import Any

from subagent_orchestrator.orchestrator.models import (
    ErrorKind,
    OrchestratorError,
    ProgressCleanupReport,
    ProgressReport,
    ProgressStatus,
)
from subagent_orchestrator.storage.common import load_json, write_json_atomic

logger = logging.getLogger(__name__)

PROGRESS_SUFFIX = ".json"


class CorruptProgressRecord(ValueError):
    """Progress record exists but cannot be parsed or fails structural checks."""


def parse_progress_payload(payload: Any) -> ProgressReport:
    """Validate record structure; content fields stay untrusted text."""

    if not isinstance(payload, dict):
        raise CorruptProgressRecord("progress record must be a JSON object")
    try:
        status = ProgressStatus(payload["status"])
    except KeyError as error:
        raise CorruptProgressRecord("progress record has no status") from error
    except ValueError as error:
        raise CorruptProgressRecord(f"unknown progress status: {payload['status']!r}") from error

    sub_task_id = payload.get("sub_task_id")
    main_task_id = payload.get("main_task_id")
    if not isinstance(sub_task_id, str) or not isinstance(main_task_id, str):
        raise CorruptProgressRecord("sub_task_id and main_task_id must be strings")
    current_step = _int_field(payload, "current_step")
    total_steps = _int_field(payload, "total_steps")
    timestamp = _int_field(payload, "timestamp")
    percentage = payload.get("percentage", 0)
    if isinstance(percentage, bool) or not isinstance(percentage, int | float):
        raise CorruptProgressRecord("percentage must be a number")
    try:
        percentage = float(percentage)
    except OverflowError as error:
        raise CorruptProgressRecord("percentage is out of range") from error
    if not math.isfinite(percentage):
        raise CorruptProgressRecord("percentage must be finite")
    message = payload.get("message", "")
    if not isinstance(message, str):
        raise CorruptProgressRecord("message must be a string")

    return ProgressReport(
        sub_task_id=sub_task_id,
        main_task_id=main_task_id,
        current_step=current_step,
        total_steps=total_steps,
        status=status,
        message=message,
        timestamp=timestamp,
        percentage=percentage,
    )


def _int_field(payload: dict[str, Any], name: str) -> int:
    value = payload.get(name)
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise CorruptProgressRecord(f"{name} must be a number")
    if isinstance(value, float) and not math.isfinite(value):
        raise CorruptProgressRecord(f"{name} must be finite")
    return int(value)


class ProgressLedger:
    """One JSON record per sub-task id; last write wins."""

    def __init__(self, progress_dir: Path) -> None:
        self.progress_dir = progress_dir

    def ensure_dir(self) -> None:
        self.progress_dir.mkdir(parents=True, exist_ok=True)

    def progress_path(self, sub_task_id: str) -> Path:
        if (
            not sub_task_id
            or "/" in sub_task_id
            or "\\" in sub_task_id
            or ".." in sub_task_id
            or sub_task_id in {".", ".."}
        ):
            raise OrchestratorError(
                ErrorKind.VALIDATION,
                f"Invalid sub-task id for progress record: {sub_task_id!r}",
                {"sub_task_id": sub_task_id},
            )
        return self.progress_dir / f"{sub_task_id}{PROGRESS_SUFFIX}"

    def read_progress(self, sub_task_id: str) -> ProgressReport | None:
        """Read one record; missing or corrupt records read as ``None``."""

        path = self.progress_path(sub_task_id)
        if not path.exists():
            return None
        try:
            return self._read_path(path)
        except CorruptProgressRecord as error:
            logger.warning("Ignoring corrupt progress record %s: %s", path, error)
            return None

    def read_all_progress(self) -> list[ProgressReport]:
        reports: list[ProgressReport] = []
        for path in self._record_paths():
            try:
                reports.append(self._read_path(path))
            except CorruptProgressRecord as error:
                logger.warning("Ignoring corrupt progress record %s: %s", path, error)
        return reports

    def write_progress(self, report: ProgressReport) -> Path:
        path = self.progress_path(report.sub_task_id)
        write_json_atomic(path, report.to_dict())
        return path

    def remove_progress(self, sub_task_id: str) -> bool:
        path = self.progress_path(sub_task_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def cleanup_completed_progress(self, *, dry_run: bool = False) -> ProgressCleanupReport:
        """Remove records whose status is terminal.

        Records without a ``status`` are left in place and listed; unparsable
        records are counted and skipped.
        """

        report = ProgressCleanupReport()
        for path in self._record_paths():
            try:
                payload = load_json(path)
            except (OSError, ValueError) as error:
                logger.warning("Skipping unreadable progress record %s: %s", path, error)
                report.skipped_corrupt += 1
                continue
            if isinstance(payload, dict) and "status" not in payload:
                logger.warning("Progress record %s has no status; leaving it in place.", path)
                report.missing_status.append(path.stem)
                continue
            try:
                record = parse_progress_payload(payload)
            except CorruptProgressRecord as error:
                logger.warning("Skipping corrupt progress record %s: %s", path, error)
                report.skipped_corrupt += 1
                continue
            if not record.status.is_terminal:
                report.preserved += 1
                continue
            if not dry_run:
                try:
                    path.unlink()
                except FileNotFoundError:
                    continue
            report.removed += 1
        return report

    def _record_paths(self) -> list[Path]:
        if not self.progress_dir.is_dir():
            return []
        return sorted(
            path
            for path in self.progress_dir.iterdir()
            if path.is_file() and path.suffix == PROGRESS_SUFFIX and not path.name.startswith(".")
        )

    def _read_path(self, path: Path) -> ProgressReport:
        try:
            payload = load_json(path)
        except (OSError, ValueError) as error:
            raise CorruptProgressRecord(str(error)) from error
        return parse_progress_payload(payload)


def build_progress_instructions(
    sub_task_id: str,
    main_task_id: str,
    total_steps: int,
    progress_dir: Path,
) -> str:
    """Reporting protocol appended to every dispatched sub-task."""

    record_path = progress_dir / f"{sub_task_id}{PROGRESS_SUFFIX}"
    return f"""
## Progress Report [Required - Part of Task]

Reporting progress is part of the task, not an optional step.
Write the progress record right after each step completes.

### Progress File Path
`{record_path}`

### Record Format (JSON object, overwrite the whole file each time)
```
{{
  "sub_task_id": "{sub_task_id}",
  "main_task_id": "{main_task_id}",
  "current_step": <step number, 1..{total_steps}>,
  "total_steps": {total_steps},
  "status": "in_progress" | "completed" | "failed",
  "message": "<what was just done, or the failure reason>",
  "timestamp": <epoch milliseconds>,
  "percentage": <0-100>
}}
```

Alternatively run:
`subagent-orchestrator progress report --sub-task-id {sub_task_id} --main-task-id {main_task_id} --step N --total-steps {total_steps} --status in_progress --message "..."`

### Key Requirements
1. Write when starting (current_step 1, percentage 0).
2. Write after each step completes, do not wait until the end.
3. On completion write status "completed" with percentage 100.
4. If stuck or failed, write status "failed" and explain why in message.
"""
