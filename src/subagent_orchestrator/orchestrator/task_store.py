"""Persistent store for main tasks and their sub-tasks."""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from subagent_orchestrator.orchestrator.models import (
    ALLOWED_TRANSITIONS,
    TERMINAL_SUB_TASK_STATUSES,
    ErrorKind,
    MainTaskStatus,
    MainTaskView,
    OrchestratorError,
    Priority,
    SubTaskStatus,
    SubTaskView,
)
from subagent_orchestrator.storage.alembic_runner import upgrade_head
from subagent_orchestrator.storage.common import (
    backup_sqlite_database,
    build_sqlite_engine,
    to_db_datetime,
    to_epoch_ms,
    to_utc_aware_datetime,
    utc_now,
)
from subagent_orchestrator.storage.sqlmodel_models import MainTaskRow, SubTaskRow

logger = logging.getLogger(__name__)

BACKUP_THRESHOLD = 10
UPDATABLE_FIELDS = frozenset(
    {
        "model_id",
        "started_at",
        "ended_at",
        "estimated_duration_ms",
        "actual_duration_ms",
        "error_log",
        "current_step_index",
    },
)
_DATETIME_FIELDS = frozenset({"started_at", "ended_at"})
_NON_TERMINAL_VALUES = tuple(
    status.value for status in SubTaskStatus if status not in TERMINAL_SUB_TASK_STATUSES
)


class UpdateOutcome(str, Enum):
    MISSING = "missing"
    IGNORED = "ignored"
    APPLIED = "applied"


def derive_main_status(statuses: Sequence[SubTaskStatus]) -> MainTaskStatus:
    """Compute main task status from its sub-task statuses."""

    if not statuses or all(status is SubTaskStatus.PENDING for status in statuses):
        return MainTaskStatus.PENDING
    if all(status in TERMINAL_SUB_TASK_STATUSES for status in statuses):
        if SubTaskStatus.FAILED in statuses:
            return MainTaskStatus.FAILED
        if SubTaskStatus.ABORTED in statuses:
            return MainTaskStatus.ABORTED
        return MainTaskStatus.COMPLETED
    return MainTaskStatus.RUNNING


class TaskStore:
    """Task persistence facade backed by SQLModel + SQLite.

    Each public mutation is one ``BEGIN IMMEDIATE`` transaction committed before
    the method returns, so concurrent processes sharing ``db_path`` observe either
    the old or the new state and never a partial write.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 5_000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self._clock = clock
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    @property
    def backup_path(self) -> Path:
        return self.db_path.with_name(f"{self.db_path.name}.backup")

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Quarantine an unreadable store file, then run schema migrations."""

        if _is_corrupt_database(self.db_path):
            quarantine = self.db_path.with_name(
                f"{self.db_path.name}.corrupt-{to_epoch_ms(self._clock())}",
            )
            self.db_path.replace(quarantine)
            logger.error(
                "Task store %s is unreadable; moved to %s and starting empty.",
                self.db_path,
                quarantine,
            )
        upgrade_head(self.db_path)

    def create_main_task(
        self,
        description: str,
        priority: Priority | str = Priority.MEDIUM,
    ) -> MainTaskView:
        """Create a pending main task with no sub-tasks."""

        now = self._clock()
        task_id = f"task-{to_epoch_ms(now)}-{uuid4().hex[:8]}"
        with Session(self.engine) as session:
            row = MainTaskRow(
                task_id=task_id,
                description=description,
                priority=_coerce_priority(priority).value,
                status=MainTaskStatus.PENDING.value,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_main_view(row, [])

    def create_sub_task(  # noqa: PLR0913
        self,
        main_task_id: str,
        description: str,
        role_prompt: str,
        steps: Sequence[str],
        expected_outcome: str,
        *,
        model_id: str | None = None,
        estimated_duration_ms: int | None = None,
    ) -> SubTaskView | None:
        """Append a pending sub-task; ``None`` when the main task is unknown."""

        now = self._clock()
        with Session(self.engine) as session:
            main_row = session.get(MainTaskRow, main_task_id)
            if main_row is None:
                return None
            position = (
                session.exec(
                    select(func.count())
                    .select_from(SubTaskRow)
                    .where(col(SubTaskRow.main_task_id) == main_task_id),
                ).one()
                + 1
            )
            row = SubTaskRow(
                sub_task_id=f"{main_task_id}-sub-{position}-{uuid4().hex[:6]}",
                main_task_id=main_task_id,
                position=position,
                model_id=model_id,
                task_description=description,
                role_prompt=role_prompt,
                steps_json=json.dumps(list(steps), ensure_ascii=False),
                current_step_index=0,
                status=SubTaskStatus.PENDING.value,
                estimated_duration_ms=estimated_duration_ms,
                expected_outcome=expected_outcome,
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.flush()
            self._refresh_main_status(session, main_row, now=now)
            session.commit()
            session.refresh(row)
            return _to_sub_view(row)

    def update_sub_task_status(
        self,
        sub_task_id: str,
        status: SubTaskStatus | str,
        **updates: Any,
    ) -> bool:
        """Apply a validated status transition plus whitelisted field updates.

        Returns ``False`` when the sub-task does not exist. Updates aimed at a
        terminal sub-task are accepted as no-ops.
        """

        outcome = self.apply_sub_task_status(sub_task_id, status, **updates)
        return outcome is not UpdateOutcome.MISSING

    def apply_sub_task_status(
        self,
        sub_task_id: str,
        status: SubTaskStatus | str,
        **updates: Any,
    ) -> UpdateOutcome:
        """Same as ``update_sub_task_status`` but reports whether anything changed."""

        target = _coerce_sub_status(status)
        unknown = sorted(set(updates) - UPDATABLE_FIELDS)
        if unknown:
            raise OrchestratorError(
                ErrorKind.VALIDATION,
                f"Unsupported sub-task fields: {', '.join(unknown)}",
                {"fields": unknown},
            )

        now = self._clock()
        with Session(self.engine) as session:
            row = session.get(SubTaskRow, sub_task_id)
            if row is None:
                return UpdateOutcome.MISSING
            current = SubTaskStatus(row.status)
            if current in TERMINAL_SUB_TASK_STATUSES:
                logger.debug(
                    "Ignoring %s update for terminal sub-task %s (%s).",
                    target.value,
                    sub_task_id,
                    current.value,
                )
                return UpdateOutcome.IGNORED
            if target is not current and target not in ALLOWED_TRANSITIONS[current]:
                raise OrchestratorError(
                    ErrorKind.VALIDATION,
                    f"Invalid transition {current.value} -> {target.value} "
                    f"for sub-task {sub_task_id}",
                    {"from": current.value, "to": target.value},
                )

            row.status = target.value
            for name, value in updates.items():
                if name in _DATETIME_FIELDS and value is not None:
                    value = to_db_datetime(value)
                setattr(row, name, value)
            row.updated_at = to_db_datetime(now)
            session.add(row)
            session.flush()

            main_row = session.get(MainTaskRow, row.main_task_id)
            if main_row is not None:
                self._refresh_main_status(session, main_row, now=now)
            session.commit()
            return UpdateOutcome.APPLIED

    def bind_session(
        self,
        sub_task_id: str,
        session_id: str,
        *,
        model_id: str | None = None,
    ) -> SubTaskView:
        """Attach a child session once and move the sub-task to running."""

        if not session_id.strip():
            raise OrchestratorError(ErrorKind.VALIDATION, "Session id must not be empty.")

        now = self._clock()
        with Session(self.engine) as session:
            row = session.get(SubTaskRow, sub_task_id)
            if row is None:
                raise OrchestratorError(
                    ErrorKind.NOT_FOUND,
                    f"Sub-task not found: {sub_task_id}",
                    {"sub_task_id": sub_task_id},
                )
            values: dict[str, Any] = {
                "child_session_id": session_id,
                "status": SubTaskStatus.RUNNING.value,
                "started_at": func.coalesce(col(SubTaskRow.started_at), to_db_datetime(now)),
                "updated_at": to_db_datetime(now),
            }
            if model_id:
                values["model_id"] = model_id
            result = session.exec(
                sa_update(SubTaskRow)
                .where(
                    col(SubTaskRow.sub_task_id) == sub_task_id,
                    col(SubTaskRow.child_session_id).is_(None),
                    col(SubTaskRow.status).in_(_NON_TERMINAL_VALUES),
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                current = session.get(SubTaskRow, sub_task_id)
                if current is not None and current.child_session_id is not None:
                    raise OrchestratorError(
                        ErrorKind.ALREADY_BOUND,
                        f"Sub-task {sub_task_id} is already bound to session "
                        f"{current.child_session_id}",
                        {
                            "sub_task_id": sub_task_id,
                            "child_session_id": current.child_session_id,
                        },
                    )
                status = current.status if current is not None else "unknown"
                raise OrchestratorError(
                    ErrorKind.NOT_RUNNING,
                    f"Sub-task {sub_task_id} is {status} and cannot be bound",
                    {"sub_task_id": sub_task_id, "status": status},
                )

            session.expire_all()
            bound = session.exec(
                select(SubTaskRow).where(SubTaskRow.sub_task_id == sub_task_id),
            ).one()
            main_row = session.get(MainTaskRow, bound.main_task_id)
            if main_row is not None:
                self._refresh_main_status(session, main_row, now=now)
            session.commit()
            session.refresh(bound)
            return _to_sub_view(bound)

    def get_task(self, task_id: str) -> MainTaskView | None:
        with Session(self.engine) as session:
            row = session.get(MainTaskRow, task_id)
            if row is None:
                return None
            return _to_main_view(row, self._load_sub_rows(session, [task_id]).get(task_id, []))

    def get_all_tasks(self, status: MainTaskStatus | str | None = None) -> list[MainTaskView]:
        """List main tasks oldest first, optionally filtered by derived status."""

        with Session(self.engine) as session:
            statement = select(MainTaskRow)
            if status is not None:
                statement = statement.where(
                    MainTaskRow.status == _coerce_main_status(status).value,
                )
            rows = list(
                session.exec(
                    statement.order_by(
                        col(MainTaskRow.created_at).asc(),
                        col(MainTaskRow.task_id).asc(),
                    ),
                ).all(),
            )
            sub_rows = self._load_sub_rows(session, [row.task_id for row in rows])
            return [_to_main_view(row, sub_rows.get(row.task_id, [])) for row in rows]

    def find_sub_task(self, sub_task_id: str) -> tuple[MainTaskView, SubTaskView] | None:
        with Session(self.engine) as session:
            row = session.get(SubTaskRow, sub_task_id)
            if row is None:
                return None
            return self._owner_pair(session, row)

    def get_task_by_session_id(
        self,
        session_id: str,
    ) -> tuple[MainTaskView, SubTaskView] | None:
        """Resolve a session id to its sub-task.

        Exact matches win; otherwise the first bound session where either id
        contains the other. An empty query never matches.
        """

        query = session_id.strip()
        if not query:
            return None
        with Session(self.engine) as session:
            exact = session.exec(
                select(SubTaskRow).where(SubTaskRow.child_session_id == query),
            ).first()
            if exact is not None:
                return self._owner_pair(session, exact)

            candidates = session.exec(
                select(SubTaskRow)
                .join(MainTaskRow, col(MainTaskRow.task_id) == col(SubTaskRow.main_task_id))
                .where(col(SubTaskRow.child_session_id).is_not(None))
                .order_by(col(MainTaskRow.created_at).asc(), col(SubTaskRow.position).asc()),
            ).all()
            for row in candidates:
                bound = row.child_session_id or ""
                if query in bound or bound in query:
                    return self._owner_pair(session, row)
        return None

    def list_sub_tasks(
        self,
        statuses: Iterable[SubTaskStatus] | None = None,
    ) -> list[tuple[MainTaskView, SubTaskView]]:
        """List sub-tasks with their owners, optionally narrowed by status."""

        with Session(self.engine) as session:
            statement = select(SubTaskRow)
            if statuses is not None:
                statement = statement.where(
                    col(SubTaskRow.status).in_([status.value for status in statuses]),
                )
            rows = session.exec(
                statement.order_by(
                    col(SubTaskRow.main_task_id).asc(),
                    col(SubTaskRow.position).asc(),
                ),
            ).all()
            return self._owner_pairs(session, rows)

    def delete_old_tasks(self, max_age: timedelta, *, dry_run: bool = False) -> int:
        """Delete main tasks older than ``max_age`` regardless of status.

        Sub-tasks are removed by the foreign key cascade. When more than
        ``BACKUP_THRESHOLD`` tasks would go, the store is first snapshotted to
        ``<db>.backup``; a failed snapshot is logged and does not block deletion.
        """

        cutoff = to_db_datetime(self._clock() - max_age)
        with Session(self.engine) as session:
            task_ids = list(
                session.exec(
                    select(MainTaskRow.task_id).where(col(MainTaskRow.created_at) < cutoff),
                ).all(),
            )
        if dry_run or not task_ids:
            return len(task_ids)

        if len(task_ids) > BACKUP_THRESHOLD:
            try:
                backup_sqlite_database(self.db_path, self.backup_path)
                logger.info(
                    "Backed up task store to %s before removing %d tasks.",
                    self.backup_path,
                    len(task_ids),
                )
            except (sqlite3.Error, OSError):
                logger.exception("Task store backup to %s failed.", self.backup_path)

        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(MainTaskRow).where(
                    col(MainTaskRow.task_id).in_(task_ids),
                    col(MainTaskRow.created_at) < cutoff,
                ),
            )
            session.commit()
            deleted = int(result.rowcount or 0)
        logger.info("Deleted %d main tasks created before %s.", deleted, cutoff)
        return deleted

    def get_timeout_subtasks(
        self,
        timeout: timedelta,
    ) -> list[tuple[MainTaskView, SubTaskView]]:
        """Running sub-tasks started longer than ``timeout`` ago."""

        cutoff = to_db_datetime(self._clock() - timeout)
        with Session(self.engine) as session:
            rows = session.exec(
                select(SubTaskRow)
                .where(
                    SubTaskRow.status == SubTaskStatus.RUNNING.value,
                    col(SubTaskRow.started_at).is_not(None),
                    col(SubTaskRow.started_at) < cutoff,
                )
                .order_by(col(SubTaskRow.started_at).asc()),
            ).all()
            return self._owner_pairs(session, rows)

    def _refresh_main_status(
        self,
        session: Session,
        main_row: MainTaskRow,
        *,
        now: datetime,
    ) -> None:
        sub_rows = session.exec(
            select(SubTaskRow).where(SubTaskRow.main_task_id == main_row.task_id),
        ).all()
        derived = derive_main_status([SubTaskStatus(row.status) for row in sub_rows])
        main_row.status = derived.value
        if derived.is_terminal and main_row.completed_at is None:
            main_row.completed_at = to_db_datetime(now)
        if derived is MainTaskStatus.FAILED:
            errors = [
                row.error_log
                for row in sorted(sub_rows, key=lambda item: item.position)
                if row.status == SubTaskStatus.FAILED.value and row.error_log
            ]
            main_row.error_summary = errors[0] if errors else main_row.error_summary
        main_row.updated_at = to_db_datetime(now)
        session.add(main_row)

    def _load_sub_rows(
        self,
        session: Session,
        task_ids: Sequence[str],
    ) -> dict[str, list[SubTaskRow]]:
        if not task_ids:
            return {}
        rows = session.exec(
            select(SubTaskRow)
            .where(col(SubTaskRow.main_task_id).in_(list(task_ids)))
            .order_by(col(SubTaskRow.position).asc()),
        ).all()
        grouped: dict[str, list[SubTaskRow]] = {}
        for row in rows:
            grouped.setdefault(row.main_task_id, []).append(row)
        return grouped

    def _owner_pair(
        self,
        session: Session,
        row: SubTaskRow,
    ) -> tuple[MainTaskView, SubTaskView] | None:
        pairs = self._owner_pairs(session, [row])
        return pairs[0] if pairs else None

    def _owner_pairs(
        self,
        session: Session,
        rows: Sequence[SubTaskRow],
    ) -> list[tuple[MainTaskView, SubTaskView]]:
        task_ids = sorted({row.main_task_id for row in rows})
        if not task_ids:
            return []
        main_rows = session.exec(
            select(MainTaskRow).where(col(MainTaskRow.task_id).in_(task_ids)),
        ).all()
        sub_rows = self._load_sub_rows(session, task_ids)
        views = {
            main_row.task_id: _to_main_view(main_row, sub_rows.get(main_row.task_id, []))
            for main_row in main_rows
        }
        pairs: list[tuple[MainTaskView, SubTaskView]] = []
        for row in rows:
            main_view = views.get(row.main_task_id)
            if main_view is None:
                continue
            sub_view = next(
                (item for item in main_view.sub_tasks if item.sub_task_id == row.sub_task_id),
                _to_sub_view(row),
            )
            pairs.append((main_view, sub_view))
        return pairs


def _is_corrupt_database(db_path: Path) -> bool:
    if not db_path.exists() or db_path.stat().st_size == 0:
        return False
    try:
        connection = sqlite3.connect(db_path)
        try:
            row = connection.execute("PRAGMA quick_check").fetchone()
        finally:
            connection.close()
    except sqlite3.DatabaseError:
        return True
    return row is None or row[0] != "ok"


def _coerce_sub_status(value: SubTaskStatus | str) -> SubTaskStatus:
    try:
        return SubTaskStatus(value)
    except ValueError as error:
        raise OrchestratorError(
            ErrorKind.VALIDATION,
            f"Unknown sub-task status: {value}",
            {"status": str(value)},
        ) from error


def _coerce_main_status(value: MainTaskStatus | str) -> MainTaskStatus:
    try:
        return MainTaskStatus(value)
    except ValueError as error:
        raise OrchestratorError(
            ErrorKind.VALIDATION,
            f"Unknown task status: {value}",
            {"status": str(value)},
        ) from error


def _coerce_priority(value: Priority | str) -> Priority:
    try:
        return Priority(value)
    except ValueError as error:
        raise OrchestratorError(
            ErrorKind.VALIDATION,
            f"Unknown priority: {value}",
            {"priority": str(value)},
        ) from error


def _optional_aware(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_sub_view(row: SubTaskRow) -> SubTaskView:
    return SubTaskView(
        sub_task_id=row.sub_task_id,
        main_task_id=row.main_task_id,
        position=row.position,
        child_session_id=row.child_session_id,
        model_id=row.model_id,
        task_description=row.task_description,
        role_prompt=row.role_prompt,
        steps=list(json.loads(row.steps_json or "[]")),
        current_step_index=row.current_step_index,
        status=SubTaskStatus(row.status),
        started_at=_optional_aware(row.started_at),
        ended_at=_optional_aware(row.ended_at),
        estimated_duration_ms=row.estimated_duration_ms,
        actual_duration_ms=row.actual_duration_ms,
        error_log=row.error_log,
        expected_outcome=row.expected_outcome,
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_main_view(row: MainTaskRow, sub_rows: Sequence[SubTaskRow]) -> MainTaskView:
    return MainTaskView(
        task_id=row.task_id,
        description=row.description,
        priority=Priority(row.priority),
        status=MainTaskStatus(row.status),
        created_at=to_utc_aware_datetime(row.created_at),
        completed_at=_optional_aware(row.completed_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        error_summary=row.error_summary,
        sub_tasks=[_to_sub_view(sub_row) for sub_row in sub_rows],
    )
