"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional

from ..contracts import Workflow, WorkflowEnrollment
from ..enrollment import BLOCKING_STATUSES
from ..errors import EnrollmentConflictError
from ..graph import WorkflowStep, dump_steps, parse_steps
from .repository import WorkflowRepository


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC timestamp so text comparison matches time order."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflows and enrollments using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                workspace_id TEXT NOT NULL,
                status TEXT NOT NULL,
                version INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                document TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_versions (
                workflow_id TEXT NOT NULL,
                version INTEGER NOT NULL,
                steps TEXT NOT NULL,
                PRIMARY KEY (workflow_id, version)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS enrollments (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                status TEXT NOT NULL,
                next_execution_time TEXT,
                enrolled_at TEXT NOT NULL,
                document TEXT NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS ix_enrollments_entity ON enrollments (workflow_id, entity_type, entity_id)"
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS ix_enrollments_due ON enrollments (status, next_execution_time)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _save_workflow(self, workflow: Workflow) -> None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                """
                INSERT INTO workflows (id, workspace_id, status, version, created_at, document)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    workspace_id = excluded.workspace_id,
                    status = excluded.status,
                    version = excluded.version,
                    document = excluded.document
                """,
                (
                    workflow.id,
                    workflow.workspace_id,
                    workflow.status,
                    workflow.version,
                    _ts(workflow.created_at),
                    workflow.to_json(),
                ),
            )
            cur.execute(
                "INSERT OR IGNORE INTO workflow_versions (workflow_id, version, steps) VALUES (?, ?, ?)",
                (workflow.id, workflow.version, json.dumps(dump_steps(workflow.steps))),
            )
            self._conn.commit()

    @staticmethod
    def _raise_if_blocked(cur: sqlite3.Cursor, enrollment: WorkflowEnrollment) -> None:
        placeholders = ", ".join("?" for _ in BLOCKING_STATUSES)
        cur.execute(
            f"""
            SELECT 1 FROM enrollments
            WHERE workflow_id = ? AND entity_type = ? AND entity_id = ? AND id != ?
            AND status IN ({placeholders}) LIMIT 1
            """,
            (
                enrollment.workflow_id,
                enrollment.entity_type,
                enrollment.entity_id,
                enrollment.id,
                *sorted(BLOCKING_STATUSES),
            ),
        )
        if cur.fetchone() is not None:
            raise EnrollmentConflictError(
                enrollment.workflow_id, enrollment.entity_type, enrollment.entity_id
            )

    def _insert_enrollment(self, enrollment: WorkflowEnrollment, exclusive: bool) -> None:
        with self._lock:
            cur = self._conn.cursor()
            try:
                if exclusive:
                    self._raise_if_blocked(cur, enrollment)
                cur.execute(
                    """
                    INSERT INTO enrollments
                        (id, workflow_id, entity_type, entity_id, status, next_execution_time, enrolled_at, document)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    self._enrollment_row(enrollment),
                )
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def _update_enrollment(self, enrollment: WorkflowEnrollment, exclusive: bool) -> None:
        with self._lock:
            cur = self._conn.cursor()
            try:
                if exclusive:
                    self._raise_if_blocked(cur, enrollment)
                cur.execute(
                    """
                    UPDATE enrollments
                    SET status = ?, next_execution_time = ?, document = ?
                    WHERE id = ?
                    """,
                    (
                        enrollment.status,
                        _ts(enrollment.next_execution_time),
                        enrollment.to_json(),
                        enrollment.id,
                    ),
                )
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    @staticmethod
    def _enrollment_row(enrollment: WorkflowEnrollment) -> tuple:
        return (
            enrollment.id,
            enrollment.workflow_id,
            enrollment.entity_type,
            enrollment.entity_id,
            enrollment.status,
            _ts(enrollment.next_execution_time),
            _ts(enrollment.enrolled_at),
            enrollment.to_json(),
        )

    @staticmethod
    def _where(
        workflow_id: Optional[str],
        status: Optional[str],
        entity_type: Optional[str],
        entity_id: Optional[str],
    ) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in (
            ("workflow_id", workflow_id),
            ("status", status),
            ("entity_type", entity_type),
            ("entity_id", entity_id),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    # ------------------------------------------------------------------
    # Repository API
    async def create_workflow(self, workflow: Workflow) -> None:
        await asyncio.to_thread(self._save_workflow, workflow)

    async def update_workflow(self, workflow: Workflow) -> None:
        await asyncio.to_thread(self._save_workflow, workflow)

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT document FROM workflows WHERE id = ?", workflow_id
        )
        if not row:
            return None
        return Workflow.from_json(row["document"])

    async def list_workflows(
        self, workspace_id: Optional[str] = None, status: Optional[str] = None
    ) -> list[Workflow]:
        clauses, params = [], []
        if workspace_id is not None:
            clauses.append("workspace_id = ?")
            params.append(workspace_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT document FROM workflows {where} ORDER BY created_at",
            *params,
        )
        return [Workflow.from_json(r["document"]) for r in rows]

    async def delete_workflow(self, workflow_id: str) -> None:
        await asyncio.to_thread(self._execute, "DELETE FROM workflows WHERE id = ?", workflow_id)
        await asyncio.to_thread(
            self._execute, "DELETE FROM workflow_versions WHERE workflow_id = ?", workflow_id
        )

    async def get_workflow_version(
        self, workflow_id: str, version: int
    ) -> List[WorkflowStep] | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT steps FROM workflow_versions WHERE workflow_id = ? AND version = ?",
            workflow_id,
            version,
        )
        if not row:
            return None
        return parse_steps(json.loads(row["steps"]))

    async def add_enrollment(
        self, enrollment: WorkflowEnrollment, exclusive: bool = True
    ) -> None:
        await asyncio.to_thread(self._insert_enrollment, enrollment, exclusive)

    async def save_enrollment(
        self, enrollment: WorkflowEnrollment, exclusive: bool = False
    ) -> None:
        await asyncio.to_thread(self._update_enrollment, enrollment, exclusive)

    async def get_enrollment(self, enrollment_id: str) -> WorkflowEnrollment | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT document FROM enrollments WHERE id = ?", enrollment_id
        )
        if not row:
            return None
        return WorkflowEnrollment.from_json(row["document"])

    async def list_enrollments(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[WorkflowEnrollment]:
        where, params = self._where(workflow_id, status, entity_type, entity_id)
        query = f"SELECT document FROM enrollments {where} ORDER BY enrolled_at, id"
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params += [limit, offset]
        elif offset:
            query += " LIMIT -1 OFFSET ?"
            params.append(offset)
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [WorkflowEnrollment.from_json(r["document"]) for r in rows]

    async def count_enrollments(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> int:
        where, params = self._where(workflow_id, status, entity_type, entity_id)
        row = await asyncio.to_thread(
            self._fetchone, f"SELECT COUNT(*) AS n FROM enrollments {where}", *params
        )
        return int(row["n"])

    async def find_due_enrollments(
        self, now: datetime, limit: Optional[int] = None
    ) -> list[WorkflowEnrollment]:
        query = """
            SELECT document FROM enrollments
            WHERE status = 'active' AND next_execution_time IS NOT NULL AND next_execution_time <= ?
            ORDER BY next_execution_time
        """
        params: list[Any] = [_ts(now)]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [WorkflowEnrollment.from_json(r["document"]) for r in rows]

    async def count_due_enrollments(self, now: datetime) -> int:
        row = await asyncio.to_thread(
            self._fetchone,
            """
            SELECT COUNT(*) AS n FROM enrollments
            WHERE status = 'active' AND next_execution_time IS NOT NULL AND next_execution_time <= ?
            """,
            _ts(now),
        )
        return int(row["n"])

    def close(self) -> None:
        self._conn.close()
