"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, List, Optional

import asyncpg

from ..contracts import Workflow, WorkflowEnrollment
from ..enrollment import BLOCKING_STATUSES
from ..errors import EnrollmentConflictError
from ..graph import WorkflowStep, dump_steps, parse_steps
from .repository import WorkflowRepository


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflows and enrollments using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS crm_workflows (
                id TEXT PRIMARY KEY,
                workspace_id TEXT NOT NULL,
                status TEXT NOT NULL,
                version INTEGER NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                document JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS crm_workflow_versions (
                workflow_id TEXT NOT NULL,
                version INTEGER NOT NULL,
                steps JSONB NOT NULL,
                PRIMARY KEY (workflow_id, version)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS crm_enrollments (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                status TEXT NOT NULL,
                next_execution_time TIMESTAMPTZ,
                enrolled_at TIMESTAMPTZ NOT NULL,
                document JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS ix_crm_enrollments_entity ON crm_enrollments (workflow_id, entity_type, entity_id)"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS ix_crm_enrollments_due ON crm_enrollments (status, next_execution_time)"
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
                params.append(value)
                clauses.append(f"{column} = ${len(params)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    # ------------------------------------------------------------------
    async def _save_workflow(self, workflow: Workflow) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO crm_workflows (id, workspace_id, status, version, created_at, document)
                    VALUES ($1, $2, $3, $4, $5, $6::jsonb)
                    ON CONFLICT (id) DO UPDATE SET
                        workspace_id = EXCLUDED.workspace_id,
                        status = EXCLUDED.status,
                        version = EXCLUDED.version,
                        document = EXCLUDED.document
                    """,
                    workflow.id,
                    workflow.workspace_id,
                    workflow.status,
                    workflow.version,
                    workflow.created_at,
                    workflow.to_json(),
                )
                await conn.execute(
                    """
                    INSERT INTO crm_workflow_versions (workflow_id, version, steps)
                    VALUES ($1, $2, $3::jsonb)
                    ON CONFLICT DO NOTHING
                    """,
                    workflow.id,
                    workflow.version,
                    json.dumps(dump_steps(workflow.steps)),
                )
        finally:
            await conn.close()

    async def create_workflow(self, workflow: Workflow) -> None:
        await self._save_workflow(workflow)

    async def update_workflow(self, workflow: Workflow) -> None:
        await self._save_workflow(workflow)

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT document FROM crm_workflows WHERE id = $1", workflow_id
            )
        finally:
            await conn.close()
        if not row:
            return None
        return Workflow.from_json(row["document"])

    async def list_workflows(
        self, workspace_id: Optional[str] = None, status: Optional[str] = None
    ) -> list[Workflow]:
        clauses, params = [], []
        if workspace_id is not None:
            params.append(workspace_id)
            clauses.append(f"workspace_id = ${len(params)}")
        if status is not None:
            params.append(status)
            clauses.append(f"status = ${len(params)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT document FROM crm_workflows {where} ORDER BY created_at", *params
            )
        finally:
            await conn.close()
        return [Workflow.from_json(r["document"]) for r in rows]

    async def delete_workflow(self, workflow_id: str) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute("DELETE FROM crm_workflows WHERE id = $1", workflow_id)
                await conn.execute(
                    "DELETE FROM crm_workflow_versions WHERE workflow_id = $1", workflow_id
                )
        finally:
            await conn.close()

    async def get_workflow_version(
        self, workflow_id: str, version: int
    ) -> List[WorkflowStep] | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT steps FROM crm_workflow_versions WHERE workflow_id = $1 AND version = $2",
                workflow_id,
                version,
            )
        finally:
            await conn.close()
        if not row:
            return None
        return parse_steps(json.loads(row["steps"]))

    # ------------------------------------------------------------------
    @staticmethod
    async def _raise_if_blocked(conn: Any, enrollment: WorkflowEnrollment) -> None:
        key = f"{enrollment.workflow_id}:{enrollment.entity_type}:{enrollment.entity_id}"
        await conn.execute("SELECT pg_advisory_xact_lock(hashtext($1))", key)
        blocking = await conn.fetchval(
            """
            SELECT 1 FROM crm_enrollments
            WHERE workflow_id = $1 AND entity_type = $2 AND entity_id = $3 AND id <> $4
            AND status = ANY($5::text[]) LIMIT 1
            """,
            enrollment.workflow_id,
            enrollment.entity_type,
            enrollment.entity_id,
            enrollment.id,
            sorted(BLOCKING_STATUSES),
        )
        if blocking:
            raise EnrollmentConflictError(
                enrollment.workflow_id, enrollment.entity_type, enrollment.entity_id
            )

    async def add_enrollment(
        self, enrollment: WorkflowEnrollment, exclusive: bool = True
    ) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                if exclusive:
                    await self._raise_if_blocked(conn, enrollment)
                await conn.execute(
                    """
                    INSERT INTO crm_enrollments
                        (id, workflow_id, entity_type, entity_id, status, next_execution_time, enrolled_at, document)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb)
                    """,
                    enrollment.id,
                    enrollment.workflow_id,
                    enrollment.entity_type,
                    enrollment.entity_id,
                    enrollment.status,
                    enrollment.next_execution_time,
                    enrollment.enrolled_at,
                    enrollment.to_json(),
                )
        finally:
            await conn.close()

    async def save_enrollment(
        self, enrollment: WorkflowEnrollment, exclusive: bool = False
    ) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                if exclusive:
                    await self._raise_if_blocked(conn, enrollment)
                await conn.execute(
                    """
                    UPDATE crm_enrollments
                    SET status = $1, next_execution_time = $2, document = $3::jsonb
                    WHERE id = $4
                    """,
                    enrollment.status,
                    enrollment.next_execution_time,
                    enrollment.to_json(),
                    enrollment.id,
                )
        finally:
            await conn.close()

    async def get_enrollment(self, enrollment_id: str) -> WorkflowEnrollment | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT document FROM crm_enrollments WHERE id = $1", enrollment_id
            )
        finally:
            await conn.close()
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
        query = f"SELECT document FROM crm_enrollments {where} ORDER BY enrolled_at, id"
        if limit is not None:
            params.append(limit)
            query += f" LIMIT ${len(params)}"
        if offset:
            params.append(offset)
            query += f" OFFSET ${len(params)}"
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        finally:
            await conn.close()
        return [WorkflowEnrollment.from_json(r["document"]) for r in rows]

    async def count_enrollments(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> int:
        where, params = self._where(workflow_id, status, entity_type, entity_id)
        conn = await self._connect()
        try:
            return await conn.fetchval(f"SELECT COUNT(*) FROM crm_enrollments {where}", *params)
        finally:
            await conn.close()

    async def find_due_enrollments(
        self, now: datetime, limit: Optional[int] = None
    ) -> list[WorkflowEnrollment]:
        query = """
            SELECT document FROM crm_enrollments
            WHERE status = 'active' AND next_execution_time IS NOT NULL AND next_execution_time <= $1
            ORDER BY next_execution_time
        """
        params: list[Any] = [now]
        if limit is not None:
            params.append(limit)
            query += " LIMIT $2"
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        finally:
            await conn.close()
        return [WorkflowEnrollment.from_json(r["document"]) for r in rows]

    async def count_due_enrollments(self, now: datetime) -> int:
        conn = await self._connect()
        try:
            return await conn.fetchval(
                """
                SELECT COUNT(*) FROM crm_enrollments
                WHERE status = 'active' AND next_execution_time IS NOT NULL AND next_execution_time <= $1
                """,
                now,
            )
        finally:
            await conn.close()
