"""PostgreSQL implementation of the process repository."""

from __future__ import annotations

from typing import Any, Iterable, Optional

import asyncpg

from ..contracts import DefinitionBase, definition_adapter
from ..errors import ConflictError, NotFoundError
from ..models import CaseStageProgress, InstanceStatus, ProcessInstance
from .repository import ProcessRepository, category_of


def _affected(status: str) -> int:
    """Row count from an asyncpg command tag such as ``'UPDATE 1'``."""
    return int(status.split()[-1])


_REFERENCES_QUERY = """
SELECT
    (SELECT COUNT(*) FROM caseflow_instances WHERE definition_id = $1)
    + (SELECT COUNT(*) FROM caseflow_case_progress WHERE definition_id = $1)
    AS refs
"""


class PostgresProcessRepository(ProcessRepository):
    """Persist definitions and execution records using PostgreSQL."""

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
            CREATE TABLE IF NOT EXISTS caseflow_definitions (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                category TEXT NOT NULL,
                is_active BOOLEAN NOT NULL,
                version INTEGER NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                data JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS caseflow_instances (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                definition_id TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                status TEXT NOT NULL,
                version INTEGER NOT NULL,
                started_at TIMESTAMPTZ NOT NULL,
                data JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS caseflow_case_progress (
                id TEXT NOT NULL UNIQUE,
                tenant_id TEXT NOT NULL,
                case_id TEXT NOT NULL,
                definition_id TEXT NOT NULL,
                status TEXT NOT NULL,
                version INTEGER NOT NULL,
                data JSONB NOT NULL,
                PRIMARY KEY (tenant_id, case_id)
            )
            """
        )

    async def _execute(self, query: str, *params: Any) -> int:
        conn = await self._connect()
        try:
            status = await conn.execute(query, *params)
        except asyncpg.UniqueViolationError as exc:
            raise ConflictError(str(exc)) from exc
        finally:
            await conn.close()
        return _affected(status)

    async def _fetchrow(self, query: str, *params: Any) -> asyncpg.Record | None:
        conn = await self._connect()
        try:
            return await conn.fetchrow(query, *params)
        finally:
            await conn.close()

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        conn = await self._connect()
        try:
            return await conn.fetch(query, *params)
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def get_definition(self, definition_id: str) -> DefinitionBase | None:
        row = await self._fetchrow(
            "SELECT data::text AS data FROM caseflow_definitions WHERE id = $1",
            definition_id,
        )
        return definition_adapter.validate_json(row["data"]) if row else None

    async def save_definition(
        self, definition: DefinitionBase, expected_version: Optional[int] = None
    ) -> DefinitionBase:
        if expected_version is None:
            await self._execute(
                """
                INSERT INTO caseflow_definitions
                    (id, tenant_id, kind, category, is_active, version, created_at, data)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb)
                """,
                definition.id,
                definition.tenant_id,
                definition.kind,
                category_of(definition),
                definition.is_active,
                definition.version,
                definition.created_at,
                definition.model_dump_json(),
            )
            return definition

        updated = await self._execute(
            """
            UPDATE caseflow_definitions
            SET category = $1, is_active = $2, version = $3, data = $4::jsonb
            WHERE id = $5 AND version = $6
            """,
            category_of(definition),
            definition.is_active,
            definition.version,
            definition.model_dump_json(),
            definition.id,
            expected_version,
        )
        if not updated:
            if await self.get_definition(definition.id) is None:
                raise NotFoundError(f"Definition {definition.id} not found")
            raise ConflictError(
                f"Definition {definition.id} is no longer at version {expected_version}"
            )
        return definition

    async def delete_definition(self, definition_id: str) -> bool:
        deleted = await self._execute(
            "DELETE FROM caseflow_definitions WHERE id = $1", definition_id
        )
        return bool(deleted)

    async def delete_definition_if_unreferenced(self, definition_id: str) -> bool:
        # The row lock conflicts with the key-share lock taken by the
        # inserts in create_instance and create_progress.
        conn = await self._connect()
        try:
            async with conn.transaction():
                locked = await conn.fetchrow(
                    "SELECT id FROM caseflow_definitions WHERE id = $1 FOR UPDATE",
                    definition_id,
                )
                if locked is None:
                    return False
                references = await conn.fetchval(_REFERENCES_QUERY, definition_id)
                if references:
                    raise ConflictError(
                        f"Definition {definition_id} is referenced by {references} "
                        "execution record(s)"
                    )
                await conn.execute(
                    "DELETE FROM caseflow_definitions WHERE id = $1", definition_id
                )
        finally:
            await conn.close()
        return True

    async def list_definitions(
        self,
        tenant_id: str,
        kind: Optional[str] = None,
        category: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> list[DefinitionBase]:
        rows = await self._fetch(
            """
            SELECT data::text AS data FROM caseflow_definitions
            WHERE tenant_id = $1
              AND ($2::text IS NULL OR kind = $2)
              AND ($3::text IS NULL OR category = $3)
              AND ($4::boolean IS NULL OR is_active = $4)
            ORDER BY created_at
            """,
            tenant_id,
            kind,
            category,
            is_active,
        )
        return [definition_adapter.validate_json(r["data"]) for r in rows]

    async def count_definition_references(self, definition_id: str) -> int:
        row = await self._fetchrow(_REFERENCES_QUERY, definition_id)
        return int(row["refs"])

    # ------------------------------------------------------------------
    async def create_instance(self, instance: ProcessInstance) -> ProcessInstance:
        inserted = await self._execute(
            """
            INSERT INTO caseflow_instances
                (id, tenant_id, definition_id, entity_type, entity_id, status,
                 version, started_at, data)
            SELECT $1::text, $2::text, d.id, $4::text, $5::text, $6::text,
                   $7::integer, $8::timestamptz, $9::jsonb
            FROM caseflow_definitions d
            WHERE d.id = $3
            FOR KEY SHARE
            """,
            instance.id,
            instance.tenant_id,
            instance.definition_id,
            instance.entity.type,
            instance.entity.id,
            instance.status.value,
            instance.version,
            instance.started_at,
            instance.model_dump_json(),
        )
        if not inserted:
            raise NotFoundError(f"Definition {instance.definition_id} not found")
        return instance

    async def get_instance(self, instance_id: str) -> ProcessInstance | None:
        row = await self._fetchrow(
            "SELECT data::text AS data FROM caseflow_instances WHERE id = $1",
            instance_id,
        )
        return ProcessInstance.model_validate_json(row["data"]) if row else None

    async def replace_instance(
        self,
        instance: ProcessInstance,
        expected_version: int,
        expected_status: InstanceStatus,
    ) -> ProcessInstance:
        updated = await self._execute(
            """
            UPDATE caseflow_instances SET status = $1, version = $2, data = $3::jsonb
            WHERE id = $4 AND version = $5 AND status = $6
            """,
            instance.status.value,
            instance.version,
            instance.model_dump_json(),
            instance.id,
            expected_version,
            expected_status.value,
        )
        if not updated:
            if await self.get_instance(instance.id) is None:
                raise NotFoundError(f"Instance {instance.id} not found")
            raise ConflictError(f"Instance {instance.id} changed concurrently")
        return instance

    async def list_instances(
        self,
        tenant_id: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        statuses: Optional[Iterable[InstanceStatus]] = None,
    ) -> list[ProcessInstance]:
        values = (
            [InstanceStatus(s).value for s in statuses] if statuses is not None else None
        )
        rows = await self._fetch(
            """
            SELECT data::text AS data FROM caseflow_instances
            WHERE tenant_id = $1
              AND ($2::text IS NULL OR entity_type = $2)
              AND ($3::text IS NULL OR entity_id = $3)
              AND ($4::text[] IS NULL OR status = ANY($4::text[]))
            ORDER BY started_at DESC
            """,
            tenant_id,
            entity_type,
            entity_id,
            values,
        )
        return [ProcessInstance.model_validate_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    async def create_progress(self, progress: CaseStageProgress) -> CaseStageProgress:
        inserted = await self._execute(
            """
            INSERT INTO caseflow_case_progress
                (id, tenant_id, case_id, definition_id, status, version, data)
            SELECT $1::text, $2::text, $3::text, d.id, $5::text, $6::integer,
                   $7::jsonb
            FROM caseflow_definitions d
            WHERE d.id = $4
            FOR KEY SHARE
            """,
            progress.id,
            progress.tenant_id,
            progress.case_id,
            progress.definition_id,
            progress.status.value,
            progress.version,
            progress.model_dump_json(),
        )
        if not inserted:
            raise NotFoundError(f"Definition {progress.definition_id} not found")
        return progress

    async def get_progress(
        self, tenant_id: str, case_id: str
    ) -> CaseStageProgress | None:
        row = await self._fetchrow(
            """
            SELECT data::text AS data FROM caseflow_case_progress
            WHERE tenant_id = $1 AND case_id = $2
            """,
            tenant_id,
            case_id,
        )
        return CaseStageProgress.model_validate_json(row["data"]) if row else None

    async def replace_progress(
        self, progress: CaseStageProgress, expected_version: int
    ) -> CaseStageProgress:
        updated = await self._execute(
            """
            UPDATE caseflow_case_progress SET status = $1, version = $2, data = $3::jsonb
            WHERE tenant_id = $4 AND case_id = $5 AND version = $6
            """,
            progress.status.value,
            progress.version,
            progress.model_dump_json(),
            progress.tenant_id,
            progress.case_id,
            expected_version,
        )
        if not updated:
            if await self.get_progress(progress.tenant_id, progress.case_id) is None:
                raise NotFoundError(f"Case {progress.case_id} has no stage progress")
            raise ConflictError(
                f"Stage progress for case {progress.case_id} changed concurrently"
            )
        return progress

    async def list_progress(
        self, tenant_id: str, definition_id: Optional[str] = None
    ) -> list[CaseStageProgress]:
        rows = await self._fetch(
            """
            SELECT data::text AS data FROM caseflow_case_progress
            WHERE tenant_id = $1 AND ($2::text IS NULL OR definition_id = $2)
            """,
            tenant_id,
            definition_id,
        )
        return [CaseStageProgress.model_validate_json(r["data"]) for r in rows]
