"""SQLite implementation of the process repository."""

from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path
from typing import Any, Iterable, Optional

from ..contracts import DefinitionBase, definition_adapter
from ..errors import ConflictError, NotFoundError
from ..models import CaseStageProgress, InstanceStatus, ProcessInstance
from .repository import ProcessRepository, category_of


class SQLiteProcessRepository(ProcessRepository):
    """Persist definitions and execution records using SQLite.

    Each record is stored as one JSON document plus the columns needed for
    filtering and for the version/status guards of conditional updates.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS definitions (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                category TEXT NOT NULL,
                is_active INTEGER NOT NULL,
                version INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                data TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS instances (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                definition_id TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                status TEXT NOT NULL,
                version INTEGER NOT NULL,
                started_at TEXT NOT NULL,
                data TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS case_progress (
                id TEXT NOT NULL UNIQUE,
                tenant_id TEXT NOT NULL,
                case_id TEXT NOT NULL,
                definition_id TEXT NOT NULL,
                status TEXT NOT NULL,
                version INTEGER NOT NULL,
                data TEXT NOT NULL,
                PRIMARY KEY (tenant_id, case_id)
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        cur = self._conn.cursor()
        try:
            cur.execute(query, params)
        except sqlite3.IntegrityError as exc:
            self._conn.rollback()
            raise ConflictError(str(exc)) from exc
        self._conn.commit()
        return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    # ------------------------------------------------------------------
    # Definitions
    async def get_definition(self, definition_id: str) -> DefinitionBase | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM definitions WHERE id = ?", definition_id
        )
        return definition_adapter.validate_json(row["data"]) if row else None

    async def save_definition(
        self, definition: DefinitionBase, expected_version: Optional[int] = None
    ) -> DefinitionBase:
        if expected_version is None:
            await asyncio.to_thread(
                self._execute,
                """
                INSERT INTO definitions
                    (id, tenant_id, kind, category, is_active, version, created_at, data)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                definition.id,
                definition.tenant_id,
                definition.kind,
                category_of(definition),
                int(definition.is_active),
                definition.version,
                definition.created_at.isoformat(),
                definition.model_dump_json(),
            )
            return definition

        updated = await asyncio.to_thread(
            self._execute,
            """
            UPDATE definitions
            SET category = ?, is_active = ?, version = ?, data = ?
            WHERE id = ? AND version = ?
            """,
            category_of(definition),
            int(definition.is_active),
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
        deleted = await asyncio.to_thread(
            self._execute, "DELETE FROM definitions WHERE id = ?", definition_id
        )
        return bool(deleted)

    async def delete_definition_if_unreferenced(self, definition_id: str) -> bool:
        deleted = await asyncio.to_thread(
            self._execute,
            """
            DELETE FROM definitions
            WHERE id = ?
              AND NOT EXISTS (SELECT 1 FROM instances WHERE definition_id = ?)
              AND NOT EXISTS (SELECT 1 FROM case_progress WHERE definition_id = ?)
            """,
            definition_id,
            definition_id,
            definition_id,
        )
        if deleted:
            return True
        if await self.get_definition(definition_id) is None:
            return False
        references = await self.count_definition_references(definition_id)
        raise ConflictError(
            f"Definition {definition_id} is referenced by {references} "
            "execution record(s)"
        )

    async def list_definitions(
        self,
        tenant_id: str,
        kind: Optional[str] = None,
        category: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> list[DefinitionBase]:
        query = "SELECT data FROM definitions WHERE tenant_id = ?"
        params: list[Any] = [tenant_id]
        if kind is not None:
            query += " AND kind = ?"
            params.append(kind)
        if category is not None:
            query += " AND category = ?"
            params.append(category)
        if is_active is not None:
            query += " AND is_active = ?"
            params.append(int(is_active))
        query += " ORDER BY created_at"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [definition_adapter.validate_json(r["data"]) for r in rows]

    async def count_definition_references(self, definition_id: str) -> int:
        row = await asyncio.to_thread(
            self._fetchone,
            """
            SELECT
                (SELECT COUNT(*) FROM instances WHERE definition_id = ?)
                + (SELECT COUNT(*) FROM case_progress WHERE definition_id = ?) AS refs
            """,
            definition_id,
            definition_id,
        )
        return int(row["refs"])

    # ------------------------------------------------------------------
    # Instances
    async def create_instance(self, instance: ProcessInstance) -> ProcessInstance:
        inserted = await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO instances
                (id, tenant_id, definition_id, entity_type, entity_id, status,
                 version, started_at, data)
            SELECT ?, ?, id, ?, ?, ?, ?, ?, ? FROM definitions WHERE id = ?
            """,
            instance.id,
            instance.tenant_id,
            instance.entity.type,
            instance.entity.id,
            instance.status.value,
            instance.version,
            instance.started_at.isoformat(),
            instance.model_dump_json(),
            instance.definition_id,
        )
        if not inserted:
            raise NotFoundError(f"Definition {instance.definition_id} not found")
        return instance

    async def get_instance(self, instance_id: str) -> ProcessInstance | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM instances WHERE id = ?", instance_id
        )
        return ProcessInstance.model_validate_json(row["data"]) if row else None

    async def replace_instance(
        self,
        instance: ProcessInstance,
        expected_version: int,
        expected_status: InstanceStatus,
    ) -> ProcessInstance:
        updated = await asyncio.to_thread(
            self._execute,
            """
            UPDATE instances SET status = ?, version = ?, data = ?
            WHERE id = ? AND version = ? AND status = ?
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
        query = "SELECT data FROM instances WHERE tenant_id = ?"
        params: list[Any] = [tenant_id]
        if entity_type is not None:
            query += " AND entity_type = ?"
            params.append(entity_type)
        if entity_id is not None:
            query += " AND entity_id = ?"
            params.append(entity_id)
        if statuses is not None:
            values = [InstanceStatus(s).value for s in statuses]
            if not values:
                return []
            query += f" AND status IN ({', '.join('?' for _ in values)})"
            params.extend(values)
        query += " ORDER BY started_at DESC"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [ProcessInstance.model_validate_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    # Case stage progress
    async def create_progress(self, progress: CaseStageProgress) -> CaseStageProgress:
        inserted = await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO case_progress
                (id, tenant_id, case_id, definition_id, status, version, data)
            SELECT ?, ?, ?, id, ?, ?, ? FROM definitions WHERE id = ?
            """,
            progress.id,
            progress.tenant_id,
            progress.case_id,
            progress.status.value,
            progress.version,
            progress.model_dump_json(),
            progress.definition_id,
        )
        if not inserted:
            raise NotFoundError(f"Definition {progress.definition_id} not found")
        return progress

    async def get_progress(
        self, tenant_id: str, case_id: str
    ) -> CaseStageProgress | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT data FROM case_progress WHERE tenant_id = ? AND case_id = ?",
            tenant_id,
            case_id,
        )
        return CaseStageProgress.model_validate_json(row["data"]) if row else None

    async def replace_progress(
        self, progress: CaseStageProgress, expected_version: int
    ) -> CaseStageProgress:
        updated = await asyncio.to_thread(
            self._execute,
            """
            UPDATE case_progress SET status = ?, version = ?, data = ?
            WHERE tenant_id = ? AND case_id = ? AND version = ?
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
        query = "SELECT data FROM case_progress WHERE tenant_id = ?"
        params: list[Any] = [tenant_id]
        if definition_id is not None:
            query += " AND definition_id = ?"
            params.append(definition_id)
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [CaseStageProgress.model_validate_json(r["data"]) for r in rows]
