"""In-memory implementation of the process repository."""

from __future__ import annotations

from typing import Dict, Iterable, Optional, Tuple

from ..contracts import DefinitionBase
from ..errors import ConflictError, NotFoundError
from ..models import CaseStageProgress, InstanceStatus, ProcessInstance
from .repository import ProcessRepository, category_of


class InMemoryProcessRepository(ProcessRepository):
    """Store definitions and execution records in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share state with the store. Guard checks and writes
    run without awaiting in between, which makes them atomic on one event
    loop. Execution records can only be created for a stored definition, and
    a definition can only be deleted while nothing references it.
    """

    def __init__(self) -> None:
        self._definitions: Dict[str, DefinitionBase] = {}
        self._instances: Dict[str, ProcessInstance] = {}
        self._progress: Dict[Tuple[str, str], CaseStageProgress] = {}

    # ------------------------------------------------------------------
    async def get_definition(self, definition_id: str) -> DefinitionBase | None:
        definition = self._definitions.get(definition_id)
        return definition.model_copy(deep=True) if definition else None

    async def save_definition(
        self, definition: DefinitionBase, expected_version: Optional[int] = None
    ) -> DefinitionBase:
        stored = self._definitions.get(definition.id)
        if expected_version is None:
            if stored is not None:
                raise ConflictError(f"Definition {definition.id} already exists")
        else:
            if stored is None:
                raise NotFoundError(f"Definition {definition.id} not found")
            if stored.version != expected_version:
                raise ConflictError(
                    f"Definition {definition.id} is at version {stored.version}, "
                    f"expected {expected_version}"
                )
        self._definitions[definition.id] = definition.model_copy(deep=True)
        return definition

    async def delete_definition(self, definition_id: str) -> bool:
        return self._definitions.pop(definition_id, None) is not None

    async def delete_definition_if_unreferenced(self, definition_id: str) -> bool:
        if definition_id not in self._definitions:
            return False
        references = self._references(definition_id)
        if references:
            raise ConflictError(
                f"Definition {definition_id} is referenced by {references} "
                "execution record(s)"
            )
        del self._definitions[definition_id]
        return True

    async def list_definitions(
        self,
        tenant_id: str,
        kind: Optional[str] = None,
        category: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> list[DefinitionBase]:
        results = []
        for definition in self._definitions.values():
            if definition.tenant_id != tenant_id:
                continue
            if kind is not None and definition.kind != kind:
                continue
            if category is not None and category_of(definition) != category:
                continue
            if is_active is not None and definition.is_active != is_active:
                continue
            results.append(definition.model_copy(deep=True))
        results.sort(key=lambda d: d.created_at)
        return results

    async def count_definition_references(self, definition_id: str) -> int:
        return self._references(definition_id)

    def _references(self, definition_id: str) -> int:
        instances = sum(
            1 for i in self._instances.values() if i.definition_id == definition_id
        )
        progress = sum(
            1 for p in self._progress.values() if p.definition_id == definition_id
        )
        return instances + progress

    # ------------------------------------------------------------------
    async def create_instance(self, instance: ProcessInstance) -> ProcessInstance:
        if instance.id in self._instances:
            raise ConflictError(f"Instance {instance.id} already exists")
        if instance.definition_id not in self._definitions:
            raise NotFoundError(f"Definition {instance.definition_id} not found")
        self._instances[instance.id] = instance.model_copy(deep=True)
        return instance

    async def get_instance(self, instance_id: str) -> ProcessInstance | None:
        instance = self._instances.get(instance_id)
        return instance.model_copy(deep=True) if instance else None

    async def replace_instance(
        self,
        instance: ProcessInstance,
        expected_version: int,
        expected_status: InstanceStatus,
    ) -> ProcessInstance:
        stored = self._instances.get(instance.id)
        if stored is None:
            raise NotFoundError(f"Instance {instance.id} not found")
        if stored.version != expected_version or stored.status != expected_status:
            raise ConflictError(
                f"Instance {instance.id} changed concurrently "
                f"(now {stored.status.value} v{stored.version})"
            )
        self._instances[instance.id] = instance.model_copy(deep=True)
        return instance

    async def list_instances(
        self,
        tenant_id: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        statuses: Optional[Iterable[InstanceStatus]] = None,
    ) -> list[ProcessInstance]:
        wanted = set(statuses) if statuses is not None else None
        results = [
            i.model_copy(deep=True)
            for i in self._instances.values()
            if i.tenant_id == tenant_id
            and (entity_type is None or i.entity.type == entity_type)
            and (entity_id is None or i.entity.id == entity_id)
            and (wanted is None or i.status in wanted)
        ]
        results.sort(key=lambda i: i.started_at, reverse=True)
        return results

    # ------------------------------------------------------------------
    async def create_progress(self, progress: CaseStageProgress) -> CaseStageProgress:
        key = (progress.tenant_id, progress.case_id)
        if key in self._progress:
            raise ConflictError(f"Case {progress.case_id} already has stage progress")
        if progress.definition_id not in self._definitions:
            raise NotFoundError(f"Definition {progress.definition_id} not found")
        self._progress[key] = progress.model_copy(deep=True)
        return progress

    async def get_progress(
        self, tenant_id: str, case_id: str
    ) -> CaseStageProgress | None:
        progress = self._progress.get((tenant_id, case_id))
        return progress.model_copy(deep=True) if progress else None

    async def replace_progress(
        self, progress: CaseStageProgress, expected_version: int
    ) -> CaseStageProgress:
        key = (progress.tenant_id, progress.case_id)
        stored = self._progress.get(key)
        if stored is None:
            raise NotFoundError(f"Case {progress.case_id} has no stage progress")
        if stored.version != expected_version:
            raise ConflictError(
                f"Stage progress for case {progress.case_id} changed concurrently "
                f"(now v{stored.version})"
            )
        self._progress[key] = progress.model_copy(deep=True)
        return progress

    async def list_progress(
        self, tenant_id: str, definition_id: Optional[str] = None
    ) -> list[CaseStageProgress]:
        return [
            p.model_copy(deep=True)
            for p in self._progress.values()
            if p.tenant_id == tenant_id
            and (definition_id is None or p.definition_id == definition_id)
        ]
