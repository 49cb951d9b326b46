"""Repository abstraction for definitions and execution records."""

from __future__ import annotations

from typing import Iterable, Optional, Protocol

from ..contracts import DefinitionBase
from ..models import CaseStageProgress, InstanceStatus, ProcessInstance


class ProcessRepository(Protocol):
    """Protocol for caseflow persistence backends.

    Writes of existing records are conditional: ``replace_*`` must reject,
    with :class:`~caseflow.errors.ConflictError`, a write whose expected
    version (and, for instances, expected status) no longer matches the
    stored record. The check and the write must happen atomically.
    """

    async def get_definition(self, definition_id: str) -> DefinitionBase | None:
        """Return the definition or ``None``."""

    async def save_definition(
        self, definition: DefinitionBase, expected_version: Optional[int] = None
    ) -> DefinitionBase:
        """Insert (``expected_version`` is ``None``) or conditionally replace."""

    async def delete_definition(self, definition_id: str) -> bool:
        """Delete a definition; return whether it existed."""

    async def delete_definition_if_unreferenced(self, definition_id: str) -> bool:
        """Delete a definition unless an execution record references it.

        Returns whether it existed. Raises
        :class:`~caseflow.errors.ConflictError` while any instance or stage
        progress points at it. The reference check and the delete happen
        atomically.
        """

    async def list_definitions(
        self,
        tenant_id: str,
        kind: Optional[str] = None,
        category: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> list[DefinitionBase]:
        """Return the tenant's definitions, oldest first."""

    async def count_definition_references(self, definition_id: str) -> int:
        """Number of instances and stage progress records started from it."""

    async def create_instance(self, instance: ProcessInstance) -> ProcessInstance:
        """Persist a new instance; ``NotFoundError`` if its definition is gone."""

    async def get_instance(self, instance_id: str) -> ProcessInstance | None:
        """Return the instance or ``None``."""

    async def replace_instance(
        self,
        instance: ProcessInstance,
        expected_version: int,
        expected_status: InstanceStatus,
    ) -> ProcessInstance:
        """Atomically replace the stored instance if its guards still hold."""

    async def list_instances(
        self,
        tenant_id: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        statuses: Optional[Iterable[InstanceStatus]] = None,
    ) -> list[ProcessInstance]:
        """Return matching instances, most recently started first."""

    async def create_progress(self, progress: CaseStageProgress) -> CaseStageProgress:
        """Persist new stage progress.

        ``ConflictError`` if the case already has one, ``NotFoundError`` if
        the definition is gone.
        """

    async def get_progress(
        self, tenant_id: str, case_id: str
    ) -> CaseStageProgress | None:
        """Return the case's stage progress or ``None``."""

    async def replace_progress(
        self, progress: CaseStageProgress, expected_version: int
    ) -> CaseStageProgress:
        """Atomically replace stored progress if its version still matches."""

    async def list_progress(
        self, tenant_id: str, definition_id: Optional[str] = None
    ) -> list[CaseStageProgress]:
        """Return the tenant's stage progress records."""


def category_of(definition: DefinitionBase) -> str:
    """Category a definition is filed under (case or process category)."""
    return getattr(definition, "case_category", None) or getattr(
        definition, "category", ""
    )
