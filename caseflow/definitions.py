"""Definition store for process and case workflow templates."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .config import CaseflowConfig, load_config
from .contracts import (
    CaseWorkflowTemplate,
    Condition,
    DefinitionBase,
    NodeBase,
    ProcessTemplate,
    Stage,
    StageTransition,
    Step,
    StepTransition,
    TransitionMode,
    definition_adapter,
    new_id,
    utcnow,
)
from .errors import ConflictError, NotFoundError, ValidationError
from .models import ACTIVE_STATUSES
from .persistence import ProcessRepository, category_of, get_repository
from .presets import CasePreset, build_preset, list_presets
from .resolver import normalize_nodes, on_definition_mutation

logger = logging.getLogger(__name__)

COMMON_MUTABLE_FIELDS = frozenset(
    {
        "name",
        "name_ar",
        "description",
        "description_ar",
        "is_active",
        "transition_mode",
        "transitions",
    }
)
MUTABLE_FIELDS = {
    "process": COMMON_MUTABLE_FIELDS | {"steps", "variables", "trigger"},
    "case": COMMON_MUTABLE_FIELDS | {"stages", "is_default"},
}
STRUCTURAL_FIELDS = frozenset({"steps", "stages", "transitions", "transition_mode"})

DefinitionInput = Union[DefinitionBase, Mapping[str, Any]]


class DefinitionStatistics(BaseModel):
    total_definitions: int = 0
    active_definitions: int = 0
    by_kind: Dict[str, int] = Field(default_factory=dict)
    by_category: Dict[str, int] = Field(default_factory=dict)
    active_instances: int = 0
    cases_with_workflow: int = 0


def _invalid(exc: PydanticValidationError) -> ValidationError:
    return ValidationError(str(exc))


class DefinitionStore:
    """Create, edit and retire workflow definitions.

    Every edit of an existing definition goes through :meth:`_commit`, which
    normalises nodes, runs the dependency resolver and writes the new version
    conditionally on the version that was read.
    """

    def __init__(
        self,
        repository: ProcessRepository | None = None,
        config: Optional[CaseflowConfig] = None,
    ) -> None:
        self._repository = repository or get_repository()
        self._config = (config or load_config()).engine

    # ------------------------------------------------------------------
    # CRUD
    async def create(
        self, tenant_id: str, definition: DefinitionInput, actor: Optional[str] = None
    ) -> DefinitionBase:
        """Validate and persist a new definition owned by ``tenant_id``."""
        if isinstance(definition, DefinitionBase):
            data = definition.model_dump()
        else:
            data = dict(definition)
        now = utcnow()
        data.update(
            tenant_id=tenant_id,
            version=1,
            created_by=actor,
            updated_by=actor,
            created_at=now,
            updated_at=now,
        )
        try:
            parsed = definition_adapter.validate_python(data)
        except PydanticValidationError as exc:
            raise _invalid(exc) from exc

        prepared = parsed.with_nodes(normalize_nodes(parsed.nodes))
        on_definition_mutation(prepared, max_nodes=self._config.max_nodes)
        if isinstance(prepared, CaseWorkflowTemplate) and prepared.is_default:
            await self._clear_other_defaults(prepared, actor)
        await self._repository.save_definition(prepared)

        logger.info(
            f"Definition {prepared.id} ({prepared.kind}) '{prepared.name}' "
            f"created for tenant {tenant_id}"
        )
        return prepared

    async def get(self, tenant_id: str, definition_id: str) -> DefinitionBase:
        definition = await self._repository.get_definition(definition_id)
        if definition is None or definition.tenant_id != tenant_id:
            raise NotFoundError(f"Definition {definition_id} not found")
        return definition

    async def list(
        self,
        tenant_id: str,
        kind: Optional[str] = None,
        category: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> List[DefinitionBase]:
        return await self._repository.list_definitions(
            tenant_id, kind=kind, category=category, is_active=is_active
        )

    async def update(
        self,
        tenant_id: str,
        definition_id: str,
        patch: Mapping[str, Any],
        actor: Optional[str] = None,
    ) -> DefinitionBase:
        """Apply ``patch`` to the mutable fields of a definition."""
        previous = await self.get(tenant_id, definition_id)
        allowed = MUTABLE_FIELDS[previous.kind]
        rejected = sorted(set(patch) - allowed)
        if rejected:
            raise ValidationError(f"Fields cannot be updated: {', '.join(rejected)}")

        merged = previous.model_dump()
        merged.update(patch)
        try:
            updated = type(previous).model_validate(merged)
        except PydanticValidationError as exc:
            raise _invalid(exc) from exc

        return await self._commit(
            previous, updated, actor, claims_default=bool(patch.get("is_default"))
        )

    async def delete(self, tenant_id: str, definition_id: str) -> None:
        """Delete a definition no execution record was ever started from."""
        definition = await self.get(tenant_id, definition_id)
        try:
            deleted = await self._repository.delete_definition_if_unreferenced(
                definition.id
            )
        except ConflictError:
            logger.warning(f"Definition {definition_id} is in use; delete refused")
            raise
        if not deleted:
            raise NotFoundError(f"Definition {definition_id} not found")
        logger.info(f"Definition {definition_id} deleted for tenant {tenant_id}")

    async def duplicate(
        self,
        tenant_id: str,
        definition_id: str,
        actor: Optional[str] = None,
        name: Optional[str] = None,
        name_ar: Optional[str] = None,
    ) -> DefinitionBase:
        original = await self.get(tenant_id, definition_id)
        data = original.model_dump()
        data.update(
            id=new_id(),
            name=name or f"{original.name} (copy)",
            name_ar=name_ar
            or (f"{original.name_ar} (نسخة)" if original.name_ar else None),
        )
        if isinstance(original, CaseWorkflowTemplate):
            data["is_default"] = False
        return await self.create(tenant_id, data, actor)

    # ------------------------------------------------------------------
    # Step / stage editing
    async def add_node(
        self,
        tenant_id: str,
        definition_id: str,
        node: Union[NodeBase, Mapping[str, Any]],
        actor: Optional[str] = None,
    ) -> DefinitionBase:
        """Append a step or stage; its order defaults to after the last node."""
        previous = await self.get(tenant_id, definition_id)
        new_node = self._coerce_node(previous, node)
        if previous.get_node(new_node.id) is not None:
            raise ValidationError(f"'{new_node.id}' already exists")
        if new_node.is_initial:
            raise ValidationError("Use update_node to move the initial flag")
        updated = previous.with_nodes([*previous.nodes, new_node])
        return await self._commit(previous, updated, actor)

    async def update_node(
        self,
        tenant_id: str,
        definition_id: str,
        node_id: str,
        changes: Mapping[str, Any],
        actor: Optional[str] = None,
    ) -> DefinitionBase:
        previous = await self.get(tenant_id, definition_id)
        current = previous.get_node(node_id)
        if current is None:
            raise NotFoundError(f"'{node_id}' not found in definition {definition_id}")
        if "id" in changes and changes["id"] != node_id:
            raise ValidationError("Step and stage ids cannot be changed")

        merged = current.model_dump()
        merged.update(changes)
        replacement = self._coerce_node(previous, merged)

        nodes = []
        for node in previous.nodes:
            if node.id == node_id:
                nodes.append(replacement)
            elif replacement.is_initial and node.is_initial:
                nodes.append(node.model_copy(update={"is_initial": False}))
            else:
                nodes.append(node)
        return await self._commit(previous, previous.with_nodes(nodes), actor)

    async def remove_node(
        self,
        tenant_id: str,
        definition_id: str,
        node_id: str,
        actor: Optional[str] = None,
    ) -> DefinitionBase:
        """Remove a step or stage and any transitions touching it.

        Fails with :class:`~caseflow.errors.OrphanedDependencyError` while
        other nodes still list it as a dependency.
        """
        previous = await self.get(tenant_id, definition_id)
        if previous.get_node(node_id) is None:
            raise NotFoundError(f"'{node_id}' not found in definition {definition_id}")
        if len(previous.nodes) == 1:
            raise ValidationError("Cannot remove the only step or stage")

        nodes = [node for node in previous.nodes if node.id != node_id]
        transitions = [
            t for t in previous.transitions if node_id not in (t.source, t.target)
        ]
        dropped = len(previous.transitions) - len(transitions)
        if dropped:
            logger.info(
                f"Dropping {dropped} transition(s) touching '{node_id}' "
                f"in definition {definition_id}"
            )
        updated = previous.with_nodes(nodes).model_copy(
            update={"transitions": transitions}
        )
        return await self._commit(previous, updated, actor)

    async def reorder_nodes(
        self,
        tenant_id: str,
        definition_id: str,
        ordered_ids: Sequence[str],
        actor: Optional[str] = None,
    ) -> DefinitionBase:
        previous = await self.get(tenant_id, definition_id)
        existing = [node.id for node in previous.nodes]
        if sorted(ordered_ids) != sorted(existing):
            raise ValidationError("Reorder must list every existing id exactly once")
        position = {node_id: index for index, node_id in enumerate(ordered_ids)}
        nodes = [
            node.model_copy(update={"order": position[node.id]})
            for node in previous.nodes
        ]
        return await self._commit(previous, previous.with_nodes(nodes), actor)

    async def add_transition(
        self,
        tenant_id: str,
        definition_id: str,
        source: str,
        target: str,
        actor: Optional[str] = None,
        conditions: Optional[List[Condition]] = None,
    ) -> DefinitionBase:
        previous = await self.get(tenant_id, definition_id)
        if previous.transition_mode != TransitionMode.EXPLICIT:
            raise ValidationError(
                "Transitions can only be added to definitions in explicit mode"
            )
        if previous.get_node(source) is None or previous.get_node(target) is None:
            raise NotFoundError(f"Transition {source} -> {target} names an unknown id")

        if isinstance(previous, ProcessTemplate):
            transition = StepTransition(
                from_step_id=source, to_step_id=target, conditions=conditions or []
            )
        else:
            transition = StageTransition(from_stage_id=source, to_stage_id=target)
        updated = previous.model_copy(
            update={"transitions": [*previous.transitions, transition]}
        )
        return await self._commit(previous, updated, actor)

    async def remove_transition(
        self,
        tenant_id: str,
        definition_id: str,
        source: str,
        target: str,
        actor: Optional[str] = None,
    ) -> DefinitionBase:
        previous = await self.get(tenant_id, definition_id)
        if not previous.has_edge(source, target):
            raise NotFoundError(f"Transition {source} -> {target} not found")
        transitions = [
            t for t in previous.transitions if (t.source, t.target) != (source, target)
        ]
        updated = previous.model_copy(update={"transitions": transitions})
        return await self._commit(previous, updated, actor)

    # ------------------------------------------------------------------
    # Case workflow helpers
    async def get_default_for_category(
        self, tenant_id: str, case_category: str
    ) -> CaseWorkflowTemplate:
        """Active default template for the category, else the newest active one."""
        candidates = await self._repository.list_definitions(
            tenant_id, kind="case", category=case_category, is_active=True
        )
        if not candidates:
            raise NotFoundError(
                f"No active case workflow for category '{case_category}'"
            )
        for candidate in candidates:
            if candidate.is_default:
                return candidate
        return candidates[-1]

    def list_presets(self) -> List[CasePreset]:
        return list_presets()

    async def import_preset(
        self, tenant_id: str, preset_id: str, actor: Optional[str] = None
    ) -> CaseWorkflowTemplate:
        template = build_preset(preset_id, tenant_id, actor)
        return await self.create(tenant_id, template, actor)

    async def statistics(self, tenant_id: str) -> DefinitionStatistics:
        definitions = await self._repository.list_definitions(tenant_id)
        stats = DefinitionStatistics(total_definitions=len(definitions))
        for definition in definitions:
            if definition.is_active:
                stats.active_definitions += 1
            stats.by_kind[definition.kind] = stats.by_kind.get(definition.kind, 0) + 1
            category = category_of(definition)
            stats.by_category[category] = stats.by_category.get(category, 0) + 1
        stats.active_instances = len(
            await self._repository.list_instances(tenant_id, statuses=ACTIVE_STATUSES)
        )
        stats.cases_with_workflow = len(await self._repository.list_progress(tenant_id))
        return stats

    # ------------------------------------------------------------------
    def _coerce_node(
        self, definition: DefinitionBase, node: Union[NodeBase, Mapping[str, Any]]
    ) -> NodeBase:
        node_cls = Step if isinstance(definition, ProcessTemplate) else Stage
        data = node.model_dump() if isinstance(node, NodeBase) else dict(node)
        try:
            return node_cls.model_validate(data)
        except PydanticValidationError as exc:
            raise _invalid(exc) from exc

    async def _commit(
        self,
        previous: DefinitionBase,
        updated: DefinitionBase,
        actor: Optional[str],
        claims_default: bool = False,
    ) -> DefinitionBase:
        updated = updated.with_nodes(normalize_nodes(updated.nodes))
        # Gate runs whether or not the definition is active
        on_definition_mutation(updated, previous, max_nodes=self._config.max_nodes)
        if claims_default and isinstance(updated, CaseWorkflowTemplate):
            await self._clear_other_defaults(updated, actor)
        updated = updated.model_copy(
            update={
                "id": previous.id,
                "tenant_id": previous.tenant_id,
                "version": previous.version + 1,
                "updated_at": utcnow(),
                "updated_by": actor,
            }
        )
        try:
            await self._repository.save_definition(
                updated, expected_version=previous.version
            )
        except ConflictError:
            logger.warning(
                f"Definition {previous.id} changed concurrently; "
                f"update from version {previous.version} rejected"
            )
            raise
        structural = any(
            getattr(updated, field, None) != getattr(previous, field, None)
            for field in STRUCTURAL_FIELDS
        )
        logger.info(
            f"Definition {updated.id} updated to version {updated.version}"
            + (" (structural)" if structural else "")
        )
        return updated

    async def _clear_other_defaults(
        self, definition: CaseWorkflowTemplate, actor: Optional[str]
    ) -> None:
        """Unset the default flag on the category's other templates.

        Runs before ``definition`` itself is written, so a failed write
        leaves the category without a default rather than with two.
        """
        others = await self._repository.list_definitions(
            definition.tenant_id, kind="case", category=definition.case_category
        )
        for other in others:
            if other.id == definition.id or not other.is_default:
                continue
            cleared = other.model_copy(
                update={
                    "is_default": False,
                    "version": other.version + 1,
                    "updated_at": utcnow(),
                    "updated_by": actor,
                }
            )
            await self._repository.save_definition(cleared, expected_version=other.version)
            logger.info(f"Definition {other.id} is no longer the category default")
