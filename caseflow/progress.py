"""Stage progress engine for case workflows."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .config import CaseflowConfig, load_config
from .contracts import CaseSnapshot, CaseWorkflowTemplate, Stage, TransitionMode, utcnow
from .definitions import DefinitionStore
from .entities import AcceptAllResolver, EntityResolver
from .errors import (
    ConflictError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from .history import (
    RequirementCompletedEntry,
    StageMovedEntry,
    StartedEntry,
    append_entry,
)
from .models import CaseStageProgress, ProgressStatus
from .persistence import ProcessRepository, get_repository
from .resolver import resolve_readiness

logger = logging.getLogger(__name__)

CASE_ENTITY = "case"


class StageProgressEngine:
    """Track a case's position within its case workflow template."""

    def __init__(
        self,
        repository: ProcessRepository | None = None,
        entities: EntityResolver | None = None,
        config: Optional[CaseflowConfig] = None,
    ) -> None:
        self._repository = repository or get_repository()
        self._entities = entities or AcceptAllResolver()
        self._config = config or load_config()
        self._definitions = DefinitionStore(self._repository, self._config)

    async def initialize_for_case(
        self,
        tenant_id: str,
        case_id: str,
        definition_id: Optional[str] = None,
        actor: Optional[str] = None,
        case_category: Optional[str] = None,
    ) -> CaseStageProgress:
        """Position a case at the initial stage of its workflow.

        Without ``definition_id`` the default template for ``case_category``
        is used. Calling this again for the same case and definition returns
        the existing progress unchanged.
        """
        definition = await self._resolve_definition(
            tenant_id, definition_id, case_category
        )

        existing = await self._repository.get_progress(tenant_id, case_id)
        if existing is not None:
            if existing.definition_id == definition.id:
                logger.debug(f"Case {case_id} already initialised; returning progress")
                return existing
            raise ConflictError(
                f"Case {case_id} already follows workflow {existing.definition_id}"
            )

        if not definition.stages:
            raise ValidationError(f"Case workflow {definition.id} has no stages")
        if not await self._entities.exists(tenant_id, CASE_ENTITY, case_id):
            raise NotFoundError(f"Case {case_id} not found")

        snapshot = CaseSnapshot.from_template(definition)
        initial = snapshot.initial_node()
        now = utcnow()
        progress = CaseStageProgress(
            tenant_id=tenant_id,
            case_id=case_id,
            definition_id=definition.id,
            definition_version=definition.version,
            snapshot=snapshot,
            current_stage_id=initial.id,
            current_stage_name=initial.name,
            started_at=now,
            started_by=actor,
            history=[
                StartedEntry(
                    timestamp=now,
                    actor=actor,
                    position=initial.id,
                    status=ProgressStatus.ACTIVE.value,
                )
            ],
        )
        await self._repository.create_progress(progress)
        logger.info(
            f"Case {case_id} initialised on workflow '{definition.name}' "
            f"at stage '{initial.id}'"
        )
        return progress

    async def get_progress(self, tenant_id: str, case_id: str) -> CaseStageProgress:
        progress = await self._repository.get_progress(tenant_id, case_id)
        if progress is None:
            raise NotFoundError(f"Case {case_id} has no workflow progress")
        return progress

    async def move_to_stage(
        self,
        tenant_id: str,
        case_id: str,
        target_stage_id: str,
        actor: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> CaseStageProgress:
        progress = await self.get_progress(tenant_id, case_id)
        target = progress.snapshot.get_node(target_stage_id)
        if target is None:
            raise NotFoundError(f"Stage '{target_stage_id}' not found")
        if progress.status != ProgressStatus.ACTIVE:
            raise InvalidStateError(f"Case {case_id} workflow is already completed")

        current_id = progress.current_stage_id
        if target.id == current_id:
            raise InvalidTransitionError(f"Case {case_id} is already at '{target.id}'")
        if progress.snapshot.transition_mode == TransitionMode.EXPLICIT and (
            not progress.snapshot.has_edge(current_id, target.id)
        ):
            logger.warning(
                f"Rejected move of case {case_id} from '{current_id}' to '{target.id}'"
            )
            raise InvalidTransitionError(
                f"No transition declared from '{current_id}' to '{target.id}'"
            )

        readiness = resolve_readiness(progress, target.id)
        if not readiness.ready:
            logger.warning(
                f"Case {case_id} cannot enter '{target.id}': "
                f"waiting on {', '.join(readiness.missing)}"
            )
            raise InvalidTransitionError(
                f"Stage '{target.id}' has unmet dependencies: "
                f"{', '.join(readiness.missing)}"
            )

        now = utcnow()
        update: Dict[str, Any] = {
            "current_stage_id": target.id,
            "current_stage_name": target.name,
            "history": append_entry(
                progress.history,
                StageMovedEntry(
                    timestamp=now,
                    actor=actor,
                    from_stage=current_id,
                    to_stage=target.id,
                    notes=notes,
                ),
            ),
        }
        if target.is_final:
            update.update(status=ProgressStatus.COMPLETED, completed_at=now)
        updated = await self._write(progress, progress.model_copy(update=update))
        logger.info(f"Case {case_id} moved '{current_id}' -> '{target.id}'")
        return updated

    async def complete_requirement(
        self,
        tenant_id: str,
        case_id: str,
        stage_id: str,
        requirement_id: str,
        actor: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CaseStageProgress:
        """Mark a stage requirement as completed.

        Completing an already completed requirement succeeds without writing,
        unless ``engine.record_repeat_completions`` is enabled, in which case
        a ``repeat`` history entry is appended.
        """
        progress = await self.get_progress(tenant_id, case_id)
        stage = progress.snapshot.get_node(stage_id)
        if not isinstance(stage, Stage):
            raise NotFoundError(f"Stage '{stage_id}' not found")
        if stage.get_requirement(requirement_id) is None:
            raise NotFoundError(
                f"Requirement '{requirement_id}' not found in stage '{stage_id}'"
            )

        repeat = requirement_id in progress.completed_requirements
        if repeat and not self._config.engine.record_repeat_completions:
            logger.debug(
                f"Requirement '{requirement_id}' of case {case_id} already completed"
            )
            return progress

        completed = list(progress.completed_requirements)
        if not repeat:
            completed.append(requirement_id)
        entry = RequirementCompletedEntry(
            actor=actor,
            stage_id=stage_id,
            requirement_id=requirement_id,
            metadata=dict(metadata or {}),
            repeat=repeat,
        )
        updated = await self._write(
            progress,
            progress.model_copy(
                update={
                    "completed_requirements": completed,
                    "history": append_entry(progress.history, entry),
                }
            ),
        )
        logger.info(
            f"Requirement '{requirement_id}' of stage '{stage_id}' completed "
            f"for case {case_id}"
        )
        return updated

    # ------------------------------------------------------------------
    async def _resolve_definition(
        self,
        tenant_id: str,
        definition_id: Optional[str],
        case_category: Optional[str],
    ) -> CaseWorkflowTemplate:
        if definition_id is not None:
            definition = await self._definitions.get(tenant_id, definition_id)
            if not isinstance(definition, CaseWorkflowTemplate):
                raise NotFoundError(f"Case workflow {definition_id} not found")
            if not definition.is_active:
                raise NotFoundError(f"Case workflow {definition_id} is not active")
            return definition
        if case_category is None:
            raise ValidationError("Either definition_id or case_category is required")
        return await self._definitions.get_default_for_category(tenant_id, case_category)

    async def _write(
        self, previous: CaseStageProgress, updated: CaseStageProgress
    ) -> CaseStageProgress:
        updated = updated.model_copy(update={"version": previous.version + 1})
        try:
            return await self._repository.replace_progress(
                updated, expected_version=previous.version
            )
        except ConflictError:
            logger.warning(
                f"Progress of case {previous.case_id} changed concurrently; "
                f"write from version {previous.version} rejected"
            )
            raise
