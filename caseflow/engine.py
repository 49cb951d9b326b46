"""Instance engine driving generic process instances through their steps."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .conditions import evaluate_conditions
from .contracts import (
    NodeBase,
    ProcessSnapshot,
    ProcessTemplate,
    Step,
    TransitionMode,
    TriggerType,
    utcnow,
)
from .entities import AcceptAllResolver, EntityResolver
from .errors import (
    ConflictError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from .history import (
    ActivatedEntry,
    CancelledEntry,
    FailedEntry,
    PausedEntry,
    ResumedEntry,
    StartedEntry,
    StepAdvancedEntry,
    append_entry,
)
from .models import (
    ACTIVE_STATUSES,
    EntityRef,
    InstanceStatus,
    InstanceStatusView,
    ProcessInstance,
)
from .persistence import ProcessRepository, get_repository
from .resolver import resolve_readiness

logger = logging.getLogger(__name__)


def seed_variables(
    template: ProcessTemplate, provided: Optional[Mapping[str, Any]]
) -> Dict[str, Any]:
    """Build the initial variable map for a new instance.

    Declared variables take the caller's value, else their default. Values
    the template does not declare are kept as given.
    """
    provided = dict(provided or {})
    variables: Dict[str, Any] = {}
    for declared in template.variables:
        if declared.name in provided:
            variables[declared.name] = provided.pop(declared.name)
        elif declared.default_value is not None:
            variables[declared.name] = declared.default_value
        elif declared.required:
            raise ValidationError(f"Required variable '{declared.name}' not provided")
    variables.update(provided)
    return variables


def initial_status(snapshot: ProcessSnapshot, variables: Mapping[str, Any]) -> InstanceStatus:
    trigger = snapshot.trigger
    if trigger.type == TriggerType.MANUAL:
        return InstanceStatus.RUNNING
    if trigger.type == TriggerType.CONDITION and evaluate_conditions(
        trigger.conditions, variables
    ):
        return InstanceStatus.RUNNING
    return InstanceStatus.PENDING


class InstanceEngine:
    """Start and advance :class:`ProcessInstance` records.

    Every mutating call reads the instance, applies one state change together
    with exactly one history entry and writes it back conditionally on the
    version and status that were read. Conflicting writers get a
    :class:`~caseflow.errors.ConflictError`; nothing is retried here.
    """

    def __init__(
        self,
        repository: ProcessRepository | None = None,
        entities: EntityResolver | None = None,
    ) -> None:
        self._repository = repository or get_repository()
        self._entities = entities or AcceptAllResolver()

    async def start(
        self,
        tenant_id: str,
        definition_id: str,
        entity_type: str,
        entity_id: str,
        variables: Optional[Mapping[str, Any]] = None,
        actor: Optional[str] = None,
        name: Optional[str] = None,
    ) -> ProcessInstance:
        definition = await self._repository.get_definition(definition_id)
        if (
            not isinstance(definition, ProcessTemplate)
            or definition.tenant_id != tenant_id
        ):
            raise NotFoundError(f"Process template {definition_id} not found")
        if not definition.is_active:
            raise NotFoundError(f"Process template {definition_id} is not active")
        if not definition.steps:
            raise ValidationError(f"Process template {definition_id} has no steps")
        if not await self._entities.exists(tenant_id, entity_type, entity_id):
            raise NotFoundError(f"{entity_type} {entity_id} not found")

        seeded = seed_variables(definition, variables)
        snapshot = ProcessSnapshot.from_template(definition)
        initial = snapshot.initial_node()
        status = initial_status(snapshot, seeded)
        now = utcnow()
        instance = ProcessInstance(
            tenant_id=tenant_id,
            definition_id=definition.id,
            definition_version=definition.version,
            name=name or definition.name,
            entity=EntityRef(type=entity_type, id=entity_id),
            snapshot=snapshot,
            status=status,
            current_step_id=initial.id,
            variables=seeded,
            started_at=now,
            started_by=actor,
            history=[
                StartedEntry(
                    timestamp=now, actor=actor, position=initial.id, status=status.value
                )
            ],
        )
        await self._repository.create_instance(instance)
        logger.info(
            f"Instance {instance.id} of '{definition.name}' started for "
            f"{entity_type} {entity_id} ({status.value})"
        )
        return instance

    async def activate(
        self,
        tenant_id: str,
        instance_id: str,
        actor: Optional[str] = None,
        trigger: Optional[str] = None,
    ) -> ProcessInstance:
        """Move a pending instance to running."""
        instance = await self.get(tenant_id, instance_id)
        self._require_status(instance, {InstanceStatus.PENDING}, "activate")
        updated = instance.model_copy(
            update={
                "status": InstanceStatus.RUNNING,
                "history": append_entry(
                    instance.history,
                    ActivatedEntry(
                        actor=actor, trigger=trigger or instance.snapshot.trigger.type.value
                    ),
                ),
            }
        )
        updated = await self._write(instance, updated)
        logger.info(f"Instance {instance_id} activated")
        return updated

    async def dispatch_event(
        self,
        tenant_id: str,
        event: str,
        entity_type: str,
        entity_id: str,
        actor: Optional[str] = None,
    ) -> List[ProcessInstance]:
        """Activate pending instances of ``entity`` waiting for ``event``."""
        waiting = await self._repository.list_instances(
            tenant_id,
            entity_type=entity_type,
            entity_id=entity_id,
            statuses=[InstanceStatus.PENDING],
        )
        activated = []
        for instance in waiting:
            trigger = instance.snapshot.trigger
            if trigger.type != TriggerType.EVENT or trigger.event != event:
                continue
            activated.append(
                await self.activate(tenant_id, instance.id, actor=actor, trigger=event)
            )
        logger.debug(
            f"Event '{event}' for {entity_type} {entity_id} activated "
            f"{len(activated)} instance(s)"
        )
        return activated

    async def advance_step(
        self,
        tenant_id: str,
        instance_id: str,
        step_result: Optional[Mapping[str, Any]] = None,
        actor: Optional[str] = None,
        target_step_id: Optional[str] = None,
        expected_step_id: Optional[str] = None,
    ) -> ProcessInstance:
        """Complete the current step and move to its successor.

        Args:
            step_result: Values produced by the current step, merged into the
                instance variables before the successor is chosen.
            target_step_id: Explicit successor. In explicit mode it must be a
                declared transition out of the current step.
            expected_step_id: The step the caller believes is current. A
                mismatch means the call is a stale retry and raises
                :class:`~caseflow.errors.ConflictError`.
        """
        instance = await self.get(tenant_id, instance_id)
        self._require_status(instance, {InstanceStatus.RUNNING}, "advance")
        if expected_step_id is not None and expected_step_id != instance.current_step_id:
            raise ConflictError(
                f"Instance {instance_id} is at '{instance.current_step_id}', "
                f"not '{expected_step_id}'"
            )

        current = instance.current_step
        if current is None:
            raise InvalidStateError(f"Instance {instance_id} has no current step")

        result = dict(step_result or {})
        variables = {**instance.variables, **result}
        completed = list(instance.completed_steps)
        if current.id not in completed:
            completed.append(current.id)

        successor, skipped = self._choose_successor(
            instance.snapshot, current, variables, target_step_id
        )
        if successor is not None:
            readiness = resolve_readiness(
                instance, successor.id, assume_completed=[current.id]
            )
            if not readiness.ready:
                logger.warning(
                    f"Instance {instance_id} cannot enter '{successor.id}': "
                    f"waiting on {', '.join(readiness.missing)}"
                )
                raise ConflictError(
                    f"Step '{successor.id}' has unmet dependencies: "
                    f"{', '.join(readiness.missing)}"
                )

        finishes = successor is None or successor.is_final
        now = utcnow()
        update: Dict[str, Any] = {
            "variables": variables,
            "completed_steps": completed,
            "current_step_id": successor.id if successor is not None else current.id,
        }
        if finishes:
            if successor is not None and successor.id not in completed:
                completed.append(successor.id)
            update.update(
                status=InstanceStatus.COMPLETED,
                completed_at=now,
                completed_by=actor,
            )
        update["history"] = append_entry(
            instance.history,
            StepAdvancedEntry(
                timestamp=now,
                actor=actor,
                from_step_id=current.id,
                to_step_id=successor.id if successor is not None else None,
                skipped_step_ids=skipped,
                result=result,
                completed=finishes,
            ),
        )
        updated = await self._write(instance, instance.model_copy(update=update))
        if finishes:
            logger.info(f"Instance {instance_id} completed")
        else:
            logger.info(
                f"Instance {instance_id} advanced '{current.id}' -> '{successor.id}'"
            )
        return updated

    async def pause(
        self,
        tenant_id: str,
        instance_id: str,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> ProcessInstance:
        instance = await self.get(tenant_id, instance_id)
        self._require_status(instance, {InstanceStatus.RUNNING}, "pause")
        updated = await self._write(
            instance,
            instance.model_copy(
                update={
                    "status": InstanceStatus.PAUSED,
                    "history": append_entry(
                        instance.history, PausedEntry(actor=actor, reason=reason)
                    ),
                }
            ),
        )
        logger.info(f"Instance {instance_id} paused")
        return updated

    async def resume(
        self, tenant_id: str, instance_id: str, actor: Optional[str] = None
    ) -> ProcessInstance:
        instance = await self.get(tenant_id, instance_id)
        self._require_status(instance, {InstanceStatus.PAUSED}, "resume")
        updated = await self._write(
            instance,
            instance.model_copy(
                update={
                    "status": InstanceStatus.RUNNING,
                    "history": append_entry(instance.history, ResumedEntry(actor=actor)),
                }
            ),
        )
        logger.info(f"Instance {instance_id} resumed")
        return updated

    async def cancel(
        self,
        tenant_id: str,
        instance_id: str,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> ProcessInstance:
        instance = await self.get(tenant_id, instance_id)
        self._require_status(instance, ACTIVE_STATUSES, "cancel")
        now = utcnow()
        updated = await self._write(
            instance,
            instance.model_copy(
                update={
                    "status": InstanceStatus.CANCELLED,
                    "cancelled_at": now,
                    "cancelled_by": actor,
                    "cancel_reason": reason,
                    "history": append_entry(
                        instance.history,
                        CancelledEntry(timestamp=now, actor=actor, reason=reason),
                    ),
                }
            ),
        )
        logger.info(f"Instance {instance_id} cancelled")
        return updated

    async def fail(
        self,
        tenant_id: str,
        instance_id: str,
        error: str,
        actor: Optional[str] = None,
    ) -> ProcessInstance:
        instance = await self.get(tenant_id, instance_id)
        self._require_status(
            instance, {InstanceStatus.RUNNING, InstanceStatus.PAUSED}, "fail"
        )
        now = utcnow()
        updated = await self._write(
            instance,
            instance.model_copy(
                update={
                    "status": InstanceStatus.FAILED,
                    "failed_at": now,
                    "error": error,
                    "history": append_entry(
                        instance.history,
                        FailedEntry(
                            timestamp=now,
                            actor=actor,
                            error=error,
                            step_id=instance.current_step_id,
                        ),
                    ),
                }
            ),
        )
        logger.info(f"Instance {instance_id} failed: {error}")
        return updated

    async def get(self, tenant_id: str, instance_id: str) -> ProcessInstance:
        instance = await self._repository.get_instance(instance_id)
        if instance is None or instance.tenant_id != tenant_id:
            raise NotFoundError(f"Instance {instance_id} not found")
        return instance

    async def status(self, tenant_id: str, instance_id: str) -> InstanceStatusView:
        instance = await self.get(tenant_id, instance_id)
        step = instance.current_step
        return InstanceStatusView(
            instance=instance,
            current_step=step.model_dump(mode="json") if step is not None else None,
            progress=instance.progress,
            is_active=instance.is_active,
            is_finished=instance.is_finished,
        )

    async def list_active_for_entity(
        self, tenant_id: str, entity_type: str, entity_id: str
    ) -> List[ProcessInstance]:
        return await self._repository.list_instances(
            tenant_id,
            entity_type=entity_type,
            entity_id=entity_id,
            statuses=ACTIVE_STATUSES,
        )

    # ------------------------------------------------------------------
    def _choose_successor(
        self,
        snapshot: ProcessSnapshot,
        current: NodeBase,
        variables: Mapping[str, Any],
        target_step_id: Optional[str],
    ) -> Tuple[Optional[NodeBase], List[str]]:
        """Return the next step (``None`` when the process ends) and skipped ids."""
        explicit = snapshot.transition_mode == TransitionMode.EXPLICIT

        if target_step_id is not None:
            target = snapshot.get_node(target_step_id)
            if target is None:
                raise NotFoundError(f"Step '{target_step_id}' not found")
            if target.id == current.id:
                raise InvalidTransitionError(f"Instance is already at '{current.id}'")
            if explicit:
                edge = next(
                    (
                        t
                        for t in snapshot.outgoing(current.id)
                        if t.to_step_id == target.id
                    ),
                    None,
                )
                if edge is None:
                    logger.warning(
                        f"Rejected undeclared transition '{current.id}' -> '{target.id}'"
                    )
                    raise InvalidTransitionError(
                        f"No transition declared from '{current.id}' to '{target.id}'"
                    )
                if not evaluate_conditions(edge.conditions, variables):
                    raise InvalidTransitionError(
                        f"Conditions on '{current.id}' -> '{target.id}' are not met"
                    )
            return target, []

        if current.is_final:
            return None, []

        if explicit:
            outgoing = snapshot.outgoing(current.id)
            if not outgoing:
                return None, []
            for transition in outgoing:
                if evaluate_conditions(transition.conditions, variables):
                    return snapshot.get_node(transition.to_step_id), []
            logger.warning(f"No transition out of '{current.id}' is satisfied")
            raise InvalidTransitionError(
                f"No transition out of '{current.id}' has its conditions met"
            )

        skipped: List[str] = []
        for candidate in snapshot.nodes_after(current.id):
            if (
                isinstance(candidate, Step)
                and candidate.trigger.type == TriggerType.CONDITION
                and not evaluate_conditions(candidate.trigger.conditions, variables)
            ):
                skipped.append(candidate.id)
                continue
            return candidate, skipped
        return None, skipped

    @staticmethod
    def _require_status(
        instance: ProcessInstance, allowed, operation: str
    ) -> None:
        if instance.status not in allowed:
            logger.warning(
                f"Cannot {operation} instance {instance.id} in status "
                f"{instance.status.value}"
            )
            raise InvalidStateError(
                f"Cannot {operation} instance {instance.id}: status is "
                f"{instance.status.value}"
            )

    async def _write(
        self, previous: ProcessInstance, updated: ProcessInstance
    ) -> ProcessInstance:
        updated = updated.model_copy(update={"version": previous.version + 1})
        try:
            return await self._repository.replace_instance(
                updated,
                expected_version=previous.version,
                expected_status=previous.status,
            )
        except ConflictError:
            logger.warning(
                f"Instance {previous.id} changed concurrently; "
                f"write from version {previous.version} rejected"
            )
            raise
