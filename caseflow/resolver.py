"""Dependency resolution for step and stage graphs.

Definitions declare, per node, the ids of other nodes that must be satisfied
before it may be entered. This module keeps those graphs legal (acyclic, no
dangling or orphaned ids) and answers readiness questions for the engines.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Set, Union

from pydantic import BaseModel, Field

from .contracts import DefinitionBase, NodeBase, Stage, TransitionMode
from .errors import CycleError, NotFoundError, OrphanedDependencyError, ValidationError
from .models import CaseStageProgress, ProcessInstance

logger = logging.getLogger(__name__)


class Readiness(BaseModel):
    """Outcome of a readiness check for a single step or stage."""

    node_id: str
    ready: bool
    missing: List[str] = Field(default_factory=list)


def _order_key(nodes: Sequence[NodeBase]) -> Dict[str, tuple]:
    return {
        node.id: (node.order if node.order is not None else position, position)
        for position, node in enumerate(nodes)
    }


def validate_acyclic(nodes: Sequence[NodeBase]) -> None:
    """Raise :class:`CycleError` if the dependency graph has a cycle.

    Nodes and their dependencies are visited in ascending order-index order,
    so the reported cycle does not depend on how the list happens to be
    arranged. Dependencies on unknown ids are ignored here; see
    :func:`check_references`.
    """
    rank = _order_key(nodes)
    graph = {node.id: list(node.dependencies) for node in nodes}
    visiting: Set[str] = set()
    visited: Set[str] = set()
    stack: List[str] = []

    def visit(node_id: str) -> None:
        visiting.add(node_id)
        stack.append(node_id)
        for dep in sorted(graph[node_id], key=lambda d: (rank.get(d, (0, 0)), d)):
            if dep not in graph:
                continue
            if dep in visiting:
                cycle = stack[stack.index(dep) :] + [dep]
                raise CycleError(cycle)
            if dep not in visited:
                visit(dep)
        stack.pop()
        visiting.discard(node_id)
        visited.add(node_id)

    for node_id in sorted(graph, key=lambda n: rank[n]):
        if node_id not in visited:
            visit(node_id)


def normalize_nodes(nodes: Sequence[NodeBase]) -> List[NodeBase]:
    """Assign missing order indices and flag an initial node if none is.

    Omitted order indices continue after the largest explicit one, in list
    order. Returns copies; the input nodes are left untouched.
    """
    copies = [node.model_copy(deep=True) for node in nodes]
    explicit = [node.order for node in copies if node.order is not None]
    if not explicit:
        for position, node in enumerate(copies):
            node.order = position
    else:
        next_order = max(explicit) + 1
        for node in copies:
            if node.order is None:
                node.order = next_order
                next_order += 1

    if copies and not any(node.is_initial for node in copies):
        min(copies, key=lambda node: node.order).is_initial = True
    return copies


def validate_shape(definition: DefinitionBase, max_nodes: Optional[int] = None) -> None:
    """Check the non-graph invariants of a definition."""
    if not definition.name or not definition.name.strip():
        raise ValidationError("Definition name is required")
    if not definition.target_type or not str(definition.target_type).strip():
        raise ValidationError("Definition target type is required")

    label = definition.nodes_field
    nodes = definition.nodes
    if not nodes:
        raise ValidationError(f"Definition must declare at least one of {label}")
    if max_nodes is not None and len(nodes) > max_nodes:
        raise ValidationError(f"Definition declares more than {max_nodes} {label}")

    seen_ids: Set[str] = set()
    seen_orders: Set[int] = set()
    for node in nodes:
        if not node.name or not node.name.strip():
            raise ValidationError(f"Every entry of {label} needs a name")
        if node.id in seen_ids:
            raise ValidationError(f"Duplicate id '{node.id}' in {label}")
        seen_ids.add(node.id)
        if node.order is not None:
            if node.order in seen_orders:
                raise ValidationError(f"Duplicate order index {node.order} in {label}")
            seen_orders.add(node.order)
        if isinstance(node, Stage):
            requirement_ids = [req.id for req in node.requirements]
            if len(requirement_ids) != len(set(requirement_ids)):
                raise ValidationError(f"Duplicate requirement id in stage '{node.id}'")

    initial = [node.id for node in nodes if node.is_initial]
    if len(initial) > 1:
        raise ValidationError(
            f"Only one of {label} may be initial, got {', '.join(initial)}"
        )

    edges = definition.edges()
    if definition.transition_mode == TransitionMode.LINEAR and edges:
        raise ValidationError("Transitions are declared but transition_mode is linear")
    if (
        definition.transition_mode == TransitionMode.EXPLICIT
        and len(nodes) > 1
        and not edges
    ):
        raise ValidationError("Explicit transition mode requires declared transitions")
    if len(edges) != len(set(edges)):
        raise ValidationError("Duplicate transition declared")


def check_references(definition: DefinitionBase) -> None:
    """Dependency ids and transition endpoints must name existing nodes."""
    ids = {node.id for node in definition.nodes}
    for node in definition.nodes:
        unknown = [dep for dep in node.dependencies if dep not in ids]
        if unknown:
            raise ValidationError(
                f"'{node.id}' depends on unknown id(s): {', '.join(unknown)}"
            )
    for source, target in definition.edges():
        if source not in ids or target not in ids:
            raise ValidationError(f"Transition {source} -> {target} names an unknown id")


def check_orphans(definition: DefinitionBase, previous: DefinitionBase) -> None:
    """Refuse edits that removed a node other nodes still depend on."""
    removed = {node.id for node in previous.nodes} - {
        node.id for node in definition.nodes
    }
    for removed_id in sorted(removed):
        dependents = [
            node.id for node in definition.nodes if removed_id in node.dependencies
        ]
        if dependents:
            raise OrphanedDependencyError(removed_id, dependents)


def check_initial_entry(definition: DefinitionBase) -> None:
    """The initial node is entered unconditionally, so it may not depend on others."""
    for node in definition.nodes:
        if node.is_initial and node.dependencies:
            raise ValidationError(
                f"Initial '{node.id}' cannot depend on {', '.join(node.dependencies)}"
            )


def on_definition_mutation(
    definition: DefinitionBase,
    previous: Optional[DefinitionBase] = None,
    max_nodes: Optional[int] = None,
) -> None:
    """Gate every structural definition edit.

    Runs the shape checks, the orphan check against ``previous`` (when
    given), reference checks, :func:`validate_acyclic` and finally
    :func:`check_initial_entry`.
    """
    validate_shape(definition, max_nodes=max_nodes)
    if previous is not None:
        check_orphans(definition, previous)
    check_references(definition)
    validate_acyclic(definition.nodes)
    check_initial_entry(definition)
    logger.debug(f"Definition {definition.id} passed dependency validation")


def _stage_satisfied(progress: CaseStageProgress, stage_id: str, visited: Iterable[str]) -> bool:
    if stage_id not in visited:
        return False
    stage = progress.snapshot.get_node(stage_id)
    if not isinstance(stage, Stage):
        return False
    return all(
        req.id in progress.completed_requirements
        for req in stage.requirements
        if req.is_required
    )


def resolve_readiness(
    record: Union[ProcessInstance, CaseStageProgress],
    node_id: str,
    assume_completed: Iterable[str] = (),
) -> Readiness:
    """Report whether every dependency of ``node_id`` is satisfied.

    For process instances a dependency is satisfied once the step is in
    ``completed_steps`` (or ``assume_completed``). For case progress a
    dependency stage must have been visited and have all of its required
    requirements completed.
    """
    node = record.snapshot.get_node(node_id)
    if node is None:
        raise NotFoundError(f"Unknown step or stage '{node_id}'")

    if isinstance(record, ProcessInstance):
        done = set(record.completed_steps) | set(assume_completed)
        missing = [dep for dep in node.dependencies if dep not in done]
    else:
        visited = set(record.visited_stage_ids) | set(assume_completed)
        missing = [
            dep
            for dep in node.dependencies
            if not _stage_satisfied(record, dep, visited)
        ]
    return Readiness(node_id=node_id, ready=not missing, missing=missing)
