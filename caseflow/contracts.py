"""Definition contracts for caseflow process and case workflow templates."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, ClassVar, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class TransitionMode(str, Enum):
    """How moves between steps/stages are authorised."""

    LINEAR = "linear"
    EXPLICIT = "explicit"


class TriggerType(str, Enum):
    MANUAL = "manual"
    EVENT = "event"
    SCHEDULE = "schedule"
    CONDITION = "condition"


class Condition(BaseModel):
    """Simple predicate over an instance variable."""

    field: str
    operator: Literal[
        "equals",
        "not_equals",
        "greater_than",
        "less_than",
        "contains",
        "not_contains",
        "is_empty",
        "is_not_empty",
    ] = "equals"
    value: Any = None
    logic_gate: Literal["AND", "OR"] = Field(
        default="AND", description="How this condition joins the next one"
    )


class TriggerConfig(BaseModel):
    """What starts a process, or what a step waits for."""

    type: TriggerType = TriggerType.MANUAL
    event: Optional[str] = Field(default=None, description="Event name")
    schedule: Optional[str] = Field(
        default=None, description="Schedule expression, interpreted by the host"
    )
    conditions: List[Condition] = Field(default_factory=list)


class NodeBase(BaseModel):
    """A single named position within a definition."""

    id: str = Field(default_factory=new_id)
    name: str
    order: Optional[int] = None
    is_initial: bool = False
    is_final: bool = False
    dependencies: List[str] = Field(default_factory=list)


class Step(NodeBase):
    """A step of a generic process template."""

    type: Literal[
        "task", "approval", "notification", "delay", "condition", "action", "form"
    ] = "task"
    description: Optional[str] = None
    trigger: TriggerConfig = Field(default_factory=TriggerConfig)
    config: Dict[str, Any] = Field(default_factory=dict)


class Requirement(BaseModel):
    """A gating condition attached to a stage."""

    id: str = Field(default_factory=new_id)
    name: str
    name_ar: Optional[str] = None
    type: Literal["document", "task", "approval", "hearing", "custom"] = "task"
    is_required: bool = True
    description: Optional[str] = None


class Stage(NodeBase):
    """A stage of a case workflow template."""

    name_ar: Optional[str] = None
    color: Optional[str] = None
    requirements: List[Requirement] = Field(default_factory=list)

    def get_requirement(self, requirement_id: str) -> Optional[Requirement]:
        for requirement in self.requirements:
            if requirement.id == requirement_id:
                return requirement
        return None


class StepTransition(BaseModel):
    from_step_id: str
    to_step_id: str
    conditions: List[Condition] = Field(default_factory=list)

    @property
    def source(self) -> str:
        return self.from_step_id

    @property
    def target(self) -> str:
        return self.to_step_id


class StageTransition(BaseModel):
    from_stage_id: str
    to_stage_id: str

    @property
    def source(self) -> str:
        return self.from_stage_id

    @property
    def target(self) -> str:
        return self.to_stage_id


class TemplateVariable(BaseModel):
    """Variable declared by a process template."""

    name: str
    type: Literal["string", "number", "boolean", "date", "object", "array"] = "string"
    default_value: Any = None
    required: bool = False


class NodeGraph(BaseModel):
    """Ordered nodes plus optional explicit transitions.

    Shared by the stored definitions and by the snapshots copied into
    execution records, so both are navigated the same way.
    """

    nodes_field: ClassVar[str] = "steps"

    transition_mode: TransitionMode = TransitionMode.LINEAR

    @property
    def nodes(self) -> List[NodeBase]:
        return getattr(self, self.nodes_field)

    def ordered_nodes(self) -> List[NodeBase]:
        """Return nodes sorted by order index, list position breaking ties."""
        indexed = list(enumerate(self.nodes))
        indexed.sort(
            key=lambda item: (
                item[1].order if item[1].order is not None else item[0],
                item[0],
            )
        )
        return [node for _, node in indexed]

    def get_node(self, node_id: str) -> Optional[NodeBase]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def initial_node(self) -> Optional[NodeBase]:
        ordered = self.ordered_nodes()
        for node in ordered:
            if node.is_initial:
                return node
        return ordered[0] if ordered else None

    def edges(self) -> List[tuple[str, str]]:
        return [(t.source, t.target) for t in getattr(self, "transitions", [])]

    def has_edge(self, source: str, target: str) -> bool:
        return (source, target) in self.edges()

    def nodes_after(self, node_id: str) -> List[NodeBase]:
        """Nodes following ``node_id`` in order-index order."""
        ordered = self.ordered_nodes()
        for position, node in enumerate(ordered):
            if node.id == node_id:
                return ordered[position + 1 :]
        return []


class DefinitionBase(NodeGraph):
    """Fields shared by every stored definition."""

    id: str = Field(default_factory=new_id)
    tenant_id: str
    name: str
    name_ar: Optional[str] = None
    description: Optional[str] = None
    description_ar: Optional[str] = None
    is_active: bool = True
    version: int = 1
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def target_type(self) -> str:
        raise NotImplementedError

    def with_nodes(self, nodes: List[NodeBase]) -> "DefinitionBase":
        return self.model_copy(update={self.nodes_field: nodes})


class ProcessTemplate(DefinitionBase):
    """Generic business-process template bound to arbitrary entities."""

    nodes_field: ClassVar[str] = "steps"

    kind: Literal["process"] = "process"
    category: str = "custom"
    entity_type: str
    trigger: TriggerConfig = Field(default_factory=TriggerConfig)
    variables: List[TemplateVariable] = Field(default_factory=list)
    steps: List[Step] = Field(default_factory=list)
    transitions: List[StepTransition] = Field(default_factory=list)

    @property
    def target_type(self) -> str:
        return self.entity_type


class CaseWorkflowTemplate(DefinitionBase):
    """Stage-based workflow for litigation cases."""

    nodes_field: ClassVar[str] = "stages"

    kind: Literal["case"] = "case"
    case_category: str
    is_default: bool = False
    stages: List[Stage] = Field(default_factory=list)
    transitions: List[StageTransition] = Field(default_factory=list)

    @property
    def target_type(self) -> str:
        return self.case_category


Definition = Annotated[
    Union[ProcessTemplate, CaseWorkflowTemplate], Field(discriminator="kind")
]
definition_adapter: TypeAdapter[Definition] = TypeAdapter(Definition)


class ProcessSnapshot(NodeGraph):
    """Copy of a process template's shape taken when an instance starts."""

    nodes_field: ClassVar[str] = "steps"

    trigger: TriggerConfig = Field(default_factory=TriggerConfig)
    steps: List[Step] = Field(default_factory=list)
    transitions: List[StepTransition] = Field(default_factory=list)

    @classmethod
    def from_template(cls, template: ProcessTemplate) -> "ProcessSnapshot":
        copied = template.model_copy(deep=True)
        return cls(
            transition_mode=copied.transition_mode,
            trigger=copied.trigger,
            steps=copied.steps,
            transitions=copied.transitions,
        )

    def outgoing(self, step_id: str) -> List[StepTransition]:
        return [t for t in self.transitions if t.from_step_id == step_id]


class CaseSnapshot(NodeGraph):
    """Copy of a case workflow's stages taken at initialisation."""

    nodes_field: ClassVar[str] = "stages"

    stages: List[Stage] = Field(default_factory=list)
    transitions: List[StageTransition] = Field(default_factory=list)

    @classmethod
    def from_template(cls, template: CaseWorkflowTemplate) -> "CaseSnapshot":
        copied = template.model_copy(deep=True)
        return cls(
            transition_mode=copied.transition_mode,
            stages=copied.stages,
            transitions=copied.transitions,
        )
