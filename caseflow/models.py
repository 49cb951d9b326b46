"""Execution records tracking an entity's progress through a definition."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .contracts import CaseSnapshot, NodeBase, ProcessSnapshot, Stage, new_id, utcnow
from .history import HistoryEntry, visited_positions


class InstanceStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = frozenset(
    {InstanceStatus.PENDING, InstanceStatus.RUNNING, InstanceStatus.PAUSED}
)
TERMINAL_STATUSES = frozenset(
    {InstanceStatus.COMPLETED, InstanceStatus.FAILED, InstanceStatus.CANCELLED}
)


class ProgressStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class EntityRef(BaseModel):
    """Weak reference to a business entity (case, client, invoice...)."""

    type: str
    id: str


class ProgressSummary(BaseModel):
    total_steps: int
    completed_steps: int
    percentage: float


class ProcessInstance(BaseModel):
    """Live execution record of a generic process template."""

    id: str = Field(default_factory=new_id)
    tenant_id: str
    definition_id: str
    definition_version: int
    name: str
    entity: EntityRef
    snapshot: ProcessSnapshot
    status: InstanceStatus = InstanceStatus.PENDING
    current_step_id: Optional[str] = None
    completed_steps: List[str] = Field(default_factory=list)
    variables: Dict[str, Any] = Field(default_factory=dict)
    history: List[HistoryEntry] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    started_by: Optional[str] = None
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancel_reason: Optional[str] = None
    failed_at: Optional[datetime] = None
    error: Optional[str] = None
    version: int = 1

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_finished(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def current_step(self) -> Optional[NodeBase]:
        if self.current_step_id is None:
            return None
        return self.snapshot.get_node(self.current_step_id)

    @property
    def progress(self) -> ProgressSummary:
        total = len(self.snapshot.steps)
        done = len(self.completed_steps)
        percentage = round(done * 100.0 / total, 2) if total else 0.0
        return ProgressSummary(
            total_steps=total, completed_steps=done, percentage=percentage
        )


class InstanceStatusView(BaseModel):
    """Read model returned by :meth:`InstanceEngine.status`."""

    instance: ProcessInstance
    current_step: Optional[Dict[str, Any]] = None
    progress: ProgressSummary
    is_active: bool
    is_finished: bool


class RequirementStatus(BaseModel):
    requirement_id: str
    name: str
    is_required: bool
    completed: bool


class CaseStageProgress(BaseModel):
    """Live record of a single case's position in a case workflow."""

    id: str = Field(default_factory=new_id)
    tenant_id: str
    case_id: str
    definition_id: str
    definition_version: int
    snapshot: CaseSnapshot
    status: ProgressStatus = ProgressStatus.ACTIVE
    current_stage_id: Optional[str] = None
    current_stage_name: Optional[str] = None
    completed_requirements: List[str] = Field(default_factory=list)
    history: List[HistoryEntry] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    started_by: Optional[str] = None
    completed_at: Optional[datetime] = None
    version: int = 1

    @property
    def visited_stage_ids(self) -> List[str]:
        return visited_positions(self.history)

    def requirement_status(self, stage_id: str) -> List[RequirementStatus]:
        stage = self.snapshot.get_node(stage_id)
        if not isinstance(stage, Stage):
            return []
        return [
            RequirementStatus(
                requirement_id=req.id,
                name=req.name,
                is_required=req.is_required,
                completed=req.id in self.completed_requirements,
            )
            for req in stage.requirements
        ]
