"""Caseflow: process and case workflow orchestration."""

from .contracts import (
    CaseWorkflowTemplate,
    Condition,
    ProcessTemplate,
    Requirement,
    Stage,
    Step,
    TransitionMode,
    TriggerConfig,
)
from .definitions import DefinitionStore
from .engine import InstanceEngine
from .errors import (
    CaseflowError,
    ConflictError,
    CycleError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    OrphanedDependencyError,
    ValidationError,
)
from .models import CaseStageProgress, InstanceStatus, ProcessInstance
from .persistence import get_repository
from .progress import StageProgressEngine

__version__ = "0.1.0"
__all__ = [
    "CaseStageProgress",
    "CaseWorkflowTemplate",
    "CaseflowError",
    "Condition",
    "ConflictError",
    "CycleError",
    "DefinitionStore",
    "InstanceEngine",
    "InstanceStatus",
    "InvalidStateError",
    "InvalidTransitionError",
    "NotFoundError",
    "OrphanedDependencyError",
    "ProcessInstance",
    "ProcessTemplate",
    "Requirement",
    "Stage",
    "StageProgressEngine",
    "Step",
    "TransitionMode",
    "TriggerConfig",
    "ValidationError",
    "get_repository",
]
