"""Append-only audit history embedded in execution records.

Every mutation of a :class:`~caseflow.models.ProcessInstance` or
:class:`~caseflow.models.CaseStageProgress` is paired with exactly one entry
appended here. Entries are a closed set of variants discriminated by
``action``; each variant carries only the payload relevant to it.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Sequence, Type, TypeVar, Union

from pydantic import BaseModel, Field

from .contracts import utcnow


class HistoryEntryBase(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    actor: Optional[str] = None


class StartedEntry(HistoryEntryBase):
    action: Literal["started"] = "started"
    position: Optional[str] = Field(
        default=None, description="Initial step or stage id"
    )
    status: str


class ActivatedEntry(HistoryEntryBase):
    action: Literal["activated"] = "activated"
    trigger: Optional[str] = None


class StepAdvancedEntry(HistoryEntryBase):
    action: Literal["step_advanced"] = "step_advanced"
    from_step_id: Optional[str] = None
    to_step_id: Optional[str] = None
    skipped_step_ids: List[str] = Field(default_factory=list)
    result: Dict[str, Any] = Field(default_factory=dict)
    completed: bool = False


class PausedEntry(HistoryEntryBase):
    action: Literal["paused"] = "paused"
    reason: Optional[str] = None


class ResumedEntry(HistoryEntryBase):
    action: Literal["resumed"] = "resumed"


class CancelledEntry(HistoryEntryBase):
    action: Literal["cancelled"] = "cancelled"
    reason: Optional[str] = None


class FailedEntry(HistoryEntryBase):
    action: Literal["failed"] = "failed"
    error: str
    step_id: Optional[str] = None


class StageMovedEntry(HistoryEntryBase):
    action: Literal["stage_moved"] = "stage_moved"
    from_stage: Optional[str] = None
    to_stage: str
    notes: Optional[str] = None


class RequirementCompletedEntry(HistoryEntryBase):
    action: Literal["requirement_completed"] = "requirement_completed"
    stage_id: str
    requirement_id: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    repeat: bool = False


HistoryEntry = Annotated[
    Union[
        StartedEntry,
        ActivatedEntry,
        StepAdvancedEntry,
        PausedEntry,
        ResumedEntry,
        CancelledEntry,
        FailedEntry,
        StageMovedEntry,
        RequirementCompletedEntry,
    ],
    Field(discriminator="action"),
]

EntryT = TypeVar("EntryT", bound=HistoryEntryBase)


def append_entry(history: Sequence[HistoryEntryBase], entry: HistoryEntryBase) -> list:
    """Return a new history list with ``entry`` appended.

    The input sequence is never modified, so a failed write leaves the
    caller's copy of the record untouched.
    """
    return [*history, entry]


def entries_of(history: Sequence[HistoryEntryBase], kind: Type[EntryT]) -> List[EntryT]:
    return [entry for entry in history if isinstance(entry, kind)]


def visited_positions(history: Sequence[HistoryEntryBase]) -> List[str]:
    """Ids of every step/stage the record has been positioned at, in order."""
    visited: List[str] = []
    for entry in history:
        if isinstance(entry, StartedEntry):
            position = entry.position
        elif isinstance(entry, StageMovedEntry):
            position = entry.to_stage
        elif isinstance(entry, StepAdvancedEntry):
            position = entry.to_step_id
        else:
            continue
        if position is not None and position not in visited:
            visited.append(position)
    return visited


__all__ = [
    "ActivatedEntry",
    "CancelledEntry",
    "FailedEntry",
    "HistoryEntry",
    "HistoryEntryBase",
    "PausedEntry",
    "RequirementCompletedEntry",
    "ResumedEntry",
    "StageMovedEntry",
    "StartedEntry",
    "StepAdvancedEntry",
    "append_entry",
    "entries_of",
    "visited_positions",
]
