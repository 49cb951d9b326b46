"""Error taxonomy raised by the caseflow engines and stores."""

from __future__ import annotations

from typing import Iterable, Optional


class CaseflowError(Exception):
    """Base class for every error raised by caseflow."""


class NotFoundError(CaseflowError):
    """A definition, instance, stage progress or bound entity is absent."""


class ValidationError(CaseflowError):
    """A definition or caller input is malformed."""


class CycleError(ValidationError):
    """The dependency graph of a definition is not acyclic."""

    def __init__(self, cycle: Iterable[str], message: Optional[str] = None) -> None:
        self.cycle = list(cycle)
        super().__init__(
            message or f"Dependency cycle detected: {' -> '.join(self.cycle)}"
        )


class ConflictError(CaseflowError):
    """A write conflicts with existing state.

    Raised when a structural edit would orphan a reference, when a definition
    is still referenced by execution records, or when an optimistic
    concurrency guard no longer holds by the time the write lands.
    """


class OrphanedDependencyError(ValidationError, ConflictError):
    """Removing a node would leave other nodes depending on a missing id."""

    def __init__(self, removed: str, dependents: Iterable[str]) -> None:
        self.removed = removed
        self.dependents = sorted(dependents)
        super().__init__(
            f"Cannot remove '{removed}': still a dependency of "
            f"{', '.join(self.dependents)}"
        )


class InvalidStateError(CaseflowError):
    """The operation is illegal for the record's current status."""


class InvalidTransitionError(CaseflowError):
    """A stage move is not permitted by transitions or unmet dependencies."""


__all__ = [
    "CaseflowError",
    "ConflictError",
    "CycleError",
    "InvalidStateError",
    "InvalidTransitionError",
    "NotFoundError",
    "OrphanedDependencyError",
    "ValidationError",
]
