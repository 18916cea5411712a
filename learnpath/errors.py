"""
Exception taxonomy for the learning path progression engine.

- ValidationError: malformed input, rejected before any state mutation
- InvalidTransitionError: operation not permitted from the current state
- GraphDeadlock: steps remain but none is eligible (corrupt or cyclic graph)
- StaleWriteConflict: concurrent recompute on the same enrollment
- NotFoundError: referenced path/step/enrollment/progress does not exist
"""

from __future__ import annotations

from typing import Iterable, Optional


class LearnPathError(Exception):
    """Base class for all engine errors."""


class ValidationError(LearnPathError, ValueError):
    """Input failed validation. Never retried automatically."""

    def __init__(self, message: str, errors: Optional[Iterable[str]] = None):
        super().__init__(message)
        self.errors = list(errors) if errors else [message]


class InvalidTransitionError(ValidationError):
    """State machine refused a transition."""

    def __init__(self, entity: str, current: str, action: str):
        super().__init__(f"Cannot {action} {entity} in state {current}")
        self.entity = entity
        self.current = current
        self.action = action


class GraphDeadlock(LearnPathError):
    """Incomplete steps remain but none has its prerequisites satisfied."""

    def __init__(self, path_id: Optional[str], blocked_step_ids: Iterable[str]):
        self.path_id = path_id
        self.blocked_step_ids = list(blocked_step_ids)
        super().__init__(
            f"Step graph deadlock in path {path_id}: "
            f"{len(self.blocked_step_ids)} step(s) can never become eligible "
            f"({', '.join(self.blocked_step_ids[:5])})"
        )


class StaleWriteConflict(LearnPathError):
    """Optimistic version check failed for an enrollment write."""

    def __init__(self, key: str, expected_version: int, actual_version: int):
        self.key = key
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Stale write on enrollment {key}: expected version "
            f"{expected_version}, found {actual_version}"
        )


class NotFoundError(LearnPathError, LookupError):
    """Referenced record does not exist."""

    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} not found: {key}")
