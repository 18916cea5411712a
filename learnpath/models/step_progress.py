"""
Step Progress: one user's attempt record for one step.

StepProgress is created lazily on first interaction and never deleted; the
Performance Analyzer reads the full history. Percentage never regresses
under ordinary progress updates - only ``reopen`` may move a COMPLETED step
back to IN_PROGRESS.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from ..errors import InvalidTransitionError, ValidationError

logger = logging.getLogger(__name__)


class StepStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _format_ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _check_rating(name: str, value: Optional[int]):
    if value is not None and not (1 <= value <= 5):
        raise ValidationError(f"{name} must be in [1, 5], got {value}")


@dataclass
class StepProgress:
    """
    Mutable progress record keyed by (user_id, step_id).

    Attributes:
        user_id: Learner identifier
        step_id: Step being worked on
        path_id: Owning path of the step
        status: Current StepStatus
        percentage: 0-100, monotonic under record_progress
        time_spent_minutes: Cumulative minutes
        attempts: Attempt counter
    """

    user_id: str
    step_id: str
    path_id: str
    status: StepStatus = StepStatus.NOT_STARTED
    percentage: float = 0.0
    time_spent_minutes: int = 0
    attempts: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_accessed_at: Optional[datetime] = None
    notes: Optional[str] = None
    difficulty_rating: Optional[int] = None
    quality_rating: Optional[int] = None
    feedback: Optional[str] = None

    def __post_init__(self):
        self.status = StepStatus(self.status)

    @property
    def key(self) -> tuple:
        return (self.user_id, self.step_id)

    @property
    def is_completed(self) -> bool:
        return self.status == StepStatus.COMPLETED

    @property
    def is_started(self) -> bool:
        return self.started_at is not None

    def record_progress(
        self,
        percentage: float,
        minutes_delta: int = 0,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> StepStatus:
        """
        Apply a progress update.

        Time is always accumulated. The stored percentage becomes
        ``max(current, percentage)``; reaching 100 completes the step from any
        state, and any positive progress moves NOT_STARTED to IN_PROGRESS.
        FAILED and SKIPPED steps keep their status on partial progress.

        Args:
            percentage: Reported completion, 0-100
            minutes_delta: Minutes to add (>= 0)
            notes: Replaces stored notes when given
            now: Clock override

        Returns:
            The status after the update

        Raises:
            ValidationError: percentage or minutes_delta out of range
        """
        if percentage is None or not (0 <= percentage <= 100):
            raise ValidationError(f"percentage must be in [0, 100], got {percentage}")
        if minutes_delta is None or minutes_delta < 0:
            raise ValidationError(f"minutes_delta must be >= 0, got {minutes_delta}")

        now = now or _utc_now()
        previous = self.status

        self.time_spent_minutes += int(minutes_delta)
        if notes:
            self.notes = notes
        self.last_accessed_at = now

        if self.status == StepStatus.COMPLETED:
            # Frozen at 100 until reopened
            return self.status

        self.percentage = max(self.percentage, float(percentage))

        if percentage >= 100:
            self.percentage = 100.0
            self.status = StepStatus.COMPLETED
            self.completed_at = now
            if self.started_at is None:
                self.started_at = now
        elif percentage > 0 and self.status == StepStatus.NOT_STARTED:
            self.status = StepStatus.IN_PROGRESS
            self.started_at = now

        if self.status != previous:
            logger.debug(
                "Step %s for user %s: %s -> %s",
                self.step_id, self.user_id, previous.value, self.status.value,
            )
        return self.status

    def increment_attempt(self, now: Optional[datetime] = None) -> int:
        """Count one more attempt; status is unchanged."""
        self.attempts += 1
        self.last_accessed_at = now or _utc_now()
        return self.attempts

    def skip(self, now: Optional[datetime] = None) -> StepStatus:
        if self.status not in (StepStatus.NOT_STARTED, StepStatus.IN_PROGRESS):
            raise InvalidTransitionError("step", self.status.value, "skip")
        self.status = StepStatus.SKIPPED
        self.last_accessed_at = now or _utc_now()
        return self.status

    def fail(self, now: Optional[datetime] = None) -> StepStatus:
        if self.status not in (StepStatus.NOT_STARTED, StepStatus.IN_PROGRESS):
            raise InvalidTransitionError("step", self.status.value, "fail")
        now = now or _utc_now()
        if self.started_at is None:
            self.started_at = now
        self.status = StepStatus.FAILED
        self.last_accessed_at = now
        return self.status

    def retry(self, now: Optional[datetime] = None) -> StepStatus:
        """Start a new attempt on a FAILED or SKIPPED step."""
        if self.status not in (StepStatus.FAILED, StepStatus.SKIPPED):
            raise InvalidTransitionError("step", self.status.value, "retry")
        now = now or _utc_now()
        self.attempts += 1
        self.status = StepStatus.IN_PROGRESS
        if self.started_at is None:
            self.started_at = now
        self.last_accessed_at = now
        return self.status

    def reopen(self, now: Optional[datetime] = None) -> StepStatus:
        """
        Move a COMPLETED step back to IN_PROGRESS.

        The only operation that lowers the percentage: it is reset to 0 and
        completed_at is cleared. Attempts and time spent are kept.
        """
        if self.status != StepStatus.COMPLETED:
            raise InvalidTransitionError("step", self.status.value, "reopen")
        self.status = StepStatus.IN_PROGRESS
        self.percentage = 0.0
        self.completed_at = None
        self.last_accessed_at = now or _utc_now()
        return self.status

    def rate(
        self,
        difficulty: Optional[int] = None,
        quality: Optional[int] = None,
        feedback: Optional[str] = None,
    ):
        _check_rating("difficulty_rating", difficulty)
        _check_rating("quality_rating", quality)
        if difficulty is not None:
            self.difficulty_rating = difficulty
        if quality is not None:
            self.quality_rating = quality
        if feedback is not None:
            self.feedback = feedback

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "step_id": self.step_id,
            "path_id": self.path_id,
            "status": self.status.value,
            "percentage": self.percentage,
            "time_spent_minutes": self.time_spent_minutes,
            "attempts": self.attempts,
            "started_at": _format_ts(self.started_at),
            "completed_at": _format_ts(self.completed_at),
            "last_accessed_at": _format_ts(self.last_accessed_at),
            "notes": self.notes,
            "difficulty_rating": self.difficulty_rating,
            "quality_rating": self.quality_rating,
            "feedback": self.feedback,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepProgress":
        return cls(
            user_id=data["user_id"],
            step_id=data["step_id"],
            path_id=data["path_id"],
            status=StepStatus(data.get("status", StepStatus.NOT_STARTED.value)),
            percentage=float(data.get("percentage", 0.0)),
            time_spent_minutes=int(data.get("time_spent_minutes", 0)),
            attempts=int(data.get("attempts", 0)),
            started_at=_parse_ts(data.get("started_at")),
            completed_at=_parse_ts(data.get("completed_at")),
            last_accessed_at=_parse_ts(data.get("last_accessed_at")),
            notes=data.get("notes"),
            difficulty_rating=data.get("difficulty_rating"),
            quality_rating=data.get("quality_rating"),
            feedback=data.get("feedback"),
        )
