"""
Enrollment: one user's participation in one path.

The progress percentage is derived, never set: ``recompute`` rebuilds it
from the authoritative StepProgress collection. Explicit lifecycle actions
(pause, resume, drop, expire, re-enroll) are separate from the recompute,
which only ever moves ENROLLED -> IN_PROGRESS -> COMPLETED.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import AbstractSet, Any, Dict, Iterable, Optional

from ..errors import InvalidTransitionError, ValidationError
from .step_progress import StepProgress, StepStatus

logger = logging.getLogger(__name__)


class EnrollmentStatus(str, Enum):
    ENROLLED = "enrolled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    PAUSED = "paused"
    DROPPED = "dropped"
    EXPIRED = "expired"


# States the recompute is allowed to advance
_ACTIVE = (EnrollmentStatus.ENROLLED, EnrollmentStatus.IN_PROGRESS)
_CLOSED = (EnrollmentStatus.DROPPED, EnrollmentStatus.EXPIRED)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _format_ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Enrollment:
    """
    Enrollment record with its state machine.

    ``version`` is the optimistic concurrency token; stores bump it on every
    successful commit and reject writes made against an older version.
    """

    def __init__(
        self,
        user_id: str,
        path_id: str,
        total_steps_snapshot: int,
        enrollment_id: Optional[str] = None,
        target_completion_date: Optional[datetime] = None,
        daily_goal_hours: Optional[float] = None,
        weekly_goal_hours: Optional[float] = None,
        now: Optional[datetime] = None,
    ):
        if total_steps_snapshot < 0:
            raise ValidationError(
                f"total_steps_snapshot must be >= 0, got {total_steps_snapshot}"
            )
        for name, value in (("daily_goal_hours", daily_goal_hours),
                            ("weekly_goal_hours", weekly_goal_hours)):
            if value is not None and value < 0:
                raise ValidationError(f"{name} must be >= 0, got {value}")

        now = now or _utc_now()
        self.id = enrollment_id or f"enrollment-{uuid.uuid4()}"
        self.user_id = user_id
        self.path_id = path_id
        self.status = EnrollmentStatus.ENROLLED
        self.total_steps_snapshot = int(total_steps_snapshot)
        self.completed_steps = 0
        self._progress_percentage = 0.0
        self.time_spent_minutes = 0
        self.target_completion_date = target_completion_date
        self.daily_goal_hours = daily_goal_hours
        self.weekly_goal_hours = weekly_goal_hours
        self.enrolled_at = now
        self.started_at: Optional[datetime] = None
        self.completed_at: Optional[datetime] = None
        self.last_accessed_at: Optional[datetime] = None
        self.current_step_id: Optional[str] = None
        self.deleted_at: Optional[datetime] = None
        self.version = 0

    def __repr__(self) -> str:
        return (
            f"Enrollment(user_id={self.user_id!r}, path_id={self.path_id!r}, "
            f"status={self.status.value}, progress={self._progress_percentage:.1f}, "
            f"version={self.version})"
        )

    @property
    def key(self) -> tuple:
        return (self.user_id, self.path_id)

    @property
    def progress_percentage(self) -> float:
        return self._progress_percentage

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def is_active(self) -> bool:
        return self.status in _ACTIVE and not self.is_deleted

    @property
    def remaining_steps(self) -> int:
        return max(0, self.total_steps_snapshot - self.completed_steps)

    def recompute(
        self,
        step_progress: Iterable[StepProgress],
        path_step_ids: AbstractSet[str],
        now: Optional[datetime] = None,
    ) -> EnrollmentStatus:
        """
        Rebuild the aggregate from the user's StepProgress records.

        Only records whose step belongs to the path are counted. A snapshot
        of zero yields 0%. Reaching 100% completes the enrollment and freezes
        the percentage; PAUSED, DROPPED and EXPIRED enrollments get fresh
        counts but keep their status.

        Returns:
            The status after recompute
        """
        now = now or _utc_now()
        relevant = [sp for sp in step_progress if sp.step_id in path_step_ids]
        self.completed_steps = sum(1 for sp in relevant if sp.status == StepStatus.COMPLETED)
        self.time_spent_minutes = sum(sp.time_spent_minutes for sp in relevant)

        if self.status == EnrollmentStatus.COMPLETED:
            return self.status

        if self.total_steps_snapshot == 0:
            self._progress_percentage = 0.0
        else:
            self._progress_percentage = min(
                100.0, self.completed_steps / self.total_steps_snapshot * 100.0
            )

        previous = self.status
        if self.is_active:
            if self._progress_percentage >= 100.0:
                self._progress_percentage = 100.0
                self.status = EnrollmentStatus.COMPLETED
                self.completed_at = now
                if self.started_at is None:
                    self.started_at = now
            elif self._progress_percentage > 0 and self.status == EnrollmentStatus.ENROLLED:
                self.status = EnrollmentStatus.IN_PROGRESS
                self.started_at = now

        if self.status != previous:
            logger.info(
                "Enrollment %s/%s: %s -> %s (%.1f%%)",
                self.user_id, self.path_id, previous.value,
                self.status.value, self._progress_percentage,
            )
        return self.status

    def touch(self, step_id: Optional[str] = None, now: Optional[datetime] = None):
        """Record access, optionally moving the cursor to a step."""
        if step_id is not None:
            self.current_step_id = step_id
        self.last_accessed_at = now or _utc_now()

    def _require(self, allowed, action: str):
        if self.is_deleted:
            raise InvalidTransitionError("enrollment", "deleted", action)
        if self.status not in allowed:
            raise InvalidTransitionError("enrollment", self.status.value, action)

    def _move(self, status: EnrollmentStatus, now: Optional[datetime]):
        previous, self.status = self.status, status
        self.last_accessed_at = now or _utc_now()
        logger.info(
            "Enrollment %s/%s: %s -> %s",
            self.user_id, self.path_id, previous.value, status.value,
        )
        return self.status

    def pause(self, now: Optional[datetime] = None) -> EnrollmentStatus:
        self._require(_ACTIVE, "pause")
        return self._move(EnrollmentStatus.PAUSED, now)

    def resume(self, now: Optional[datetime] = None) -> EnrollmentStatus:
        """PAUSED -> IN_PROGRESS if work had started, else ENROLLED."""
        self._require((EnrollmentStatus.PAUSED,), "resume")
        started = self.started_at is not None or self.completed_steps > 0
        return self._move(
            EnrollmentStatus.IN_PROGRESS if started else EnrollmentStatus.ENROLLED, now
        )

    def drop(self, now: Optional[datetime] = None) -> EnrollmentStatus:
        self._require(_ACTIVE, "drop")
        return self._move(EnrollmentStatus.DROPPED, now)

    def expire(self, now: Optional[datetime] = None) -> EnrollmentStatus:
        self._require(_ACTIVE, "expire")
        return self._move(EnrollmentStatus.EXPIRED, now)

    def re_enroll(
        self,
        total_steps_snapshot: int,
        target_completion_date: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> EnrollmentStatus:
        """
        Reopen a DROPPED or EXPIRED enrollment.

        Step history is kept; the snapshot is recaptured from the current
        path and the caller recomputes the aggregate afterwards.
        """
        self._require(_CLOSED, "re-enroll")
        now = now or _utc_now()
        self.total_steps_snapshot = int(total_steps_snapshot)
        if target_completion_date is not None:
            self.target_completion_date = target_completion_date
        self.enrolled_at = now
        self.started_at = None
        self.completed_at = None
        return self._move(EnrollmentStatus.ENROLLED, now)

    def withdraw(self, now: Optional[datetime] = None):
        """Soft delete (un-enrollment). The record stays for history."""
        if self.is_deleted:
            raise InvalidTransitionError("enrollment", "deleted", "unenroll")
        self.deleted_at = now or _utc_now()
        logger.info("Enrollment %s/%s withdrawn", self.user_id, self.path_id)

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        if self.target_completion_date is None or self.status == EnrollmentStatus.COMPLETED:
            return False
        return (now or _utc_now()) > self.target_completion_date

    def days_enrolled(self, now: Optional[datetime] = None) -> int:
        return max(0, ((now or _utc_now()) - self.enrolled_at).days)

    def days_to_target(self, now: Optional[datetime] = None) -> Optional[int]:
        if self.target_completion_date is None:
            return None
        return (self.target_completion_date - (now or _utc_now())).days

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "path_id": self.path_id,
            "status": self.status.value,
            "progress_percentage": self._progress_percentage,
            "completed_steps": self.completed_steps,
            "total_steps_snapshot": self.total_steps_snapshot,
            "time_spent_minutes": self.time_spent_minutes,
            "target_completion_date": _format_ts(self.target_completion_date),
            "daily_goal_hours": self.daily_goal_hours,
            "weekly_goal_hours": self.weekly_goal_hours,
            "enrolled_at": _format_ts(self.enrolled_at),
            "started_at": _format_ts(self.started_at),
            "completed_at": _format_ts(self.completed_at),
            "last_accessed_at": _format_ts(self.last_accessed_at),
            "current_step_id": self.current_step_id,
            "deleted_at": _format_ts(self.deleted_at),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Enrollment":
        enrollment = cls(
            user_id=data["user_id"],
            path_id=data["path_id"],
            total_steps_snapshot=int(data["total_steps_snapshot"]),
            enrollment_id=data.get("id"),
            target_completion_date=_parse_ts(data.get("target_completion_date")),
            daily_goal_hours=data.get("daily_goal_hours"),
            weekly_goal_hours=data.get("weekly_goal_hours"),
            now=_parse_ts(data.get("enrolled_at")),
        )
        enrollment.status = EnrollmentStatus(data.get("status", "enrolled"))
        enrollment._progress_percentage = float(data.get("progress_percentage", 0.0))
        enrollment.completed_steps = int(data.get("completed_steps", 0))
        enrollment.time_spent_minutes = int(data.get("time_spent_minutes", 0))
        enrollment.started_at = _parse_ts(data.get("started_at"))
        enrollment.completed_at = _parse_ts(data.get("completed_at"))
        enrollment.last_accessed_at = _parse_ts(data.get("last_accessed_at"))
        enrollment.current_step_id = data.get("current_step_id")
        enrollment.deleted_at = _parse_ts(data.get("deleted_at"))
        enrollment.version = int(data.get("version", 0))
        return enrollment

    def copy(self) -> "Enrollment":
        return Enrollment.from_dict(self.to_dict())
