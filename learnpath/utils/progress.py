"""
Performance analytics over StepProgress history.

Provides:
- Learning velocity (completed steps per elapsed week)
- Struggling / strong step classification with configurable thresholds
- Estimated completion date for an enrollment
- Time-spent summary statistics for dashboards

Everything here is a read-only projection; nothing is written back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import numpy as np

from ..config import AnalyticsConfig, config
from ..models.enrollment import Enrollment, EnrollmentStatus
from ..models.path import Step
from ..models.step_progress import StepProgress, StepStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepSignal:
    """A classified step, with the figures that put it there."""

    step_id: str
    path_id: str
    title: str
    skill_id: Optional[str]
    attempts: int
    time_spent_minutes: int


@dataclass
class PerformanceReport:
    """Analyzer output for one user (and optionally one enrollment)."""

    user_id: Optional[str]
    learning_velocity: float
    struggling_areas: List[StepSignal] = field(default_factory=list)
    strong_areas: List[StepSignal] = field(default_factory=list)
    estimated_completion_date: Optional[datetime] = None
    completed_steps: int = 0
    remaining_steps: int = 0
    progress_percentage: float = 0.0
    average_step_minutes: float = 0.0
    time_summary: Dict[str, float] = field(default_factory=dict)
    days_enrolled: Optional[int] = None
    days_to_target: Optional[int] = None
    is_overdue: bool = False

    @property
    def struggling_titles(self) -> List[str]:
        return [s.title for s in self.struggling_areas]

    @property
    def strong_titles(self) -> List[str]:
        return [s.title for s in self.strong_areas]

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "learning_velocity": self.learning_velocity,
            "struggling_areas": self.struggling_titles,
            "strong_areas": self.strong_titles,
            "estimated_completion_date": (
                self.estimated_completion_date.isoformat()
                if self.estimated_completion_date
                else None
            ),
            "completed_steps": self.completed_steps,
            "remaining_steps": self.remaining_steps,
            "progress_percentage": round(self.progress_percentage, 2),
            "average_step_minutes": round(self.average_step_minutes, 2),
            "time_summary": self.time_summary,
            "days_enrolled": self.days_enrolled,
            "days_to_target": self.days_to_target,
            "is_overdue": self.is_overdue,
        }


def learning_velocity(
    history: Sequence[StepProgress],
    now: Optional[datetime] = None,
) -> float:
    """
    Completed steps per elapsed week since the earliest ``started_at``.

    Elapsed time is counted in whole weeks; within the first week the
    velocity equals the completed count.

    Returns:
        0.0 if no record has a start time or nothing is completed
    """
    starts = [sp.started_at for sp in history if sp.started_at is not None]
    if not starts:
        return 0.0

    completed = sum(1 for sp in history if sp.status == StepStatus.COMPLETED)
    if completed == 0:
        return 0.0

    now = now or datetime.now(timezone.utc)
    weeks = (now - min(starts)).days // 7
    if weeks <= 0:
        return float(completed)
    return completed / weeks


def time_summary(minutes: Iterable[int]) -> Dict[str, float]:
    """
    Summary statistics for time spent per step.

    Returns:
        Dict with count, total, mean, median, p90, max (all 0 when empty)
    """
    values = np.asarray(list(minutes), dtype=float)
    if values.size == 0:
        return {"count": 0, "total": 0.0, "mean": 0.0, "median": 0.0, "p90": 0.0, "max": 0.0}

    return {
        "count": int(values.size),
        "total": float(np.sum(values)),
        "mean": round(float(np.mean(values)), 2),
        "median": round(float(np.median(values)), 2),
        "p90": round(float(np.percentile(values, 90)), 2),
        "max": float(np.max(values)),
    }


class PerformanceAnalyzer:
    """
    Classifies steps and projects completion from progress history.

    A step is struggling when ``attempts > struggling_min_attempts`` or
    ``time_spent_minutes > struggling_min_minutes``; a completed step is
    strong when ``time_spent_minutes < strong_max_minutes``. A step may be
    in both lists.
    """

    def __init__(self, thresholds: Optional[AnalyticsConfig] = None):
        self.thresholds = thresholds or config.analytics

    def is_struggling(self, progress: StepProgress) -> bool:
        return (
            progress.attempts > self.thresholds.struggling_min_attempts
            or progress.time_spent_minutes > self.thresholds.struggling_min_minutes
        )

    def is_strong(self, progress: StepProgress) -> bool:
        return (
            progress.status == StepStatus.COMPLETED
            and progress.time_spent_minutes < self.thresholds.strong_max_minutes
        )

    def classify(
        self,
        history: Sequence[StepProgress],
        steps: Optional[Mapping[str, Step]] = None,
    ) -> tuple[List[StepSignal], List[StepSignal]]:
        """
        Split history into struggling and strong signals.

        Both lists keep history order and list each step once.
        """
        steps = steps or {}
        struggling: List[StepSignal] = []
        strong: List[StepSignal] = []
        seen_struggling, seen_strong = set(), set()

        for progress in history:
            signal = self._signal(progress, steps.get(progress.step_id))
            if self.is_struggling(progress) and progress.step_id not in seen_struggling:
                seen_struggling.add(progress.step_id)
                struggling.append(signal)
            if self.is_strong(progress) and progress.step_id not in seen_strong:
                seen_strong.add(progress.step_id)
                strong.append(signal)

        return struggling, strong

    @staticmethod
    def _signal(progress: StepProgress, step: Optional[Step]) -> StepSignal:
        return StepSignal(
            step_id=progress.step_id,
            path_id=progress.path_id,
            title=step.title if step else progress.step_id,
            skill_id=step.skill_id if step else None,
            attempts=progress.attempts,
            time_spent_minutes=progress.time_spent_minutes,
        )

    @staticmethod
    def estimate_completion(
        enrollment: Enrollment,
        velocity: float,
        remaining_steps: int,
        now: Optional[datetime] = None,
    ) -> Optional[datetime]:
        """
        Project the completion date.

        Completed enrollments return their ``completed_at``. Otherwise
        ``now + remaining / velocity`` weeks when velocity is positive, else
        the stored target date.
        """
        if enrollment.status == EnrollmentStatus.COMPLETED:
            return enrollment.completed_at
        if velocity > 0:
            now = now or datetime.now(timezone.utc)
            return now + timedelta(weeks=remaining_steps / velocity)
        return enrollment.target_completion_date

    def analyze(
        self,
        history: Sequence[StepProgress],
        enrollment: Optional[Enrollment] = None,
        steps: Optional[Mapping[str, Step]] = None,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PerformanceReport:
        """
        Build a PerformanceReport.

        Args:
            history: StepProgress records for one user (one or more paths)
            enrollment: When given, remaining steps and the completion
                estimate are computed for it
            steps: Step lookup by id, used for titles and skills
            user_id: Reported user (defaults to the first record's user)
            now: Clock override

        Returns:
            PerformanceReport
        """
        now = now or datetime.now(timezone.utc)
        history = list(history)
        if user_id is None:
            user_id = enrollment.user_id if enrollment else (
                history[0].user_id if history else None
            )

        velocity = learning_velocity(history, now)
        struggling, strong = self.classify(history, steps)

        completed = [sp for sp in history if sp.status == StepStatus.COMPLETED]
        completed_minutes = [sp.time_spent_minutes for sp in completed]

        report = PerformanceReport(
            user_id=user_id,
            learning_velocity=round(velocity, 4),
            struggling_areas=struggling,
            strong_areas=strong,
            completed_steps=len(completed),
            average_step_minutes=float(np.mean(completed_minutes)) if completed_minutes else 0.0,
            time_summary=time_summary(sp.time_spent_minutes for sp in history),
        )

        if enrollment is not None:
            report.completed_steps = enrollment.completed_steps
            report.remaining_steps = enrollment.remaining_steps
            report.progress_percentage = enrollment.progress_percentage
            report.estimated_completion_date = self.estimate_completion(
                enrollment, velocity, enrollment.remaining_steps, now
            )
            report.days_enrolled = enrollment.days_enrolled(now)
            report.days_to_target = enrollment.days_to_target(now)
            report.is_overdue = enrollment.is_overdue(now)

        logger.debug(
            "Analyzed %d record(s) for %s: velocity=%.2f struggling=%d strong=%d",
            len(history), user_id, velocity, len(struggling), len(strong),
        )
        return report
