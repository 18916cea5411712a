"""
Adaptive Regenerator - remediation paths from performance signals.

For every struggling step a "Review" step and an "Extra Practice" step are
emitted, in the order the struggling steps were identified. Strong areas
produce nothing, so a user with no struggles gets a path with zero
steps. The new path never references the original path's steps.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from ..models.enrollment import Enrollment
from ..models.path import Path, Step, StepType, make_step_id
from ..models.step_progress import StepProgress
from ..utils.progress import PerformanceAnalyzer, PerformanceReport, StepSignal
from .text_generator import ADAPTIVE_DESCRIPTION_PROMPT, TextGenerator, generate_or_default

logger = logging.getLogger(__name__)

ADAPTIVE_DESCRIPTION = "Personalized path based on your learning performance"


def remediation_steps(path_id: str, struggling: Sequence[StepSignal]) -> List[Step]:
    """Review then Extra Practice for each struggling area."""
    steps: List[Step] = []
    order = 1
    for signal in struggling:
        review = Step(
            id=make_step_id(path_id, order),
            path_id=path_id,
            title=f"Review: {signal.title}",
            step_type=StepType.LEARNING,
            order=order,
            skill_id=signal.skill_id,
        )
        practice = Step(
            id=make_step_id(path_id, order + 1),
            path_id=path_id,
            title=f"Extra Practice: {signal.title}",
            step_type=StepType.PRACTICE,
            order=order + 1,
            prerequisite_ids=frozenset({review.id}),
            skill_id=signal.skill_id,
        )
        steps.extend([review, practice])
        order += 2
    return steps


class AdaptiveRegenerator:
    """Builds a remediation Path for one enrollment."""

    def __init__(
        self,
        analyzer: Optional[PerformanceAnalyzer] = None,
        text_generator: Optional[TextGenerator] = None,
    ):
        self.analyzer = analyzer or PerformanceAnalyzer()
        self.text_generator = text_generator

    def regenerate(
        self,
        enrollment: Enrollment,
        path: Path,
        history: Sequence[StepProgress],
        path_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Path:
        """
        Build a new, unpersisted Path from the enrollment's performance.

        Args:
            enrollment: The user's enrollment in ``path``
            path: The base curriculum
            history: StepProgress records for the enrollment
            path_id: Explicit id for the new path
            now: Clock override

        Returns:
            The new Path (the caller persists and enrolls). It has no
            steps when nothing needs remediation.
        """
        now = now or datetime.now(timezone.utc)
        report = self.analyzer.analyze(
            history, enrollment=enrollment, steps=path.steps_by_id(), now=now
        )
        return self.from_report(report, path, path_id=path_id, now=now)

    def from_report(
        self,
        report: PerformanceReport,
        path: Path,
        path_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Path:
        struggling = [s for s in report.struggling_areas if s.path_id == path.id]
        new_id = path_id or Path.new_id()
        # Skills come from the struggling steps; fall back to the base targets
        skills: List[str] = []
        for signal in struggling:
            if signal.skill_id and signal.skill_id not in skills:
                skills.append(signal.skill_id)

        description = ADAPTIVE_DESCRIPTION
        if struggling:
            description = generate_or_default(
                self.text_generator,
                ADAPTIVE_DESCRIPTION_PROMPT.format(
                    path_title=path.title,
                    areas=", ".join(s.title for s in struggling),
                ),
                ADAPTIVE_DESCRIPTION,
                purpose="adaptive path description",
            )

        adaptive = Path(
            id=new_id,
            title=f"Adaptive Path - {path.title}",
            description=description,
            category=path.category,
            difficulty=path.difficulty.easier() if struggling else path.difficulty,
            steps=tuple(remediation_steps(new_id, struggling)),
            target_skills=tuple(skills or path.target_skills),
            created_at=now or datetime.now(timezone.utc),
            generated_by="adaptive",
            source_path_id=path.id,
        )
        logger.info(
            "Regenerated path %s from %s for user %s: %d struggling area(s)",
            adaptive.id, path.id, report.user_id, len(struggling),
        )
        return adaptive
