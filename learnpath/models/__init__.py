"""
Data models for the progression engine.

- Skill, SkillGraph, Tier: skill DAG and proficiency tiers
- Path, Step, StepType: curricula as step dependency graphs
- StepProgress: per-(user, step) state machine
- Enrollment: per-(user, path) state machine with derived progress
"""

from .skill import (
    InMemoryProficiencyDirectory,
    ProficiencyDirectory,
    Skill,
    SkillGraph,
    Tier,
)
from .path import STEP_DURATION_HOURS, Path, PathCategory, Step, StepType, make_step_id
from .step_progress import StepProgress, StepStatus
from .enrollment import Enrollment, EnrollmentStatus

__all__ = [
    "Tier",
    "Skill",
    "SkillGraph",
    "ProficiencyDirectory",
    "InMemoryProficiencyDirectory",
    "StepType",
    "STEP_DURATION_HOURS",
    "PathCategory",
    "Step",
    "Path",
    "make_step_id",
    "StepStatus",
    "StepProgress",
    "EnrollmentStatus",
    "Enrollment",
]
