"""
LearnPath - learning path progression engine.

Models curricula as step dependency graphs, tracks each user's progress
through them with strict state machines, resolves the next eligible step
and regenerates remediation paths from performance signals.
"""

from .config import config, generation_tracker
from .errors import (
    GraphDeadlock,
    InvalidTransitionError,
    LearnPathError,
    NotFoundError,
    StaleWriteConflict,
    ValidationError,
)
from .models import (
    Enrollment,
    EnrollmentStatus,
    InMemoryProficiencyDirectory,
    Path,
    PathCategory,
    ProficiencyDirectory,
    Skill,
    SkillGraph,
    Step,
    StepProgress,
    StepStatus,
    StepType,
    Tier,
)
from .utils.persistence import CatalogStore, InMemoryCatalogStore, JsonCatalogStore
from .utils.progress import PerformanceAnalyzer, PerformanceReport
from .engine import ProgressionEngine

__version__ = "0.1.0"

__all__ = [
    "config",
    "generation_tracker",
    # Errors
    "LearnPathError",
    "ValidationError",
    "InvalidTransitionError",
    "GraphDeadlock",
    "StaleWriteConflict",
    "NotFoundError",
    # Models
    "Tier",
    "Skill",
    "SkillGraph",
    "ProficiencyDirectory",
    "InMemoryProficiencyDirectory",
    "StepType",
    "PathCategory",
    "Step",
    "Path",
    "StepStatus",
    "StepProgress",
    "EnrollmentStatus",
    "Enrollment",
    # Services
    "CatalogStore",
    "InMemoryCatalogStore",
    "JsonCatalogStore",
    "PerformanceAnalyzer",
    "PerformanceReport",
    "ProgressionEngine",
]
