"""
Path and Step data model.

A Path owns an ordered arena of Steps; prerequisite edges are step-id sets
that must stay inside the owning path. Paths are immutable once their steps
are generated - only title/description may change, via ``with_metadata``.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from ..errors import NotFoundError, ValidationError
from ..utils.step_graph import check_step_graph
from .skill import Tier


class StepType(str, Enum):
    """Closed set of step kinds."""

    LEARNING = "learning"
    PRACTICE = "practice"
    ASSESSMENT = "assessment"
    PROJECT = "project"
    READING = "reading"
    VIDEO = "video"
    INTERACTIVE = "interactive"
    MILESTONE = "milestone"

    @property
    def default_duration_hours(self) -> int:
        return STEP_DURATION_HOURS[self]


STEP_DURATION_HOURS: Dict[StepType, int] = {
    StepType.LEARNING: 4,
    StepType.PRACTICE: 6,
    StepType.ASSESSMENT: 2,
    StepType.PROJECT: 12,
    StepType.READING: 2,
    StepType.VIDEO: 3,
    StepType.INTERACTIVE: 5,
    StepType.MILESTONE: 1,
}


class PathCategory(str, Enum):
    PROGRAMMING = "programming"
    DATA_SCIENCE = "data_science"
    WEB_DEVELOPMENT = "web_development"
    MOBILE_DEVELOPMENT = "mobile_development"
    CLOUD_COMPUTING = "cloud_computing"
    CYBERSECURITY = "cybersecurity"
    AI_MACHINE_LEARNING = "ai_machine_learning"
    DEVOPS = "devops"
    UI_UX_DESIGN = "ui_ux_design"
    PROJECT_MANAGEMENT = "project_management"
    BUSINESS_ANALYSIS = "business_analysis"
    SOFT_SKILLS = "soft_skills"
    CERTIFICATION_PREP = "certification_prep"
    CAREER_TRANSITION = "career_transition"


@dataclass(frozen=True)
class Step:
    """
    One unit of work inside a path.

    Attributes:
        id: Unique step identifier
        path_id: Owning path
        title: Human-readable title
        step_type: StepType variant
        order: Strictly increasing position, unique within the path
        prerequisite_ids: Ids of steps in the same path that must be completed first
        estimated_duration_hours: Defaults from the step type table
        skill_id: Skill this step trains (None for free-standing steps)
    """

    id: str
    path_id: str
    title: str
    step_type: StepType
    order: int
    prerequisite_ids: frozenset = field(default_factory=frozenset)
    estimated_duration_hours: Optional[int] = None
    skill_id: Optional[str] = None
    description: Optional[str] = None
    objectives: Tuple[str, ...] = ()
    is_required: bool = True

    def __post_init__(self):
        object.__setattr__(self, "step_type", StepType(self.step_type))
        if not isinstance(self.prerequisite_ids, frozenset):
            object.__setattr__(self, "prerequisite_ids", frozenset(self.prerequisite_ids))
        if not isinstance(self.objectives, tuple):
            object.__setattr__(self, "objectives", tuple(self.objectives))
        if self.estimated_duration_hours is None:
            object.__setattr__(
                self, "estimated_duration_hours", self.step_type.default_duration_hours
            )

    @property
    def has_prerequisites(self) -> bool:
        return bool(self.prerequisite_ids)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "path_id": self.path_id,
            "title": self.title,
            "step_type": self.step_type.value,
            "order": self.order,
            "prerequisite_ids": sorted(self.prerequisite_ids),
            "estimated_duration_hours": self.estimated_duration_hours,
            "skill_id": self.skill_id,
            "description": self.description,
            "objectives": list(self.objectives),
            "is_required": self.is_required,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Step":
        return cls(
            id=data["id"],
            path_id=data["path_id"],
            title=data["title"],
            step_type=StepType(data["step_type"]),
            order=int(data["order"]),
            prerequisite_ids=frozenset(data.get("prerequisite_ids", [])),
            estimated_duration_hours=data.get("estimated_duration_hours"),
            skill_id=data.get("skill_id"),
            description=data.get("description"),
            objectives=tuple(data.get("objectives", [])),
            is_required=data.get("is_required", True),
        )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Path:
    """
    A curriculum: ordered steps targeting one or more skills.

    The step graph is checked on construction; a path with duplicate
    orders, cross-path prerequisites or a prerequisite cycle raises
    ValidationError and never exists.
    """

    id: str
    title: str
    category: PathCategory
    difficulty: Tier
    steps: Tuple[Step, ...]
    target_skills: Tuple[str, ...]
    description: str = ""
    estimated_duration_weeks: Optional[int] = None
    created_at: datetime = field(default_factory=_utc_now)
    generated_by: str = "template"
    source_path_id: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "category", PathCategory(self.category))
        object.__setattr__(self, "difficulty", Tier(self.difficulty))
        object.__setattr__(
            self, "steps", tuple(sorted(self.steps, key=lambda s: s.order))
        )
        object.__setattr__(self, "target_skills", tuple(self.target_skills))

        if not self.target_skills:
            raise ValidationError(f"Path '{self.id}' must target at least one skill")
        errors = check_step_graph(self.id, self.steps)
        if errors:
            raise ValidationError(f"Invalid step graph for path '{self.id}'", errors)

    @staticmethod
    def new_id() -> str:
        return f"path-{uuid.uuid4()}"

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    @property
    def step_ids(self) -> frozenset:
        return frozenset(step.id for step in self.steps)

    @property
    def estimated_duration_hours(self) -> int:
        return sum(step.estimated_duration_hours or 0 for step in self.steps)

    def get_step(self, step_id: str) -> Step:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise NotFoundError("Step", step_id)

    def has_step(self, step_id: str) -> bool:
        return any(step.id == step_id for step in self.steps)

    def steps_by_id(self) -> Dict[str, Step]:
        return {step.id: step for step in self.steps}

    def with_metadata(
        self, title: Optional[str] = None, description: Optional[str] = None
    ) -> "Path":
        """Return a copy with new title/description; steps are untouched."""
        return replace(
            self,
            title=title if title is not None else self.title,
            description=description if description is not None else self.description,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "meta": {
                "schema_version": 1,
                "created_at": self.created_at.isoformat(),
                "generated_by": self.generated_by,
            },
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "category": self.category.value,
            "difficulty": self.difficulty.value,
            "target_skills": list(self.target_skills),
            "estimated_duration_weeks": self.estimated_duration_weeks,
            "estimated_duration_hours": self.estimated_duration_hours,
            "total_steps": self.total_steps,
            "source_path_id": self.source_path_id,
            "steps": [step.to_dict() for step in self.steps],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Path":
        meta = data.get("meta", {})
        created_at = meta.get("created_at")
        return cls(
            id=data["id"],
            title=data["title"],
            description=data.get("description", ""),
            category=PathCategory(data["category"]),
            difficulty=Tier(data["difficulty"]),
            steps=tuple(Step.from_dict(s) for s in data.get("steps", [])),
            target_skills=tuple(data.get("target_skills", [])),
            estimated_duration_weeks=data.get("estimated_duration_weeks"),
            created_at=datetime.fromisoformat(created_at) if created_at else _utc_now(),
            generated_by=meta.get("generated_by", "template"),
            source_path_id=data.get("source_path_id"),
        )


def make_step_id(path_id: str, order: int) -> str:
    """Deterministic step id within a path."""
    return f"{path_id}-s{order:02d}"
