"""
Skills, proficiency tiers and the skill prerequisite graph.

The engine only reads the skill graph; proficiency comes from an external
directory keyed by (user, skill).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional

from ..errors import NotFoundError, ValidationError
from ..utils.step_graph import check_acyclic_and_toposort, find_cycle_members


class Tier(str, Enum):
    """Coarse proficiency level, also used as path difficulty."""

    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"
    EXPERT = "expert"

    @property
    def level(self) -> int:
        return _TIER_LEVELS[self]

    @classmethod
    def from_level(cls, value: float) -> "Tier":
        """Map an averaged tier level (1.0-4.0) back to the nearest tier."""
        if value >= 3.5:
            return cls.EXPERT
        if value >= 2.5:
            return cls.ADVANCED
        if value >= 1.5:
            return cls.INTERMEDIATE
        return cls.BEGINNER

    def easier(self) -> "Tier":
        """One tier easier (BEGINNER stays BEGINNER)."""
        return Tier.from_level(max(1, self.level - 1))


_TIER_LEVELS = {
    Tier.BEGINNER: 1,
    Tier.INTERMEDIATE: 2,
    Tier.ADVANCED: 3,
    Tier.EXPERT: 4,
}


@dataclass(frozen=True)
class Skill:
    """A named skill with prerequisite skill ids."""

    id: str
    name: str
    prerequisite_ids: frozenset = field(default_factory=frozenset)

    def __post_init__(self):
        if not isinstance(self.prerequisite_ids, frozenset):
            object.__setattr__(self, "prerequisite_ids", frozenset(self.prerequisite_ids))


class SkillGraph:
    """
    Directed acyclic graph of skills.

    Construction fails with ValidationError on unknown prerequisite
    references or cycles.
    """

    def __init__(self, skills: Iterable[Skill]):
        self._skills: Dict[str, Skill] = {}
        for skill in skills:
            if skill.id in self._skills:
                raise ValidationError(f"Duplicate skill id: {skill.id}")
            self._skills[skill.id] = skill

        errors = []
        for skill in self._skills.values():
            for prereq in skill.prerequisite_ids:
                if prereq == skill.id:
                    errors.append(f"Skill '{skill.id}' lists itself as a prerequisite")
                elif prereq not in self._skills:
                    errors.append(f"Skill '{skill.id}' references unknown prerequisite '{prereq}'")
        if errors:
            raise ValidationError("Invalid skill graph", errors)

        graph = {sid: s.prerequisite_ids for sid, s in self._skills.items()}
        acyclic, order = check_acyclic_and_toposort(graph)
        if not acyclic:
            members = ", ".join(sorted(find_cycle_members(graph)))
            raise ValidationError(f"Skill prerequisite graph has a cycle involving: {members}")
        self._order = order

    def __contains__(self, skill_id: str) -> bool:
        return skill_id in self._skills

    def __len__(self) -> int:
        return len(self._skills)

    def get(self, skill_id: str) -> Skill:
        try:
            return self._skills[skill_id]
        except KeyError:
            raise NotFoundError("Skill", skill_id) from None

    def prerequisites_of(self, skill_id: str) -> frozenset:
        return self.get(skill_id).prerequisite_ids

    def topological_order(self) -> List[str]:
        return list(self._order)

    def cross_skill_prerequisites(self, target_skills: Iterable[str]) -> Dict[str, List[str]]:
        """
        Restrict the graph to the target skills.

        Returns a mapping of target skill -> prerequisite skills that are also
        targeted. Targets unknown to the graph are treated as independent.
        """
        targets = list(target_skills)
        target_set = set(targets)
        result: Dict[str, List[str]] = {}
        for skill_id in targets:
            if skill_id not in self._skills:
                continue
            prereqs = sorted(self.prerequisites_of(skill_id) & target_set)
            if prereqs:
                result[skill_id] = prereqs
        return result


class ProficiencyDirectory(ABC):
    """User/skill directory collaborator."""

    @abstractmethod
    def proficiency_for(self, user_id: str, skill_id: str) -> Tier:
        """Return the user's current tier for a skill."""


class InMemoryProficiencyDirectory(ProficiencyDirectory):
    """
    Dict-backed directory. Unknown (user, skill) pairs default to BEGINNER.
    """

    def __init__(
        self,
        proficiencies: Optional[Mapping[str, Mapping[str, Tier]]] = None,
        default: Tier = Tier.BEGINNER,
    ):
        self._data: Dict[str, Dict[str, Tier]] = {
            user: {skill: Tier(tier) for skill, tier in skills.items()}
            for user, skills in (proficiencies or {}).items()
        }
        self.default = default

    def set_proficiency(self, user_id: str, skill_id: str, tier: Tier) -> None:
        self._data.setdefault(user_id, {})[skill_id] = Tier(tier)

    def proficiency_for(self, user_id: str, skill_id: str) -> Tier:
        return self._data.get(user_id, {}).get(skill_id, self.default)
