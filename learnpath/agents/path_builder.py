"""
Path Template Builder - synthesizes a Path from target skills and tiers.

Each target skill contributes a fixed sequence of steps chosen by the
user's proficiency tier for that skill. Sequencing is entirely rule-based;
the optional text generator only supplies the title and description.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..config import PlanningConfig, config
from ..errors import ValidationError
from ..models.path import Path, PathCategory, Step, StepType, make_step_id
from ..models.skill import Tier
from ..utils.step_graph import check_acyclic_and_toposort, find_cycle_members
from .text_generator import (
    DESCRIPTION_PROMPT,
    TITLE_PROMPT,
    TextGenerator,
    generate_or_default,
)

logger = logging.getLogger(__name__)


# Title patterns per tier; "{skill}" is replaced with the skill name
SKILL_TEMPLATES: Dict[Tier, List[Tuple[str, StepType]]] = {
    Tier.BEGINNER: [
        ("Introduction to {skill}", StepType.LEARNING),
        ("Basic {skill} Concepts", StepType.LEARNING),
        ("Hands-on {skill} Practice", StepType.PRACTICE),
        ("{skill} Fundamentals Assessment", StepType.ASSESSMENT),
    ],
    Tier.INTERMEDIATE: [
        ("Advanced {skill} Techniques", StepType.LEARNING),
        ("{skill} Best Practices", StepType.LEARNING),
        ("Complex {skill} Project", StepType.PROJECT),
    ],
    Tier.ADVANCED: [
        ("Expert {skill} Patterns", StepType.LEARNING),
        ("{skill} Architecture & Design", StepType.LEARNING),
        ("Master {skill} Capstone", StepType.PROJECT),
    ],
    Tier.EXPERT: [
        ("Advanced {skill} Research", StepType.LEARNING),
        ("{skill} Innovation Project", StepType.PROJECT),
    ],
}

# Multiplier on base_weeks_per_skill; beginners need the most time
TIER_WEEK_FACTORS: Dict[Tier, float] = {
    Tier.BEGINNER: 2.0,
    Tier.INTERMEDIATE: 1.0,
    Tier.ADVANCED: 0.5,
    Tier.EXPERT: 0.25,
}

CATEGORY_KEYWORDS: List[Tuple[Tuple[str, ...], PathCategory]] = [
    (("javascript", "html", "css"), PathCategory.WEB_DEVELOPMENT),
    (("python", "data", "analytics"), PathCategory.DATA_SCIENCE),
    (("java", "programming"), PathCategory.PROGRAMMING),
]


def determine_category(target_skills: Sequence[str]) -> PathCategory:
    """First skill matching a keyword group decides; default PROGRAMMING."""
    for skill in target_skills:
        lowered = skill.lower()
        for keywords, category in CATEGORY_KEYWORDS:
            if any(keyword in lowered for keyword in keywords):
                return category
    return PathCategory.PROGRAMMING


def optimal_difficulty(tiers: Iterable[Tier]) -> Tier:
    """Tier nearest the mean tier level (BEGINNER when empty)."""
    levels = [Tier(t).level for t in tiers]
    if not levels:
        return Tier.BEGINNER
    return Tier.from_level(sum(levels) / len(levels))


def estimate_duration_weeks(
    tiers: Iterable[Tier], planning: Optional[PlanningConfig] = None
) -> int:
    """Sum of per-skill weeks, never below the configured minimum."""
    planning = planning or config.planning
    total = sum(
        int(planning.base_weeks_per_skill * TIER_WEEK_FACTORS[Tier(t)]) for t in tiers
    )
    return max(planning.min_duration_weeks, total)


def default_title(target_skills: Sequence[str], target_role: Optional[str] = None) -> str:
    if target_role:
        return f"Path to {target_role}"
    if target_skills:
        return "Master " + " & ".join(target_skills[:2])
    return "Personalized Learning Journey"


def default_description(target_skills: Sequence[str], target_role: Optional[str] = None) -> str:
    parts = ["A personalized learning path designed to help you achieve your career goals."]
    if target_role:
        parts.append(f"This path will prepare you for a role as {target_role}.")
    if target_skills:
        parts.append(f"You'll master key skills including {', '.join(target_skills)}.")
    parts.append("The path is tailored to your current skill level and learning preferences.")
    return " ".join(parts)


class PathTemplateBuilder:
    """
    Builds Paths from target skills.

    Usage:
        builder = PathTemplateBuilder()
        path = builder.build_path(["Python", "SQL"], {"Python": Tier.INTERMEDIATE})
    """

    def __init__(
        self,
        text_generator: Optional[TextGenerator] = None,
        planning: Optional[PlanningConfig] = None,
    ):
        self.text_generator = text_generator
        self.planning = planning or config.planning

    def build_path(
        self,
        target_skills: Sequence[str],
        proficiency_by_skill: Optional[Mapping[str, Tier]] = None,
        target_role: Optional[str] = None,
        cross_skill_prerequisites: Optional[Mapping[str, Iterable[str]]] = None,
        path_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Path:
        """
        Synthesize a new Path.

        Args:
            target_skills: Skills to learn, in the preferred order
            proficiency_by_skill: Current tier per skill (missing -> BEGINNER)
            target_role: Optional career role used for the title
            cross_skill_prerequisites: skill -> skills that must be learned
                first. The first step of the skill then requires the last
                step of each prerequisite skill. None means independent skills.
            path_id: Explicit id (generated when omitted)
            now: Creation timestamp override

        Returns:
            The validated Path

        Raises:
            ValidationError: empty or blank skills, unknown or cyclic
                cross-skill prerequisites
        """
        skills = self._normalize_skills(target_skills)
        proficiency_by_skill = proficiency_by_skill or {}
        tiers = {
            skill: Tier(proficiency_by_skill.get(skill, Tier.BEGINNER)) for skill in skills
        }
        skill_prereqs = self._normalize_cross_skill(skills, cross_skill_prerequisites)
        ordered_skills = self._order_skills(skills, skill_prereqs)

        path_id = path_id or Path.new_id()
        steps = self._generate_steps(path_id, ordered_skills, tiers, skill_prereqs)

        difficulty = optimal_difficulty(tiers.values())
        weeks = estimate_duration_weeks(tiers.values(), self.planning)
        title, description = self._describe(skills, target_role, difficulty, weeks)

        path = Path(
            id=path_id,
            title=title,
            description=description,
            category=determine_category(skills),
            difficulty=difficulty,
            steps=tuple(steps),
            target_skills=tuple(skills),
            estimated_duration_weeks=weeks,
            created_at=now or datetime.now(timezone.utc),
            generated_by="template",
        )
        logger.info(
            "Built path %s: %d step(s) for %d skill(s), %d gated, %s, %d week(s)",
            path.id, path.total_steps, len(skills),
            sum(1 for s in path.steps if s.has_prerequisites), difficulty.value, weeks,
        )
        return path

    def steps_for_skill(
        self,
        path_id: str,
        skill: str,
        tier: Tier,
        start_order: int,
    ) -> List[Step]:
        """Template steps for one skill, chained when configured."""
        steps: List[Step] = []
        for offset, (pattern, step_type) in enumerate(SKILL_TEMPLATES[Tier(tier)]):
            order = start_order + offset
            prereqs = (
                frozenset({steps[-1].id})
                if steps and self.planning.chain_steps_within_skill
                else frozenset()
            )
            steps.append(
                Step(
                    id=make_step_id(path_id, order),
                    path_id=path_id,
                    title=pattern.format(skill=skill),
                    step_type=step_type,
                    order=order,
                    prerequisite_ids=prereqs,
                    skill_id=skill,
                )
            )
        return steps

    def _generate_steps(
        self,
        path_id: str,
        ordered_skills: List[str],
        tiers: Dict[str, Tier],
        skill_prereqs: Dict[str, List[str]],
    ) -> List[Step]:
        steps: List[Step] = []
        first_step: Dict[str, str] = {}
        last_step: Dict[str, str] = {}
        order = 1

        for skill in ordered_skills:
            skill_steps = self.steps_for_skill(path_id, skill, tiers[skill], order)
            order += len(skill_steps)
            first_step[skill] = skill_steps[0].id
            last_step[skill] = skill_steps[-1].id
            steps.extend(skill_steps)

        if not skill_prereqs:
            return steps

        linked = []
        for step in steps:
            skill = step.skill_id
            if step.id == first_step.get(skill) and skill in skill_prereqs:
                extra = {last_step[p] for p in skill_prereqs[skill]}
                step = replace(step, prerequisite_ids=step.prerequisite_ids | extra)
            linked.append(step)
        return linked

    @staticmethod
    def _normalize_skills(target_skills: Sequence[str]) -> List[str]:
        if not target_skills:
            raise ValidationError("A path must target at least one skill")

        skills: List[str] = []
        for skill in target_skills:
            if not isinstance(skill, str) or not skill.strip():
                raise ValidationError(f"Invalid target skill: {skill!r}")
            name = skill.strip()
            if name not in skills:
                skills.append(name)
        return skills

    @staticmethod
    def _normalize_cross_skill(
        skills: List[str],
        cross_skill_prerequisites: Optional[Mapping[str, Iterable[str]]],
    ) -> Dict[str, List[str]]:
        if not cross_skill_prerequisites:
            return {}

        targeted = set(skills)
        errors = []
        result: Dict[str, List[str]] = {}
        for skill, prereqs in cross_skill_prerequisites.items():
            prereqs = sorted(set(prereqs or ()))
            if not prereqs:
                continue
            if skill not in targeted:
                errors.append(f"Cross-skill prerequisite given for untargeted skill '{skill}'")
                continue
            for prereq in prereqs:
                if prereq == skill:
                    errors.append(f"Skill '{skill}' lists itself as a prerequisite")
                elif prereq not in targeted:
                    errors.append(
                        f"Skill '{skill}' requires '{prereq}', which is not a target skill"
                    )
            result[skill] = [p for p in prereqs if p in targeted and p != skill]

        if errors:
            raise ValidationError("Invalid cross-skill prerequisites", errors)
        return result

    @staticmethod
    def _order_skills(skills: List[str], skill_prereqs: Dict[str, List[str]]) -> List[str]:
        """Prerequisite skills first; otherwise keep the caller's order."""
        if not skill_prereqs:
            return list(skills)

        position = {skill: i for i, skill in enumerate(skills)}
        graph = {skill: skill_prereqs.get(skill, []) for skill in skills}
        acyclic, order = check_acyclic_and_toposort(graph, sort_key=lambda s: position[s])
        if not acyclic:
            members = ", ".join(sorted(find_cycle_members(graph)))
            raise ValidationError(f"Cross-skill prerequisites form a cycle: {members}")
        return order

    def _describe(
        self,
        skills: List[str],
        target_role: Optional[str],
        difficulty: Tier,
        weeks: int,
    ) -> Tuple[str, str]:
        title = generate_or_default(
            self.text_generator,
            TITLE_PROMPT.format(
                skills=", ".join(skills),
                role=target_role or "not specified",
                difficulty=difficulty.value,
            ),
            default_title(skills, target_role),
            purpose="path title",
            single_line=True,
        )
        description = generate_or_default(
            self.text_generator,
            DESCRIPTION_PROMPT.format(
                title=title,
                skills=", ".join(skills),
                role=target_role or "not specified",
                difficulty=difficulty.value,
                weeks=weeks,
            ),
            default_description(skills, target_role),
            purpose="path description",
        )
        return title, description
