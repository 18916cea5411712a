"""
Unit tests for skills, tiers and the proficiency directory.
"""

import pytest

from learnpath.errors import NotFoundError, ValidationError
from learnpath.models.skill import (
    InMemoryProficiencyDirectory,
    Skill,
    SkillGraph,
    Tier,
)


class TestTier:
    def test_levels(self):
        assert [t.level for t in Tier] == [1, 2, 3, 4]

    @pytest.mark.parametrize(
        "value,expected",
        [
            (1.0, Tier.BEGINNER),
            (1.49, Tier.BEGINNER),
            (1.5, Tier.INTERMEDIATE),
            (2.5, Tier.ADVANCED),
            (3.49, Tier.ADVANCED),
            (3.5, Tier.EXPERT),
        ],
    )
    def test_from_level_thresholds(self, value, expected):
        assert Tier.from_level(value) == expected

    def test_easier(self):
        assert Tier.EXPERT.easier() == Tier.ADVANCED
        assert Tier.BEGINNER.easier() == Tier.BEGINNER


class TestSkillGraph:
    """Test skill DAG construction and queries."""

    def test_topological_order(self):
        graph = SkillGraph(
            [
                Skill("ml", "Machine Learning", {"python", "stats"}),
                Skill("python", "Python"),
                Skill("stats", "Statistics"),
            ]
        )
        order = graph.topological_order()
        assert order.index("python") < order.index("ml")
        assert order.index("stats") < order.index("ml")
        assert len(graph) == 3
        assert "ml" in graph

    def test_unknown_prerequisite_rejected(self):
        with pytest.raises(ValidationError) as exc:
            SkillGraph([Skill("ml", "ML", {"python"})])
        assert "unknown prerequisite 'python'" in exc.value.errors[0]

    def test_cycle_rejected(self):
        with pytest.raises(ValidationError, match="cycle"):
            SkillGraph([Skill("a", "A", {"b"}), Skill("b", "B", {"a"})])

    def test_duplicate_rejected(self):
        with pytest.raises(ValidationError):
            SkillGraph([Skill("a", "A"), Skill("a", "A again")])

    def test_get_missing(self):
        with pytest.raises(NotFoundError):
            SkillGraph([]).get("nope")

    def test_cross_skill_prerequisites_restricted_to_targets(self):
        graph = SkillGraph(
            [
                Skill("python", "Python"),
                Skill("sql", "SQL"),
                Skill("pandas", "Pandas", {"python", "sql"}),
            ]
        )
        assert graph.cross_skill_prerequisites(["pandas", "python"]) == {"pandas": ["python"]}
        assert graph.cross_skill_prerequisites(["python", "unknown"]) == {}

    def test_prerequisites_of(self):
        graph = SkillGraph([Skill("python", "Python"), Skill("ml", "ML", {"python"})])
        assert graph.prerequisites_of("ml") == {"python"}
        assert graph.prerequisites_of("python") == set()


class TestProficiencyDirectory:
    def test_defaults_to_beginner(self):
        directory = InMemoryProficiencyDirectory()
        assert directory.proficiency_for("u1", "Python") == Tier.BEGINNER

    def test_set_and_get(self):
        directory = InMemoryProficiencyDirectory({"u1": {"Python": "advanced"}})
        assert directory.proficiency_for("u1", "Python") == Tier.ADVANCED
        directory.set_proficiency("u1", "SQL", Tier.EXPERT)
        assert directory.proficiency_for("u1", "SQL") == Tier.EXPERT
