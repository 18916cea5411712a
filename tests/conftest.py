"""
Shared pytest fixtures and configuration for LearnPath tests.

This file is automatically discovered by pytest and provides
fixtures available to all tests.
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path as FsPath

import pytest

# Make the package importable without installation
sys.path.insert(0, str(FsPath(__file__).parent.parent))

from learnpath.models.path import Path, PathCategory, Step, StepType  # noqa: E402
from learnpath.models.skill import InMemoryProficiencyDirectory, Tier  # noqa: E402

FIXED_NOW = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)


class FixedClock:
    """Deterministic clock; ``advance`` moves time forward."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_path(step_defs, path_id="path-test", title="Test Path", target_skills=("Python",)):
    """
    Build a Path from (name, order, prereq names) tuples.

    Step ids are "{path_id}-{name}".
    """
    steps = tuple(
        Step(
            id=f"{path_id}-{name}",
            path_id=path_id,
            title=name,
            step_type=StepType.LEARNING,
            order=order,
            prerequisite_ids=frozenset(f"{path_id}-{p}" for p in prereqs),
            skill_id=target_skills[0],
        )
        for name, order, prereqs in step_defs
    )
    return Path(
        id=path_id,
        title=title,
        category=PathCategory.PROGRAMMING,
        difficulty=Tier.BEGINNER,
        steps=steps,
        target_skills=tuple(target_skills),
        created_at=FIXED_NOW,
    )


@pytest.fixture
def clock():
    """Fixed clock starting at FIXED_NOW."""
    return FixedClock()


@pytest.fixture
def abc_path():
    """A(1), B(2, needs A), C(3, needs A)."""
    return make_path([("A", 1, []), ("B", 2, ["A"]), ("C", 3, ["A"])], path_id="path-abc")


@pytest.fixture
def four_step_path():
    """Four independent steps."""
    return make_path(
        [("S1", 1, []), ("S2", 2, []), ("S3", 3, []), ("S4", 4, [])],
        path_id="path-four",
    )


@pytest.fixture
def directory():
    """Proficiency directory with one intermediate Python user."""
    return InMemoryProficiencyDirectory(
        {"u1": {"Python": Tier.INTERMEDIATE, "SQL": Tier.BEGINNER}}
    )


@pytest.fixture
def memory_store():
    from learnpath.utils.persistence import InMemoryCatalogStore

    return InMemoryCatalogStore()


@pytest.fixture
def json_store(tmp_path):
    from learnpath.utils.persistence import JsonCatalogStore

    return JsonCatalogStore(tmp_path / "catalog")


@pytest.fixture(autouse=True)
def reset_generation_tracker():
    """
    Auto-fixture to reset the generation tracker before each test.

    This ensures tests don't interfere with each other.
    """
    from learnpath.config import generation_tracker

    generation_tracker.reset()
    yield
    generation_tracker.reset()


@pytest.fixture(autouse=True)
def no_llm(monkeypatch):
    """Never reach the network: the LLM is disabled unless a test patches it in."""
    from learnpath.config import config

    monkeypatch.setattr(config.model, "enabled", False)


# Pytest hooks for better test output


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)

        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
