"""
Unit tests for the Progression Engine.

Covers the full flow (path synthesis -> enrollment -> progress -> next
step -> analysis -> regeneration) and the write discipline: per-pair
locking, stale write retries and the persistence outbox.
"""

import logging
import threading
from datetime import timedelta
from unittest.mock import patch

import pytest

from conftest import FIXED_NOW
from learnpath.engine import ProgressionEngine
from learnpath.errors import (
    InvalidTransitionError,
    NotFoundError,
    StaleWriteConflict,
    ValidationError,
)
from learnpath.models.enrollment import EnrollmentStatus
from learnpath.models.skill import Skill, SkillGraph
from learnpath.models.step_progress import StepProgress, StepStatus
from learnpath.utils.persistence import JsonCatalogStore


@pytest.fixture
def engine(memory_store, directory, clock):
    return ProgressionEngine(memory_store, directory, clock=clock)


@pytest.fixture
def python_path(engine):
    """Intermediate Python path for u1: three chained steps."""
    return engine.create_path("u1", ["Python"])


@pytest.fixture
def enrolled(engine, python_path):
    engine.enroll("u1", python_path.id)
    return python_path


class TestFullFlow:
    """Test the path -> enrollment -> progress flow end to end."""

    def test_create_path_uses_proficiency(self, python_path):
        assert [s.title for s in python_path.steps] == [
            "Advanced Python Techniques",
            "Python Best Practices",
            "Complex Python Project",
        ]
        assert python_path.estimated_duration_weeks == 4

    def test_enroll_snapshots_path(self, engine, python_path):
        enrollment = engine.enroll("u1", python_path.id)
        assert enrollment.status == EnrollmentStatus.ENROLLED
        assert enrollment.total_steps_snapshot == 3
        assert enrollment.target_completion_date == FIXED_NOW + timedelta(weeks=4)
        assert enrollment.version == 1

    def test_progress_through_path(self, engine, enrolled, clock):
        steps = enrolled.steps

        assert engine.next_step("u1", enrolled.id) == steps[0]

        engine.record_progress("u1", enrolled.id, steps[0].id, 40, minutes_delta=20)
        enrollment = engine.get_enrollment("u1", enrolled.id)
        assert enrollment.status == EnrollmentStatus.ENROLLED
        assert enrollment.current_step_id == steps[0].id

        engine.record_progress("u1", enrolled.id, steps[0].id, 100, minutes_delta=25)
        enrollment = engine.get_enrollment("u1", enrolled.id)
        assert enrollment.status == EnrollmentStatus.IN_PROGRESS
        assert enrollment.progress_percentage == pytest.approx(100 / 3)
        assert enrollment.time_spent_minutes == 45
        assert engine.next_step("u1", enrolled.id) == steps[1]

        clock.advance(days=2)
        for step in steps[1:]:
            engine.record_progress("u1", enrolled.id, step.id, 100, minutes_delta=30)

        enrollment = engine.get_enrollment("u1", enrolled.id)
        assert enrollment.status == EnrollmentStatus.COMPLETED
        assert enrollment.progress_percentage == 100
        assert enrollment.completed_at == FIXED_NOW + timedelta(days=2)
        assert engine.next_step("u1", enrolled.id) is None

    def test_version_bumps_per_write(self, engine, enrolled):
        for pct in (10, 20, 30):
            engine.record_progress("u1", enrolled.id, enrolled.steps[0].id, pct)
        assert engine.get_enrollment("u1", enrolled.id).version == 4

    def test_skill_graph_orders_skills(self, memory_store, directory, clock):
        graph = SkillGraph([Skill("Python", "Python"), Skill("Pandas", "Pandas", {"Python"})])
        engine = ProgressionEngine(memory_store, directory, skill_graph=graph, clock=clock)

        path = engine.create_path("u1", ["Pandas", "Python"])
        assert [s.skill_id for s in path.steps] == ["Python"] * 3 + ["Pandas"] * 4
        assert path.steps[3].prerequisite_ids == {path.steps[2].id}

    def test_step_transitions(self, engine, enrolled):
        first, second, third = (s.id for s in enrolled.steps)

        engine.record_attempt("u1", enrolled.id, first)
        assert engine.fail_step("u1", enrolled.id, first).status == StepStatus.FAILED
        assert engine.retry_step("u1", enrolled.id, first).attempts == 2
        assert engine.skip_step("u1", enrolled.id, third).status == StepStatus.SKIPPED

        engine.record_progress("u1", enrolled.id, second, 100)
        assert engine.reopen_step("u1", enrolled.id, second).status == StepStatus.IN_PROGRESS
        assert engine.rate_step("u1", enrolled.id, first, difficulty=4).difficulty_rating == 4

        statuses = {sp.step_id: sp.status for sp in engine.get_step_progress("u1", enrolled.id)}
        assert statuses == {
            first: StepStatus.IN_PROGRESS,
            second: StepStatus.IN_PROGRESS,
            third: StepStatus.SKIPPED,
        }
        assert engine.get_enrollment("u1", enrolled.id).completed_steps == 0


class TestValidation:
    """Rejected requests never reach the store."""

    def test_step_not_in_path(self, engine, enrolled):
        with pytest.raises(ValidationError, match="not part of path"):
            engine.record_progress("u1", enrolled.id, "path-other-s01", 50)
        assert engine.get_step_progress("u1", enrolled.id) == []
        assert engine.get_enrollment("u1", enrolled.id).version == 1

    def test_out_of_range_percentage(self, engine, enrolled):
        with pytest.raises(ValidationError):
            engine.record_progress("u1", enrolled.id, enrolled.steps[0].id, 150)
        assert engine.get_step_progress("u1", enrolled.id) == []

    def test_no_enrollment(self, engine, python_path):
        with pytest.raises(NotFoundError):
            engine.record_progress("u1", python_path.id, python_path.steps[0].id, 50)

    def test_unknown_path(self, engine):
        with pytest.raises(NotFoundError):
            engine.enroll("u1", "path-missing")

    def test_double_enroll(self, engine, enrolled):
        with pytest.raises(ValidationError, match="already enrolled"):
            engine.enroll("u1", enrolled.id)

    def test_empty_skills(self, engine):
        with pytest.raises(ValidationError):
            engine.create_path("u1", [])

    def test_next_step_needs_no_enrollment(self, engine, python_path):
        assert engine.next_step("u1", python_path.id) == python_path.steps[0]

    def test_update_path_metadata(self, engine, python_path):
        updated = engine.update_path_metadata(python_path.id, title="Python, revised")
        assert updated.title == "Python, revised"
        assert updated.description == python_path.description
        assert engine.get_path(python_path.id).steps == python_path.steps

        with pytest.raises(ValidationError):
            engine.update_path_metadata(python_path.id, title="  ")


class TestLifecycle:
    def test_paused_enrollment_is_not_reactivated(self, engine, enrolled):
        engine.pause("u1", enrolled.id)
        for step in enrolled.steps:
            engine.record_progress("u1", enrolled.id, step.id, 100)

        enrollment = engine.get_enrollment("u1", enrolled.id)
        assert enrollment.status == EnrollmentStatus.PAUSED
        assert enrollment.completed_steps == 3

        assert engine.resume("u1", enrolled.id).status == EnrollmentStatus.COMPLETED

    def test_drop_and_re_enroll(self, engine, enrolled):
        engine.record_progress("u1", enrolled.id, enrolled.steps[0].id, 100)
        assert engine.drop("u1", enrolled.id).status == EnrollmentStatus.DROPPED

        enrollment = engine.re_enroll("u1", enrolled.id)
        assert enrollment.status == EnrollmentStatus.IN_PROGRESS
        assert enrollment.completed_steps == 1

    def test_expire_then_pause_rejected(self, engine, enrolled):
        engine.expire("u1", enrolled.id)
        with pytest.raises(InvalidTransitionError):
            engine.pause("u1", enrolled.id)

    def test_unenroll_keeps_history(self, engine, enrolled):
        engine.record_progress("u1", enrolled.id, enrolled.steps[0].id, 100)
        engine.unenroll("u1", enrolled.id)

        with pytest.raises(NotFoundError):
            engine.get_enrollment("u1", enrolled.id)
        assert len(engine.get_step_progress("u1", enrolled.id)) == 1

        enrollment = engine.enroll("u1", enrolled.id)
        assert enrollment.completed_steps == 1
        assert enrollment.status == EnrollmentStatus.IN_PROGRESS


class TestConcurrency:
    """Test per-pair serialization and stale write handling."""

    def test_parallel_completions_are_exact(self, memory_store, directory, clock, four_step_path):
        engine = ProgressionEngine(memory_store, directory, clock=clock)
        memory_store.save_path(four_step_path)
        engine.enroll("u1", four_step_path.id)

        barrier = threading.Barrier(len(four_step_path.steps))
        errors = []

        def complete(step_id):
            barrier.wait()
            try:
                engine.record_progress("u1", four_step_path.id, step_id, 100, minutes_delta=10)
            except Exception as e:  # surfaced below
                errors.append(e)

        threads = [
            threading.Thread(target=complete, args=(step.id,)) for step in four_step_path.steps
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        enrollment = engine.get_enrollment("u1", four_step_path.id)
        assert enrollment.completed_steps == 4
        assert enrollment.progress_percentage == 100
        assert enrollment.time_spent_minutes == 40
        assert enrollment.version == 5

    def test_two_engines_on_one_directory(self, tmp_path, directory, clock, four_step_path):
        engines = [
            ProgressionEngine(JsonCatalogStore(tmp_path), directory, clock=clock, max_write_retries=5)
            for _ in range(2)
        ]
        engines[0].store.save_path(four_step_path)
        engines[0].enroll("u1", four_step_path.id)

        barrier = threading.Barrier(len(four_step_path.steps))
        errors = []

        def complete(engine, step_id):
            barrier.wait()
            try:
                engine.record_progress("u1", four_step_path.id, step_id, 100, minutes_delta=10)
            except Exception as e:  # surfaced below
                errors.append(e)

        threads = [
            threading.Thread(target=complete, args=(engines[i % 2], step.id))
            for i, step in enumerate(four_step_path.steps)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert engines[0].pending_writes == engines[1].pending_writes == 0
        enrollment = engines[1].get_enrollment("u1", four_step_path.id)
        assert enrollment.completed_steps == 4
        assert enrollment.progress_percentage == 100
        assert enrollment.version == 5
        history = engines[0].get_step_progress("u1", four_step_path.id)
        assert sorted(sp.step_id for sp in history) == sorted(four_step_path.step_ids)

    def test_pair_locks_are_not_retained(self, engine, enrolled):
        engine.record_progress("u1", enrolled.id, enrolled.steps[0].id, 50)
        engine.pause("u1", enrolled.id)
        assert len(engine._locks) == 0

        held = engine._lock_for(("u1", enrolled.id))
        assert engine._lock_for(("u1", enrolled.id)) is held
        del held
        assert ("u1", enrolled.id) not in engine._locks

    def test_stale_write_is_retried_with_fresh_read(self, engine, memory_store, enrolled):
        real_commit = memory_store.commit
        first, second = enrolled.steps[0].id, enrolled.steps[1].id
        calls = []

        def racing_commit(enrollment, expected, progress=None):
            calls.append(expected)
            if len(calls) == 1:
                # Another writer completes a different step first
                other = memory_store.load_enrollment("u1", enrolled.id)
                sp = memory_store.load_step_progress("u1", enrolled.id)
                done = StepProgress(user_id="u1", step_id=second, path_id=enrolled.id)
                done.record_progress(100, 0, now=FIXED_NOW)
                other.recompute(sp + [done], enrolled.step_ids, FIXED_NOW)
                real_commit(other, other.version, done)
            return real_commit(enrollment, expected, progress)

        with patch.object(memory_store, "commit", side_effect=racing_commit):
            engine.record_progress("u1", enrolled.id, first, 100)

        assert calls == [1, 2]
        enrollment = engine.get_enrollment("u1", enrolled.id)
        assert enrollment.completed_steps == 2
        assert enrollment.version == 3

    def test_retries_exhausted(self, memory_store, directory, clock, caplog):
        engine = ProgressionEngine(memory_store, directory, max_write_retries=2, clock=clock)
        path = engine.create_path("u1", ["Python"])
        engine.enroll("u1", path.id)

        conflict = StaleWriteConflict(f"u1/{path.id}", 1, 9)
        with patch.object(memory_store, "commit", side_effect=conflict) as mock_commit:
            with caplog.at_level(logging.WARNING, logger="learnpath"):
                with pytest.raises(StaleWriteConflict):
                    engine.record_progress("u1", path.id, path.steps[0].id, 100)

        assert mock_commit.call_count == 2
        assert any(r.levelno == logging.ERROR for r in caplog.records)
        assert engine.get_step_progress("u1", path.id) == []


class TestOutbox:
    """Persistence I/O failures are queued, never dropped."""

    def test_failed_commit_is_queued_and_flushed(self, engine, memory_store, enrolled):
        step_id = enrolled.steps[0].id

        with patch.object(memory_store, "commit", side_effect=OSError("disk full")):
            progress = engine.record_progress("u1", enrolled.id, step_id, 100)

        assert progress.status == StepStatus.COMPLETED
        assert engine.pending_writes == 1
        assert engine.get_step_progress("u1", enrolled.id) == []

        assert engine.flush_pending_writes() == 1
        assert engine.pending_writes == 0
        enrollment = engine.get_enrollment("u1", enrolled.id)
        assert enrollment.completed_steps == 1
        assert enrollment.version == 2

    def test_queued_unit_is_rebased(self, engine, memory_store, enrolled):
        first, second = enrolled.steps[0].id, enrolled.steps[1].id

        with patch.object(memory_store, "commit", side_effect=OSError("timeout")):
            engine.record_progress("u1", enrolled.id, first, 100)
        engine.record_progress("u1", enrolled.id, second, 100)

        assert engine.flush_pending_writes() == 1
        enrollment = engine.get_enrollment("u1", enrolled.id)
        assert enrollment.completed_steps == 2
        assert {sp.step_id for sp in engine.get_step_progress("u1", enrolled.id)} == {first, second}

    def test_superseded_lifecycle_write_discarded(self, engine, memory_store, enrolled):
        with patch.object(memory_store, "commit", side_effect=OSError("timeout")):
            engine.pause("u1", enrolled.id)
        engine.record_progress("u1", enrolled.id, enrolled.steps[0].id, 10)

        assert engine.flush_pending_writes() == 0
        assert engine.pending_writes == 0
        assert engine.get_enrollment("u1", enrolled.id).status == EnrollmentStatus.ENROLLED

    def test_flush_stops_on_failure(self, engine, memory_store, enrolled):
        with patch.object(memory_store, "commit", side_effect=OSError("timeout")):
            engine.record_progress("u1", enrolled.id, enrolled.steps[0].id, 50)
            assert engine.flush_pending_writes() == 0
        assert engine.pending_writes == 1

    def test_failed_path_save_is_queued(self, engine, memory_store):
        with patch.object(memory_store, "save_path", side_effect=OSError("read-only")):
            path = engine.create_path("u1", ["SQL"])

        assert engine.pending_writes == 1
        with pytest.raises(NotFoundError):
            engine.get_path(path.id)

        engine.flush_pending_writes()
        assert engine.get_path(path.id).total_steps == 4


class TestAnalysisAndRegeneration:
    def _struggle(self, engine, path, step_index=0, attempts=5):
        step_id = path.steps[step_index].id
        for _ in range(attempts):
            engine.record_attempt("u1", path.id, step_id)

    def test_analyze(self, engine, enrolled, clock):
        self._struggle(engine, enrolled)
        engine.record_progress("u1", enrolled.id, enrolled.steps[1].id, 100, minutes_delta=30)

        report = engine.analyze("u1", enrolled.id)
        assert report.struggling_titles == ["Advanced Python Techniques"]
        assert report.strong_titles == ["Python Best Practices"]
        assert report.completed_steps == 1
        assert report.remaining_steps == 2

    def test_analyze_user_spans_paths(self, engine, enrolled):
        other = engine.create_path("u1", ["SQL"])
        engine.enroll("u1", other.id)
        self._struggle(engine, enrolled)
        self._struggle(engine, other)

        report = engine.analyze_user("u1")
        assert report.struggling_titles == ["Advanced Python Techniques", "Introduction to SQL"]

    def test_regenerate_persists_without_enrolling(self, engine, enrolled):
        self._struggle(engine, enrolled)

        adaptive = engine.regenerate("u1", enrolled.id)
        assert [s.title for s in adaptive.steps] == [
            "Review: Advanced Python Techniques",
            "Extra Practice: Advanced Python Techniques",
        ]
        assert engine.get_path(adaptive.id).source_path_id == enrolled.id
        with pytest.raises(NotFoundError):
            engine.get_enrollment("u1", adaptive.id)

    def test_regenerate_without_struggles(self, engine, enrolled):
        adaptive = engine.regenerate("u1", enrolled.id)
        assert adaptive.steps == ()
        assert engine.get_path(adaptive.id).total_steps == 0

        enrollment = engine.enroll("u1", adaptive.id)
        assert enrollment.total_steps_snapshot == 0
        assert enrollment.progress_percentage == 0.0
        assert engine.next_step("u1", adaptive.id) is None
