"""
Progression Engine - the unit-of-work boundary for the learning path core.

Coordinates the full flow:
1. Path synthesis from target skills and the user's proficiency
2. Enrollment lifecycle (enroll, pause, resume, drop, expire, re-enroll)
3. Step progress updates with mandatory enrollment recompute
4. Next-step resolution under prerequisite constraints
5. Performance analysis and adaptive regeneration

Every write for one (user, path) pair runs under that pair's lock and is
committed with an optimistic version check. Stale writes are retried with a
full re-read; persistence I/O failures are queued, never dropped.
"""

from __future__ import annotations

import logging
import threading
import weakref
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Deque, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .agents.path_builder import PathTemplateBuilder
from .agents.regenerator import AdaptiveRegenerator
from .agents.text_generator import TextGenerator, default_text_generator
from .config import config
from .errors import StaleWriteConflict, ValidationError
from .models.enrollment import Enrollment
from .models.path import Path, Step
from .models.skill import ProficiencyDirectory, SkillGraph
from .models.step_progress import StepProgress, StepStatus
from .utils.persistence import CatalogStore
from .utils.progress import PerformanceAnalyzer, PerformanceReport
from .utils.step_graph import next_step as resolve_next_step

logger = logging.getLogger(__name__)

Key = Tuple[str, str]
StepAction = Callable[[Enrollment, Optional[StepProgress], datetime], None]


@dataclass
class PendingWrite:
    """A locally validated write whose persistence failed with an I/O error."""

    kind: str  # "path" or "unit"
    reason: str
    path: Optional[Path] = None
    enrollment: Optional[Enrollment] = None
    expected_version: Optional[int] = None
    step_progress: Optional[StepProgress] = None
    path_step_ids: frozenset = frozenset()


class ProgressionEngine:
    """
    Service facade over the progression core.

    Usage:
        engine = ProgressionEngine(InMemoryCatalogStore(), directory)
        path = engine.create_path("u1", ["Python", "SQL"])
        engine.enroll("u1", path.id)
        step = engine.next_step("u1", path.id)
        engine.record_progress("u1", path.id, step.id, 100, minutes_delta=45)
    """

    def __init__(
        self,
        store: CatalogStore,
        directory: ProficiencyDirectory,
        text_generator: Optional[TextGenerator] = None,
        skill_graph: Optional[SkillGraph] = None,
        analyzer: Optional[PerformanceAnalyzer] = None,
        max_write_retries: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the engine.

        Args:
            store: Catalog store for paths, enrollments and step progress
            directory: User/skill proficiency directory
            text_generator: Optional title/description generator (the LLM
                generator when enabled in config)
            skill_graph: Optional skill DAG used for cross-skill prerequisites
            analyzer: Performance analyzer (config thresholds by default)
            max_write_retries: StaleWriteConflict retry bound
            clock: Returns the current time (UTC)
        """
        self.store = store
        self.directory = directory
        self.skill_graph = skill_graph
        if text_generator is None:
            text_generator = default_text_generator()
        self.analyzer = analyzer or PerformanceAnalyzer()
        self.builder = PathTemplateBuilder(text_generator=text_generator)
        self.regenerator = AdaptiveRegenerator(self.analyzer, text_generator=text_generator)
        self.max_write_retries = max_write_retries or config.concurrency.max_write_retries
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        # Entries disappear once no caller holds the pair lock
        self._locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()
        self._outbox: Deque[PendingWrite] = deque()
        self._outbox_lock = threading.Lock()

    # ==================== Infrastructure ====================

    def _now(self) -> datetime:
        return self._clock()

    def _lock_for(self, key: Key) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @property
    def pending_writes(self) -> int:
        with self._outbox_lock:
            return len(self._outbox)

    def _queue(self, pending: PendingWrite):
        with self._outbox_lock:
            self._outbox.append(pending)
        logger.warning("Queued %s write after persistence failure: %s", pending.kind, pending.reason)

    def _save_path(self, path: Path):
        try:
            self.store.save_path(path)
        except OSError as e:
            self._queue(PendingWrite(kind="path", reason=str(e), path=path))

    def _commit(
        self,
        enrollment: Enrollment,
        expected_version: Optional[int],
        progress: Optional[StepProgress],
        path_step_ids: frozenset,
    ):
        try:
            self.store.commit(enrollment, expected_version, progress)
        except OSError as e:
            self._queue(
                PendingWrite(
                    kind="unit",
                    reason=str(e),
                    enrollment=enrollment.copy(),
                    expected_version=expected_version,
                    step_progress=replace(progress) if progress else None,
                    path_step_ids=path_step_ids,
                )
            )

    def _unit_of_work(
        self,
        user_id: str,
        path_id: str,
        action: StepAction,
        step_id: Optional[str] = None,
    ) -> Tuple[Enrollment, Optional[StepProgress]]:
        """
        Read, mutate, recompute and commit one (user, path) unit.

        ``action`` mutates the enrollment and/or the step progress; the
        enrollment aggregate is then rebuilt from the full progress set.
        Validation errors propagate before anything is written.
        """
        key = (user_id, path_id)
        with self._lock_for(key):
            for attempt in range(1, self.max_write_retries + 1):
                now = self._now()
                path = self.store.load_path(path_id)
                if step_id is not None and not path.has_step(step_id):
                    raise ValidationError(f"Step '{step_id}' is not part of path '{path_id}'")

                enrollment = self.store.load_enrollment(user_id, path_id)
                expected = enrollment.version
                history = self.store.load_step_progress(user_id, path_id)

                progress = None
                if step_id is not None:
                    progress = next((sp for sp in history if sp.step_id == step_id), None)
                    if progress is None:
                        progress = StepProgress(user_id=user_id, step_id=step_id, path_id=path_id)
                        history.append(progress)

                action(enrollment, progress, now)
                enrollment.recompute(history, path.step_ids, now)

                try:
                    self._commit(enrollment, expected, progress, path.step_ids)
                except StaleWriteConflict as e:
                    if attempt >= self.max_write_retries:
                        logger.error(
                            "Giving up on %s/%s after %d stale write(s): %s",
                            user_id, path_id, attempt, e,
                        )
                        raise
                    logger.warning(
                        "Stale write on %s/%s (attempt %d/%d), retrying",
                        user_id, path_id, attempt, self.max_write_retries,
                    )
                    continue
                return enrollment, progress

        raise AssertionError("unreachable")  # pragma: no cover

    # ==================== Paths ====================

    def create_path(
        self,
        user_id: str,
        target_skills: Sequence[str],
        target_role: Optional[str] = None,
        cross_skill_prerequisites: Optional[Mapping[str, Iterable[str]]] = None,
    ) -> Path:
        """
        Build and persist a path for the user's current proficiency.

        Cross-skill prerequisites from the skill graph (when configured) are
        merged with the explicit ones.
        """
        if not target_skills:
            raise ValidationError("A path must target at least one skill")

        names = [s.strip() for s in target_skills if isinstance(s, str) and s.strip()]
        proficiency = {
            skill: self.directory.proficiency_for(user_id, skill) for skill in names
        }

        prereqs: Dict[str, set] = {}
        if self.skill_graph is not None:
            for skill, required in self.skill_graph.cross_skill_prerequisites(names).items():
                prereqs.setdefault(skill, set()).update(required)
        for skill, required in (cross_skill_prerequisites or {}).items():
            prereqs.setdefault(skill, set()).update(required)

        path = self.builder.build_path(
            target_skills,
            proficiency,
            target_role=target_role,
            cross_skill_prerequisites=prereqs or None,
            now=self._now(),
        )
        self._save_path(path)
        logger.info("Created path %s for user %s", path.id, user_id)
        return path

    def get_path(self, path_id: str) -> Path:
        return self.store.load_path(path_id)

    def update_path_metadata(
        self,
        path_id: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Path:
        """Change title/description only; steps are never edited after generation."""
        if title is not None and not title.strip():
            raise ValidationError("Path title must not be empty")
        path = self.store.load_path(path_id).with_metadata(title, description)
        self._save_path(path)
        logger.info("Updated metadata of path %s", path_id)
        return path

    # ==================== Enrollment lifecycle ====================

    def enroll(
        self,
        user_id: str,
        path_id: str,
        target_completion_date: Optional[datetime] = None,
        daily_goal_hours: Optional[float] = None,
        weekly_goal_hours: Optional[float] = None,
    ) -> Enrollment:
        """
        Enroll a user, snapshotting the path's step count.

        Existing step history for the path counts toward the new enrollment.

        Raises:
            ValidationError: the user already has a live enrollment
            NotFoundError: unknown path
        """
        key = (user_id, path_id)
        with self._lock_for(key):
            for attempt in range(1, self.max_write_retries + 1):
                now = self._now()
                path = self.store.load_path(path_id)
                existing = self.store.find_enrollment(user_id, path_id)
                if existing is not None and not existing.is_deleted:
                    raise ValidationError(f"User {user_id} is already enrolled in path {path_id}")

                if target_completion_date is None and path.estimated_duration_weeks:
                    target = now + timedelta(weeks=path.estimated_duration_weeks)
                else:
                    target = target_completion_date

                enrollment = Enrollment(
                    user_id=user_id,
                    path_id=path_id,
                    total_steps_snapshot=path.total_steps,
                    target_completion_date=target,
                    daily_goal_hours=daily_goal_hours,
                    weekly_goal_hours=weekly_goal_hours,
                    now=now,
                )
                history = self.store.load_step_progress(user_id, path_id)
                enrollment.recompute(history, path.step_ids, now)

                try:
                    self._commit(enrollment, None, None, path.step_ids)
                except StaleWriteConflict:
                    if attempt >= self.max_write_retries:
                        raise
                    continue
                logger.info(
                    "Enrolled user %s in path %s (%d step(s))",
                    user_id, path_id, path.total_steps,
                )
                return enrollment

        raise AssertionError("unreachable")  # pragma: no cover

    def get_enrollment(self, user_id: str, path_id: str) -> Enrollment:
        return self.store.load_enrollment(user_id, path_id)

    def unenroll(self, user_id: str, path_id: str) -> Enrollment:
        """Soft delete; step history is kept."""
        enrollment, _ = self._unit_of_work(
            user_id, path_id, lambda e, sp, now: e.withdraw(now)
        )
        return enrollment

    def pause(self, user_id: str, path_id: str) -> Enrollment:
        enrollment, _ = self._unit_of_work(user_id, path_id, lambda e, sp, now: e.pause(now))
        return enrollment

    def resume(self, user_id: str, path_id: str) -> Enrollment:
        enrollment, _ = self._unit_of_work(user_id, path_id, lambda e, sp, now: e.resume(now))
        return enrollment

    def drop(self, user_id: str, path_id: str) -> Enrollment:
        enrollment, _ = self._unit_of_work(user_id, path_id, lambda e, sp, now: e.drop(now))
        return enrollment

    def expire(self, user_id: str, path_id: str) -> Enrollment:
        enrollment, _ = self._unit_of_work(user_id, path_id, lambda e, sp, now: e.expire(now))
        return enrollment

    def re_enroll(
        self,
        user_id: str,
        path_id: str,
        target_completion_date: Optional[datetime] = None,
    ) -> Enrollment:
        """Reopen a DROPPED or EXPIRED enrollment against the current path."""
        total = self.store.load_path(path_id).total_steps

        def action(enrollment: Enrollment, _, now: datetime):
            enrollment.re_enroll(total, target_completion_date, now)

        enrollment, _ = self._unit_of_work(user_id, path_id, action)
        return enrollment

    # ==================== Step progress ====================

    def get_step_progress(self, user_id: str, path_id: str) -> List[StepProgress]:
        return self.store.load_step_progress(user_id, path_id)

    def record_progress(
        self,
        user_id: str,
        path_id: str,
        step_id: str,
        percentage: float,
        minutes_delta: int = 0,
        notes: Optional[str] = None,
    ) -> StepProgress:
        """
        Apply a progress update and recompute the enrollment.

        Raises:
            ValidationError: step not in path, or values out of range
            NotFoundError: unknown path or no live enrollment
        """

        def action(enrollment: Enrollment, progress: StepProgress, now: datetime):
            progress.record_progress(percentage, minutes_delta, notes, now)
            enrollment.touch(step_id, now)

        _, progress = self._unit_of_work(user_id, path_id, action, step_id=step_id)
        return progress

    def record_attempt(self, user_id: str, path_id: str, step_id: str) -> StepProgress:
        def action(enrollment: Enrollment, progress: StepProgress, now: datetime):
            progress.increment_attempt(now)
            enrollment.touch(step_id, now)

        _, progress = self._unit_of_work(user_id, path_id, action, step_id=step_id)
        return progress

    def skip_step(self, user_id: str, path_id: str, step_id: str) -> StepProgress:
        _, progress = self._unit_of_work(
            user_id, path_id, lambda e, sp, now: sp.skip(now), step_id=step_id
        )
        return progress

    def fail_step(self, user_id: str, path_id: str, step_id: str) -> StepProgress:
        _, progress = self._unit_of_work(
            user_id, path_id, lambda e, sp, now: sp.fail(now), step_id=step_id
        )
        return progress

    def retry_step(self, user_id: str, path_id: str, step_id: str) -> StepProgress:
        _, progress = self._unit_of_work(
            user_id, path_id, lambda e, sp, now: sp.retry(now), step_id=step_id
        )
        return progress

    def reopen_step(self, user_id: str, path_id: str, step_id: str) -> StepProgress:
        _, progress = self._unit_of_work(
            user_id, path_id, lambda e, sp, now: sp.reopen(now), step_id=step_id
        )
        return progress

    def rate_step(
        self,
        user_id: str,
        path_id: str,
        step_id: str,
        difficulty: Optional[int] = None,
        quality: Optional[int] = None,
        feedback: Optional[str] = None,
    ) -> StepProgress:
        _, progress = self._unit_of_work(
            user_id, path_id,
            lambda e, sp, now: sp.rate(difficulty, quality, feedback),
            step_id=step_id,
        )
        return progress

    # ==================== Queries ====================

    def next_step(self, user_id: str, path_id: str) -> Optional[Step]:
        """
        Next eligible step, or None when every step is completed.

        Raises:
            GraphDeadlock: steps remain but none can become eligible
        """
        path = self.store.load_path(path_id)
        completed = {
            sp.step_id
            for sp in self.store.load_step_progress(user_id, path_id)
            if sp.status == StepStatus.COMPLETED
        }
        return resolve_next_step(path.steps, completed & path.step_ids, path_id=path_id)

    def analyze(self, user_id: str, path_id: str) -> PerformanceReport:
        """Performance report for one enrollment."""
        path = self.store.load_path(path_id)
        enrollment = self.store.load_enrollment(user_id, path_id)
        history = self.store.load_step_progress(user_id, path_id)
        return self.analyzer.analyze(
            history,
            enrollment=enrollment,
            steps=path.steps_by_id(),
            user_id=user_id,
            now=self._now(),
        )

    def analyze_user(self, user_id: str) -> PerformanceReport:
        """Performance report across every path the user has touched."""
        history = self.store.load_user_history(user_id)
        steps: Dict[str, Step] = {}
        for path_id in {sp.path_id for sp in history}:
            steps.update(self.store.load_path(path_id).steps_by_id())
        return self.analyzer.analyze(history, steps=steps, user_id=user_id, now=self._now())

    # ==================== Adaptation ====================

    def regenerate(self, user_id: str, path_id: str) -> Path:
        """
        Build and persist a remediation path. The user is not enrolled in it.
        With no struggling areas the path has zero steps.
        """
        path = self.store.load_path(path_id)
        enrollment = self.store.load_enrollment(user_id, path_id)
        history = self.store.load_step_progress(user_id, path_id)
        adaptive = self.regenerator.regenerate(enrollment, path, history, now=self._now())
        self._save_path(adaptive)
        return adaptive

    # ==================== Outbox ====================

    def flush_pending_writes(self) -> int:
        """
        Replay queued writes.

        A unit whose enrollment moved on in the meantime is rebased: its step
        record is merged into the fresh history (unless a newer record for
        the step exists) and the enrollment recomputed. Queued lifecycle
        changes superseded by a later write are discarded with a warning.

        Returns:
            Number of writes persisted. Stops at the first I/O failure and
            keeps the rest queued.
        """
        flushed = 0
        while True:
            with self._outbox_lock:
                if not self._outbox:
                    return flushed
                pending = self._outbox.popleft()
            try:
                if self._replay(pending):
                    flushed += 1
            except OSError as e:
                with self._outbox_lock:
                    self._outbox.appendleft(pending)
                logger.warning("Outbox flush stopped, %d write(s) pending: %s", self.pending_writes, e)
                return flushed

    def _replay(self, pending: PendingWrite) -> bool:
        if pending.kind == "path":
            self.store.save_path(pending.path)
            return True

        enrollment = pending.enrollment
        with self._lock_for(enrollment.key):
            try:
                self.store.commit(enrollment, pending.expected_version, pending.step_progress)
                return True
            except StaleWriteConflict:
                if pending.step_progress is None:
                    logger.warning(
                        "Discarding superseded queued write for %s/%s",
                        enrollment.user_id, enrollment.path_id,
                    )
                    return False

            progress = pending.step_progress
            fresh = self.store.find_enrollment(enrollment.user_id, enrollment.path_id)
            history = self.store.load_step_progress(enrollment.user_id, enrollment.path_id)
            stored = next((sp for sp in history if sp.step_id == progress.step_id), None)
            if stored is not None and _newer(stored, progress):
                logger.warning(
                    "Discarding queued progress for step %s: a newer record exists",
                    progress.step_id,
                )
                return False

            history = [sp for sp in history if sp.step_id != progress.step_id] + [progress]
            if fresh is None:
                self.store.save_step_progress(progress)
                return True
            fresh.recompute(history, pending.path_step_ids, self._now())
            self.store.commit(fresh, fresh.version, progress)
            return True


def _newer(stored: StepProgress, queued: StepProgress) -> bool:
    if stored.last_accessed_at is None or queued.last_accessed_at is None:
        return False
    return stored.last_accessed_at > queued.last_accessed_at
