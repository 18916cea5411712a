"""
Catalog store: persistence of paths, enrollments and step progress.

Two implementations share the same write discipline:
- InMemoryCatalogStore: dict-backed, for tests and embedding
- JsonCatalogStore: one JSON document per path, per enrollment and per
  (user, path) progress history, validated against the bundled schemas

``commit`` writes a StepProgress record and its Enrollment as one unit after
an optimistic version check, and bumps the enrollment version on success.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path as FsPath
from typing import Dict, Iterator, List, Optional, Tuple
from urllib.parse import quote

from filelock import FileLock

from ..config import PathConfig, config
from ..errors import NotFoundError, StaleWriteConflict, ValidationError
from ..models.enrollment import Enrollment
from ..models.path import Path
from ..models.step_progress import StepProgress
from .validation import EnrollmentValidator, PathValidator, StepProgressValidator

logger = logging.getLogger(__name__)

Key = Tuple[str, str]


def _copy_progress(progress: StepProgress) -> StepProgress:
    return replace(progress)


class CatalogStore(ABC):
    """
    Persistence collaborator.

    Subclasses provide raw record access; version checking and the
    single-unit commit live here so both stores behave the same.
    Returned objects are copies: mutating them never changes stored state.
    """

    def __init__(self):
        self._lock = threading.RLock()

    # --- raw record access -------------------------------------------------

    @abstractmethod
    def save_path(self, path: Path) -> None:
        """Persist a path (paths are write-once apart from metadata)."""

    @abstractmethod
    def load_path(self, path_id: str) -> Path:
        """Return the path or raise NotFoundError."""

    @abstractmethod
    def _get_enrollment(self, key: Key) -> Optional[Enrollment]:
        """Stored enrollment for the key, soft-deleted ones included."""

    @abstractmethod
    def _get_progress(self, key: Key) -> List[StepProgress]:
        """Progress history for (user, path) in first-interaction order."""

    @abstractmethod
    def _write_unit(
        self,
        enrollment: Optional[Enrollment],
        key: Key,
        history: Optional[List[StepProgress]],
    ) -> None:
        """Write an enrollment and/or a full progress history as one unit."""

    @abstractmethod
    def _user_keys(self, user_id: str) -> List[Key]:
        """All (user, path) keys that have progress for the user."""

    @contextmanager
    def _unit_lock(self, key: Key) -> Iterator[None]:
        """Serialize read, version check and write of one (user, path) unit."""
        with self._lock:
            yield

    # --- public API --------------------------------------------------------

    def has_path(self, path_id: str) -> bool:
        try:
            self.load_path(path_id)
        except NotFoundError:
            return False
        return True

    def find_enrollment(self, user_id: str, path_id: str) -> Optional[Enrollment]:
        """Stored enrollment including soft-deleted ones, or None."""
        with self._lock:
            enrollment = self._get_enrollment((user_id, path_id))
            return enrollment.copy() if enrollment else None

    def load_enrollment(self, user_id: str, path_id: str) -> Enrollment:
        enrollment = self.find_enrollment(user_id, path_id)
        if enrollment is None or enrollment.is_deleted:
            raise NotFoundError("Enrollment", f"{user_id}/{path_id}")
        return enrollment

    def load_step_progress(self, user_id: str, path_id: str) -> List[StepProgress]:
        with self._lock:
            return [_copy_progress(sp) for sp in self._get_progress((user_id, path_id))]

    def load_user_history(self, user_id: str) -> List[StepProgress]:
        """Progress across every path the user has touched."""
        with self._lock:
            history: List[StepProgress] = []
            for key in self._user_keys(user_id):
                history.extend(_copy_progress(sp) for sp in self._get_progress(key))
            return history

    def save_step_progress(self, progress: StepProgress) -> None:
        """Persist a single StepProgress record outside of a commit."""
        key = (progress.user_id, progress.path_id)
        with self._unit_lock(key):
            history = self._merged(key, progress)
            self._write_unit(None, key, history)

    def save_enrollment(self, enrollment: Enrollment, expected_version: Optional[int]) -> None:
        self.commit(enrollment, expected_version)

    def commit(
        self,
        enrollment: Enrollment,
        expected_version: Optional[int],
        step_progress: Optional[StepProgress] = None,
    ) -> int:
        """
        Write the enrollment (and optionally one StepProgress) atomically.

        Args:
            enrollment: Enrollment to persist
            expected_version: Version the caller read; None for a new
                enrollment (no live record may exist)
            step_progress: Record changed in the same unit of work

        Returns:
            The new enrollment version

        Raises:
            StaleWriteConflict: stored version differs from expected_version
        """
        key = enrollment.key
        with self._unit_lock(key):
            current = self._get_enrollment(key)
            if expected_version is None:
                if current is not None and not current.is_deleted:
                    raise StaleWriteConflict(f"{key[0]}/{key[1]}", -1, current.version)
                new_version = (current.version if current else 0) + 1
            else:
                actual = current.version if current else -1
                if actual != expected_version:
                    raise StaleWriteConflict(f"{key[0]}/{key[1]}", expected_version, actual)
                new_version = expected_version + 1

            stored = enrollment.copy()
            stored.version = new_version
            history = self._merged(key, step_progress) if step_progress else None
            self._write_unit(stored, key, history)

            enrollment.version = new_version
            return new_version

    def _merged(self, key: Key, progress: StepProgress) -> List[StepProgress]:
        history = [_copy_progress(sp) for sp in self._get_progress(key)]
        for i, existing in enumerate(history):
            if existing.step_id == progress.step_id:
                history[i] = _copy_progress(progress)
                break
        else:
            history.append(_copy_progress(progress))
        return history


class InMemoryCatalogStore(CatalogStore):
    """Dict-backed store guarded by one lock."""

    def __init__(self):
        super().__init__()
        self._paths: Dict[str, Path] = {}
        self._enrollments: Dict[Key, Enrollment] = {}
        self._progress: Dict[Key, List[StepProgress]] = {}

    def save_path(self, path: Path) -> None:
        with self._lock:
            self._paths[path.id] = path

    def load_path(self, path_id: str) -> Path:
        with self._lock:
            try:
                return self._paths[path_id]
            except KeyError:
                raise NotFoundError("Path", path_id) from None

    def _get_enrollment(self, key: Key) -> Optional[Enrollment]:
        return self._enrollments.get(key)

    def _get_progress(self, key: Key) -> List[StepProgress]:
        return self._progress.get(key, [])

    def _write_unit(self, enrollment, key, history) -> None:
        if history is not None:
            self._progress[key] = history
        if enrollment is not None:
            self._enrollments[key] = enrollment

    def _user_keys(self, user_id: str) -> List[Key]:
        return [key for key in self._progress if key[0] == user_id]


def _file_name(*parts: str) -> str:
    # quote() always escapes "+", so distinct keys never share a file name
    return "+".join(quote(part, safe="") for part in parts)


class JsonCatalogStore(CatalogStore):
    """
    File-backed store: one JSON document per record.

    Layout under ``base_dir`` (key parts are percent-encoded)::

        paths/{path_id}.json
        enrollments/{user}+{path}.json
        step_progress/{user}+{path}.json   # {"user_id", "path_id", "records": [...]}
        locks/{user}+{path}.lock

    Every document is schema-validated on save and on load. Writes go to a
    temporary file in the same directory and are moved into place with
    ``os.replace``; a commit stages all files before replacing any.

    Several stores (or processes) may share one ``base_dir``: a commit holds
    an exclusive file lock for its (user, path) key from the version check
    until the files are replaced. Waiting longer than
    ``config.concurrency.lock_timeout_seconds`` raises ``filelock.Timeout``,
    an ``OSError``.
    """

    def __init__(self, base_dir: Optional[FsPath | str] = None):
        super().__init__()
        if base_dir:
            layout = PathConfig(data_dir=FsPath(base_dir))
            layout.prepare_filesystem()
        else:
            config.prepare_fs()
            layout = config.paths
        self.base_dir = layout.data_dir
        self.paths_dir = layout.paths_dir
        self.enrollments_dir = layout.enrollments_dir
        self.progress_dir = layout.progress_dir
        self.locks_dir = layout.locks_dir

        self.path_validator = PathValidator()
        self.enrollment_validator = EnrollmentValidator()
        self.progress_validator = StepProgressValidator()

    @contextmanager
    def _unit_lock(self, key: Key) -> Iterator[None]:
        lock = FileLock(
            str(self.locks_dir / f"{_file_name(*key)}.lock"),
            timeout=config.concurrency.lock_timeout_seconds,
        )
        with self._lock, lock:
            yield

    # --- file helpers ------------------------------------------------------

    @staticmethod
    def _read_json(filepath: FsPath) -> Optional[dict]:
        if not filepath.exists():
            return None
        with open(filepath, "r", encoding="utf-8") as f:
            return json.load(f)

    @staticmethod
    def _check_key(filepath: FsPath, data: dict, key: Key):
        found = (data.get("user_id"), data.get("path_id"))
        if found != key:
            raise ValidationError(
                f"{filepath.name} holds {found[0]}/{found[1]}, expected {key[0]}/{key[1]}"
            )

    @staticmethod
    def _stage(filepath: FsPath, data: dict) -> str:
        fd, tmp_name = tempfile.mkstemp(
            dir=filepath.parent, prefix=f".{filepath.stem}-", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
        except BaseException:
            os.unlink(tmp_name)
            raise
        return tmp_name

    def _replace_all(self, staged: List[Tuple[str, FsPath]]):
        try:
            for tmp_name, target in staged:
                os.replace(tmp_name, target)
        finally:
            for tmp_name, _ in staged:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)

    def _path_file(self, path_id: str) -> FsPath:
        return self.paths_dir / f"{_file_name(path_id)}.json"

    def _enrollment_file(self, key: Key) -> FsPath:
        return self.enrollments_dir / f"{_file_name(*key)}.json"

    def _progress_file(self, key: Key) -> FsPath:
        return self.progress_dir / f"{_file_name(*key)}.json"

    # --- CatalogStore ------------------------------------------------------

    def save_path(self, path: Path) -> None:
        data = path.to_dict()
        self.path_validator.validate(data).raise_if_invalid("path")
        target = self._path_file(path.id)
        with self._lock:
            self._replace_all([(self._stage(target, data), target)])
        logger.debug("Saved path %s to %s", path.id, target)

    def load_path(self, path_id: str) -> Path:
        target = self._path_file(path_id)
        data = self._read_json(target)
        if data is None:
            raise NotFoundError("Path", path_id)
        if data.get("id") != path_id:
            raise ValidationError(f"{target.name} holds path {data.get('id')}, expected {path_id}")
        self.path_validator.validate(data).raise_if_invalid("path")
        return Path.from_dict(data)

    def _get_enrollment(self, key: Key) -> Optional[Enrollment]:
        target = self._enrollment_file(key)
        data = self._read_json(target)
        if data is None:
            return None
        self._check_key(target, data, key)
        self.enrollment_validator.validate(data).raise_if_invalid("enrollment")
        return Enrollment.from_dict(data)

    def _get_progress(self, key: Key) -> List[StepProgress]:
        target = self._progress_file(key)
        data = self._read_json(target)
        if data is None:
            return []
        self._check_key(target, data, key)
        records = []
        for record in data.get("records", []):
            self.progress_validator.validate(record).raise_if_invalid("step progress")
            records.append(StepProgress.from_dict(record))
        return records

    def _write_unit(self, enrollment, key, history) -> None:
        documents = []
        # History is replaced before the enrollment: a reader that sees the new
        # enrollment version also sees the new history.
        if history is not None:
            records = [sp.to_dict() for sp in history]
            for record in records:
                self.progress_validator.validate(record).raise_if_invalid("step progress")
            documents.append(
                (self._progress_file(key),
                 {"user_id": key[0], "path_id": key[1], "records": records})
            )
        if enrollment is not None:
            data = enrollment.to_dict()
            self.enrollment_validator.validate(data).raise_if_invalid("enrollment")
            documents.append((self._enrollment_file(key), data))

        staged: List[Tuple[str, FsPath]] = []
        try:
            for target, data in documents:
                staged.append((self._stage(target, data), target))
        except BaseException:
            for tmp_name, _ in staged:
                os.unlink(tmp_name)
            raise
        self._replace_all(staged)

    def _user_keys(self, user_id: str) -> List[Key]:
        keys = []
        for filepath in sorted(self.progress_dir.glob("*.json")):
            data = self._read_json(filepath)
            if data and data.get("user_id") == user_id:
                keys.append((data["user_id"], data["path_id"]))
        return keys
