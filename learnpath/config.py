"""
Configuration management for the LearnPath progression engine.

This module centralizes all configuration settings following 12-factor app principles:
- Secrets loaded from environment variables
- Sensible defaults for development
- Tunable analytics thresholds (struggling/strong step classification)
- Single source of truth for all settings
- Thread-safe text generation tracking
"""

import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class ModelConfig:
    """Text generation collaborator settings (titles and descriptions only)."""

    api_key: str = field(default_factory=lambda: os.getenv("OPENAI_API_KEY", ""))
    model_name: str = field(
        default_factory=lambda: os.getenv("OPENAI_MODEL", "gpt-3.5-turbo")
    )
    base_url: Optional[str] = field(
        default_factory=lambda: os.getenv("OPENAI_BASE_URL")
    )

    temperature: float = 0.7
    max_tokens: int = 200

    request_timeout: float = field(
        default_factory=lambda: float(os.getenv("REQUEST_TIMEOUT", "30.0"))
    )
    max_retries: int = 1

    # LLM is only consulted when explicitly enabled or a key is configured
    enabled: Optional[bool] = None

    def __post_init__(self):
        if self.enabled is None:
            self.enabled = _env_bool("LEARNPATH_LLM_ENABLED", bool(self.api_key))


@dataclass
class AnalyticsConfig:
    """
    Performance Analyzer thresholds.

    A step is struggling when attempts > struggling_min_attempts or
    time spent > struggling_min_minutes. A completed step is strong when
    time spent < strong_max_minutes.
    """

    struggling_min_attempts: int = field(
        default_factory=lambda: int(os.getenv("LEARNPATH_STRUGGLING_ATTEMPTS", "3"))
    )
    struggling_min_minutes: int = field(
        default_factory=lambda: int(os.getenv("LEARNPATH_STRUGGLING_MINUTES", "480"))
    )
    strong_max_minutes: int = field(
        default_factory=lambda: int(os.getenv("LEARNPATH_STRONG_MINUTES", "120"))
    )


@dataclass
class PlanningConfig:
    """Path Template Builder settings."""

    base_weeks_per_skill: int = 4
    min_duration_weeks: int = 2
    chain_steps_within_skill: bool = True


@dataclass
class ConcurrencyConfig:
    """Write discipline for enrollment recomputes."""

    max_write_retries: int = 3
    # Seconds to wait for another process holding a record lock
    lock_timeout_seconds: float = field(
        default_factory=lambda: float(os.getenv("LEARNPATH_LOCK_TIMEOUT", "10"))
    )


@dataclass
class PathConfig:
    """File system paths - single source of truth for all directories."""

    data_dir: Path = field(
        default_factory=lambda: Path(
            os.getenv("LEARNPATH_DATA_DIR", str(Path.cwd() / "data"))
        ).resolve()
    )

    paths_dir: Path = field(init=False)
    enrollments_dir: Path = field(init=False)
    progress_dir: Path = field(init=False)
    locks_dir: Path = field(init=False)
    schemas_dir: Path = field(init=False)

    def __post_init__(self):
        """Initialize computed paths."""
        self.paths_dir = self.data_dir / "paths"
        self.enrollments_dir = self.data_dir / "enrollments"
        self.progress_dir = self.data_dir / "step_progress"
        self.locks_dir = self.data_dir / "locks"
        self.schemas_dir = Path(__file__).parent / "schemas"

    def schema(self, name: str) -> Path:
        """Return the path of a bundled JSON schema by short name."""
        return self.schemas_dir / f"{name}.schema.json"

    def prepare_filesystem(self):
        """
        Create data directories if they don't exist.

        Separated from __post_init__ to avoid side-effects on import.
        """
        for directory in [
            self.data_dir,
            self.paths_dir,
            self.enrollments_dir,
            self.progress_dir,
            self.locks_dir,
        ]:
            directory.mkdir(parents=True, exist_ok=True)


@dataclass
class LoggingConfig:
    """Logging configuration."""

    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    json_format: bool = field(default_factory=lambda: _env_bool("LOG_JSON", False))


class Config:
    """
    Main configuration class. Singleton pattern.

    Usage:
        from learnpath.config import config

        threshold = config.analytics.struggling_min_attempts
        config.prepare_fs()
    """

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance.paths = PathConfig()
            cls._instance.model = ModelConfig()
            cls._instance.analytics = AnalyticsConfig()
            cls._instance.planning = PlanningConfig()
            cls._instance.concurrency = ConcurrencyConfig()
            cls._instance.logging = LoggingConfig()
        return cls._instance

    def prepare_fs(self):
        """Prepare filesystem (create directories). Call once at startup."""
        self.paths.prepare_filesystem()

    def validate(self) -> list[str]:
        """
        Validate configuration and return list of errors.

        Returns:
            List of error messages (empty if valid)
        """
        errors = []

        if self.model.enabled and not self.model.api_key:
            errors.append("LLM text generation enabled but OPENAI_API_KEY not set")

        if not (0 <= self.model.temperature <= 2):
            errors.append(f"temperature must be in [0, 2], got {self.model.temperature}")

        if self.model.max_tokens <= 0:
            errors.append(f"max_tokens must be > 0, got {self.model.max_tokens}")

        if self.analytics.struggling_min_attempts < 0:
            errors.append(
                f"struggling_min_attempts must be >= 0, got {self.analytics.struggling_min_attempts}"
            )

        if self.analytics.struggling_min_minutes < 0:
            errors.append(
                f"struggling_min_minutes must be >= 0, got {self.analytics.struggling_min_minutes}"
            )

        if self.analytics.strong_max_minutes < 0:
            errors.append(
                f"strong_max_minutes must be >= 0, got {self.analytics.strong_max_minutes}"
            )

        if self.planning.base_weeks_per_skill < 1:
            errors.append(
                f"base_weeks_per_skill must be >= 1, got {self.planning.base_weeks_per_skill}"
            )

        if self.concurrency.max_write_retries < 1:
            errors.append(
                f"max_write_retries must be >= 1, got {self.concurrency.max_write_retries}"
            )

        if self.concurrency.lock_timeout_seconds <= 0:
            errors.append(
                f"lock_timeout_seconds must be > 0, got {self.concurrency.lock_timeout_seconds}"
            )

        for name in ("path", "enrollment", "step_progress"):
            if not self.paths.schema(name).exists():
                errors.append(f"Schema not found: {self.paths.schema(name)}")

        return errors


# Global config instance
config = Config()


class GenerationTracker:
    """
    Thread-safe tracker for text generation calls and fallbacks.

    Every fallback is recorded with its reason, so a failed collaborator
    call always leaves a trace even though it never blocks path creation.

    Usage:
        from learnpath.config import generation_tracker

        generation_tracker.add_call(input_tokens=100, output_tokens=20)
        generation_tracker.record_fallback("timeout")
        print(generation_tracker.summary())
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.input_tokens = 0
        self.output_tokens = 0
        self.total_calls = 0
        self.fallbacks: list[str] = []

    def add_call(self, input_tokens: int = 0, output_tokens: int = 0):
        """Record one successful generation call (thread-safe)."""
        with self._lock:
            self.input_tokens += input_tokens
            self.output_tokens += output_tokens
            self.total_calls += 1

    def record_fallback(self, reason: str):
        """Record that a default string replaced generated text (thread-safe)."""
        with self._lock:
            self.fallbacks.append(reason)

    def total_tokens(self) -> int:
        with self._lock:
            return self.input_tokens + self.output_tokens

    def summary(self) -> str:
        """Get formatted summary of usage (thread-safe)."""
        with self._lock:
            total_calls = self.total_calls
            total_tokens = self.input_tokens + self.output_tokens
            fallback_count = len(self.fallbacks)

        return (
            "Text Generation Summary:\n"
            f"  Calls: {total_calls}\n"
            f"  Total Tokens: {total_tokens:,}\n"
            f"  Fallbacks: {fallback_count}"
        )

    def reset(self):
        """Reset counters (thread-safe)."""
        with self._lock:
            self.input_tokens = 0
            self.output_tokens = 0
            self.total_calls = 0
            self.fallbacks = []

    def get_stats(self) -> dict:
        """Get current stats as dict (thread-safe)."""
        with self._lock:
            return {
                "calls": self.total_calls,
                "input_tokens": self.input_tokens,
                "output_tokens": self.output_tokens,
                "total_tokens": self.input_tokens + self.output_tokens,
                "fallbacks": len(self.fallbacks),
                "fallback_reasons": list(self.fallbacks),
            }


# Global generation tracker instance
generation_tracker = GenerationTracker()
