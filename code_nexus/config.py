"""
Configuration for Code Nexus.

Plain dataclasses with compiled defaults. NexusConfig.from_env() applies
NEXUS_* environment overrides the same way the API reads its settings;
validate() returns a list of problems and load() raises on any.
"""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import ConfigValidationError


def _check_range(errors: List[str], name: str, value, lo, hi) -> None:
    """Append an error message if value is out of [lo, hi]."""
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class LearningConfig:
    """Incremental learner and queue settings."""
    enabled: bool = True
    auto_learn_on_commit: bool = True
    auto_learn_on_save: bool = False
    batch_size: int = 50                    # Max files per processed delta
    queue_timeout_ms: int = 5000            # Pause between queued batches
    background_learning: bool = True        # Start the drain loop on enqueue
    max_pending_tasks: int = 1000           # Queue capacity before producers wait
    oracle_timeout_s: Optional[float] = None

    def validate(self) -> List[str]:
        errors: List[str] = []
        _check_range(errors, "learning.batch_size", self.batch_size, 1, 10000)
        _check_range(errors, "learning.queue_timeout_ms", self.queue_timeout_ms, 0, 600000)
        _check_range(errors, "learning.max_pending_tasks", self.max_pending_tasks, 1, 1000000)
        if self.oracle_timeout_s is not None and self.oracle_timeout_s <= 0:
            errors.append(f"learning.oracle_timeout_s: {self.oracle_timeout_s} must be positive")
        return errors


@dataclass
class AggregationConfig:
    """Cross-project aggregation settings."""
    page_size: int = 10000                  # Global patterns read per run
    max_examples: int = 10                  # Examples kept per local pattern
    confidence_nudge: float = 0.05          # Confidence bump on repeat detection

    def validate(self) -> List[str]:
        errors: List[str] = []
        _check_range(errors, "aggregation.page_size", self.page_size, 1, 1000000)
        _check_range(errors, "aggregation.max_examples", self.max_examples, 0, 1000)
        _check_range(errors, "aggregation.confidence_nudge", self.confidence_nudge, 0.0, 1.0)
        return errors


@dataclass
class StorageConfig:
    """Where the per-repository and global SQLite files live."""
    data_dir: str = "~/.code-nexus"
    global_db_path: Optional[str] = None    # Defaults to <data_dir>/global-patterns.db
    wal_mode: bool = True

    def resolved_global_db_path(self) -> str:
        if self.global_db_path:
            return os.path.expanduser(self.global_db_path)
        return os.path.join(os.path.expanduser(self.data_dir), "global-patterns.db")

    def validate(self) -> List[str]:
        if not self.data_dir:
            return ["storage.data_dir: must not be empty"]
        return []


# Environment variable -> (section, field, parser)
_ENV_OVERRIDES: Dict[str, tuple] = {
    "NEXUS_LEARNING_ENABLED": ("learning", "enabled", _env_bool),
    "NEXUS_BATCH_SIZE": ("learning", "batch_size", int),
    "NEXUS_QUEUE_TIMEOUT_MS": ("learning", "queue_timeout_ms", int),
    "NEXUS_BACKGROUND_LEARNING": ("learning", "background_learning", _env_bool),
    "NEXUS_MAX_PENDING_TASKS": ("learning", "max_pending_tasks", int),
    "NEXUS_ORACLE_TIMEOUT_S": ("learning", "oracle_timeout_s", float),
    "NEXUS_AGGREGATION_PAGE_SIZE": ("aggregation", "page_size", int),
    "NEXUS_DATA_DIR": ("storage", "data_dir", str),
    "NEXUS_GLOBAL_DB": ("storage", "global_db_path", str),
    "NEXUS_WAL_MODE": ("storage", "wal_mode", _env_bool),
}


@dataclass
class NexusConfig:
    """Top-level configuration."""
    learning: LearningConfig = field(default_factory=LearningConfig)
    aggregation: AggregationConfig = field(default_factory=AggregationConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        return (
            self.learning.validate()
            + self.aggregation.validate()
            + self.storage.validate()
        )

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "NexusConfig":
        """Build a config from defaults plus NEXUS_* environment variables."""
        environ = os.environ if environ is None else environ
        config = cls()
        for var, (section, name, parse) in _ENV_OVERRIDES.items():
            raw = environ.get(var)
            if raw is None or raw == "":
                continue
            try:
                value: Any = parse(raw)
            except ValueError:
                raise ConfigValidationError([f"{var}: cannot parse {raw!r}"])
            setattr(getattr(config, section), name, value)
        return config

    @classmethod
    def load(cls, environ: Optional[Dict[str, str]] = None) -> "NexusConfig":
        """from_env() followed by validate(); raises ConfigValidationError."""
        config = cls.from_env(environ)
        errors = config.validate()
        if errors:
            raise ConfigValidationError(errors)
        return config
