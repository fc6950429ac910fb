"""
Error types for Code Nexus.

Every failure the learner, stores, or cross-project service raise derives
from NexusError so callers (the HTTP layer in particular) can map them in
one place.
"""

from typing import List, Optional


class NexusError(Exception):
    """Base class for all Code Nexus errors."""


class StoreError(NexusError):
    """A read or write against a SQLite store failed."""

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation


class DeltaStateError(NexusError):
    """A learning delta was moved through an illegal status transition."""


class OracleError(NexusError):
    """The analysis oracle could not analyze a file."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class ChangeSourceError(NexusError):
    """The change source (git) could not enumerate changes."""


class AggregationError(NexusError):
    """A cross-project aggregation run failed."""


class QueueFullError(NexusError):
    """The learning queue is at capacity and nothing is draining it."""


class ProjectNotFoundError(NexusError):
    """No linked project matches the given id."""

    def __init__(self, project_id: str):
        super().__init__(f"Project {project_id} not found")
        self.project_id = project_id


class ConfigValidationError(NexusError, ValueError):
    """Raised when config values are out of valid range."""

    def __init__(self, errors: List[str]):
        super().__init__("Invalid configuration: " + "; ".join(errors))
        self.errors = errors
