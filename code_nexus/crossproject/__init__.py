"""Cross-project linking, syncing, and views."""

from .service import CrossProjectService

__all__ = ["CrossProjectService"]
