"""
Code Nexus - Core Storage Layer

Two SQLite tiers:
- ProjectStore: one repository's concepts, patterns, and learning deltas
- GlobalStore: linked projects, pattern copies, and aggregations
"""

from .global_store import GlobalStore
from .models import (
    ChangeRecord,
    ChangeType,
    CommitInfo,
    ConceptRecord,
    DeltaStatus,
    GlobalPattern,
    LearningDelta,
    PatternAggregation,
    PatternRecord,
    TriggerType,
)
from .store import ProjectStore

__all__ = [
    "ProjectStore",
    "GlobalStore",
    "ChangeRecord",
    "ChangeType",
    "CommitInfo",
    "ConceptRecord",
    "DeltaStatus",
    "GlobalPattern",
    "LearningDelta",
    "PatternAggregation",
    "PatternRecord",
    "TriggerType",
]
