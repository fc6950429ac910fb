"""
Pattern types, similarity, and cross-project aggregation.

Patterns are recurring idioms (naming conventions, structure, implementation
choices) reported by the analysis oracle. Across projects, equivalent
patterns are grouped by signature and scored for confidence and consensus.
"""

from .aggregator import PatternAggregator
from .types import (
    ImplementationPatternData,
    NamingPatternData,
    OpenPatternData,
    PatternCategory,
    StructuralPatternData,
    parse_pattern_data,
)

__all__ = [
    "PatternAggregator",
    "PatternCategory",
    "NamingPatternData",
    "StructuralPatternData",
    "ImplementationPatternData",
    "OpenPatternData",
    "parse_pattern_data",
]
