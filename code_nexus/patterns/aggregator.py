"""
Pattern Aggregator - cross-project pattern consolidation.

Groups equivalent GlobalPatterns from many projects under a normalized
signature and scores each group:

- aggregated confidence: mean confidence, boosted by how many distinct
  projects share the pattern
- consensus: how alike the grouped patterns' data actually are

Signatures favor precision over recall. Near-miss patterns land in separate
groups instead of being merged with something unrelated.
"""

import logging
import math
import threading
from collections import OrderedDict
from datetime import datetime
from typing import Any, Dict, List, Optional

import numpy as np

from ..config import AggregationConfig
from ..core.global_store import GlobalStore
from ..core.models import GlobalPattern, PatternAggregation, PatternOccurrence, utcnow
from ..errors import AggregationError
from .similarity import consensus_score
from .types import as_open_map

logger = logging.getLogger(__name__)

# Pattern-data fields that participate in the signature, and the key they use
_SIGNATURE_FIELDS = (
    ("convention", "convention"),
    ("pattern", "pattern"),
    ("category", "patternCategory"),
)

_SECONDS_PER_YEAR = 365 * 24 * 60 * 60


class PatternAggregator:
    """
    Aggregate, rank, merge, and diff global patterns.

    Example:
        aggregator = PatternAggregator(global_store)

        # Recompute every aggregation
        groups = aggregator.aggregate_patterns()

        # Order candidates for a TypeScript project
        ranked = aggregator.rank_patterns_by_relevance(patterns, {"language": "typescript"})

        # What does project A do that project B doesn't?
        diff = aggregator.get_pattern_diff(project_a, project_b)
    """

    def __init__(
        self,
        global_store: GlobalStore,
        config: Optional[AggregationConfig] = None,
    ):
        """
        Initialize aggregator.

        Args:
            global_store: Store holding global patterns and aggregations
            config: Page size for aggregation runs
        """
        self.global_store = global_store
        self.config = config or AggregationConfig()
        self._lock = threading.Lock()

    # =========================================================================
    # Aggregation runs
    # =========================================================================

    def aggregate_patterns(self) -> int:
        """
        Recompute all aggregations from the current global patterns.

        Only patterns of active projects take part. Concurrent calls run one
        after another. Signatures that no longer occur are removed.

        Returns:
            Number of aggregations written

        Raises:
            AggregationError: reading patterns or writing results failed
        """
        with self._lock:
            try:
                patterns = self.global_store.get_global_patterns(limit=self.config.page_size)
                groups = self.group_by_signature(patterns)

                for signature, group in groups.items():
                    self.global_store.upsert_aggregation(self.build_aggregation(signature, group))
                removed = self.global_store.delete_aggregations_except(groups.keys())
            except Exception as e:
                logger.error(f"Pattern aggregation failed: {e}")
                raise AggregationError(f"Pattern aggregation failed: {e}") from e

        logger.info(
            f"Aggregated {len(patterns)} patterns into {len(groups)} groups "
            f"({removed} stale removed)"
        )
        return len(groups)

    def group_by_signature(self, patterns: List[GlobalPattern]) -> "OrderedDict[str, List[GlobalPattern]]":
        groups: "OrderedDict[str, List[GlobalPattern]]" = OrderedDict()
        for pattern in patterns:
            groups.setdefault(self.generate_signature(pattern), []).append(pattern)
        return groups

    def build_aggregation(self, signature: str, patterns: List[GlobalPattern]) -> PatternAggregation:
        occurrences = [
            PatternOccurrence(
                project_id=project_id,
                frequency=pattern.total_frequency,
                confidence=pattern.confidence,
                pattern_data=as_open_map(pattern.pattern_data),
            )
            for pattern in patterns
            for project_id in (pattern.source_projects or [pattern.source_project_id or ""])
        ]
        now = utcnow()
        return PatternAggregation(
            pattern_signature=signature,
            category=patterns[0].category if patterns else "unknown",
            occurrences=occurrences,
            aggregated_confidence=self.calculate_aggregated_confidence(occurrences),
            consensus_score=self.calculate_consensus_score(patterns),
            created_at=now,
            updated_at=now,
        )

    # =========================================================================
    # Scoring
    # =========================================================================

    @staticmethod
    def generate_signature(pattern: GlobalPattern) -> str:
        """
        Normalized grouping key for a pattern.

        Built from category, subcategory, language and the convention /
        pattern / category fields of the pattern data, with keys sorted so
        field order never matters.
        """
        key: Dict[str, str] = {
            "category": pattern.category,
            "subcategory": pattern.subcategory or "",
            "language": pattern.language or "any",
        }
        data = as_open_map(pattern.pattern_data)
        for data_field, key_name in _SIGNATURE_FIELDS:
            value = data.get(data_field)
            if value:
                key[key_name] = str(value)

        return "|".join(f"{k}:{key[k]}" for k in sorted(key))

    @staticmethod
    def calculate_aggregated_confidence(occurrences: List[PatternOccurrence]) -> float:
        """Mean confidence x (1 + log10(projects + 1) x 0.2), capped at 1.0."""
        if not occurrences:
            return 0.0
        mean = float(np.mean([o.confidence for o in occurrences]))
        project_count = len({o.project_id for o in occurrences})
        boost = math.log10(project_count + 1) * 0.2
        return min(1.0, mean * (1 + boost))

    @staticmethod
    def calculate_consensus_score(patterns: List[GlobalPattern]) -> float:
        """Mean pairwise similarity of pattern data; 1.0 for a lone pattern."""
        if not patterns:
            return 0.0
        return consensus_score([as_open_map(p.pattern_data) for p in patterns])

    # =========================================================================
    # Merging, ranking, diffing
    # =========================================================================

    def merge_patterns(self, patterns: List[GlobalPattern]) -> GlobalPattern:
        """
        Collapse a group of equivalent patterns into one.

        The pattern with the most projects (then highest confidence) supplies
        the data; sources are unioned and frequencies summed.

        Raises:
            ValueError: patterns is empty
        """
        if not patterns:
            raise ValueError("Cannot merge an empty pattern list")
        if len(patterns) == 1:
            return patterns[0]

        base = sorted(patterns, key=lambda p: (p.project_count, p.confidence), reverse=True)[0]
        sources = list(OrderedDict.fromkeys(
            project_id for p in patterns for project_id in p.source_projects
        ))
        confidence = self.calculate_aggregated_confidence([
            PatternOccurrence(
                project_id=p.source_projects[0] if p.source_projects else "",
                frequency=p.total_frequency,
                confidence=p.confidence,
            )
            for p in patterns
        ])

        return GlobalPattern(
            id=base.id,
            category=base.category,
            subcategory=base.subcategory,
            language=base.language,
            pattern_data=dict(as_open_map(base.pattern_data)),
            project_count=len(sources),
            total_frequency=sum(p.total_frequency for p in patterns),
            confidence=confidence,
            source_projects=sources,
            first_seen=min(p.first_seen for p in patterns),
            last_seen=max(p.last_seen for p in patterns),
        )

    def rank_patterns_by_relevance(
        self,
        patterns: List[GlobalPattern],
        context: Optional[Dict[str, Any]] = None,
    ) -> List[GlobalPattern]:
        """
        Order patterns for a project context, most relevant first.

        Score: +10 when the language matches, +2 per project, +5 x confidence,
        minus the years since the pattern was last seen. Ties keep input order.

        Args:
            patterns: Patterns to rank
            context: Optional keys "language", "frameworks", "project_size"
        """
        language = (context or {}).get("language")
        now = utcnow()

        def score(pattern: GlobalPattern) -> float:
            value = 0.0
            if language and pattern.language == language:
                value += 10
            value += pattern.project_count * 2
            value += pattern.confidence * 5
            value -= _years_between(pattern.last_seen, now)
            return value

        return sorted(patterns, key=score, reverse=True)

    def get_pattern_diff(self, project_a: str, project_b: str) -> Dict[str, List[GlobalPattern]]:
        """
        Compare two projects' patterns by signature.

        Returns:
            Dict with only_a, only_b and shared (patterns taken from project A)
        """
        by_sig_a = self._signatures_for(project_a)
        by_sig_b = self._signatures_for(project_b)
        return {
            "only_a": [p for sig, p in by_sig_a.items() if sig not in by_sig_b],
            "only_b": [p for sig, p in by_sig_b.items() if sig not in by_sig_a],
            "shared": [p for sig, p in by_sig_a.items() if sig in by_sig_b],
        }

    def _signatures_for(self, project_id: str) -> "OrderedDict[str, GlobalPattern]":
        patterns = self.global_store.get_global_patterns(
            project_id=project_id, active_only=False, limit=self.config.page_size
        )
        result: "OrderedDict[str, GlobalPattern]" = OrderedDict()
        for pattern in patterns:
            result.setdefault(self.generate_signature(pattern), pattern)
        return result


def _years_between(then: Optional[datetime], now: datetime) -> float:
    if then is None:
        return 0.0
    return max(0.0, (now - then).total_seconds()) / _SECONDS_PER_YEAR
