import math
from datetime import timedelta

import pytest

from code_nexus.config import AggregationConfig
from code_nexus.core.models import GlobalPattern, GlobalProject, PatternOccurrence, new_id, utcnow
from code_nexus.errors import AggregationError
from code_nexus.patterns.aggregator import PatternAggregator
from code_nexus.patterns.similarity import (
    bigram_dice,
    bigram_jaccard,
    consensus_score,
    structure_similarity,
    value_similarity,
)

CAMEL = {"category": "naming", "convention": "camelCase", "language": "ts"}


def global_pattern(project_id: str, data=None, confidence: float = 0.6, local_id: str = "p1", **kwargs) -> GlobalPattern:
    return GlobalPattern(
        id=new_id(),
        category=kwargs.pop("category", "naming"),
        language=kwargs.pop("language", "ts"),
        pattern_data=dict(data if data is not None else CAMEL),
        confidence=confidence,
        source_projects=[project_id],
        source_project_id=project_id,
        local_pattern_id=local_id,
        **kwargs,
    )


def seed(global_store, *patterns):
    for pattern in patterns:
        if global_store.get_project(pattern.source_project_id) is None:
            global_store.add_project(GlobalProject(
                id=pattern.source_project_id,
                name=pattern.source_project_id,
                path=f"/work/{pattern.source_project_id}",
            ))
        global_store.upsert_global_pattern(pattern)


@pytest.fixture
def aggregator(global_store) -> PatternAggregator:
    return PatternAggregator(global_store)


# =============================================================================
# Signatures and scoring
# =============================================================================

def test_signature_ignores_key_order():
    a = global_pattern("p1", {"convention": "camelCase", "category": "function", "language": "ts"})
    b = global_pattern("p2", {"language": "ts", "category": "function", "convention": "camelCase"})

    assert PatternAggregator.generate_signature(a) == PatternAggregator.generate_signature(b)


def test_signature_format():
    pattern = global_pattern("p1", {"convention": "camelCase", "category": "function"}, language=None)

    assert PatternAggregator.generate_signature(pattern) == (
        "category:naming|convention:camelCase|language:any|patternCategory:function|subcategory:"
    )


def test_signature_separates_different_conventions():
    camel = global_pattern("p1", {"convention": "camelCase"})
    snake = global_pattern("p2", {"convention": "snake_case"})

    assert PatternAggregator.generate_signature(camel) != PatternAggregator.generate_signature(snake)


def test_aggregated_confidence_boosts_by_project_count():
    occurrences = [
        PatternOccurrence(project_id="a", frequency=1, confidence=0.6),
        PatternOccurrence(project_id="b", frequency=1, confidence=0.8),
    ]

    confidence = PatternAggregator.calculate_aggregated_confidence(occurrences)

    assert confidence == pytest.approx(0.7 * (1 + math.log10(3) * 0.2))
    assert confidence > 0.7


def test_aggregated_confidence_is_capped_and_empty_is_zero():
    occurrences = [PatternOccurrence(project_id=str(i), frequency=1, confidence=1.0) for i in range(5)]

    assert PatternAggregator.calculate_aggregated_confidence(occurrences) == 1.0
    assert PatternAggregator.calculate_aggregated_confidence([]) == 0.0


def test_consensus_is_one_for_single_or_identical_patterns():
    lone = [global_pattern("p1")]
    twins = [global_pattern("p1"), global_pattern("p2")]

    assert PatternAggregator.calculate_consensus_score(lone) == 1.0
    assert PatternAggregator.calculate_consensus_score(twins) == pytest.approx(1.0)


@pytest.mark.parametrize("datas", [
    [{"a": 1}, {"b": "x"}],
    [{"convention": "camelCase"}, {"convention": "snake_case", "extra": True}],
    [{"n": 1}, {"n": 1000}, {"n": -5}],
    [{}, {"a": [1, 2]}],
])
def test_consensus_stays_within_bounds(datas):
    assert 0.0 <= consensus_score(datas) <= 1.0


def test_value_and_structure_similarity():
    assert value_similarity("abc", "abc") == 1.0
    assert value_similarity(10, 5) == pytest.approx(0.5)
    assert value_similarity(True, 1) == 0.0
    assert value_similarity([1], [2]) == 0.0
    assert structure_similarity({}, {}) == 1.0
    assert structure_similarity({"a": 1}, {"b": 1}) == 0.0
    assert bigram_jaccard("night", "nacht") == pytest.approx(1 / 7)
    assert bigram_dice("user", "user") == 1.0


# =============================================================================
# Aggregation runs
# =============================================================================

def test_two_projects_sharing_a_pattern_form_one_group(aggregator, global_store):
    seed(
        global_store,
        global_pattern("alpha", confidence=0.6),
        global_pattern("beta", dict(reversed(list(CAMEL.items()))), confidence=0.8),
    )

    assert aggregator.aggregate_patterns() == 1

    [aggregation] = global_store.get_aggregations()
    assert aggregation.project_count == 2
    assert aggregation.aggregated_confidence > 0.7
    assert aggregation.aggregated_confidence == pytest.approx(0.7 * (1 + math.log10(3) * 0.2))
    assert aggregation.consensus_score == pytest.approx(1.0)


def test_rerun_keeps_identity_and_drops_stale_groups(aggregator, global_store):
    seed(global_store, global_pattern("alpha"), global_pattern("beta", {"convention": "snake_case"}, local_id="p2"))
    aggregator.aggregate_patterns()
    camel_sig = aggregator.generate_signature(global_pattern("x"))
    first = global_store.get_aggregation(camel_sig)

    with global_store._transaction("test") as db:
        db.execute("DELETE FROM global_patterns WHERE source_project_id = 'beta'")
    assert aggregator.aggregate_patterns() == 1

    again = global_store.get_aggregation(camel_sig)
    assert again.id == first.id
    assert again.created_at == first.created_at
    assert len(global_store.get_aggregations()) == 1


def test_store_failure_surfaces_as_aggregation_error(aggregator, global_store, monkeypatch):
    def broken(**kwargs):
        raise RuntimeError("db gone")

    monkeypatch.setattr(global_store, "get_global_patterns", broken)

    with pytest.raises(AggregationError):
        aggregator.aggregate_patterns()


# =============================================================================
# Merging, ranking, diffing
# =============================================================================

def test_merge_unions_sources_and_sums_frequency(aggregator):
    a = global_pattern("alpha", confidence=0.6, total_frequency=3)
    b = global_pattern("beta", confidence=0.8, total_frequency=4)

    merged = aggregator.merge_patterns([a, b])

    assert merged.source_projects == ["alpha", "beta"]
    assert merged.project_count == 2
    assert merged.total_frequency == 7
    assert merged.confidence > 0.7


def test_merge_edge_cases(aggregator):
    lone = global_pattern("alpha")

    assert aggregator.merge_patterns([lone]) is lone
    with pytest.raises(ValueError):
        aggregator.merge_patterns([])


def test_rank_prefers_language_then_reach_then_recency(aggregator):
    now = utcnow()
    python = global_pattern("a", language="python", project_count=1, confidence=0.5, last_seen=now)
    wide = global_pattern("b", project_count=4, confidence=0.5, last_seen=now)
    stale = global_pattern("c", project_count=4, confidence=0.5, last_seen=now - timedelta(days=3 * 365))

    ranked = aggregator.rank_patterns_by_relevance([stale, wide, python], {"language": "python"})

    assert ranked == [python, wide, stale]


def test_rank_keeps_input_order_for_ties(aggregator):
    now = utcnow()
    first = global_pattern("a", last_seen=now)
    second = global_pattern("b", last_seen=now)

    assert aggregator.rank_patterns_by_relevance([first, second]) == [first, second]


def test_pattern_diff_by_signature(aggregator, global_store):
    seed(
        global_store,
        global_pattern("alpha", local_id="shared"),
        global_pattern("alpha", {"convention": "PascalCase"}, local_id="only-a"),
        global_pattern("beta", local_id="shared"),
        global_pattern("beta", {"convention": "snake_case"}, local_id="only-b"),
    )

    diff = aggregator.get_pattern_diff("alpha", "beta")

    assert [p.pattern_data["convention"] for p in diff["only_a"]] == ["PascalCase"]
    assert [p.pattern_data["convention"] for p in diff["only_b"]] == ["snake_case"]
    assert [p.source_project_id for p in diff["shared"]] == ["alpha"]


def test_pattern_diff_reads_each_project_in_full(global_store):
    aggregator = PatternAggregator(global_store, AggregationConfig(page_size=2))
    seed(
        global_store,
        global_pattern("alpha", local_id="shared", confidence=0.9),
        global_pattern("alpha", {"convention": "PascalCase"}, local_id="only-a", confidence=0.9),
        global_pattern("beta", local_id="shared", confidence=0.2),
        global_pattern("beta", {"convention": "snake_case"}, local_id="only-b", confidence=0.2),
    )

    diff = aggregator.get_pattern_diff("alpha", "beta")

    assert [p.pattern_data["convention"] for p in diff["only_b"]] == ["snake_case"]
    assert len(diff["shared"]) == 1


def test_inactive_projects_are_left_out_of_aggregation(aggregator, global_store):
    seed(global_store, global_pattern("alpha", confidence=0.6), global_pattern("beta", confidence=0.8))
    global_store.update_project_details("beta", is_active=False)

    aggregator.aggregate_patterns()

    [aggregation] = global_store.get_aggregations()
    assert aggregation.project_count == 1
    assert aggregation.aggregated_confidence == pytest.approx(0.6 * (1 + math.log10(2) * 0.2))
