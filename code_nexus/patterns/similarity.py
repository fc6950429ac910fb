"""
Similarity measures for pattern data.

Used by the aggregator's consensus score and by cross-project search.
All scores are in [0, 1].
"""

from itertools import combinations
from typing import Any, Dict, List, Sequence, Set

import numpy as np


def bigrams(text: str) -> Set[str]:
    """Lowercased character bigrams of a string."""
    text = text.lower()
    return {text[i:i + 2] for i in range(len(text) - 1)}


def bigram_jaccard(a: str, b: str) -> float:
    """
    Jaccard similarity of character bigram sets.

    Two strings too short to have bigrams compare equal; one such string
    against a longer one scores 0.
    """
    grams_a, grams_b = bigrams(a), bigrams(b)
    if not grams_a and not grams_b:
        return 1.0 if a.lower() == b.lower() else 0.0
    if not grams_a or not grams_b:
        return 0.0
    return len(grams_a & grams_b) / len(grams_a | grams_b)


def bigram_dice(a: str, b: str) -> float:
    """Sorensen-Dice coefficient over character bigram sets."""
    grams_a, grams_b = bigrams(a), bigrams(b)
    if not grams_a and not grams_b:
        return 1.0 if a.lower() == b.lower() else 0.0
    if not grams_a or not grams_b:
        return 0.0
    return 2 * len(grams_a & grams_b) / (len(grams_a) + len(grams_b))


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def value_similarity(a: Any, b: Any) -> float:
    """Equal values score 1; strings by bigram Jaccard; numbers by relative distance."""
    if a == b and type(a) is type(b):
        return 1.0
    if isinstance(a, str) and isinstance(b, str):
        return bigram_jaccard(a, b)
    if _is_number(a) and _is_number(b):
        return max(0.0, 1.0 - abs(a - b) / max(abs(a), abs(b), 1))
    return 0.0


def structure_similarity(a: Dict[str, Any], b: Dict[str, Any]) -> float:
    """
    Similarity of two pattern-data maps.

    Mean of the key overlap (Dice over key sets) and the mean value
    similarity across shared keys.
    """
    if not a and not b:
        return 1.0

    keys_a, keys_b = set(a), set(b)
    shared = keys_a & keys_b
    key_overlap = 2 * len(shared) / (len(keys_a) + len(keys_b))

    if shared:
        value_score = float(np.mean([value_similarity(a[k], b[k]) for k in shared]))
    else:
        value_score = 0.0

    return (key_overlap + value_score) / 2


def consensus_score(datas: Sequence[Dict[str, Any]]) -> float:
    """Mean pairwise structure similarity; a lone pattern is fully consistent."""
    if len(datas) <= 1:
        return 1.0
    scores: List[float] = [structure_similarity(a, b) for a, b in combinations(datas, 2)]
    return float(np.clip(np.mean(scores), 0.0, 1.0))


def dice_overlap(a: Sequence[Any], b: Sequence[Any]) -> float:
    """2|A∩B| / (|A|+|B|) over two collections; 0 when both are empty."""
    set_a, set_b = set(a), set(b)
    if not set_a and not set_b:
        return 0.0
    return 2 * len(set_a & set_b) / (len(set_a) + len(set_b))
