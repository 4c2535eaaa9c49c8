#!/usr/bin/env python3
"""
Name similarity between normalized source columns and target columns.

Underscores are ignored when comparing, so ``first_name`` and
``firstname`` are identical. Exact match scores 1.0, containment in
either direction scores 0.8, anything else falls back to normalized
Levenshtein similarity.
"""

EXACT_MATCH_SCORE = 1.0
CONTAINMENT_SCORE = 0.8


def _compact(name: str) -> str:
    return (name or "").replace("_", "").lower()


def levenshtein_distance(s1: str, s2: str) -> int:
    """Calculate Levenshtein distance between two strings."""
    if len(s1) < len(s2):
        s1, s2 = s2, s1

    if not s2:
        return len(s1)

    previous_row = list(range(len(s2) + 1))
    for i, c1 in enumerate(s1):
        current_row = [i + 1]
        for j, c2 in enumerate(s2):
            insertions = previous_row[j + 1] + 1
            deletions = current_row[j] + 1
            substitutions = previous_row[j] + (c1 != c2)
            current_row.append(min(insertions, deletions, substitutions))
        previous_row = current_row

    return previous_row[-1]


def levenshtein_similarity(s1: str, s2: str) -> float:
    """Levenshtein distance scaled to 0.0-1.0 by the longer string's length."""
    if not s1 or not s2:
        return 0.0
    return 1.0 - levenshtein_distance(s1, s2) / max(len(s1), len(s2))


def name_similarity(source_name: str, target_name: str) -> float:
    """
    Similarity of two column names in [0, 1].

    Names with no characters left after dropping underscores carry no
    signal and score 0.0.
    """
    left, right = _compact(source_name), _compact(target_name)
    if not left or not right:
        return 0.0
    if left == right:
        return EXACT_MATCH_SCORE
    if left in right or right in left:
        return CONTAINMENT_SCORE
    return levenshtein_similarity(left, right)
