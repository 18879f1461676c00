"""
Similarity Scorer — weighted multi-feature comparison of two popups.

Pure and stateless. Features missing on either side are excluded from both
the matched weight and the total weight, so the score is renormalized over
what both vectors actually carry.
"""

from typing import Dict, Optional

from popguard.models.characteristics import BOOLEAN_FEATURES, Characteristics, Dimensions


FEATURE_WEIGHTS: Dict[str, float] = {
    "has_close_button": 0.15,
    "contains_ads": 0.25,
    "has_external_links": 0.20,
    "is_modal": 0.15,
    "z_index": 0.10,
    "dimensions": 0.15,
}

# z-index drift tolerated before the feature stops contributing
Z_INDEX_TOLERANCE = 100
Z_INDEX_SCALE = 1000.0


def similarity(a: Characteristics, b: Characteristics) -> float:
    """
    Score how alike two characteristic vectors are, in [0, 1].

    Symmetric, and reflexive: any vector scores 1.0 against itself, including
    an empty one.
    """
    total_weight = 0.0
    matched_weight = 0.0

    for name in BOOLEAN_FEATURES:
        left = getattr(a, name)
        right = getattr(b, name)
        if left is None or right is None:
            continue
        weight = FEATURE_WEIGHTS[name]
        total_weight += weight
        if left == right:
            matched_weight += weight

    if a.z_index is not None and b.z_index is not None:
        weight = FEATURE_WEIGHTS["z_index"]
        total_weight += weight
        matched_weight += weight * z_index_similarity(a.z_index, b.z_index)

    if a.dimensions is not None and b.dimensions is not None:
        weight = FEATURE_WEIGHTS["dimensions"]
        total_weight += weight
        matched_weight += weight * dimensions_similarity(a.dimensions, b.dimensions)

    if total_weight <= 0:
        return 1.0 if a == b else 0.0

    return _clamp(matched_weight / total_weight)


def z_index_similarity(left: int, right: int) -> float:
    """Small stacking-order drift is tolerated, large drift is not."""
    delta = abs(left - right)
    if delta > Z_INDEX_TOLERANCE:
        return 0.0
    return max(0.0, 1.0 - delta / Z_INDEX_SCALE)


def axis_similarity(left: Optional[int], right: Optional[int]) -> float:
    if left is None or right is None:
        return 0.0
    largest = max(left, right)
    if largest == 0:
        return 1.0
    return max(0.0, 1.0 - abs(left - right) / largest)


def dimensions_similarity(left: Dimensions, right: Dimensions) -> float:
    """Average of width and height similarity."""
    return (
        axis_similarity(left.width, right.width)
        + axis_similarity(left.height, right.height)
    ) / 2.0


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, value))
