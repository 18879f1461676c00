"""Tests for the similarity scorer."""

import pytest

from popguard.models.characteristics import Characteristics, Dimensions
from popguard.similarity.scorer import (
    axis_similarity,
    dimensions_similarity,
    similarity,
    z_index_similarity,
)


def _make_ad_popup(**overrides) -> Characteristics:
    data = dict(
        has_close_button=True,
        contains_ads=True,
        has_external_links=True,
        is_modal=True,
        z_index=9999,
        dimensions=Dimensions(width=400, height=300),
    )
    data.update(overrides)
    return Characteristics(**data)


class TestSimilarity:
    def test_identical_vectors_score_one(self):
        a = _make_ad_popup()
        assert similarity(a, a) == 1.0
        assert similarity(a, _make_ad_popup()) == 1.0

    def test_empty_vector_is_reflexive(self):
        assert similarity(Characteristics(), Characteristics()) == 1.0

    def test_nothing_comparable_scores_zero(self):
        a = Characteristics(contains_ads=True)
        b = Characteristics(is_modal=False)
        assert similarity(a, b) == 0.0

    def test_symmetric(self):
        a = _make_ad_popup()
        b = _make_ad_popup(contains_ads=False, z_index=9950,
                           dimensions=Dimensions(width=300, height=300))
        assert similarity(a, b) == pytest.approx(similarity(b, a))

    def test_always_in_unit_interval(self):
        a = _make_ad_popup()
        b = Characteristics(
            has_close_button=False, contains_ads=False,
            has_external_links=False, is_modal=False,
            z_index=1, dimensions=Dimensions(width=0, height=0),
        )
        score = similarity(a, b)
        assert 0.0 <= score <= 1.0
        assert score == 0.0

    def test_missing_features_are_renormalized(self):
        # Only close button and ads are comparable; one of them differs
        a = Characteristics(has_close_button=True, contains_ads=True)
        b = _make_ad_popup(contains_ads=False)
        assert similarity(a, b) == pytest.approx(0.15 / 0.40)

    def test_large_z_index_drift_counts_against_match(self):
        a = Characteristics(has_close_button=True, contains_ads=True, z_index=1000)
        b = Characteristics(has_close_button=True, contains_ads=True, z_index=1499)
        assert similarity(a, b) == pytest.approx(0.40 / 0.50)

    def test_small_z_index_drift_is_tolerated(self):
        a = Characteristics(has_close_button=True, contains_ads=True, z_index=1000)
        b = Characteristics(has_close_button=True, contains_ads=True, z_index=1050)
        assert similarity(a, b) == pytest.approx((0.40 + 0.10 * 0.95) / 0.50)


class TestFeatureScores:
    def test_z_index_tolerance(self):
        assert z_index_similarity(500, 500) == 1.0
        assert z_index_similarity(500, 600) == pytest.approx(0.9)
        assert z_index_similarity(500, 601) == 0.0

    def test_axis_similarity(self):
        assert axis_similarity(0, 0) == 1.0
        assert axis_similarity(200, 400) == pytest.approx(0.5)
        assert axis_similarity(None, 400) == 0.0

    def test_dimensions_average_both_axes(self):
        left = Dimensions(width=400, height=300)
        right = Dimensions(width=200, height=300)
        assert dimensions_similarity(left, right) == pytest.approx(0.75)
