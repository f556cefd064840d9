"""
Tests for demand estimation from SERP composition.
"""

import pytest

from ranktracker.estimators import VolumeEstimator, estimate_demand_tier

from .helpers import FITNESS_TOP10_RATINGS, make_serp


@pytest.fixture
def estimator():
    return VolumeEstimator()


class TestVolumeEstimator:

    def test_popular_serp_is_high_demand(self, estimator):
        estimate = estimator.estimate(make_serp())
        assert estimate.tier == "high"
        assert 60 <= estimate.popularity < 80
        assert estimate.daily_searches > 0
        assert estimate.signals["heavyweights"] == 4

    def test_deterministic(self, estimator):
        serp = make_serp()
        assert estimator.estimate(serp) == estimator.estimate(serp)

    def test_empty_serp(self, estimator):
        estimate = estimator.estimate([], "anything")
        assert estimate.tier == "low"
        assert estimate.popularity == 0
        assert estimate.daily_searches == 0

    def test_weak_serp_is_low_demand(self, estimator):
        serp = make_serp(total=8, ratings=[40, 12, 9, 5, 3, 2, 1, 0])
        assert estimator.estimate(serp).tier == "low"

    def test_longer_query_scores_lower(self, estimator):
        short = estimator.estimate(make_serp(keyword="fitness"))
        long = estimator.estimate(make_serp(keyword="fitness tracker for older runners"))
        assert long.popularity < short.popularity

    def test_more_heavyweights_score_higher(self, estimator):
        few = estimator.estimate(make_serp(ratings=[1_200_000] + [5_000] * 9))
        many = estimator.estimate(make_serp(ratings=[1_200_000] * 5 + [5_000] * 5))
        assert many.popularity > few.popularity

    def test_very_high_tier(self, estimator):
        serp = make_serp(keyword="games", ratings=[2_000_000] * 10)
        estimate = estimator.estimate(serp)
        assert estimate.tier == "very_high"
        assert estimate.popularity >= 80

    def test_accepts_item_dicts(self, estimator):
        items = [{"rating_count": c} for c in FITNESS_TOP10_RATINGS]
        estimate = estimator.estimate(items, "fitness tracker", total_results=50)
        assert estimate.tier == "high"

    def test_score_clamped(self, estimator):
        serp = make_serp(keyword="a b c d e f g", total=1, ratings=[0])
        assert estimator.estimate(serp).popularity == 5


class TestDailySearches:

    def test_interpolates(self, estimator):
        assert estimator.daily_searches(50) == 300
        assert estimator.daily_searches(52.5) == pytest.approx(390)

    def test_bounds(self, estimator):
        assert estimator.daily_searches(0) == 0
        assert estimator.daily_searches(100) == 25_000


def test_estimate_demand_tier_shortcut():
    assert estimate_demand_tier(make_serp()) == "high"
