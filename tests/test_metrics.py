"""
Tests for ranking metrics: visibility, CTR, traffic and trend.
"""

import pytest

from ranktracker import metrics
from ranktracker.metrics import (
    DEMAND_WEIGHTS,
    classify_trend,
    compute_metrics,
    ctr,
    estimated_traffic,
    position_change,
    visibility_score,
)


class TestVisibilityScore:

    @pytest.mark.parametrize("tier", list(DEMAND_WEIGHTS))
    def test_strictly_decreasing_in_position(self, tier):
        scores = [visibility_score(p, tier) for p in range(1, 51)]
        assert all(a > b for a, b in zip(scores, scores[1:]))

    def test_increasing_in_demand_tier(self):
        tiers = ["low", "medium", "high", "very_high"]
        scores = [visibility_score(5, tier) for tier in tiers]
        assert all(a < b for a, b in zip(scores, scores[1:]))

    @pytest.mark.parametrize("tier", list(DEMAND_WEIGHTS))
    def test_null_position_is_zero(self, tier):
        assert visibility_score(None, tier) == 0

    def test_beyond_depth_is_zero(self):
        assert visibility_score(51, "high") == 0
        assert visibility_score(11, "high", depth=10) == 0

    def test_formula(self):
        # (50 + 1 - 1) * 50 / 50
        assert visibility_score(1, "high") == 50
        # (50 + 1 - 50) * 100 / 50
        assert visibility_score(50, "very_high") == 2

    def test_unknown_tier_rejected(self):
        with pytest.raises(ValueError):
            visibility_score(3, "huge")


class TestCtr:

    def test_table_for_first_screen(self):
        assert ctr(1) == 0.30
        assert ctr(10) == 0.010

    def test_decay_beyond_table(self):
        assert ctr(11) == pytest.approx(9.3 / 11 ** 3)

    def test_monotonically_decreasing(self):
        rates = [ctr(p) for p in range(1, 51)]
        assert all(a > b for a, b in zip(rates, rates[1:]))

    def test_outside_depth(self):
        assert ctr(None) == 0
        assert ctr(51) == 0


class TestEstimatedTraffic:

    def test_null_position_is_zero(self):
        assert estimated_traffic(None, 5000) == 0

    def test_formula(self):
        # 1000 searches * 0.30 ctr * 0.3 conversion
        assert estimated_traffic(1, 1000) == 90

    def test_zero_demand(self):
        assert estimated_traffic(1, 0) == 0

    def test_custom_conversion_rate(self):
        assert estimated_traffic(1, 1000, conversion_rate=0.5) == 150


class TestTrend:

    def test_new(self):
        assert classify_trend(5, None) == "new"

    def test_lost(self):
        assert classify_trend(None, 5) == "lost"

    def test_neither(self):
        assert classify_trend(None, None) == "stable"

    def test_rising(self):
        assert classify_trend(3, 10) == "rising"

    def test_small_change_is_stable(self):
        assert classify_trend(10, 12) == "stable"

    def test_falling(self):
        assert classify_trend(15, 10) == "falling"

    def test_threshold_is_inclusive(self):
        assert classify_trend(7, 10) == "rising"
        assert classify_trend(10, 7) == "falling"

    def test_custom_threshold(self):
        assert classify_trend(10, 12, threshold=2) == "rising"


class TestPositionChange:

    def test_moved_up(self):
        assert position_change(3, 10) == 7

    def test_missing_side(self):
        assert position_change(None, 10) is None
        assert position_change(3, None) is None


class TestComputeMetrics:

    def test_uses_configured_constants(self, settings):
        settings.RANKTRACKER = {"CONVERSION_RATE": 1.0, "TREND_THRESHOLD": 1}
        result = compute_metrics(1, 2, "high", 1000)
        assert result["estimated_traffic"] == 300
        assert result["trend"] == "rising"
        assert result["position_change"] == 1

    def test_position_beyond_depth_counts_as_absent(self):
        result = compute_metrics(60, 20, "high", 1000)
        assert result["visibility_score"] == 0
        assert result["estimated_traffic"] == 0
        assert result["trend"] == "lost"

    def test_named_constants_exposed(self):
        assert metrics.CONVERSION_RATE == 0.3
        assert metrics.TRACKED_DEPTH == 50
