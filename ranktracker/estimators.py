"""
Search demand estimation from SERP composition.

No storefront publishes search volume, so demand is inferred from who
ranks: keywords with heavy search traffic attract strong apps.  The result
is a heuristic, deterministic for a given SERP.
"""

import math
from dataclasses import dataclass, field

TIER_LOW = "low"
TIER_MEDIUM = "medium"
TIER_HIGH = "high"
TIER_VERY_HIGH = "very_high"

# (minimum popularity, tier), checked top-down
TIER_THRESHOLDS = [
    (80, TIER_VERY_HIGH),
    (60, TIER_HIGH),
    (40, TIER_MEDIUM),
    (0, TIER_LOW),
]


@dataclass
class DemandEstimate:
    tier: str
    popularity: int
    daily_searches: int
    signals: dict = field(default_factory=dict)


def _log_band_score(value: float, bands: list[tuple[float, float]]) -> float:
    """
    Smooth log interpolation across (threshold, score) bands.

    Below the first threshold the score scales linearly; at or above the
    last threshold it is the last band's score.
    """
    if value <= 0:
        return 0.0
    for i, (threshold, score) in enumerate(bands):
        if value < threshold:
            if i == 0:
                return (value / threshold) * score
            prev_t, prev_s = bands[i - 1]
            ratio = math.log(value / prev_t) / math.log(threshold / prev_t)
            return prev_s + ratio * (score - prev_s)
    return float(bands[-1][1])


def _median(values: list[float]) -> float:
    if not values:
        return 0
    ordered = sorted(values)
    n = len(ordered)
    if n % 2 == 1:
        return ordered[n // 2]
    return (ordered[n // 2 - 1] + ordered[n // 2]) / 2


def _rating_count(item) -> int:
    if isinstance(item, dict):
        return int(item.get("rating_count") or 0)
    return int(getattr(item, "rating_count", 0) or 0)


class VolumeEstimator:
    """
    Estimates relative search demand for a keyword.

    Score range: 5–100 (0 when the SERP is empty).

    Signals:
      1. Result count (0–25 pts): more results = broader topic
      2. Leader strength (0–30 pts): the top-10's biggest rating count
      3. Heavyweights (0–20 pts): how many top-10 apps have very large
         rating counts
      4. Market depth (0–10 pts): median rating count across the top 10
      5. Keyword specificity (0 to -28 pts): longer queries are searched less
    """

    RESULT_POINTS_PER_ITEM = 0.5
    RESULT_MAX = 25

    TOP_N = 10

    LEADER_BANDS = [
        (10, 1),
        (100, 5),
        (1_000, 10),
        (10_000, 17),
        (100_000, 24),
        (1_000_000, 30),
    ]

    HEAVYWEIGHT_RATINGS = 100_000
    HEAVYWEIGHT_POINTS = 4
    HEAVYWEIGHT_MAX = 20

    DEPTH_BANDS = [
        (10, 0.5),
        (100, 3),
        (1_000, 5),
        (10_000, 8),
        (50_000, 10),
    ]

    # Calibration: word count -> penalty
    SPECIFICITY_POINTS = [(1, 0), (2, -3), (3, -8), (4, -15), (5, -22), (6, -28)]

    MIN_SCORE = 5
    MAX_SCORE = 100

    # Popularity score -> estimated daily searches.
    # Piecewise-linear; conservative, cross-checked against observed
    # downloads at known ranks.
    POP_TO_SEARCHES = [
        (5, 1),
        (10, 2),
        (15, 5),
        (20, 10),
        (25, 20),
        (30, 35),
        (35, 60),
        (40, 100),
        (45, 170),
        (50, 300),
        (55, 480),
        (60, 700),
        (65, 1_000),
        (70, 1_500),
        (75, 2_500),
        (80, 4_000),
        (85, 6_500),
        (90, 10_000),
        (95, 16_000),
        (100, 25_000),
    ]

    def _specificity_penalty(self, word_count: int) -> float:
        pts = self.SPECIFICITY_POINTS
        if word_count <= pts[0][0]:
            return pts[0][1]
        if word_count >= pts[-1][0]:
            return pts[-1][1]
        for i in range(len(pts) - 1):
            lo_w, lo_v = pts[i]
            hi_w, hi_v = pts[i + 1]
            if lo_w <= word_count <= hi_w:
                t = (word_count - lo_w) / (hi_w - lo_w)
                return lo_v + t * (hi_v - lo_v)
        return pts[-1][1]

    def daily_searches(self, popularity: int) -> float:
        """Interpolate daily search volume from popularity score."""
        if popularity is None or popularity <= 0:
            return 0
        pts = self.POP_TO_SEARCHES
        if popularity <= pts[0][0]:
            return pts[0][1] * (popularity / pts[0][0])
        if popularity >= pts[-1][0]:
            return pts[-1][1]
        for i in range(1, len(pts)):
            p0, s0 = pts[i - 1]
            p1, s1 = pts[i]
            if popularity <= p1:
                ratio = (popularity - p0) / (p1 - p0)
                return s0 + ratio * (s1 - s0)
        return pts[-1][1]

    @staticmethod
    def tier_for(popularity: int) -> str:
        for minimum, tier in TIER_THRESHOLDS:
            if popularity >= minimum:
                return tier
        return TIER_LOW

    def estimate(self, serp, keyword: str = "", total_results: int | None = None) -> DemandEstimate:
        """
        Estimate demand for ``keyword`` from its SERP.

        Args:
            serp: A SerpResult, or a list of SerpItem / item dicts in rank order.
            keyword: The search term (defaults to the SerpResult's keyword).
            total_results: Overrides the storefront's result count.
        """
        items = getattr(serp, "items", serp) or []
        keyword = keyword or getattr(serp, "keyword", "")
        if total_results is None:
            total_results = getattr(serp, "total_results", None) or len(items)

        if not items:
            return DemandEstimate(tier=TIER_LOW, popularity=0, daily_searches=0)

        top = [_rating_count(item) for item in items[: self.TOP_N]]
        words = keyword.lower().split()
        word_count = len(words) if words else 1

        result_score = min(self.RESULT_MAX, total_results * self.RESULT_POINTS_PER_ITEM)
        leader_score = _log_band_score(max(top), self.LEADER_BANDS)
        heavyweights = sum(1 for count in top if count >= self.HEAVYWEIGHT_RATINGS)
        heavyweight_score = min(self.HEAVYWEIGHT_MAX, heavyweights * self.HEAVYWEIGHT_POINTS)
        depth_score = _log_band_score(_median(top), self.DEPTH_BANDS)
        specificity_penalty = self._specificity_penalty(word_count)

        total = int(
            result_score
            + leader_score
            + heavyweight_score
            + depth_score
            + specificity_penalty
        )
        popularity = max(self.MIN_SCORE, min(self.MAX_SCORE, total))

        return DemandEstimate(
            tier=self.tier_for(popularity),
            popularity=popularity,
            daily_searches=round(self.daily_searches(popularity)),
            signals={
                "result_score": round(result_score, 2),
                "leader_score": round(leader_score, 2),
                "heavyweights": heavyweights,
                "heavyweight_score": heavyweight_score,
                "depth_score": round(depth_score, 2),
                "specificity_penalty": round(specificity_penalty, 2),
            },
        )


def estimate_demand_tier(serp, keyword: str = "") -> str:
    return VolumeEstimator().estimate(serp, keyword).tier
