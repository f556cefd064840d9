"""
Ranking metrics: visibility, estimated traffic and trend.

Pure functions, no I/O.  Every coefficient is a named constant; the
``*_from_config`` helpers read overrides from the RANKTRACKER settings.
"""

from .conf import get_config

TRACKED_DEPTH = 50
CONVERSION_RATE = 0.3
TREND_THRESHOLD = 3

# Demand tier -> visibility weight.
DEMAND_WEIGHTS = {
    "low": 10,
    "medium": 25,
    "high": 50,
    "very_high": 100,
}

# Position -> tap-through rate for the first screen of results.
# Drops sharply after position 1, then decays more gradually.
CTR_TABLE = {
    1: 0.30,
    2: 0.15,
    3: 0.10,
    4: 0.07,
    5: 0.05,
    6: 0.035,
    7: 0.025,
    8: 0.018,
    9: 0.013,
    10: 0.010,
}

# Beyond the table: k / (position - c) ** p
CTR_DECAY_K = 9.3
CTR_DECAY_C = 0.0
CTR_DECAY_P = 3.0

TREND_NEW = "new"
TREND_LOST = "lost"
TREND_RISING = "rising"
TREND_FALLING = "falling"
TREND_STABLE = "stable"


def demand_weight(demand_tier: str) -> int:
    try:
        return DEMAND_WEIGHTS[demand_tier]
    except KeyError:
        raise ValueError(f"Unknown demand tier: {demand_tier!r}") from None


def _is_ranked(position, depth: int) -> bool:
    return position is not None and 1 <= position <= depth


def visibility_score(position: int | None, demand_tier: str, depth: int = TRACKED_DEPTH) -> float:
    """
    0 when unranked, otherwise ``(depth + 1 - position) * weight / depth``.

    Strictly decreasing in position and increasing in demand tier.
    """
    weight = demand_weight(demand_tier)
    if not _is_ranked(position, depth):
        return 0.0
    return round((depth + 1 - position) * weight / depth, 4)


def ctr(position: int | None, depth: int = TRACKED_DEPTH,
        k: float = CTR_DECAY_K, c: float = CTR_DECAY_C, p: float = CTR_DECAY_P) -> float:
    """Estimated click-through rate for a result at ``position``."""
    if not _is_ranked(position, depth):
        return 0.0
    if position in CTR_TABLE:
        return CTR_TABLE[position]
    return k / (position - c) ** p


def estimated_traffic(position: int | None, demand_weight: float,
                      conversion_rate: float = CONVERSION_RATE,
                      depth: int = TRACKED_DEPTH, **ctr_params) -> int:
    """
    Estimated daily installs from organic search at ``position``.

    ``demand_weight`` is the numeric demand estimate (estimated daily
    searches for the keyword).
    """
    if position is None or not demand_weight:
        return 0
    return round(demand_weight * ctr(position, depth, **ctr_params) * conversion_rate)


def position_change(current: int | None, previous: int | None) -> int | None:
    """Positive when the app moved up."""
    if current is None or previous is None:
        return None
    return previous - current


def classify_trend(current: int | None, previous: int | None,
                   threshold: int = TREND_THRESHOLD) -> str:
    if previous is None:
        return TREND_NEW if current is not None else TREND_STABLE
    if current is None:
        return TREND_LOST
    change = previous - current
    if change >= threshold:
        return TREND_RISING
    if change <= -threshold:
        return TREND_FALLING
    return TREND_STABLE


# --------------------------------------------------------------------------- #
# Configured variants
# --------------------------------------------------------------------------- #


def ctr_params_from_config(config: dict | None = None) -> dict:
    config = config or get_config()
    return {
        "k": config["CTR_DECAY_K"],
        "c": config["CTR_DECAY_C"],
        "p": config["CTR_DECAY_P"],
    }


def compute_metrics(position: int | None, previous_position: int | None,
                    demand_tier: str, daily_searches: float,
                    config: dict | None = None) -> dict:
    """All derived snapshot metrics for one observation, using configured constants."""
    config = config or get_config()
    depth = config["TRACKED_DEPTH"]
    if position is not None and position > depth:
        position = None
    return {
        "visibility_score": visibility_score(position, demand_tier, depth),
        "estimated_traffic": estimated_traffic(
            position,
            daily_searches,
            conversion_rate=config["CONVERSION_RATE"],
            depth=depth,
            **ctr_params_from_config(config),
        ),
        "position_change": position_change(position, previous_position),
        "trend": classify_trend(position, previous_position, config["TREND_THRESHOLD"]),
    }
