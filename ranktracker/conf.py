"""
Pipeline configuration.

Every tunable of the rank tracking pipeline lives in the ``RANKTRACKER``
settings dict.  Anything not set there falls back to ``DEFAULTS``.
"""

from django.conf import settings

DEFAULTS = {
    # SERP depth.  Positions beyond this are "not ranking".
    "TRACKED_DEPTH": 50,
    # Ranking metrics (see ranktracker.metrics)
    "CONVERSION_RATE": 0.3,
    "CTR_DECAY_K": 9.3,
    "CTR_DECAY_C": 0.0,
    "CTR_DECAY_P": 3.0,
    "TREND_THRESHOLD": 3,
    # Outbound budget per surface, requests per minute
    "RATE_LIMITS": {"ios": 20, "android": 30},
    "REQUEST_TIMEOUT_SECONDS": 30,
    # Refresh scheduler
    "WORKER_COUNT": 5,
    "MAX_RETRIES": 3,
    "BACKOFF_BASE_SECONDS": 60,
    "BACKOFF_JITTER_SECONDS": 5,
    "CYCLE_WINDOW_SECONDS": 6 * 3600,
    "CYCLE_CHECK_INTERVAL_SECONDS": 3600,
    "STARTUP_DELAY_SECONDS": 30,
    "DAILY_PRIORITY": 50,
    "MANUAL_PRIORITY": 100,
    "STALE_JOB_SECONDS": 900,
    "JOB_RETENTION_DAYS": 7,
    # Circuit breaker: consecutive surface failures before pausing, and for how long
    "BREAKER_FAILURE_THRESHOLD": 3,
    "BREAKER_COOLDOWN_SECONDS": 300,
    "AUTOSTART": True,
    # Snapshots
    "COMPETITOR_DEPTH": 10,
    "STALE_AFTER_HOURS": 24,
    # Discovery
    "DISCOVERY_MAX_CANDIDATES": 30,
    # Finished background discovery tasks kept for polling
    "DISCOVERY_TASK_TTL_SECONDS": 3600,
    "DISCOVERY_TASK_LIMIT": 100,
}


def get_config() -> dict:
    """Return DEFAULTS overlaid with the project's RANKTRACKER settings."""
    overrides = getattr(settings, "RANKTRACKER", {}) or {}
    config = dict(DEFAULTS)
    config.update(overrides)
    return config
