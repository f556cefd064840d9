"""
Failure taxonomy for the rank tracking pipeline.

Each error knows whether it is transient (worth retrying with backoff) and
carries a short ``kind`` that is stored on the failed RefreshJob.
"""


class RankTrackingError(Exception):
    """Base class for every pipeline failure."""

    kind = "error"
    transient = True

    def __init__(self, message: str = "", surface: str | None = None):
        super().__init__(message)
        self.surface = surface


class RateLimited(RankTrackingError):
    """The storefront answered with a throttling signal (429/503)."""

    kind = "rate_limited"


class NetworkTimeout(RankTrackingError):
    kind = "network_timeout"


class NetworkUnreachable(RankTrackingError):
    kind = "network_unreachable"


class ParseFailure(RankTrackingError):
    """Every parser strategy came back empty.

    Kept transient: the storefront may have changed its markup, and the
    next attempt may land on a different edge.
    """

    kind = "parse_failure"


class NotFound(RankTrackingError):
    """The keyword/app combination is structurally invalid."""

    kind = "not_found"
    transient = False


class PersistenceConflict(RankTrackingError):
    """Another attempt already wrote this (keyword, date) snapshot."""

    kind = "persistence_conflict"
    transient = False


class RequestCancelled(RankTrackingError):
    """The caller gave up waiting (process shutting down)."""

    kind = "cancelled"
