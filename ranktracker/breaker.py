"""
Per-surface circuit breaker for the refresh scheduler.

A surface (``ios``, ``android``) that fails ``failure_threshold`` refreshes
in a row is opened: the scheduler stops claiming its jobs for
``cooldown_seconds``.  Once the cooldown has passed the surface is
half-open and jobs flow again; one success closes it, one more failure
opens it for another full cooldown.

Only surface trouble counts (throttling, timeouts, unreachable hosts and
unparseable pages).  Permanent errors say nothing about the surface.
"""

import logging
import threading
from datetime import timedelta

from django.utils import timezone

from .exceptions import NetworkTimeout, NetworkUnreachable, ParseFailure, RateLimited

logger = logging.getLogger(__name__)

SURFACE_FAILURES = (RateLimited, NetworkTimeout, NetworkUnreachable, ParseFailure)

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"


class SurfaceCircuitBreaker:
    """
    Consecutive-failure breaker, one circuit per surface.

    Args:
        failure_threshold: Consecutive failures that open a surface.
        cooldown_seconds: How long an open surface stays paused.
        surfaces: Surfaces to report even before they see traffic.
    """

    def __init__(self, failure_threshold: int = 3, cooldown_seconds: float = 300,
                 surfaces=()):
        self.failure_threshold = max(1, failure_threshold)
        self.cooldown = timedelta(seconds=cooldown_seconds)
        self._lock = threading.Lock()
        self._failures = {surface: 0 for surface in surfaces}
        self._opened_at = {}

    def _state(self, surface, now):
        opened_at = self._opened_at.get(surface)
        if opened_at is None:
            return CLOSED
        if now - opened_at >= self.cooldown:
            return HALF_OPEN
        return OPEN

    def state(self, surface, now=None) -> str:
        now = now or timezone.now()
        with self._lock:
            return self._state(surface, now)

    def open_surfaces(self, now=None) -> list:
        """Surfaces whose jobs must not be claimed at ``now``."""
        now = now or timezone.now()
        with self._lock:
            return [s for s in self._opened_at if self._state(s, now) == OPEN]

    def seconds_until_retry(self, now=None) -> float:
        """Seconds until the first open surface goes half-open (0 if none is open)."""
        now = now or timezone.now()
        with self._lock:
            waits = [
                (opened_at + self.cooldown - now).total_seconds()
                for surface, opened_at in self._opened_at.items()
                if self._state(surface, now) == OPEN
            ]
        return max(0.0, min(waits)) if waits else 0.0

    def record_success(self, surface):
        with self._lock:
            if surface in self._opened_at:
                del self._opened_at[surface]
                logger.info(f"Circuit for {surface} closed after a successful refresh.")
            self._failures[surface] = 0

    def record_failure(self, surface, error=None, now=None) -> bool:
        """
        Count one failed refresh against ``surface``.

        Errors that aren't surface trouble are ignored.  Returns True if
        this failure opened the circuit.
        """
        if error is not None and not isinstance(error, SURFACE_FAILURES):
            return False
        now = now or timezone.now()
        with self._lock:
            count = self._failures.get(surface, 0) + 1
            self._failures[surface] = count
            state = self._state(surface, now)
            # Failures from jobs claimed before the circuit opened don't extend it.
            if state == OPEN:
                return False
            if state == CLOSED and count < self.failure_threshold:
                return False
            self._opened_at[surface] = now
        logger.warning(
            f"Circuit for {surface} open after {count} consecutive failures; "
            f"pausing its jobs for {self.cooldown.total_seconds():.0f}s."
        )
        return True

    def reset(self, surface=None):
        """Close one surface, or every surface when ``surface`` is None."""
        with self._lock:
            surfaces = [surface] if surface else list(self._failures)
            for name in surfaces:
                self._failures[name] = 0
                self._opened_at.pop(name, None)
        logger.info(f"Circuit breaker reset ({surface or 'all surfaces'}).")

    def snapshot(self, now=None) -> dict:
        """``{surface: {"state", "failures", "retry_in"}}`` for the status endpoint."""
        now = now or timezone.now()
        with self._lock:
            report = {}
            for surface in sorted(set(self._failures) | set(self._opened_at)):
                state = self._state(surface, now)
                retry_in = 0.0
                if state == OPEN:
                    retry_in = (self._opened_at[surface] + self.cooldown - now).total_seconds()
                report[surface] = {
                    "state": state,
                    "failures": self._failures.get(surface, 0),
                    "retry_in": round(max(0.0, retry_in), 1),
                }
            return report
