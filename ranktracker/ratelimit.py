"""
Per-surface request spacing.

One RateLimiter instance guards one external surface (iTunes Search, the
Play Store search page, ...).  Inside a limiter every target keeps its own
FIFO of waiting callers and its own last-dispatch time, so consecutive
dispatches to a target are at least ``60 / requests_per_minute`` seconds
apart and callers are admitted strictly in arrival order.

Limiters are plain objects: the scheduler builds them once and hands them to
every SerpClient that talks to the same surface.
"""

import logging
import threading
import time
from collections import deque

from .conf import get_config
from .exceptions import RequestCancelled

logger = logging.getLogger(__name__)

# Upper bound on a single wait while a cancel event is being watched.
_CANCEL_POLL_SECONDS = 0.25


class _TargetState:
    """Admission queue and last dispatch time for one target."""

    def __init__(self):
        self.condition = threading.Condition()
        self.queue = deque()
        self.last_dispatch = None


class RateLimiter:
    """
    Serializes calls per target with a minimum inter-dispatch delay.

    Args:
        requests_per_minute: Budget for each target of this surface.
        name: Label used in log lines.
        clock: Monotonic time source (seconds).
    """

    def __init__(self, requests_per_minute: float, name: str = "", clock=time.monotonic):
        if requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be positive")
        self.requests_per_minute = requests_per_minute
        self.min_delay = 60.0 / requests_per_minute
        self.name = name or "limiter"
        self._clock = clock
        self._targets: dict[str, _TargetState] = {}
        self._targets_lock = threading.Lock()

    def __repr__(self):
        return f"RateLimiter({self.name!r}, {self.requests_per_minute}/min)"

    def _state(self, target: str) -> _TargetState:
        with self._targets_lock:
            state = self._targets.get(target)
            if state is None:
                state = _TargetState()
                self._targets[target] = state
            return state

    def acquire(self, target: str, cancel_event: threading.Event | None = None) -> float:
        """
        Block until this caller may dispatch to ``target``.

        Returns the dispatch timestamp.  Raises RequestCancelled if
        ``cancel_event`` is set while waiting; the caller's place in the
        queue is released so later callers are not held up.
        """
        state = self._state(target)
        ticket = object()
        waited = False
        with state.condition:
            state.queue.append(ticket)
            try:
                while True:
                    if cancel_event is not None and cancel_event.is_set():
                        raise RequestCancelled(
                            f"{self.name}: wait for {target} cancelled", surface=target
                        )
                    timeout = None
                    if state.queue[0] is ticket:
                        now = self._clock()
                        if state.last_dispatch is None:
                            remaining = 0.0
                        else:
                            remaining = state.last_dispatch + self.min_delay - now
                        if remaining <= 0:
                            state.queue.popleft()
                            state.last_dispatch = now
                            state.condition.notify_all()
                            if waited:
                                logger.debug(f"{self.name}: admitted {target} after wait")
                            return now
                        timeout = remaining
                    if cancel_event is not None:
                        timeout = (
                            _CANCEL_POLL_SECONDS
                            if timeout is None
                            else min(timeout, _CANCEL_POLL_SECONDS)
                        )
                    waited = True
                    state.condition.wait(timeout=timeout)
            except BaseException:
                if ticket in state.queue:
                    state.queue.remove(ticket)
                    state.condition.notify_all()
                raise

    def execute(self, target: str, fn, *args, cancel_event: threading.Event | None = None, **kwargs):
        """Run ``fn(*args, **kwargs)`` once admitted for ``target``."""
        self.acquire(target, cancel_event=cancel_event)
        return fn(*args, **kwargs)

    def queue_length(self, target: str) -> int:
        state = self._state(target)
        with state.condition:
            return len(state.queue)


def build_rate_limiters(config: dict | None = None) -> dict[str, RateLimiter]:
    """Create one limiter per configured surface (keyed by platform)."""
    config = config or get_config()
    limiters = {}
    for platform, rpm in config["RATE_LIMITS"].items():
        limiters[platform] = RateLimiter(rpm, name=f"{platform}-search")
        logger.info(f"Rate limiter for {platform}: {rpm} req/min")
    return limiters
