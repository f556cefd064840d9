"""Builders and stand-ins shared by the test modules."""

import time

from ranktracker.exceptions import ParseFailure
from ranktracker.serp import SerpItem, SerpResult

TARGET_APP_ID = "1234567890"


class FakeClock:
    """Monotonic clock the test moves by hand."""

    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


# Top-10 rating counts of a popular "fitness tracker" SERP; the target sits
# at position 7 with 3k ratings.
FITNESS_TOP10_RATINGS = [
    1_200_000, 850_000, 400_000, 150_000, 60_000,
    45_000, 3_000, 30_000, 20_000, 12_000,
]


def make_serp(keyword="fitness tracker", platform="ios", region="us",
              target_position=7, total=50, ratings=None,
              target_app_id=TARGET_APP_ID, strategy="itunes_json"):
    """A SerpResult of ``total`` items; ``target_position=None`` leaves the target out."""
    ratings = ratings if ratings is not None else FITNESS_TOP10_RATINGS
    items = []
    for position in range(1, total + 1):
        if position == target_position:
            app_id, name = target_app_id, "FitTrack"
        else:
            app_id, name = f"9{position:09d}", f"Competitor {position}"
        rating_count = ratings[position - 1] if position <= len(ratings) else 500
        items.append(
            SerpItem(position=position, app_id=app_id, name=name, rating_count=rating_count)
        )
    return SerpResult(
        keyword=keyword,
        platform=platform,
        region=region,
        items=items,
        strategy=strategy,
        total_results=total,
    )


class StubSerpClient:
    """
    SerpClient stand-in with canned outcomes per keyword.

    An outcome is a SerpResult, an exception instance to raise, or a list
    of those consumed one per call.
    """

    def __init__(self, results=None, default=None, listing=None):
        self.results = results or {}
        self.default = default
        self.listing = listing
        self.calls = []
        self.lookups = []

    def fetch_ranking(self, keyword, platform, region="us", depth=None, cancel_event=None):
        self.calls.append((keyword, platform, region))
        outcome = self.results.get(keyword, self.default)
        if isinstance(outcome, list):
            outcome = outcome.pop(0)
        if outcome is None:
            raise ParseFailure(f"no canned result for '{keyword}'", surface=platform)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def lookup_app(self, app_id, platform, region="us", cancel_event=None):
        self.lookups.append(app_id)
        return self.listing
