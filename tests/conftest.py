"""
Pytest configuration and shared fixtures.
"""

import pytest

from ranktracker import scheduler as scheduler_module
from ranktracker.models import App, TrackedKeyword
from ranktracker.ratelimit import RateLimiter

from .helpers import TARGET_APP_ID, StubSerpClient


@pytest.fixture
def app(db):
    return App.objects.create(
        name="FitTrack: Fitness Tracker",
        platform="ios",
        store_id=TARGET_APP_ID,
        subtitle="Steps, Workouts & Calorie Counter",
        description="Track every workout. Count steps and calories with ease.",
        category="Health & Fitness",
    )


@pytest.fixture
def keyword(app):
    return TrackedKeyword.objects.create(
        app=app, keyword="fitness tracker", platform="ios", region="us"
    )


@pytest.fixture
def stub_client():
    return StubSerpClient()


@pytest.fixture
def fast_limiters():
    return {
        "ios": RateLimiter(600_000, name="ios-test"),
        "android": RateLimiter(600_000, name="android-test"),
    }


@pytest.fixture
def rank_scheduler(stub_client, fast_limiters):
    """A RefreshScheduler wired to the stub client, no jitter."""
    return scheduler_module.RefreshScheduler(
        client=stub_client,
        limiters=fast_limiters,
        worker_count=1,
    )


@pytest.fixture(autouse=True)
def reset_refresh_status():
    """Scheduler progress is process-global; start every test from zero."""
    scheduler_module._update_status(
        running=False, total=0, completed=0, retried=0, failed=0,
        current_keyword="", started_at=None, last_completed_at=None, error=None,
    )
    yield
