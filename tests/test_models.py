"""
Tests for model behaviour: normalization, constraints and job transitions.
"""

from datetime import date, timedelta
from unittest.mock import patch

import pytest
from django.db import IntegrityError, transaction
from django.utils import timezone

from ranktracker.exceptions import NetworkTimeout, PersistenceConflict
from ranktracker.models import App, RankingSnapshot, RefreshJob, TrackedKeyword

pytestmark = pytest.mark.django_db


class TestTrackedKeyword:

    def test_normalized_on_save(self, app):
        keyword = TrackedKeyword.objects.create(app=app, keyword="  Fitness Tracker ", region="GB")
        assert keyword.keyword == "fitness tracker"
        assert keyword.region == "gb"

    def test_unique_per_app_platform_region(self, keyword):
        with pytest.raises(IntegrityError), transaction.atomic():
            TrackedKeyword.objects.create(
                app=keyword.app, keyword="Fitness Tracker", platform="ios", region="us"
            )

    def test_same_keyword_other_region(self, keyword):
        TrackedKeyword.objects.create(app=keyword.app, keyword="fitness tracker", region="gb")
        assert TrackedKeyword.objects.count() == 2

    def test_retrack_clears_review_flag(self, keyword):
        keyword.needs_review = True
        keyword.save()
        keyword.untrack()
        keyword.retrack()
        keyword.refresh_from_db()
        assert keyword.is_tracked
        assert not keyword.needs_review

    def test_freshness(self, keyword):
        now = timezone.now()
        assert keyword.freshness(now=now)["stale"]

        keyword.last_tracked_at = now - timedelta(hours=2)
        flags = keyword.freshness(stale_after_hours=24, now=now)
        assert not flags["stale"]
        assert not flags["refresh_failed"]
        assert flags["last_tracked_at"] == keyword.last_tracked_at.isoformat()

    def test_job_dropped_on_untrack_is_not_a_failed_refresh(self, keyword, rank_scheduler):
        rank_scheduler.enqueue_refresh([keyword.pk])
        keyword.untrack()
        assert rank_scheduler.claim_next_job() is None
        assert keyword.latest_job().error_kind == "cancelled"

        keyword.retrack()

        assert not keyword.freshness()["refresh_failed"]

    def test_failed_refresh_flagged(self, keyword):
        RefreshJob.objects.create(keyword=keyword, status="failed", error_kind="parse_failure")
        assert keyword.freshness()["refresh_failed"]


class TestApp:

    def test_store_id_unique_per_platform(self, app):
        with pytest.raises(IntegrityError), transaction.atomic():
            App.objects.create(name="Clone", platform="ios", store_id=app.store_id)

    def test_blank_store_ids_allowed(self, db):
        App.objects.create(name="Draft one")
        App.objects.create(name="Draft two")
        assert App.objects.filter(store_id="").count() == 2


class TestSnapshotUpsert:

    def test_one_row_per_day(self, keyword):
        day = date(2026, 10, 1)
        RankingSnapshot.objects.upsert(keyword, day, position=9, is_ranking=True)
        snapshot, created = RankingSnapshot.objects.upsert(keyword, day, position=4, is_ranking=True)

        assert not created
        assert snapshot.position == 4
        assert RankingSnapshot.objects.count() == 1

    def test_integrity_error_becomes_conflict(self, keyword):
        with patch.object(
            RankingSnapshot.objects, "update_or_create", side_effect=IntegrityError("unique")
        ):
            with pytest.raises(PersistenceConflict) as exc:
                RankingSnapshot.objects.upsert(keyword, date(2026, 10, 1), position=1)
        assert not exc.value.transient


class TestRefreshJob:

    def test_retry_then_fail(self, keyword):
        job = RefreshJob.objects.create(keyword=keyword, status="processing")
        before = timezone.now()

        job.mark_for_retry(NetworkTimeout("slow"), delay_seconds=120)
        job.refresh_from_db()
        assert job.status == "pending"
        assert job.retry_count == 1
        assert job.error_kind == "network_timeout"
        assert job.scheduled_at >= before + timedelta(seconds=120)
        assert job.is_active

        job.mark_failed(NetworkTimeout("still slow"))
        job.refresh_from_db()
        assert job.status == "failed"
        assert job.error_message == "still slow"
        assert not job.is_active

    def test_requeue_keeps_retry_count(self, keyword):
        job = RefreshJob.objects.create(
            keyword=keyword, status="processing", retry_count=2, started_at=timezone.now()
        )
        job.requeue()
        job.refresh_from_db()
        assert job.status == "pending"
        assert job.retry_count == 2
        assert job.started_at is None
