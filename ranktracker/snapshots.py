"""
Turns a fetched SERP into the day's RankingSnapshot and its competitor rows.
"""

import logging

from django.db import transaction
from django.utils import timezone

from .conf import get_config
from .estimators import VolumeEstimator
from .metrics import compute_metrics
from .models import CompetitorObservation, RankingSnapshot

logger = logging.getLogger(__name__)


def previous_snapshot(keyword, snapshot_date):
    """Most recent snapshot strictly before ``snapshot_date``."""
    return (
        RankingSnapshot.objects
        .filter(keyword=keyword, snapshot_date__lt=snapshot_date)
        .order_by("-snapshot_date")
        .first()
    )


def build_snapshot_fields(serp, target_app_id, previous_position, estimate, config=None) -> dict:
    """Snapshot column values for one observation (no I/O)."""
    config = config or get_config()
    position = serp.position_of(target_app_id)
    if position is not None and position > config["TRACKED_DEPTH"]:
        position = None

    fields = {
        "position": position,
        "is_ranking": position is not None,
        "serp_snapshot": serp.as_snapshot(),
        "total_results": serp.total_results,
        "parse_strategy": serp.strategy,
        "demand_tier": estimate.tier,
        "popularity_score": estimate.popularity,
        "estimated_daily_searches": estimate.daily_searches,
    }
    fields.update(
        compute_metrics(
            position,
            previous_position,
            estimate.tier,
            estimate.daily_searches,
            config=config,
        )
    )
    return fields


class CompetitorRecorder:
    """Stores the top competing apps of a snapshot's SERP."""

    def __init__(self, depth: int | None = None):
        self.depth = depth or get_config()["COMPETITOR_DEPTH"]

    def record(self, snapshot, serp, exclude_app_id=None) -> list:
        """
        Replace the (keyword, date) competitor rows with the top ``depth``
        non-target items of ``serp``.
        """
        competitors = serp.competitors(exclude_app_id=exclude_app_id, limit=self.depth)
        CompetitorObservation.objects.filter(
            keyword_id=snapshot.keyword_id,
            snapshot_date=snapshot.snapshot_date,
        ).delete()
        return CompetitorObservation.objects.bulk_create(
            [
                CompetitorObservation(
                    snapshot=snapshot,
                    keyword_id=snapshot.keyword_id,
                    snapshot_date=snapshot.snapshot_date,
                    competitor_app_id=item.app_id,
                    competitor_name=item.name[:255],
                    position=item.position,
                    rating_count=item.rating_count,
                )
                for item in competitors
            ]
        )


def record_snapshot(keyword, serp, snapshot_date=None, estimator=None,
                    recorder=None, config=None):
    """
    Compute and persist the day's snapshot for ``keyword`` from ``serp``.

    Idempotent per (keyword, date): a second call the same day overwrites
    that day's row and its competitor rows.  Earlier days are never touched.
    Returns the stored RankingSnapshot.
    """
    config = config or get_config()
    snapshot_date = snapshot_date or timezone.localdate()
    estimator = estimator or VolumeEstimator()
    recorder = recorder or CompetitorRecorder(config["COMPETITOR_DEPTH"])

    target_app_id = keyword.app.store_id
    prior = previous_snapshot(keyword, snapshot_date)
    estimate = estimator.estimate(serp, keyword.keyword)
    fields = build_snapshot_fields(
        serp,
        target_app_id,
        prior.position if prior else None,
        estimate,
        config=config,
    )

    with transaction.atomic():
        snapshot, created = RankingSnapshot.objects.upsert(keyword, snapshot_date, **fields)
        recorder.record(snapshot, serp, exclude_app_id=target_app_id)

    logger.info(
        f"Snapshot {'stored' if created else 'updated'} for '{keyword.keyword}' "
        f"({keyword.platform}/{keyword.region}) {snapshot_date}: "
        f"position={snapshot.position} trend={snapshot.trend} tier={snapshot.demand_tier}"
    )
    return snapshot
