from datetime import timedelta

from django.db import IntegrityError, models, transaction
from django.utils import timezone

from .exceptions import PersistenceConflict, RequestCancelled


class Platform(models.TextChoices):
    IOS = "ios", "iOS"
    ANDROID = "android", "Android"


class DiscoveryMethod(models.TextChoices):
    MANUAL = "manual", "Manual"
    AUTO_DISCOVERY = "auto_discovery", "Auto discovery"
    COMPETITOR_ANALYSIS = "competitor_analysis", "Competitor analysis"


class DemandTier(models.TextChoices):
    LOW = "low", "Low"
    MEDIUM = "medium", "Medium"
    HIGH = "high", "High"
    VERY_HIGH = "very_high", "Very high"


class Trend(models.TextChoices):
    NEW = "new", "New"
    LOST = "lost", "Lost"
    RISING = "rising", "Rising"
    FALLING = "falling", "Falling"
    STABLE = "stable", "Stable"


class RefreshJobStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    PROCESSING = "processing", "Processing"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"


ACTIVE_JOB_STATUSES = (RefreshJobStatus.PENDING, RefreshJobStatus.PROCESSING)


class App(models.Model):
    """A storefront listing whose keyword rankings are tracked."""

    name = models.CharField(max_length=200)
    platform = models.CharField(max_length=10, choices=Platform.choices, default=Platform.IOS)
    store_id = models.CharField(
        max_length=255,
        blank=True,
        help_text="iTunes trackId or Play Store package name",
    )
    bundle_id = models.CharField(max_length=255, blank=True)
    subtitle = models.CharField(max_length=255, blank=True)
    description = models.TextField(blank=True)
    category = models.CharField(max_length=100, blank=True)
    seller_name = models.CharField(max_length=200, blank=True)
    icon_url = models.URLField(max_length=500, blank=True)
    store_url = models.URLField(max_length=500, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "ranktracker_apps"
        ordering = ["name"]
        constraints = [
            models.UniqueConstraint(
                fields=["platform", "store_id"],
                condition=~models.Q(store_id=""),
                name="unique_app_per_platform",
            ),
        ]

    def __str__(self):
        return f"{self.name} ({self.platform})"


class TrackedKeyword(models.Model):
    """
    A keyword whose ranking is tracked for one app in one storefront region.

    Untracking flips ``is_tracked`` off; the row and its history stay.
    """

    app = models.ForeignKey(App, on_delete=models.CASCADE, related_name="keywords")
    keyword = models.CharField(max_length=200)
    platform = models.CharField(max_length=10, choices=Platform.choices, default=Platform.IOS)
    region = models.CharField(max_length=5, default="us")

    is_tracked = models.BooleanField(default=True)
    discovery_method = models.CharField(
        max_length=30,
        choices=DiscoveryMethod.choices,
        default=DiscoveryMethod.MANUAL,
    )
    needs_review = models.BooleanField(
        default=False,
        help_text="Set when a refresh failed permanently (keyword/app not found)",
    )
    last_tracked_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "ranktracker_keywords"
        ordering = ["keyword"]
        constraints = [
            models.UniqueConstraint(
                fields=["app", "keyword", "platform", "region"],
                name="unique_tracked_keyword",
            ),
        ]
        indexes = [
            models.Index(fields=["is_tracked", "last_tracked_at"], name="keyword_tracking_idx"),
        ]

    def __str__(self):
        return f"{self.keyword} ({self.platform}/{self.region})"

    def save(self, *args, **kwargs):
        self.keyword = self.keyword.strip().lower()
        self.region = self.region.lower()
        self.updated_at = timezone.now()
        super().save(*args, **kwargs)

    def untrack(self):
        self.is_tracked = False
        self.save(update_fields=["is_tracked", "updated_at"])

    def retrack(self):
        self.is_tracked = True
        self.needs_review = False
        self.save(update_fields=["is_tracked", "needs_review", "updated_at"])

    @property
    def latest_snapshot(self):
        return self.snapshots.order_by("-snapshot_date").first()

    def latest_job(self):
        return self.refresh_jobs.order_by("-created_at", "-id").first()

    def freshness(self, stale_after_hours: int = 24, now=None) -> dict:
        """
        ``stale``: not tracked within ``stale_after_hours``.
        ``refresh_failed``: the most recent refresh job ended failed.  Jobs
        dropped because the keyword was untracked don't count.
        """
        now = now or timezone.now()
        stale = (
            self.last_tracked_at is None
            or now - self.last_tracked_at > timedelta(hours=stale_after_hours)
        )
        job = self.latest_job()
        failed = bool(
            job
            and job.status == RefreshJobStatus.FAILED
            and job.error_kind != RequestCancelled.kind
        )
        return {
            "stale": stale,
            "refresh_failed": failed,
            "needs_review": self.needs_review,
            "last_tracked_at": self.last_tracked_at.isoformat() if self.last_tracked_at else None,
        }


class RankingSnapshotManager(models.Manager):
    def upsert(self, keyword, snapshot_date, **fields):
        """
        Write the (keyword, date) snapshot, replacing that day's row if present.

        Raises PersistenceConflict when a concurrent insert of the same day
        wins the race.
        """
        try:
            with transaction.atomic():
                snapshot, created = self.update_or_create(
                    keyword=keyword,
                    snapshot_date=snapshot_date,
                    defaults=fields,
                )
        except IntegrityError as e:
            raise PersistenceConflict(
                f"Snapshot for keyword {keyword.pk} on {snapshot_date} already written: {e}"
            ) from e
        return snapshot, created


class RankingSnapshot(models.Model):
    """One day's ranking observation for a tracked keyword."""

    keyword = models.ForeignKey(
        TrackedKeyword, on_delete=models.CASCADE, related_name="snapshots"
    )
    snapshot_date = models.DateField()

    position = models.PositiveIntegerField(
        null=True, blank=True, help_text="Null when outside the tracked depth"
    )
    is_ranking = models.BooleanField(default=False)
    serp_snapshot = models.JSONField(default=list, blank=True)
    total_results = models.PositiveIntegerField(default=0)
    parse_strategy = models.CharField(max_length=30, blank=True)

    demand_tier = models.CharField(
        max_length=10, choices=DemandTier.choices, default=DemandTier.LOW
    )
    popularity_score = models.PositiveIntegerField(default=0)
    estimated_daily_searches = models.PositiveIntegerField(default=0)
    visibility_score = models.FloatField(default=0)
    estimated_traffic = models.PositiveIntegerField(default=0)
    position_change = models.IntegerField(null=True, blank=True)
    trend = models.CharField(max_length=10, choices=Trend.choices, default=Trend.STABLE)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = RankingSnapshotManager()

    class Meta:
        db_table = "ranktracker_snapshots"
        ordering = ["-snapshot_date"]
        constraints = [
            models.UniqueConstraint(
                fields=["keyword", "snapshot_date"],
                name="unique_snapshot_per_day",
            ),
        ]
        indexes = [
            models.Index(fields=["keyword", "-snapshot_date"], name="snapshot_history_idx"),
        ]

    def __str__(self):
        where = f"#{self.position}" if self.position else "not ranking"
        return f"{self.keyword.keyword} {self.snapshot_date}: {where}"

    def to_dict(self) -> dict:
        return {
            "date": self.snapshot_date.isoformat(),
            "position": self.position,
            "is_ranking": self.is_ranking,
            "demand_tier": self.demand_tier,
            "popularity_score": self.popularity_score,
            "estimated_daily_searches": self.estimated_daily_searches,
            "visibility_score": self.visibility_score,
            "estimated_traffic": self.estimated_traffic,
            "position_change": self.position_change,
            "trend": self.trend,
            "parse_strategy": self.parse_strategy,
        }


class CompetitorObservation(models.Model):
    """A competing app's position in the SERP a snapshot was built from."""

    snapshot = models.ForeignKey(
        RankingSnapshot, on_delete=models.CASCADE, related_name="competitors"
    )
    keyword = models.ForeignKey(
        TrackedKeyword, on_delete=models.CASCADE, related_name="competitor_observations"
    )
    snapshot_date = models.DateField()
    competitor_app_id = models.CharField(max_length=255)
    competitor_name = models.CharField(max_length=255, blank=True)
    position = models.PositiveIntegerField()
    rating_count = models.PositiveIntegerField(default=0)

    class Meta:
        db_table = "ranktracker_competitors"
        ordering = ["snapshot_date", "position"]
        constraints = [
            models.UniqueConstraint(
                fields=["keyword", "competitor_app_id", "snapshot_date"],
                name="unique_competitor_per_day",
            ),
        ]

    def __str__(self):
        return f"{self.competitor_name or self.competitor_app_id} #{self.position}"


class RefreshJob(models.Model):
    """
    Durable queue entry for one keyword refresh.

    pending -> processing -> completed, or back to pending with a later
    ``scheduled_at`` on a transient failure, or failed once retries run out.
    """

    keyword = models.ForeignKey(
        TrackedKeyword, on_delete=models.CASCADE, related_name="refresh_jobs"
    )
    status = models.CharField(
        max_length=20,
        choices=RefreshJobStatus.choices,
        default=RefreshJobStatus.PENDING,
    )
    priority = models.IntegerField(default=50, help_text="Higher runs first")
    retry_count = models.PositiveIntegerField(default=0)
    max_retries = models.PositiveIntegerField(default=3)

    scheduled_at = models.DateTimeField(default=timezone.now)
    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    error_kind = models.CharField(max_length=30, blank=True)
    error_message = models.TextField(blank=True)
    last_error_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "ranktracker_refresh_jobs"
        ordering = ["-priority", "scheduled_at"]
        indexes = [
            models.Index(fields=["status", "scheduled_at"], name="job_claim_idx"),
            models.Index(fields=["-priority", "scheduled_at"], name="job_priority_idx"),
        ]

    def __str__(self):
        return f"Job {self.pk} {self.keyword_id} ({self.status})"

    @property
    def is_active(self):
        return self.status in ACTIVE_JOB_STATUSES

    def _record_error(self, error):
        self.error_kind = getattr(error, "kind", "error")
        self.error_message = str(error)[:2000]
        self.last_error_at = timezone.now()

    def mark_completed(self):
        self.status = RefreshJobStatus.COMPLETED
        self.completed_at = timezone.now()
        self.save(update_fields=["status", "completed_at"])

    def mark_for_retry(self, error, delay_seconds: float):
        """Back to pending after ``delay_seconds``; bumps ``retry_count``."""
        self._record_error(error)
        self.status = RefreshJobStatus.PENDING
        self.retry_count += 1
        self.started_at = None
        self.scheduled_at = timezone.now() + timedelta(seconds=delay_seconds)
        self.save(update_fields=[
            "status", "retry_count", "started_at", "scheduled_at",
            "error_kind", "error_message", "last_error_at",
        ])

    def mark_failed(self, error):
        self._record_error(error)
        self.status = RefreshJobStatus.FAILED
        self.completed_at = timezone.now()
        self.save(update_fields=[
            "status", "retry_count", "completed_at", "error_kind", "error_message", "last_error_at",
        ])

    def requeue(self):
        """Back to pending without consuming a retry."""
        self.status = RefreshJobStatus.PENDING
        self.started_at = None
        self.save(update_fields=["status", "started_at"])
