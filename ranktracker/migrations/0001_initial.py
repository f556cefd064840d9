import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="App",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=200)),
                ("platform", models.CharField(choices=[("ios", "iOS"), ("android", "Android")], default="ios", max_length=10)),
                ("store_id", models.CharField(blank=True, help_text="iTunes trackId or Play Store package name", max_length=255)),
                ("bundle_id", models.CharField(blank=True, max_length=255)),
                ("subtitle", models.CharField(blank=True, max_length=255)),
                ("description", models.TextField(blank=True)),
                ("category", models.CharField(blank=True, max_length=100)),
                ("seller_name", models.CharField(blank=True, max_length=200)),
                ("icon_url", models.URLField(blank=True, max_length=500)),
                ("store_url", models.URLField(blank=True, max_length=500)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "db_table": "ranktracker_apps",
                "ordering": ["name"],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("store_id", ""), _negated=True),
                        fields=("platform", "store_id"),
                        name="unique_app_per_platform",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="TrackedKeyword",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("keyword", models.CharField(max_length=200)),
                ("platform", models.CharField(choices=[("ios", "iOS"), ("android", "Android")], default="ios", max_length=10)),
                ("region", models.CharField(default="us", max_length=5)),
                ("is_tracked", models.BooleanField(default=True)),
                ("discovery_method", models.CharField(
                    choices=[
                        ("manual", "Manual"),
                        ("auto_discovery", "Auto discovery"),
                        ("competitor_analysis", "Competitor analysis"),
                    ],
                    default="manual",
                    max_length=30,
                )),
                ("needs_review", models.BooleanField(default=False, help_text="Set when a refresh failed permanently (keyword/app not found)")),
                ("last_tracked_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("app", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="keywords", to="ranktracker.app")),
            ],
            options={
                "db_table": "ranktracker_keywords",
                "ordering": ["keyword"],
                "indexes": [
                    models.Index(fields=["is_tracked", "last_tracked_at"], name="keyword_tracking_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("app", "keyword", "platform", "region"),
                        name="unique_tracked_keyword",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="RankingSnapshot",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("snapshot_date", models.DateField()),
                ("position", models.PositiveIntegerField(blank=True, help_text="Null when outside the tracked depth", null=True)),
                ("is_ranking", models.BooleanField(default=False)),
                ("serp_snapshot", models.JSONField(blank=True, default=list)),
                ("total_results", models.PositiveIntegerField(default=0)),
                ("parse_strategy", models.CharField(blank=True, max_length=30)),
                ("demand_tier", models.CharField(
                    choices=[("low", "Low"), ("medium", "Medium"), ("high", "High"), ("very_high", "Very high")],
                    default="low",
                    max_length=10,
                )),
                ("popularity_score", models.PositiveIntegerField(default=0)),
                ("estimated_daily_searches", models.PositiveIntegerField(default=0)),
                ("visibility_score", models.FloatField(default=0)),
                ("estimated_traffic", models.PositiveIntegerField(default=0)),
                ("position_change", models.IntegerField(blank=True, null=True)),
                ("trend", models.CharField(
                    choices=[
                        ("new", "New"),
                        ("lost", "Lost"),
                        ("rising", "Rising"),
                        ("falling", "Falling"),
                        ("stable", "Stable"),
                    ],
                    default="stable",
                    max_length=10,
                )),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("keyword", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="snapshots", to="ranktracker.trackedkeyword")),
            ],
            options={
                "db_table": "ranktracker_snapshots",
                "ordering": ["-snapshot_date"],
                "indexes": [
                    models.Index(fields=["keyword", "-snapshot_date"], name="snapshot_history_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("keyword", "snapshot_date"),
                        name="unique_snapshot_per_day",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="CompetitorObservation",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("snapshot_date", models.DateField()),
                ("competitor_app_id", models.CharField(max_length=255)),
                ("competitor_name", models.CharField(blank=True, max_length=255)),
                ("position", models.PositiveIntegerField()),
                ("rating_count", models.PositiveIntegerField(default=0)),
                ("keyword", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="competitor_observations", to="ranktracker.trackedkeyword")),
                ("snapshot", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="competitors", to="ranktracker.rankingsnapshot")),
            ],
            options={
                "db_table": "ranktracker_competitors",
                "ordering": ["snapshot_date", "position"],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("keyword", "competitor_app_id", "snapshot_date"),
                        name="unique_competitor_per_day",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="RefreshJob",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("status", models.CharField(
                    choices=[
                        ("pending", "Pending"),
                        ("processing", "Processing"),
                        ("completed", "Completed"),
                        ("failed", "Failed"),
                    ],
                    default="pending",
                    max_length=20,
                )),
                ("priority", models.IntegerField(default=50, help_text="Higher runs first")),
                ("retry_count", models.PositiveIntegerField(default=0)),
                ("max_retries", models.PositiveIntegerField(default=3)),
                ("scheduled_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("started_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("error_kind", models.CharField(blank=True, max_length=30)),
                ("error_message", models.TextField(blank=True)),
                ("last_error_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("keyword", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="refresh_jobs", to="ranktracker.trackedkeyword")),
            ],
            options={
                "db_table": "ranktracker_refresh_jobs",
                "ordering": ["-priority", "scheduled_at"],
                "indexes": [
                    models.Index(fields=["status", "scheduled_at"], name="job_claim_idx"),
                    models.Index(fields=["-priority", "scheduled_at"], name="job_priority_idx"),
                ],
            },
        ),
    ]
