from django.contrib import admin

from .models import App, CompetitorObservation, RankingSnapshot, RefreshJob, TrackedKeyword


@admin.register(App)
class AppAdmin(admin.ModelAdmin):
    list_display = ("name", "platform", "store_id", "category", "created_at")
    list_filter = ("platform",)
    search_fields = ("name", "store_id", "bundle_id")


@admin.register(TrackedKeyword)
class TrackedKeywordAdmin(admin.ModelAdmin):
    list_display = (
        "keyword",
        "app",
        "platform",
        "region",
        "is_tracked",
        "discovery_method",
        "needs_review",
        "last_tracked_at",
    )
    list_filter = ("platform", "region", "is_tracked", "needs_review", "discovery_method")
    search_fields = ("keyword",)


@admin.register(RankingSnapshot)
class RankingSnapshotAdmin(admin.ModelAdmin):
    list_display = (
        "keyword",
        "snapshot_date",
        "position",
        "trend",
        "demand_tier",
        "visibility_score",
        "estimated_traffic",
    )
    list_filter = ("trend", "demand_tier", "snapshot_date")
    readonly_fields = ("created_at", "updated_at")


@admin.register(CompetitorObservation)
class CompetitorObservationAdmin(admin.ModelAdmin):
    list_display = ("competitor_name", "competitor_app_id", "keyword", "snapshot_date", "position")
    list_filter = ("snapshot_date",)
    search_fields = ("competitor_name", "competitor_app_id")


@admin.register(RefreshJob)
class RefreshJobAdmin(admin.ModelAdmin):
    list_display = (
        "keyword",
        "status",
        "priority",
        "retry_count",
        "scheduled_at",
        "error_kind",
    )
    list_filter = ("status", "error_kind")
    readonly_fields = ("created_at", "started_at", "completed_at", "last_error_at")
