from django.urls import path

from . import views

app_name = "ranktracker"

urlpatterns = [
    path("refresh/", views.refresh_view, name="refresh"),
    path("discover/", views.discover_view, name="discover"),
    path("discover/<str:task_id>/", views.discover_status_view, name="discover_status"),
    path("keywords/", views.keywords_view, name="keywords"),
    path("keywords/track/", views.track_keywords_view, name="keywords_track"),
    path("keywords/<int:keyword_id>/untrack/", views.untrack_keyword_view, name="keyword_untrack"),
    path("keywords/<int:keyword_id>/ranking/", views.keyword_ranking_view, name="keyword_ranking"),
    path("apps/<int:app_id>/stats/", views.app_stats_view, name="app_stats"),
    path("status/", views.status_view, name="status"),
    path("status/breaker/reset/", views.reset_breaker_view, name="breaker_reset"),
]
