import json
import logging
import threading
import uuid
from datetime import datetime, timedelta

from django.http import JsonResponse
from django.shortcuts import get_object_or_404
from django.utils import timezone
from django.views.decorators.http import require_GET, require_POST

from .conf import get_config
from .discovery import KeywordDiscovery
from .exceptions import RankTrackingError
from .forms import DiscoverForm, RankingRangeForm, TrackKeywordForm
from .models import (
    App,
    DiscoveryMethod,
    RankingSnapshot,
    RefreshJob,
    RefreshJobStatus,
    TrackedKeyword,
)
from .scheduler import get_scheduler, get_status

logger = logging.getLogger(__name__)

# ── Background discovery tasks (in-memory, like the scheduler status) ─────

_tasks_lock = threading.Lock()
_discovery_tasks = {}


def _update_task(task_id, **kwargs):
    with _tasks_lock:
        _discovery_tasks[task_id].update(kwargs)


def _get_task(task_id):
    with _tasks_lock:
        task = _discovery_tasks.get(task_id)
        return dict(task) if task else None


def _prune_tasks(now, ttl_seconds, limit):
    """
    Drop finished tasks older than ``ttl_seconds``, then the oldest
    finished ones until there is room for one more under ``limit``.
    Running tasks are never dropped.

    Caller holds ``_tasks_lock``.
    """
    cutoff = now - timedelta(seconds=ttl_seconds)
    finished = sorted(
        (task for task in _discovery_tasks.values() if task["finished_at"]),
        key=lambda task: task["finished_at"],
    )
    for task in finished:
        expired = datetime.fromisoformat(task["finished_at"]) < cutoff
        if expired or len(_discovery_tasks) >= limit:
            del _discovery_tasks[task["task_id"]]


def _app_listing(app):
    """Plain-dict copy of an App so worker threads never touch the ORM."""
    return {
        "name": app.name,
        "subtitle": app.subtitle,
        "description": app.description,
        "category": app.category,
        "store_id": app.store_id,
        "platform": app.platform,
    }


def _run_discovery_task(task_id, listing, platform, region, max_candidates):
    def progress(done, total, keyword):
        _update_task(task_id, tested=done, total=total, current_keyword=keyword)

    try:
        discovery = KeywordDiscovery(get_scheduler().client)
        found = discovery.discover(
            listing,
            platform=platform,
            region=region,
            max_candidates=max_candidates,
            progress=progress,
        )
    except RankTrackingError as e:
        logger.warning(f"Discovery task {task_id} failed: {e}")
        _update_task(task_id, status="failed", error=str(e), finished_at=timezone.now().isoformat())
        return
    except Exception as e:
        logger.exception(f"Discovery task {task_id} crashed")
        _update_task(task_id, status="failed", error=str(e), finished_at=timezone.now().isoformat())
        return
    _update_task(
        task_id,
        status="completed",
        candidates=[d.as_dict() for d in found],
        current_keyword="",
        finished_at=timezone.now().isoformat(),
    )


def _start_task_thread(target, *args):
    thread = threading.Thread(target=target, args=args, daemon=True, name="ranktracker-discovery")
    thread.start()
    return thread


def _load_json(request):
    try:
        body = json.loads(request.body or b"{}")
    except json.JSONDecodeError:
        return None
    return body if isinstance(body, dict) else None


# ── Refresh ───────────────────────────────────────────────────────────────


@require_POST
def refresh_view(request):
    """
    Queue immediate refreshes for tracked keywords.

    POST body: {"keyword_ids": [int, ...]}
    Jobs are queued above the daily cycle's priority.
    """
    body = _load_json(request)
    if body is None:
        return JsonResponse({"error": "Invalid JSON."}, status=400)

    raw_ids = body.get("keyword_ids")
    if not isinstance(raw_ids, list) or not raw_ids:
        return JsonResponse({"error": "No keyword_ids provided."}, status=400)
    try:
        keyword_ids = [int(k) for k in raw_ids]
    except (TypeError, ValueError):
        return JsonResponse({"error": "keyword_ids must be integers."}, status=400)

    jobs = get_scheduler().enqueue_refresh(keyword_ids)
    queued_ids = {job.keyword_id for job in jobs}
    return JsonResponse({
        "success": True,
        "queued": [
            {
                "job_id": job.pk,
                "keyword_id": job.keyword_id,
                "status": job.status,
                "priority": job.priority,
                "scheduled_at": job.scheduled_at.isoformat(),
            }
            for job in jobs
        ],
        "skipped": [k for k in keyword_ids if k not in queued_ids],
    })


# ── Discovery ─────────────────────────────────────────────────────────────


@require_POST
def discover_view(request):
    """
    Find keywords an app already ranks for.

    POST: app_id, platform, region, max_candidates, background.
    Synchronous runs return candidates; background runs return a task id
    to poll at ``discover/<task_id>/``.
    """
    form = DiscoverForm(request.POST)
    if not form.is_valid():
        return JsonResponse({"error": "Invalid form data.", "fields": form.errors.get_json_data()}, status=400)

    app = get_object_or_404(App, id=form.cleaned_data["app_id"])
    platform = form.cleaned_data.get("platform") or app.platform
    region = form.cleaned_data["region"]
    max_candidates = form.cleaned_data["max_candidates"]

    if not app.store_id:
        return JsonResponse({"error": "App has no store id."}, status=400)

    if form.cleaned_data.get("background"):
        task_id = uuid.uuid4().hex
        config = get_config()
        with _tasks_lock:
            _prune_tasks(
                timezone.now(), config["DISCOVERY_TASK_TTL_SECONDS"], config["DISCOVERY_TASK_LIMIT"]
            )
            _discovery_tasks[task_id] = {
                "task_id": task_id,
                "app_id": app.pk,
                "platform": platform,
                "region": region,
                "status": "running",
                "tested": 0,
                "total": 0,
                "current_keyword": "",
                "candidates": [],
                "error": None,
                "started_at": timezone.now().isoformat(),
                "finished_at": None,
            }
        _start_task_thread(
            _run_discovery_task, task_id, _app_listing(app), platform, region, max_candidates
        )
        return JsonResponse({"success": True, "task_id": task_id, "status": "running"}, status=202)

    discovery = KeywordDiscovery(get_scheduler().client)
    try:
        found = discovery.discover(
            app, platform=platform, region=region, max_candidates=max_candidates
        )
    except RankTrackingError as e:
        return JsonResponse({"error": str(e)}, status=400)

    return JsonResponse({
        "success": True,
        "app_id": app.pk,
        "platform": platform,
        "region": region,
        "candidates": [d.as_dict() for d in found],
    })


@require_GET
def discover_status_view(request, task_id):
    """Progress and results of a background discovery task."""
    task = _get_task(task_id)
    if task is None:
        return JsonResponse({"error": "Unknown task."}, status=404)
    return JsonResponse(task)


# ── Keywords ──────────────────────────────────────────────────────────────


def _keyword_payload(keyword, stale_after_hours):
    latest = keyword.latest_snapshot
    return {
        "id": keyword.pk,
        "keyword": keyword.keyword,
        "app_id": keyword.app_id,
        "platform": keyword.platform,
        "region": keyword.region,
        "is_tracked": keyword.is_tracked,
        "discovery_method": keyword.discovery_method,
        "latest": latest.to_dict() if latest else None,
        **keyword.freshness(stale_after_hours),
    }


@require_POST
def track_keywords_view(request):
    """
    Start tracking keywords (e.g. accepted discovery candidates).

    POST body: {"app_id": int, "keywords": ["kw", {"keyword": "kw", "region": "gb"}, ...],
                "platform": "ios", "region": "us", "discovery_method": "manual"}
    Untracked rows are re-enabled instead of duplicated.
    """
    body = _load_json(request)
    if body is None:
        return JsonResponse({"error": "Invalid JSON."}, status=400)

    try:
        app_id = int(body.get("app_id"))
    except (TypeError, ValueError):
        return JsonResponse({"error": "app_id must be an integer."}, status=400)
    app = get_object_or_404(App, id=app_id)
    items = body.get("keywords") or []
    if not isinstance(items, list) or not items:
        return JsonResponse({"error": "No keywords provided."}, status=400)

    method = body.get("discovery_method") or DiscoveryMethod.MANUAL
    if method not in DiscoveryMethod.values:
        return JsonResponse({"error": f"Unknown discovery_method '{method}'."}, status=400)

    created, reenabled, unchanged, errors = [], [], [], []
    for item in items:
        if isinstance(item, str):
            data = {"keyword": item}
        elif isinstance(item, dict):
            data = dict(item)
        else:
            errors.append({"keyword": item, "errors": {"keyword": [
                {"message": "Expected a keyword string or object.", "code": "invalid"}
            ]}})
            continue
        data.setdefault("platform", body.get("platform") or app.platform)
        data.setdefault("region", body.get("region") or "us")
        data["app_id"] = app.pk
        form = TrackKeywordForm(data)
        if not form.is_valid():
            errors.append({"keyword": data.get("keyword"), "errors": form.errors.get_json_data()})
            continue

        keyword, was_created = TrackedKeyword.objects.get_or_create(
            app=app,
            keyword=form.cleaned_data["keyword"],
            platform=form.cleaned_data["platform"] or app.platform,
            region=form.cleaned_data["region"],
            defaults={"discovery_method": form.cleaned_data["discovery_method"] or method},
        )
        if was_created:
            created.append(keyword.pk)
        elif not keyword.is_tracked:
            keyword.retrack()
            reenabled.append(keyword.pk)
        else:
            unchanged.append(keyword.pk)

    accepted = created + reenabled + unchanged
    return JsonResponse({
        "success": not errors,
        "created": created,
        "reenabled": reenabled,
        "unchanged": unchanged,
        "errors": errors,
    }, status=400 if errors and not accepted else 200)


@require_POST
def untrack_keyword_view(request, keyword_id):
    """Stop tracking a keyword. History is kept; queued jobs won't run."""
    keyword = get_object_or_404(TrackedKeyword, id=keyword_id)
    keyword.untrack()
    return JsonResponse({"success": True, "keyword_id": keyword.pk, "is_tracked": False})


@require_GET
def keywords_view(request):
    """
    Tracked keywords with their latest snapshot and freshness.

    Query params: ?app=<id> (optional), ?all=1 to include untracked rows.
    """
    stale_after = get_config()["STALE_AFTER_HOURS"]
    qs = TrackedKeyword.objects.select_related("app")
    app_id = request.GET.get("app")
    if app_id:
        qs = qs.filter(app_id=app_id)
    if request.GET.get("all") != "1":
        qs = qs.filter(is_tracked=True)
    return JsonResponse({"keywords": [_keyword_payload(kw, stale_after) for kw in qs]})


@require_GET
def keyword_ranking_view(request, keyword_id):
    """
    Ranking history for charting.

    Query params: ?start=YYYY-MM-DD&end=YYYY-MM-DD (both optional).
    Snapshots come oldest first.  The latest data is always returned, with
    ``stale`` / ``refresh_failed`` flags when the last refresh didn't land.
    """
    keyword = get_object_or_404(TrackedKeyword.objects.select_related("app"), id=keyword_id)
    form = RankingRangeForm(request.GET)
    if not form.is_valid():
        return JsonResponse({"error": "Invalid date range.", "fields": form.errors.get_json_data()}, status=400)

    qs = RankingSnapshot.objects.filter(keyword=keyword).order_by("snapshot_date")
    if form.cleaned_data.get("start"):
        qs = qs.filter(snapshot_date__gte=form.cleaned_data["start"])
    if form.cleaned_data.get("end"):
        qs = qs.filter(snapshot_date__lte=form.cleaned_data["end"])

    return JsonResponse({
        "keyword": keyword.keyword,
        "keyword_id": keyword.pk,
        "app_name": keyword.app.name,
        "platform": keyword.platform,
        "region": keyword.region,
        "is_tracked": keyword.is_tracked,
        **keyword.freshness(get_config()["STALE_AFTER_HOURS"]),
        "snapshots": [s.to_dict() for s in qs],
    })


# ── Apps & status ─────────────────────────────────────────────────────────


@require_GET
def app_stats_view(request, app_id):
    """Summary over the latest snapshot of every tracked keyword of an app."""
    app = get_object_or_404(App, id=app_id)
    keywords = TrackedKeyword.objects.filter(app=app, is_tracked=True)

    positions = []
    total_traffic = 0
    total_visibility = 0.0
    for keyword in keywords:
        latest = keyword.latest_snapshot
        if latest is None:
            continue
        total_traffic += latest.estimated_traffic
        total_visibility += latest.visibility_score
        if latest.position is not None:
            positions.append(latest.position)

    return JsonResponse({
        "app_id": app.pk,
        "app_name": app.name,
        "tracked_keywords": keywords.count(),
        "ranking_keywords": len(positions),
        "top_10": sum(1 for p in positions if p <= 10),
        "top_30": sum(1 for p in positions if p <= 30),
        "top_50": sum(1 for p in positions if p <= 50),
        "average_position": round(sum(positions) / len(positions), 1) if positions else None,
        "total_estimated_traffic": total_traffic,
        "total_visibility": round(total_visibility, 2),
    })


@require_GET
def status_view(request):
    """Return refresh progress, queue depth and circuit state as JSON."""
    status = get_status()
    status["queue"] = {
        state: RefreshJob.objects.filter(status=state).count()
        for state in RefreshJobStatus.values
    }
    status.update(get_scheduler().health())
    return JsonResponse(status)


@require_POST
def reset_breaker_view(request):
    """
    Close a paused surface's circuit so its jobs are claimed again.

    POST: surface (optional; every surface when omitted).
    """
    scheduler = get_scheduler()
    surface = request.POST.get("surface") or None
    if surface and surface not in scheduler.limiters:
        return JsonResponse({"error": f"Unknown surface '{surface}'."}, status=400)
    scheduler.breaker.reset(surface)
    scheduler.wake()
    return JsonResponse({"success": True, **scheduler.health()})
