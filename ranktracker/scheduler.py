"""
Background refresh scheduler for tracked keywords.

Keeps a durable RefreshJob queue in the database and drains it with a
bounded worker pool.  Outbound calls go through the per-surface rate
limiters, so the worker count bounds parallelism, not request rate.
Progress is tracked in-memory so the status endpoint can show a
non-blocking progress indicator.

Schedule:
  - On each check, stale ``processing`` jobs (a crashed worker) go back
    to pending.
  - If any tracked keyword hasn't been tracked today, one job per such
    keyword is enqueued, staggered across the cycle window.
  - Due jobs are claimed (highest priority, then earliest) and processed.
  - Transient failures retry with exponential backoff via
    ``scheduled_at``; permanent ones fail immediately.
  - A surface that keeps failing is paused by its circuit breaker: its
    jobs stay pending until the cooldown passes.
  - Finished jobs older than the retention window are deleted.
"""

import atexit
import logging
import random
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

from django.db import connection
from django.db.models import Q
from django.utils import timezone

from .breaker import SurfaceCircuitBreaker
from .conf import get_config
from .exceptions import (
    NotFound,
    ParseFailure,
    PersistenceConflict,
    RankTrackingError,
    RateLimited,
    RequestCancelled,
)
from .models import (
    ACTIVE_JOB_STATUSES,
    RefreshJob,
    RefreshJobStatus,
    TrackedKeyword,
)
from .ratelimit import build_rate_limiters
from .serp import SerpClient
from .snapshots import CompetitorRecorder, record_snapshot

logger = logging.getLogger(__name__)

# ── In-memory progress state ──────────────────────────────────────────────

_status_lock = threading.Lock()
_refresh_status = {
    "running": False,
    "total": 0,
    "completed": 0,
    "retried": 0,
    "failed": 0,
    "current_keyword": "",
    "started_at": None,
    "last_completed_at": None,
    "error": None,
}

# Cap on the rate-limit backoff multiplier (2x per consecutive throttle).
MAX_THROTTLE_MULTIPLIER = 8


def get_status():
    """Return a snapshot of the current refresh status."""
    with _status_lock:
        return dict(_refresh_status)


def _update_status(**kwargs):
    with _status_lock:
        _refresh_status.update(kwargs)


def _increment_status(key, amount=1):
    with _status_lock:
        _refresh_status[key] += amount


def backoff_delay(retry_count: int, base: float, jitter: float = 0.0, rng=None) -> float:
    """``base * 2**retry_count`` seconds plus up to ``jitter`` seconds."""
    rng = rng or random
    spread = rng.uniform(0, jitter) if jitter > 0 else 0.0
    return base * (2 ** retry_count) + spread


def _today_start(now):
    return timezone.localtime(now).replace(hour=0, minute=0, second=0, microsecond=0)


class RefreshScheduler:
    """
    Owns the job queue, the worker pool and the per-surface limiters.

    Args:
        client: SerpClient; built over ``limiters`` when omitted.
        limiters: platform -> RateLimiter; built from config when omitted.
        worker_count: Pool size (defaults to WORKER_COUNT).
        breaker: SurfaceCircuitBreaker; built from config when omitted.
        rng: Random source for backoff jitter.
    """

    def __init__(self, client=None, limiters=None, config=None, worker_count=None,
                 estimator=None, recorder=None, rng=None, breaker=None):
        self.config = config or get_config()
        self.limiters = limiters if limiters is not None else build_rate_limiters(self.config)
        self.client = client or SerpClient(self.limiters)
        self.worker_count = worker_count or self.config["WORKER_COUNT"]
        self.estimator = estimator
        self.recorder = recorder or CompetitorRecorder(self.config["COMPETITOR_DEPTH"])
        self.breaker = breaker or SurfaceCircuitBreaker(
            failure_threshold=self.config["BREAKER_FAILURE_THRESHOLD"],
            cooldown_seconds=self.config["BREAKER_COOLDOWN_SECONDS"],
            surfaces=self.limiters,
        )
        self.stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._rng = rng or random.Random()
        self._strike_lock = threading.Lock()
        self._throttle_strikes = {}

    # ── Queue ─────────────────────────────────────────────────────────────

    def _due_keywords(self, now, due_only=False):
        keywords = (
            TrackedKeyword.objects
            .filter(is_tracked=True)
            .exclude(refresh_jobs__status__in=ACTIVE_JOB_STATUSES)
        )
        if due_only:
            keywords = keywords.filter(
                Q(last_tracked_at__isnull=True) | Q(last_tracked_at__lt=_today_start(now))
            )
        return keywords.distinct()

    def needs_cycle(self, now=None) -> bool:
        """True if a tracked keyword without a queued job wasn't tracked today."""
        now = now or timezone.now()
        return self._due_keywords(now, due_only=True).exists()

    def schedule_cycle(self, now=None, due_only=False) -> int:
        """
        Enqueue one pending job per tracked keyword that has no active job.

        ``scheduled_at`` is spread evenly over CYCLE_WINDOW_SECONDS.
        Returns the number of jobs created.
        """
        now = now or timezone.now()
        keywords = list(
            self._due_keywords(now, due_only=due_only)
            .order_by("last_tracked_at", "id")
            .values_list("id", flat=True)
        )
        if not keywords:
            return 0

        window = self.config["CYCLE_WINDOW_SECONDS"]
        step = window / len(keywords)
        jobs = [
            RefreshJob(
                keyword_id=keyword_id,
                priority=self.config["DAILY_PRIORITY"],
                max_retries=self.config["MAX_RETRIES"],
                scheduled_at=now + timedelta(seconds=i * step),
                created_at=now,
            )
            for i, keyword_id in enumerate(keywords)
        ]
        RefreshJob.objects.bulk_create(jobs)
        logger.info(
            f"Scheduled {len(jobs)} refresh jobs over {window // 60} minutes."
        )
        return len(jobs)

    def enqueue_refresh(self, keyword_ids, priority=None, now=None) -> list:
        """
        Queue immediate refreshes for ``keyword_ids``.

        A keyword that already has a pending job gets that job promoted
        (higher priority, due now) instead of a duplicate.  Keywords that
        are untracked or unknown are skipped.  Returns the queued jobs.
        """
        now = now or timezone.now()
        priority = priority if priority is not None else self.config["MANUAL_PRIORITY"]
        queued = []
        keywords = TrackedKeyword.objects.filter(pk__in=list(keyword_ids), is_tracked=True)
        for keyword in keywords:
            active = (
                RefreshJob.objects
                .filter(keyword=keyword, status__in=ACTIVE_JOB_STATUSES)
                .order_by("-priority")
                .first()
            )
            if active is None:
                queued.append(
                    RefreshJob.objects.create(
                        keyword=keyword,
                        priority=priority,
                        max_retries=self.config["MAX_RETRIES"],
                        scheduled_at=now,
                        created_at=now,
                    )
                )
                continue
            if active.status == RefreshJobStatus.PENDING:
                RefreshJob.objects.filter(pk=active.pk, status=RefreshJobStatus.PENDING).update(
                    priority=max(priority, active.priority),
                    scheduled_at=min(now, active.scheduled_at),
                )
                active.refresh_from_db()
            queued.append(active)
        if queued:
            logger.info(f"Queued {len(queued)} manual refreshes.")
            self.wake()
        return queued

    def _due_jobs(self, now):
        """Pending jobs due at ``now``, minus those for surfaces with an open circuit."""
        jobs = RefreshJob.objects.filter(status=RefreshJobStatus.PENDING, scheduled_at__lte=now)
        paused = self.breaker.open_surfaces(now)
        if paused:
            jobs = jobs.exclude(keyword__platform__in=paused)
        return jobs

    def claim_next_job(self, now=None):
        """
        Atomically move the next due job from pending to processing.

        Returns None when nothing is due.  Jobs for keywords that were
        untracked after queueing are failed here, never dispatched.  Jobs
        for a paused surface stay pending.
        """
        now = now or timezone.now()
        while True:
            candidate = (
                self._due_jobs(now)
                .order_by("-priority", "scheduled_at", "id")
                .first()
            )
            if candidate is None:
                return None

            claimed = RefreshJob.objects.filter(
                pk=candidate.pk, status=RefreshJobStatus.PENDING
            ).update(status=RefreshJobStatus.PROCESSING, started_at=now)
            if not claimed:
                # Another worker got it first.
                continue

            job = RefreshJob.objects.select_related("keyword", "keyword__app").get(pk=candidate.pk)
            if not job.keyword.is_tracked:
                job.mark_failed(RequestCancelled("Keyword is no longer tracked"))
                logger.info(f"Dropped job {job.pk}: '{job.keyword.keyword}' is no longer tracked.")
                continue
            return job

    def recover_stale_jobs(self, now=None) -> int:
        """Return jobs stuck in processing (crashed worker) to pending."""
        now = now or timezone.now()
        cutoff = now - timedelta(seconds=self.config["STALE_JOB_SECONDS"])
        recovered = RefreshJob.objects.filter(
            status=RefreshJobStatus.PROCESSING, started_at__lt=cutoff
        ).update(status=RefreshJobStatus.PENDING, started_at=None)
        if recovered:
            logger.warning(f"Recovered {recovered} stale processing jobs.")
        return recovered

    def cleanup_old_jobs(self, now=None) -> int:
        """Delete finished jobs older than JOB_RETENTION_DAYS."""
        now = now or timezone.now()
        days = self.config["JOB_RETENTION_DAYS"]
        cutoff = now - timedelta(days=days)
        deleted_count, _ = RefreshJob.objects.filter(
            status__in=(RefreshJobStatus.COMPLETED, RefreshJobStatus.FAILED),
            completed_at__lt=cutoff,
        ).delete()
        if deleted_count:
            logger.info(f"Cleaned up {deleted_count} refresh jobs older than {days} days.")
        return deleted_count

    def seconds_until_next_job(self, now=None):
        """Seconds until the earliest pending job is due, or None."""
        now = now or timezone.now()
        nxt = (
            RefreshJob.objects
            .filter(status=RefreshJobStatus.PENDING)
            .order_by("scheduled_at")
            .values_list("scheduled_at", flat=True)
            .first()
        )
        if nxt is None:
            return None
        return max(0.0, (nxt - now).total_seconds())

    # ── Failure handling ─────────────────────────────────────────────────

    def _backoff_base(self, surface) -> float:
        base = self.config["BACKOFF_BASE_SECONDS"]
        with self._strike_lock:
            strikes = self._throttle_strikes.get(surface, 0)
        if strikes <= 1:
            return base
        return base * min(MAX_THROTTLE_MULTIPLIER, 2 ** (strikes - 1))

    def _record_throttle(self, surface):
        with self._strike_lock:
            self._throttle_strikes[surface] = self._throttle_strikes.get(surface, 0) + 1

    def _clear_throttle(self, surface):
        with self._strike_lock:
            self._throttle_strikes.pop(surface, None)

    def _handle_failure(self, job, error):
        keyword = job.keyword
        label = f"'{keyword.keyword}' ({keyword.platform}/{keyword.region})"
        surface = error.surface or keyword.platform

        if not error.transient:
            job.mark_failed(error)
            if isinstance(error, NotFound):
                TrackedKeyword.objects.filter(pk=keyword.pk).update(needs_review=True)
            _increment_status("failed")
            logger.error(f"Refresh failed permanently for {label}: [{error.kind}] {error}")
            return

        self.breaker.record_failure(surface, error)
        if isinstance(error, RateLimited):
            self._record_throttle(surface)
        if isinstance(error, ParseFailure):
            logger.error(f"Parse failure for {label}: {error}")

        if job.retry_count >= job.max_retries:
            job.retry_count += 1
            job.mark_failed(error)
            _increment_status("failed")
            logger.error(
                f"Refresh gave up for {label} after {job.max_retries} retries: "
                f"[{error.kind}] {error}"
            )
            return

        delay = backoff_delay(
            job.retry_count,
            self._backoff_base(surface),
            self.config["BACKOFF_JITTER_SECONDS"],
            self._rng,
        )
        job.mark_for_retry(error, delay)
        _increment_status("retried")
        logger.warning(
            f"Refresh of {label} failed ([{error.kind}] {error}); "
            f"retry {job.retry_count}/{job.max_retries} in {delay:.0f}s"
        )

    # ── Processing ───────────────────────────────────────────────────────

    def process_job(self, job) -> str:
        """Run one claimed job to its next state. Returns the job's status."""
        keyword = job.keyword
        app = keyword.app
        label = f"{keyword.keyword} ({keyword.region.upper()})"
        _update_status(current_keyword=label)

        try:
            if not app.store_id:
                raise NotFound(f"App '{app.name}' has no store id")
            serp = self.client.fetch_ranking(
                keyword.keyword,
                keyword.platform,
                keyword.region,
                self.config["TRACKED_DEPTH"],
                cancel_event=self.stop_event,
            )
            try:
                record_snapshot(
                    keyword,
                    serp,
                    estimator=self.estimator,
                    recorder=self.recorder,
                    config=self.config,
                )
            except PersistenceConflict as e:
                logger.info(f"Snapshot for {label} already written by another attempt: {e}")
        except RequestCancelled:
            job.requeue()
            logger.info(f"Job {job.pk} for {label} re-queued (shutting down).")
            return job.status
        except RankTrackingError as e:
            self._handle_failure(job, e)
            return job.status
        except Exception as e:
            logger.exception(f"Unexpected error refreshing {label}")
            self._handle_failure(job, RankTrackingError(str(e), surface=keyword.platform))
            return job.status

        self._clear_throttle(keyword.platform)
        self.breaker.record_success(keyword.platform)
        job.mark_completed()
        keyword.last_tracked_at = timezone.now()
        keyword.save(update_fields=["last_tracked_at"])
        _increment_status("completed")
        return job.status

    def run_pending(self, max_jobs=None) -> int:
        """
        Drain due jobs with ``worker_count`` workers.

        Returns the number of jobs processed.
        """
        count_lock = threading.Lock()
        processed = 0

        def reserve():
            nonlocal processed
            with count_lock:
                if max_jobs is not None and processed >= max_jobs:
                    return False
                processed += 1
                return True

        def release():
            nonlocal processed
            with count_lock:
                processed -= 1

        def worker():
            try:
                while not self.stop_event.is_set():
                    if not reserve():
                        return
                    job = self.claim_next_job()
                    if job is None:
                        release()
                        return
                    self.process_job(job)
            finally:
                connection.close()

        due = self._due_jobs(timezone.now()).count()
        if not due:
            return 0

        _update_status(
            running=True,
            total=due if max_jobs is None else min(due, max_jobs),
            completed=0,
            retried=0,
            failed=0,
            current_keyword="",
            started_at=timezone.now().isoformat(),
            error=None,
        )
        logger.info(f"Refresh starting: {due} jobs due, {self.worker_count} workers.")

        with ThreadPoolExecutor(
            max_workers=self.worker_count, thread_name_prefix="ranktracker-worker"
        ) as pool:
            futures = [pool.submit(worker) for _ in range(self.worker_count)]
            for future in futures:
                future.result()

        _update_status(
            running=False,
            current_keyword="",
            last_completed_at=timezone.now().isoformat(),
        )
        status = get_status()
        logger.info(
            f"Refresh complete: {processed} jobs processed "
            f"({status['completed']} completed, {status['retried']} retrying, "
            f"{status['failed']} failed)."
        )
        return processed

    def run_cycle(self):
        """One pass of the background loop."""
        self.recover_stale_jobs()
        if self.needs_cycle():
            self.schedule_cycle(due_only=True)
        self.run_pending()
        self.cleanup_old_jobs()

    def health(self, now=None) -> dict:
        """Circuit state per surface; ``degraded`` while any surface is paused."""
        breakers = self.breaker.snapshot(now)
        degraded = any(b["state"] == "open" for b in breakers.values())
        return {
            "health": "degraded" if degraded else "healthy",
            "circuit_breakers": breakers,
        }

    # ── Lifecycle ────────────────────────────────────────────────────────

    def wake(self):
        self._wake_event.set()

    def stop(self):
        """Stop dispatching; jobs waiting on a limiter are re-queued."""
        self.stop_event.set()
        self._wake_event.set()

    def _sleep(self, seconds):
        self._wake_event.wait(timeout=seconds)
        self._wake_event.clear()

    def loop(self):
        """Main scheduler loop."""
        # Let the app finish starting
        self._sleep(self.config["STARTUP_DELAY_SECONDS"])

        while not self.stop_event.is_set():
            try:
                self.run_cycle()
                next_due = self.seconds_until_next_job()
                if next_due == 0:
                    # Whatever is still due belongs to a paused surface.
                    next_due = self.breaker.seconds_until_retry()
            except Exception as e:
                logger.error(f"Scheduler error: {e}")
                _update_status(running=False, error=str(e))
                next_due = None
            finally:
                connection.close()

            interval = self.config["CYCLE_CHECK_INTERVAL_SECONDS"]
            if next_due is not None:
                interval = min(interval, max(1.0, next_due))
            self._sleep(interval)


# ── Scheduler thread ─────────────────────────────────────────────────────

_scheduler = None
_scheduler_started = False
_scheduler_lock = threading.Lock()


def get_scheduler() -> RefreshScheduler:
    """The process-wide scheduler (its limiters are shared with discovery)."""
    global _scheduler
    with _scheduler_lock:
        if _scheduler is None:
            _scheduler = RefreshScheduler()
        return _scheduler


def _stop_after(thread, scheduler):
    """Stop ``scheduler`` once ``thread`` has finished."""
    thread.join()
    logger.info("Shutting down: stopping the refresh scheduler.")
    scheduler.stop()


def start_scheduler():
    """
    Start the background scheduler thread (idempotent).

    The scheduler is stopped when the main thread finishes, which happens
    before the interpreter joins the worker pool, so limiter waits are
    cancelled and in-flight jobs go back to pending.  ``atexit`` covers
    embedders that never run a main thread to completion.
    """
    global _scheduler_started
    scheduler = get_scheduler()
    with _scheduler_lock:
        if _scheduler_started:
            return
        _scheduler_started = True

    atexit.register(scheduler.stop)
    threading.Thread(
        target=_stop_after,
        args=(threading.main_thread(), scheduler),
        daemon=True,
        name="ranktracker-shutdown",
    ).start()
    thread = threading.Thread(target=scheduler.loop, daemon=True, name="ranktracker-refresh")
    thread.start()
    logger.info("Refresh scheduler started.")
