"""ARQ async worker - attribution job processor and cron scheduler.

WHAT:
    Async entry points for every attribution run type plus the cron jobs
    that fan them out across tenants. The actual work is synchronous
    SQLAlchemy code in the run controller, run off the event loop with
    asyncio.to_thread.

WHY:
    - One job per tenant keeps a slow tenant from blocking the rest
    - Deterministic _job_id per tenant deduplicates overlapping schedules
    - Scheduler and processor are separate settings classes so workers can
      scale out while exactly one process runs cron

SCHEDULE (all times UTC, SchedulerSettings):
    - :00 every hour: incremental run per enabled tenant
    - :30 every hour: retry unattributed conversions (last 72h)
    - 02:10 daily:    rebuild yesterday's channel summaries
    - 04:00 daily:    recalculate the last 3 days (late touchpoints)

USAGE:
    # Job processor (scale horizontally)
    arq attribution_engine.workers.arq_worker.WorkerSettings

    # Cron scheduler (exactly one)
    arq attribution_engine.workers.arq_worker.SchedulerSettings

    # Or use the start script
    python -m attribution_engine.workers.start_arq_worker [--scheduler]

REFERENCES:
    - https://arq-docs.helpmanual.io/
    - attribution_engine/services/attribution/run_controller.py
    - attribution_engine/workers/arq_enqueue.py
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, Optional
from uuid import UUID

from arq import cron

from attribution_engine.database import get_sync_session
from attribution_engine.deps import get_settings
from attribution_engine.services.attribution import rollup
from attribution_engine.services.attribution.errors import AttributionError, ConfigError
from attribution_engine.services.attribution.run_controller import AttributionRunController
from attribution_engine.services.attribution.store import AttributionStore
from attribution_engine.telemetry import capture_exception, init_observability, set_tenant_context
from attribution_engine.workers import arq_enqueue

logger = logging.getLogger(__name__)


# =============================================================================
# RUN JOBS - Delegate to AttributionRunController
# =============================================================================

async def _run_controller_job(
    operation: str,
    tenant_id: str,
    run: Callable[[AttributionRunController, UUID], object],
) -> Dict:
    """Run one controller operation off the event loop.

    If ARQ cancels the job (timeout or abort), the controller is told to
    stop at the next conversion boundary before the cancellation propagates.
    """
    set_tenant_context(tenant_id)
    controller = AttributionRunController()
    try:
        summary = await asyncio.to_thread(run, controller, UUID(tenant_id))
    except asyncio.CancelledError:
        logger.warning("[ARQ] %s cancelled for tenant %s, stopping controller", operation, tenant_id)
        controller.cancel()
        raise
    except ConfigError as e:
        logger.error("[ARQ] %s aborted for tenant %s: %s", operation, tenant_id, e.message)
        return {"success": False, "error": e.message}
    except Exception as e:
        logger.exception("[ARQ] %s failed for tenant %s: %s", operation, tenant_id, e)
        capture_exception(e, extra={"operation": operation, "tenant_id": tenant_id})
        return {"success": False, "error": str(e)}

    result = {"success": True, **summary.as_dict()}
    logger.info("[ARQ] %s complete for tenant %s: %s", operation, tenant_id, result)
    return result


async def process_attribution_batch(ctx: Dict, tenant_id: str, since_iso: Optional[str] = None) -> Dict:
    """Incremental run for one tenant.

    Args:
        ctx: ARQ context
        tenant_id: Tenant UUID string
        since_iso: Ingestion time (ISO 8601) from which late touchpoints reopen
            completed conversions; None scans every touchpoint
    """
    since = datetime.fromisoformat(since_iso) if since_iso else None
    logger.info("[ARQ] Starting attribution batch for tenant %s (since=%s)", tenant_id, since_iso)
    return await _run_controller_job(
        "process_attribution_batch",
        tenant_id,
        lambda controller, tid: controller.run_batch(tid, since),
    )


async def recompute_tenant_attribution(ctx: Dict, tenant_id: str) -> Dict:
    """Full recompute for one tenant (every conversion, regardless of state)."""
    logger.info("[ARQ] Starting full recompute for tenant %s", tenant_id)
    return await _run_controller_job(
        "recompute_tenant_attribution",
        tenant_id,
        lambda controller, tid: controller.recompute_tenant(tid),
    )


async def recalculate_recent_attribution(ctx: Dict, tenant_id: str, days: Optional[int] = None) -> Dict:
    """Recompute the last N days for one tenant to absorb late touchpoints."""
    logger.info("[ARQ] Recalculating recent attribution for tenant %s (days=%s)", tenant_id, days)
    return await _run_controller_job(
        "recalculate_recent_attribution",
        tenant_id,
        lambda controller, tid: controller.recalculate_recent(tid, days),
    )


async def process_unattributed_conversions(ctx: Dict, tenant_id: str) -> Dict:
    """Retry recent conversions that still have no attribution rows."""
    logger.info("[ARQ] Processing unattributed conversions for tenant %s", tenant_id)
    return await _run_controller_job(
        "process_unattributed_conversions",
        tenant_id,
        lambda controller, tid: controller.process_unattributed(tid),
    )


def _rebuild_summary_sync(tenant_id: UUID, day: date) -> int:
    with get_sync_session() as db:
        return len(rollup.rebuild_channel_summaries(AttributionStore(db), tenant_id, day))


async def rebuild_channel_summary(ctx: Dict, tenant_id: str, date_iso: str) -> Dict:
    """Rebuild one tenant's channel summary for one date (ISO yyyy-mm-dd)."""
    set_tenant_context(tenant_id)
    try:
        day = date.fromisoformat(date_iso)
        rows = await asyncio.to_thread(_rebuild_summary_sync, UUID(tenant_id), day)
        return {"success": True, "date": date_iso, "rows": rows}
    except (AttributionError, ValueError) as e:
        logger.error("[ARQ] Rollup failed for tenant %s on %s: %s", tenant_id, date_iso, e)
        capture_exception(e, extra={"operation": "rebuild_channel_summary", "tenant_id": tenant_id})
        return {"success": False, "error": str(e)}


# =============================================================================
# SCHEDULED JOBS - fan out per tenant
# =============================================================================

def _enabled_tenants_with_since(default_lookback: timedelta):
    """[(tenant_id, since)] for every enabled tenant.

    since = start of the tenant's last completed run, or now - lookback when
    the tenant has never completed one.
    """
    fallback = datetime.utcnow() - default_lookback
    with get_sync_session() as db:
        store = AttributionStore(db)
        return [
            (tenant_id, store.last_completed_run_started_at(tenant_id) or fallback)
            for tenant_id in store.list_enabled_tenant_ids()
        ]


def _enabled_tenants():
    with get_sync_session() as db:
        return AttributionStore(db).list_enabled_tenant_ids()


async def scheduled_attribution_run(ctx: Dict) -> Dict:
    """Scheduled job: enqueue an incremental run for every enabled tenant.

    WHEN:
        Every hour at :00.
    """
    logger.info("[ARQ] Starting scheduled attribution run")
    settings = get_settings()
    try:
        tenants = await asyncio.to_thread(
            _enabled_tenants_with_since,
            timedelta(hours=settings.ATTRIBUTION_DEFAULT_LOOKBACK_HOURS),
        )
        enqueued = 0
        for tenant_id, since in tenants:
            result = await arq_enqueue.enqueue_attribution_batch(tenant_id, since, pool=ctx.get("redis"))
            enqueued += result["status"] == "enqueued"

        logger.info("[ARQ] Scheduled attribution run: %d tenants, %d enqueued", len(tenants), enqueued)
        return {"tenants": len(tenants), "enqueued": enqueued}
    except Exception as e:
        logger.exception("[ARQ] Scheduled attribution run failed: %s", e)
        capture_exception(e, extra={"operation": "scheduled_attribution_run"})
        return {"error": str(e)}


async def scheduled_recalculate_recent(ctx: Dict) -> Dict:
    """Scheduled job: recompute the last ATTRIBUTION_RECENT_DAYS days per tenant.

    WHEN:
        Daily at 04:00 UTC.
    """
    logger.info("[ARQ] Starting scheduled recent recalculation")
    days = get_settings().ATTRIBUTION_RECENT_DAYS
    try:
        tenants = await asyncio.to_thread(_enabled_tenants)
        for tenant_id in tenants:
            await arq_enqueue.enqueue_recalculate_recent(tenant_id, days, pool=ctx.get("redis"))
        return {"tenants": len(tenants), "days": days}
    except Exception as e:
        logger.exception("[ARQ] Scheduled recent recalculation failed: %s", e)
        capture_exception(e, extra={"operation": "scheduled_recalculate_recent"})
        return {"error": str(e)}


async def scheduled_daily_rollup(ctx: Dict) -> Dict:
    """Scheduled job: rebuild yesterday's channel summaries for every tenant.

    WHEN:
        Daily at 02:10 UTC.

    WHY:
        Runs rebuild summaries for the dates they touch; this pass reconciles
        anything a failed rebuild left behind.
    """
    yesterday = (datetime.now(timezone.utc) - timedelta(days=1)).date().isoformat()
    logger.info("[ARQ] Starting daily rollup for %s", yesterday)
    try:
        tenants = await asyncio.to_thread(_enabled_tenants)
        for tenant_id in tenants:
            await arq_enqueue.enqueue_rollup(tenant_id, yesterday, pool=ctx.get("redis"))
        return {"tenants": len(tenants), "date": yesterday}
    except Exception as e:
        logger.exception("[ARQ] Daily rollup failed: %s", e)
        capture_exception(e, extra={"operation": "scheduled_daily_rollup", "date": yesterday})
        return {"error": str(e)}


async def scheduled_process_unattributed(ctx: Dict) -> Dict:
    """Scheduled job: retry unattributed conversions for every tenant.

    WHEN:
        Every hour at :30.
    """
    logger.info("[ARQ] Starting scheduled unattributed processing")
    try:
        tenants = await asyncio.to_thread(_enabled_tenants)
        for tenant_id in tenants:
            await arq_enqueue.enqueue_process_unattributed(tenant_id, pool=ctx.get("redis"))
        return {"tenants": len(tenants)}
    except Exception as e:
        logger.exception("[ARQ] Scheduled unattributed processing failed: %s", e)
        capture_exception(e, extra={"operation": "scheduled_process_unattributed"})
        return {"error": str(e)}


# =============================================================================
# WORKER LIFECYCLE
# =============================================================================

async def startup(ctx: Dict) -> None:
    """Worker startup - initialize resources and log config."""
    import platform

    settings = get_settings()
    status = init_observability()

    logger.info("=" * 60)
    logger.info("[ARQ] Worker starting up")
    logger.info("=" * 60)
    logger.info("[ARQ] Python: %s", platform.python_version())
    logger.info("[ARQ] Host: %s", platform.node())
    logger.info("[ARQ] Queue: %s", settings.ARQ_QUEUE_NAME)
    logger.info("[ARQ] Conversion workers per run: %d", settings.ATTRIBUTION_MAX_WORKERS)
    logger.info("[ARQ] Observability: %s", status)
    logger.info("=" * 60)

    ctx["startup_time"] = datetime.now(timezone.utc)
    ctx["jobs_processed"] = 0


async def shutdown(ctx: Dict) -> None:
    """Worker shutdown - log stats."""
    jobs = ctx.get("jobs_processed", 0)
    uptime = datetime.now(timezone.utc) - ctx.get("startup_time", datetime.now(timezone.utc))

    logger.info("=" * 60)
    logger.info("[ARQ] Worker shutting down")
    logger.info("[ARQ] Jobs processed: %d", jobs)
    logger.info("[ARQ] Uptime: %s", uptime)
    logger.info("=" * 60)


async def on_job_end(ctx: Dict) -> None:
    """Called after each job completes."""
    ctx["jobs_processed"] = ctx.get("jobs_processed", 0) + 1


# =============================================================================
# WORKER SETTINGS
# =============================================================================

class WorkerSettings:
    """ARQ worker configuration - processes jobs only.

    Does NOT run cron jobs; SchedulerSettings does. Workers can scale out
    without duplicating scheduled runs.

    - max_jobs=4: tenants processed concurrently (each has its own thread pool)
    - job_timeout=1800: a full-tenant recompute can take a while
    - max_tries=3: retried on crash; conversion state makes re-runs safe
    """

    functions = [
        process_attribution_batch,
        recompute_tenant_attribution,
        recalculate_recent_attribution,
        process_unattributed_conversions,
        rebuild_channel_summary,
    ]

    cron_jobs = []

    on_startup = startup
    on_shutdown = shutdown
    after_job_end = on_job_end

    redis_settings = arq_enqueue.get_redis_settings()

    max_jobs = 4
    job_timeout = 1800
    keep_result = 3600
    retry_jobs = True
    max_tries = 3
    health_check_interval = 30

    queue_name = get_settings().ARQ_QUEUE_NAME


class SchedulerSettings:
    """ARQ cron scheduler - enqueues per-tenant jobs on a fixed schedule.

    Run exactly one of these. unique=True on every cron job prevents two
    schedulers from firing the same slot.
    """

    functions = []

    cron_jobs = [
        cron(scheduled_attribution_run, minute=0, unique=True, run_at_startup=False),
        cron(scheduled_process_unattributed, minute=30, unique=True),
        cron(scheduled_daily_rollup, hour=2, minute=10, unique=True),
        cron(scheduled_recalculate_recent, hour=4, minute=0, unique=True),
    ]

    on_startup = startup
    on_shutdown = shutdown

    redis_settings = arq_enqueue.get_redis_settings()

    max_jobs = 2
    job_timeout = 300
    keep_result = 3600
    health_check_interval = 60

    # Cron bookkeeping lives on its own queue; enqueued work goes to ARQ_QUEUE_NAME
    queue_name = get_settings().ARQ_QUEUE_NAME + ":scheduler"
