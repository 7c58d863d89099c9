"""Attribution trigger and read endpoints.

WHAT:
    Provides API endpoints for:
    - Triggering incremental runs and full recomputes (enqueued to ARQ)
    - Reading and updating per-tenant attribution settings
    - Reading daily channel summaries
    - Inspecting run records

WHY:
    Runs are long and belong on the worker; the API only validates, stores
    settings and enqueues. A settings change invalidates every stored result,
    so updating settings always enqueues a full recompute.

REFERENCES:
    - attribution_engine/workers/arq_enqueue.py
    - attribution_engine/services/attribution/store.py
"""

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..database import get_db
from ..deps import get_tenant
from ..models import AttributionModelEnum, AttributionWindowEnum, Tenant
from ..services.attribution.calculator import settings_fingerprint
from ..services.attribution.credit_models import DATA_DRIVEN_IS_APPROXIMATION
from ..services.attribution.errors import ConfigError
from ..services.attribution.store import AttributionStore
from ..services.attribution.types import SettingsSnapshot
from ..telemetry import capture_exception
from ..workers import arq_enqueue

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/tenants",
    tags=["Attribution"],
)


# =============================================================================
# SCHEMAS
# =============================================================================

class RunRequest(BaseModel):
    """Body for triggering an incremental run."""
    since: Optional[datetime] = Field(
        None, description="Look for late touchpoints ingested at/after this instant; omit to scan all of them"
    )


class EnqueueResponse(BaseModel):
    """Result of enqueueing a background job."""
    job_id: Optional[str] = Field(None, description="ARQ job id (None when deduplicated)")
    status: str = Field(..., description="enqueued, skipped_or_duplicate or enqueue_failed")


class AttributionSettingsResponse(BaseModel):
    """Effective attribution settings for a tenant.

    WHAT: The snapshot every run uses, plus its fingerprint
    WHY: Clients can tell whether stored results were computed with the
         current settings
    """
    tenant_id: UUID
    settings: SettingsSnapshot
    fingerprint: str = Field(..., description="Hash of the result-affecting settings")
    data_driven_is_approximation: bool = Field(
        DATA_DRIVEN_IS_APPROXIMATION,
        description="data_driven is a linear/time-decay blend, not a statistical model",
    )
    recompute: Optional[EnqueueResponse] = Field(None, description="Recompute job enqueued by an update")


class ChannelSummaryRow(BaseModel):
    """One channel summary row."""
    model: str
    window: str
    channel: str
    platform: Optional[str] = None
    touchpoints: int
    conversions: int
    revenue: Decimal
    spend: Optional[Decimal] = None
    roas: Optional[Decimal] = None
    cpa: Optional[Decimal] = None
    conversion_rate: Optional[Decimal] = None


class ChannelSummaryResponse(BaseModel):
    """Channel summary for one date."""
    tenant_id: UUID
    day: date = Field(..., description="Conversion date (UTC)")
    rows: List[ChannelSummaryRow]


class RunResponse(BaseModel):
    """An attribution run record."""
    id: UUID
    tenant_id: UUID
    run_type: str
    status: str
    since: Optional[datetime] = None
    processed: int
    skipped: int
    failed: int
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


# =============================================================================
# HELPERS
# =============================================================================

async def _enqueue_or_503(operation: str, tenant_id: UUID, enqueue) -> EnqueueResponse:
    try:
        result = await enqueue
    except Exception as e:
        logger.exception("[ATTRIBUTION] Failed to enqueue %s for tenant %s", operation, tenant_id)
        capture_exception(e, extra={"operation": operation, "tenant_id": str(tenant_id)})
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Job queue unavailable, try again later",
        )
    return EnqueueResponse(**result)


def _load_settings(store: AttributionStore, tenant_id: UUID) -> SettingsSnapshot:
    try:
        return store.get_attribution_settings(tenant_id)
    except ConfigError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)


# =============================================================================
# RUN TRIGGERS
# =============================================================================

@router.post(
    "/{tenant_id}/attribution/runs",
    response_model=EnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Trigger an incremental attribution run",
    description="""
    Enqueue an incremental run for the tenant.

    Processes new conversions, failed or pending ones, conversions whose
    results were computed with older settings, and conversions with
    touchpoints that arrived after they were attributed.
    """
)
async def trigger_run(
    payload: Optional[RunRequest] = None,
    tenant: Tenant = Depends(get_tenant),
):
    since = payload.since if payload else None
    return await _enqueue_or_503(
        "enqueue_attribution_batch",
        tenant.id,
        arq_enqueue.enqueue_attribution_batch(tenant.id, since),
    )


@router.post(
    "/{tenant_id}/attribution/recompute",
    response_model=EnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Recompute all attribution for a tenant",
)
async def trigger_recompute(tenant: Tenant = Depends(get_tenant)):
    """Enqueue a full-tenant recompute (every conversion, regardless of state)."""
    return await _enqueue_or_503("enqueue_recompute", tenant.id, arq_enqueue.enqueue_recompute(tenant.id))


# =============================================================================
# SETTINGS
# =============================================================================

@router.get(
    "/{tenant_id}/attribution/settings",
    response_model=AttributionSettingsResponse,
    summary="Get attribution settings",
)
async def get_attribution_settings(
    tenant: Tenant = Depends(get_tenant),
    db: Session = Depends(get_db),
):
    """Return the tenant's settings, or the defaults if none are stored."""
    settings = _load_settings(AttributionStore(db), tenant.id)
    return AttributionSettingsResponse(
        tenant_id=tenant.id,
        settings=settings,
        fingerprint=settings_fingerprint(settings),
    )


@router.put(
    "/{tenant_id}/attribution/settings",
    response_model=AttributionSettingsResponse,
    summary="Update attribution settings",
    description="""
    Validate and store the tenant's settings, then enqueue a full recompute.

    Invalid settings (position weights not summing to 100, empty model or
    window lists, non-positive half-life, unknown names) are rejected with
    422 and nothing is stored.
    """
)
async def update_attribution_settings(
    payload: SettingsSnapshot,
    tenant: Tenant = Depends(get_tenant),
    db: Session = Depends(get_db),
):
    store = AttributionStore(db)
    try:
        previous = store.get_attribution_settings(tenant.id)
    except ConfigError:
        # A broken stored row is exactly what an update replaces
        previous = None
    store.save_attribution_settings(tenant.id, payload)

    fingerprint = settings_fingerprint(payload)
    logger.info("[ATTRIBUTION] Settings updated for tenant %s (fingerprint=%s)", tenant.id, fingerprint[:12])

    recompute = None
    if previous is None or settings_fingerprint(previous) != fingerprint:
        try:
            recompute = EnqueueResponse(**await arq_enqueue.enqueue_recompute(tenant.id))
        except Exception as e:
            # Settings are stored; the next scheduled run picks up the fingerprint change
            logger.error("[ATTRIBUTION] Recompute enqueue failed for tenant %s: %s", tenant.id, e)
            capture_exception(e, extra={"operation": "enqueue_recompute", "tenant_id": str(tenant.id)})
            recompute = EnqueueResponse(job_id=None, status="enqueue_failed")

    return AttributionSettingsResponse(
        tenant_id=tenant.id,
        settings=payload,
        fingerprint=fingerprint,
        recompute=recompute,
    )


# =============================================================================
# READS
# =============================================================================

@router.get(
    "/{tenant_id}/attribution/channel-summary",
    response_model=ChannelSummaryResponse,
    summary="Get daily channel summary",
)
async def get_channel_summary(
    day: date = Query(..., alias="date", description="Conversion date (UTC), YYYY-MM-DD"),
    model: Optional[AttributionModelEnum] = Query(None, description="Filter by model"),
    window: Optional[AttributionWindowEnum] = Query(None, description="Filter by attribution window"),
    tenant: Tenant = Depends(get_tenant),
    db: Session = Depends(get_db),
):
    rows = AttributionStore(db).fetch_channel_summary(
        tenant.id,
        day,
        model=model.value if model else None,
        window=window.value if window else None,
    )
    return ChannelSummaryResponse(
        tenant_id=tenant.id,
        day=day,
        rows=[
            ChannelSummaryRow(
                model=row.model,
                window=row.attribution_window,
                channel=row.channel,
                platform=row.platform or None,
                touchpoints=row.touchpoints,
                conversions=row.conversions,
                revenue=row.revenue,
                spend=row.spend,
                roas=row.roas,
                cpa=row.cpa,
                conversion_rate=row.conversion_rate,
            )
            for row in rows
        ],
    )


@router.get(
    "/{tenant_id}/attribution/runs/{run_id}",
    response_model=RunResponse,
    summary="Get an attribution run",
)
async def get_run(
    run_id: UUID,
    tenant: Tenant = Depends(get_tenant),
    db: Session = Depends(get_db),
):
    run = AttributionStore(db).get_run(tenant.id, run_id)
    if not run:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Run not found")

    return RunResponse(
        id=run.id,
        tenant_id=run.tenant_id,
        run_type=run.run_type,
        status=run.status,
        since=run.since,
        processed=run.processed,
        skipped=run.skipped,
        failed=run.failed,
        error=run.error,
        started_at=run.started_at,
        finished_at=run.finished_at,
    )
