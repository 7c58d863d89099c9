"""Attribution store.

WHAT:
    SQLAlchemy-backed I/O for the credit engine: touchpoint/conversion reads,
    settings snapshots, atomic result replacement, channel summary upserts,
    the per-conversion processing state machine and run records.

WHY:
    - The calculator and rollup stay pure; everything that touches a session
      lives here.
    - One store wraps one session. The run controller opens a fresh store per
      conversion so a failed transaction never leaks into a sibling.

ERRORS:
    - sqlalchemy OperationalError / DBAPIError → TransientStoreError (retried)
    - invalid settings row (pydantic ValidationError) → ConfigError (fatal for
      the tenant's run)

TIME:
    All datetimes are stored and returned as naive UTC. Aware datetimes
    passed in are converted first.

REFERENCES:
    - attribution_engine/models.py
    - services/attribution/run_controller.py
    - services/attribution/rollup.py
"""

import functools
import logging
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy import and_, delete, exists, or_, update
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import Session

from attribution_engine.models import (
    AttributionResult,
    AttributionRun,
    AttributionSettingsRecord,
    ChannelSpend,
    ChannelSummary,
    Conversion,
    ConversionProcessingState,
    ProcessingStatusEnum,
    RunStatusEnum,
    Tenant,
    Touchpoint,
)
from attribution_engine.services.attribution.errors import ConfigError, TransientStoreError
from attribution_engine.services.attribution.types import (
    AttributionResultRow,
    ChannelSummaryDelta,
    ConversionData,
    IdentityKeys,
    RecordId,
    RunSummary,
    SettingsSnapshot,
    TouchpointData,
)

logger = logging.getLogger(__name__)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise a datetime to naive UTC (None passes through)."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def as_uuid(value: RecordId) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


def _day_bounds(day: date) -> Tuple[datetime, datetime]:
    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)


def transient_errors(func):
    """Roll back and re-raise driver failures as TransientStoreError.

    IntegrityError is a programming/constraint error, not an I/O blip, and
    propagates unchanged.
    """

    @functools.wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except IntegrityError:
            self.db.rollback()
            raise
        except (OperationalError, DBAPIError) as e:
            self.db.rollback()
            logger.warning("[STORE] %s failed: %s", func.__name__, e)
            raise TransientStoreError(f"{func.__name__} failed: {e}") from e

    return wrapper


def _touchpoint_data(row: Touchpoint) -> TouchpointData:
    return TouchpointData(
        id=row.id,
        occurred_at=row.occurred_at,
        channel=row.channel or "direct",
        touchpoint_type=row.touchpoint_type,
        platform=row.platform,
        visitor_id=row.visitor_id,
        session_id=row.session_id,
        customer_id=row.customer_id,
        source=row.source,
        medium=row.medium,
        campaign=row.campaign,
        created_at=row.created_at,
    )


def _conversion_data(row: Conversion) -> ConversionData:
    return ConversionData(
        id=row.id,
        order_id=row.order_id,
        revenue=Decimal(row.revenue) if row.revenue is not None else None,
        converted_at=row.converted_at,
        currency=row.currency or "USD",
        tenant_id=row.tenant_id,
        customer_id=row.customer_id,
        visitor_id=row.visitor_id,
        session_id=row.session_id,
        conversion_type=row.conversion_type,
    )


class AttributionStore:
    """Tenant-scoped persistence for one SQLAlchemy session."""

    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    @transient_errors
    def get_attribution_settings(self, tenant_id: RecordId) -> SettingsSnapshot:
        """Snapshot the tenant's settings, falling back to defaults.

        Raises:
            ConfigError: the stored row violates a settings invariant
        """
        record = (
            self.db.query(AttributionSettingsRecord)
            .filter(AttributionSettingsRecord.tenant_id == as_uuid(tenant_id))
            .first()
        )
        if record is None:
            return SettingsSnapshot()

        try:
            return SettingsSnapshot.from_record(record)
        except ValidationError as e:
            raise ConfigError(f"Invalid attribution settings: {e}", tenant_id=str(tenant_id)) from e

    @transient_errors
    def save_attribution_settings(self, tenant_id: RecordId, settings: SettingsSnapshot) -> AttributionSettingsRecord:
        tenant_uuid = as_uuid(tenant_id)
        record = (
            self.db.query(AttributionSettingsRecord)
            .filter(AttributionSettingsRecord.tenant_id == tenant_uuid)
            .first()
        )
        if record is None:
            record = AttributionSettingsRecord(tenant_id=tenant_uuid)
            self.db.add(record)

        record.enabled = settings.enabled
        record.default_model = settings.default_model.value
        record.default_window = settings.default_window.value
        record.attribution_mode = settings.attribution_mode.value
        record.enabled_models = [m.value for m in settings.enabled_models]
        record.enabled_windows = [w.value for w in settings.enabled_windows]
        record.time_decay_half_life_hours = settings.time_decay_half_life_hours
        record.position_based_weights = settings.position_based_weights.model_dump()
        record.updated_at = datetime.utcnow()

        self.db.commit()
        self.db.refresh(record)
        return record

    @transient_errors
    def list_enabled_tenant_ids(self) -> List[UUID]:
        """Tenants with attribution on (no settings row counts as enabled)."""
        rows = (
            self.db.query(Tenant.id)
            .outerjoin(AttributionSettingsRecord, AttributionSettingsRecord.tenant_id == Tenant.id)
            .filter(or_(AttributionSettingsRecord.id.is_(None), AttributionSettingsRecord.enabled.is_(True)))
            .all()
        )
        return [row[0] for row in rows]

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    @transient_errors
    def fetch_touchpoints(
        self,
        tenant_id: RecordId,
        identity: IdentityKeys,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[TouchpointData]:
        """Touchpoints matching ANY of the identity's keys."""
        if identity.is_empty():
            return []

        key_filters = []
        if identity.visitor_id:
            key_filters.append(Touchpoint.visitor_id == identity.visitor_id)
        if identity.session_id:
            key_filters.append(Touchpoint.session_id == identity.session_id)
        if identity.customer_id:
            key_filters.append(Touchpoint.customer_id == identity.customer_id)

        query = self.db.query(Touchpoint).filter(
            Touchpoint.tenant_id == as_uuid(tenant_id),
            or_(*key_filters),
        )
        if since is not None:
            query = query.filter(Touchpoint.occurred_at >= to_naive_utc(since))
        if until is not None:
            query = query.filter(Touchpoint.occurred_at <= to_naive_utc(until))

        return [_touchpoint_data(row) for row in query.all()]

    @transient_errors
    def fetch_conversions(
        self,
        tenant_id: RecordId,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[ConversionData]:
        query = self.db.query(Conversion).filter(Conversion.tenant_id == as_uuid(tenant_id))
        if since is not None:
            query = query.filter(Conversion.converted_at >= to_naive_utc(since))
        query = query.order_by(Conversion.converted_at.asc(), Conversion.id.asc())
        if limit:
            query = query.limit(limit)
        return [_conversion_data(row) for row in query.all()]

    @transient_errors
    def get_conversion(self, tenant_id: RecordId, conversion_id: RecordId) -> Optional[ConversionData]:
        row = (
            self.db.query(Conversion)
            .filter(Conversion.tenant_id == as_uuid(tenant_id), Conversion.id == as_uuid(conversion_id))
            .first()
        )
        return _conversion_data(row) if row else None

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    @transient_errors
    def replace_results(
        self,
        tenant_id: RecordId,
        conversion_id: RecordId,
        rows: Sequence[AttributionResultRow],
        run_id: Optional[RecordId] = None,
    ) -> int:
        """Delete every stored row for the conversion and insert `rows`, in one transaction."""
        tenant_uuid = as_uuid(tenant_id)
        conversion_uuid = as_uuid(conversion_id)
        run_uuid = as_uuid(run_id) if run_id else None
        now = datetime.utcnow()

        try:
            self.db.execute(
                delete(AttributionResult).where(
                    AttributionResult.tenant_id == tenant_uuid,
                    AttributionResult.conversion_id == conversion_uuid,
                )
            )
            self.db.add_all([
                AttributionResult(
                    tenant_id=tenant_uuid,
                    conversion_id=conversion_uuid,
                    touchpoint_id=as_uuid(row.touchpoint_id),
                    model=getattr(row.model, "value", row.model),
                    attribution_window=getattr(row.window, "value", row.window),
                    credit=row.credit,
                    attributed_revenue=row.attributed_revenue,
                    touchpoint_position=row.touchpoint_position,
                    total_touchpoints=row.total_touchpoints,
                    run_id=run_uuid,
                    calculated_at=to_naive_utc(row.calculated_at) or now,
                )
                for row in rows
            ])
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        return len(rows)

    @transient_errors
    def fetch_result_rows_for_date(self, tenant_id: RecordId, day: date) -> List[AttributionResultRow]:
        """Result rows for conversions converted on `day`, with channel/platform attached."""
        start, end = _day_bounds(day)
        query = (
            self.db.query(AttributionResult, Touchpoint.channel, Touchpoint.platform, Conversion.converted_at)
            .join(Conversion, Conversion.id == AttributionResult.conversion_id)
            .join(Touchpoint, Touchpoint.id == AttributionResult.touchpoint_id)
            .filter(
                AttributionResult.tenant_id == as_uuid(tenant_id),
                Conversion.converted_at >= start,
                Conversion.converted_at < end,
            )
        )
        return [
            AttributionResultRow(
                conversion_id=result.conversion_id,
                touchpoint_id=result.touchpoint_id,
                model=result.model,
                window=result.attribution_window,
                credit=Decimal(result.credit),
                attributed_revenue=Decimal(result.attributed_revenue),
                touchpoint_position=result.touchpoint_position,
                total_touchpoints=result.total_touchpoints,
                calculated_at=result.calculated_at,
                channel=channel or "direct",
                platform=platform,
                converted_at=converted_at,
            )
            for result, channel, platform, converted_at in query.all()
        ]

    @transient_errors
    def affected_dates(self, tenant_id: RecordId, conversion_ids: Iterable[RecordId]) -> List[date]:
        ids = [as_uuid(cid) for cid in conversion_ids]
        if not ids:
            return []
        rows = (
            self.db.query(Conversion.converted_at)
            .filter(Conversion.tenant_id == as_uuid(tenant_id), Conversion.id.in_(ids))
            .all()
        )
        return sorted({row[0].date() for row in rows if row[0] is not None})

    # ------------------------------------------------------------------
    # Channel summary
    # ------------------------------------------------------------------

    @transient_errors
    def fetch_spend(self, tenant_id: RecordId, day: date) -> Dict[Tuple[date, str, str], Decimal]:
        rows = (
            self.db.query(ChannelSpend)
            .filter(ChannelSpend.tenant_id == as_uuid(tenant_id), ChannelSpend.date == day)
            .all()
        )
        return {(row.date, row.channel, row.platform or ""): Decimal(row.spend) for row in rows}

    def _apply_delta(self, tenant_uuid: UUID, delta: ChannelSummaryDelta) -> ChannelSummary:
        summary = (
            self.db.query(ChannelSummary)
            .filter(
                ChannelSummary.tenant_id == tenant_uuid,
                ChannelSummary.date == delta.date,
                ChannelSummary.model == delta.model,
                ChannelSummary.attribution_window == delta.window,
                ChannelSummary.channel == delta.channel,
                ChannelSummary.platform == (delta.platform or ""),
            )
            .first()
        )
        if summary is None:
            summary = ChannelSummary(
                tenant_id=tenant_uuid,
                date=delta.date,
                model=delta.model,
                attribution_window=delta.window,
                channel=delta.channel,
                platform=delta.platform or "",
            )
            self.db.add(summary)

        summary.touchpoints = delta.touchpoints
        summary.conversions = delta.conversions
        summary.revenue = delta.revenue
        summary.spend = delta.spend
        summary.roas = delta.roas
        summary.cpa = delta.cpa
        summary.conversion_rate = delta.conversion_rate
        summary.updated_at = datetime.utcnow()
        return summary

    @transient_errors
    def upsert_channel_summary(self, tenant_id: RecordId, delta: ChannelSummaryDelta) -> None:
        """Insert or overwrite the summary row for the delta's key."""
        try:
            self._apply_delta(as_uuid(tenant_id), delta)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    @transient_errors
    def replace_channel_summaries(
        self,
        tenant_id: RecordId,
        day: date,
        deltas: Sequence[ChannelSummaryDelta],
    ) -> None:
        """Delete the date's summary rows and write `deltas`, in one transaction."""
        tenant_uuid = as_uuid(tenant_id)
        try:
            self.db.execute(
                delete(ChannelSummary).where(
                    ChannelSummary.tenant_id == tenant_uuid,
                    ChannelSummary.date == day,
                )
            )
            self.db.flush()
            for delta in deltas:
                self._apply_delta(tenant_uuid, delta)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    @transient_errors
    def fetch_channel_summary(
        self,
        tenant_id: RecordId,
        day: date,
        model: Optional[str] = None,
        window: Optional[str] = None,
    ) -> List[ChannelSummary]:
        query = self.db.query(ChannelSummary).filter(
            ChannelSummary.tenant_id == as_uuid(tenant_id),
            ChannelSummary.date == day,
        )
        if model:
            query = query.filter(ChannelSummary.model == model)
        if window:
            query = query.filter(ChannelSummary.attribution_window == window)
        return query.order_by(
            ChannelSummary.model,
            ChannelSummary.attribution_window,
            ChannelSummary.revenue.desc(),
            ChannelSummary.channel,
        ).all()

    # ------------------------------------------------------------------
    # Processing state
    # ------------------------------------------------------------------

    @transient_errors
    def reclaim_stale(self, tenant_id: RecordId, older_than: datetime) -> int:
        """Move `processing` states started before `older_than` back to `pending`."""
        result = self.db.execute(
            update(ConversionProcessingState)
            .where(
                ConversionProcessingState.tenant_id == as_uuid(tenant_id),
                ConversionProcessingState.status == ProcessingStatusEnum.processing.value,
                ConversionProcessingState.started_at < to_naive_utc(older_than),
            )
            .values(
                status=ProcessingStatusEnum.pending.value,
                last_error="Reclaimed stale processing state",
                updated_at=datetime.utcnow(),
            )
        )
        self.db.commit()
        return result.rowcount or 0

    @transient_errors
    def claim_conversion(self, tenant_id: RecordId, conversion_id: RecordId) -> bool:
        """Atomically move the conversion into `processing`.

        Returns False when another worker already holds it.
        """
        tenant_uuid = as_uuid(tenant_id)
        conversion_uuid = as_uuid(conversion_id)

        has_state = self.db.query(
            exists().where(ConversionProcessingState.conversion_id == conversion_uuid)
        ).scalar()
        if not has_state:
            self.db.add(ConversionProcessingState(
                tenant_id=tenant_uuid,
                conversion_id=conversion_uuid,
                status=ProcessingStatusEnum.pending.value,
                attempts=0,
            ))
            try:
                self.db.commit()
            except IntegrityError:
                # Another worker created it first; fall through to the guarded update
                self.db.rollback()

        now = datetime.utcnow()
        result = self.db.execute(
            update(ConversionProcessingState)
            .where(
                ConversionProcessingState.tenant_id == tenant_uuid,
                ConversionProcessingState.conversion_id == conversion_uuid,
                ConversionProcessingState.status != ProcessingStatusEnum.processing.value,
            )
            .values(
                status=ProcessingStatusEnum.processing.value,
                attempts=ConversionProcessingState.attempts + 1,
                started_at=now,
                updated_at=now,
            )
        )
        self.db.commit()
        return (result.rowcount or 0) == 1

    def _set_state(self, tenant_id: RecordId, conversion_id: RecordId, **values) -> None:
        values["updated_at"] = datetime.utcnow()
        self.db.execute(
            update(ConversionProcessingState)
            .where(
                ConversionProcessingState.tenant_id == as_uuid(tenant_id),
                ConversionProcessingState.conversion_id == as_uuid(conversion_id),
            )
            .values(**values)
        )
        self.db.commit()

    @transient_errors
    def mark_completed(self, tenant_id: RecordId, conversion_id: RecordId, fingerprint: str) -> None:
        self._set_state(
            tenant_id,
            conversion_id,
            status=ProcessingStatusEnum.completed.value,
            settings_fingerprint=fingerprint,
            last_error=None,
            completed_at=datetime.utcnow(),
        )

    @transient_errors
    def mark_failed(self, tenant_id: RecordId, conversion_id: RecordId, error: str) -> None:
        self._set_state(
            tenant_id,
            conversion_id,
            status=ProcessingStatusEnum.failed.value,
            last_error=(error or "")[:2000],
        )

    @transient_errors
    def mark_invalid(self, tenant_id: RecordId, conversion_id: RecordId, error: str) -> None:
        """Park a conversion that fails validation; incremental runs stop selecting it."""
        self._set_state(
            tenant_id,
            conversion_id,
            status=ProcessingStatusEnum.invalid.value,
            last_error=(error or "")[:2000],
        )

    @transient_errors
    def get_state(self, tenant_id: RecordId, conversion_id: RecordId) -> Optional[ConversionProcessingState]:
        return (
            self.db.query(ConversionProcessingState)
            .filter(
                ConversionProcessingState.tenant_id == as_uuid(tenant_id),
                ConversionProcessingState.conversion_id == as_uuid(conversion_id),
            )
            .first()
        )

    @transient_errors
    def conversions_needing_work(
        self,
        tenant_id: RecordId,
        since: Optional[datetime],
        fingerprint: str,
        lookback: Optional[timedelta] = None,
        limit: Optional[int] = None,
    ) -> List[ConversionData]:
        """Conversions whose stored results are missing or stale.

        Selected when any of:
          - no processing state yet
          - state is pending or failed
          - stored fingerprint differs from the current settings
          - a touchpoint for the same identity was ingested after completion

        `since` is a change time, not a conversion time: it only narrows the
        late-touchpoint check to touchpoints ingested at/after it, and (with
        `lookback`, the widest enabled window) to conversions that such a
        touchpoint can still fall inside. The other clauses ignore it.
        Conversions that are `processing` or `invalid` are never selected.
        """
        tenant_uuid = as_uuid(tenant_id)
        state = ConversionProcessingState

        touchpoint_filters = [
            Touchpoint.tenant_id == tenant_uuid,
            Touchpoint.created_at > state.completed_at,
            Touchpoint.occurred_at <= Conversion.converted_at,
            or_(
                and_(Conversion.visitor_id.isnot(None), Touchpoint.visitor_id == Conversion.visitor_id),
                and_(Conversion.session_id.isnot(None), Touchpoint.session_id == Conversion.session_id),
                and_(Conversion.customer_id.isnot(None), Touchpoint.customer_id == Conversion.customer_id),
            ),
        ]
        if since is not None:
            touchpoint_filters.append(Touchpoint.created_at >= to_naive_utc(since))
        late_touchpoint = exists().where(*touchpoint_filters)
        if since is not None and lookback is not None:
            late_touchpoint = and_(Conversion.converted_at >= to_naive_utc(since) - lookback, late_touchpoint)

        query = (
            self.db.query(Conversion)
            .outerjoin(state, state.conversion_id == Conversion.id)
            .filter(Conversion.tenant_id == tenant_uuid)
            .filter(
                or_(
                    state.id.is_(None),
                    and_(
                        state.status.notin_([
                            ProcessingStatusEnum.processing.value,
                            ProcessingStatusEnum.invalid.value,
                        ]),
                        or_(
                            state.status.in_([
                                ProcessingStatusEnum.pending.value,
                                ProcessingStatusEnum.failed.value,
                            ]),
                            state.settings_fingerprint.is_(None),
                            state.settings_fingerprint != fingerprint,
                            late_touchpoint,
                        ),
                    ),
                )
            )
        )
        query = query.order_by(Conversion.converted_at.asc(), Conversion.id.asc())
        if limit:
            query = query.limit(limit)
        return [_conversion_data(row) for row in query.all()]

    @transient_errors
    def unattributed_conversions(
        self,
        tenant_id: RecordId,
        converted_after: datetime,
        limit: int,
    ) -> List[ConversionData]:
        """Recent conversions with no result rows, or whose last attempt failed (invalid ones excluded)."""
        tenant_uuid = as_uuid(tenant_id)
        has_results = exists().where(AttributionResult.conversion_id == Conversion.id)
        query = (
            self.db.query(Conversion)
            .outerjoin(ConversionProcessingState, ConversionProcessingState.conversion_id == Conversion.id)
            .filter(
                Conversion.tenant_id == tenant_uuid,
                Conversion.converted_at >= to_naive_utc(converted_after),
                or_(ConversionProcessingState.id.is_(None),
                    ConversionProcessingState.status.notin_([
                        ProcessingStatusEnum.processing.value,
                        ProcessingStatusEnum.invalid.value,
                    ])),
                or_(~has_results, ConversionProcessingState.status == ProcessingStatusEnum.failed.value),
            )
            .order_by(Conversion.converted_at.desc())
            .limit(limit)
        )
        return [_conversion_data(row) for row in query.all()]

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    @transient_errors
    def create_run(self, tenant_id: RecordId, run_type: str, since: Optional[datetime] = None) -> AttributionRun:
        run = AttributionRun(
            tenant_id=as_uuid(tenant_id),
            run_type=run_type,
            status=RunStatusEnum.running.value,
            since=to_naive_utc(since),
            started_at=datetime.utcnow(),
        )
        self.db.add(run)
        self.db.commit()
        self.db.refresh(run)
        return run

    @transient_errors
    def finish_run(
        self,
        run_id: RecordId,
        summary: RunSummary,
        status: RunStatusEnum,
        error: Optional[str] = None,
    ) -> None:
        self.db.execute(
            update(AttributionRun)
            .where(AttributionRun.id == as_uuid(run_id))
            .values(
                status=RunStatusEnum(status).value,
                processed=summary.processed,
                skipped=summary.skipped,
                failed=summary.failed,
                error=error,
                finished_at=datetime.utcnow(),
            )
        )
        self.db.commit()

    @transient_errors
    def get_run(self, tenant_id: RecordId, run_id: RecordId) -> Optional[AttributionRun]:
        return (
            self.db.query(AttributionRun)
            .filter(AttributionRun.tenant_id == as_uuid(tenant_id), AttributionRun.id == as_uuid(run_id))
            .first()
        )

    @transient_errors
    def last_completed_run_started_at(self, tenant_id: RecordId) -> Optional[datetime]:
        run = (
            self.db.query(AttributionRun)
            .filter(
                AttributionRun.tenant_id == as_uuid(tenant_id),
                AttributionRun.status == RunStatusEnum.completed.value,
            )
            .order_by(AttributionRun.started_at.desc())
            .first()
        )
        return run.started_at if run else None
