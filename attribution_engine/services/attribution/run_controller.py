"""
Attribution Run Controller.

WHAT:
    Drives one attribution run for a tenant: snapshots settings, selects the
    conversions that need (re)processing, attributes them on a worker pool,
    persists each conversion atomically and rebuilds the channel summaries
    for every date it touched.

WHY:
    - Conversions are independent, so they parallelise cleanly; the settings
      snapshot is immutable and shared without locks.
    - Each conversion's rows are replaced in one transaction and tracked by a
      processing state, so a crash mid-run never leaves partial results and
      the next run picks up where this one stopped.

RUN TYPES:
    - run_batch:            incremental; new, pending/failed, stale-fingerprint
                            conversions plus those reopened by touchpoints
                            ingested since `since`
    - recompute_tenant:     every conversion for the tenant
    - recalculate_recent:   every conversion from the last N days
    - process_unattributed: recent conversions with no results yet

ERROR POLICY:
    - ConfigError:                run recorded as failed, nothing written, re-raised
    - ConversionValidationError:  conversion skipped (state invalid, not retried), run continues
    - TransientStoreError:        retried with exponential backoff, then failed
    - NumericError:               handled inside the calculator (model skipped)

CANCELLATION:
    cancel() sets a threading.Event checked before every conversion. Work
    already committed stays committed. A cancelled controller stays cancelled;
    create a new one for the next run.

REFERENCES:
    - services/attribution/store.py
    - services/attribution/calculator.py
    - workers/arq_worker.py (job entry points)
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from typing import Callable, Iterator, List, Optional, Sequence, Set

from attribution_engine.models import RunStatusEnum, RunTypeEnum
from attribution_engine.services.attribution import rollup
from attribution_engine.services.attribution.calculator import (
    calculate,
    settings_fingerprint,
    validate_conversion,
)
from attribution_engine.services.attribution.errors import (
    ConfigError,
    ConversionValidationError,
    TransientStoreError,
)
from attribution_engine.services.attribution.store import AttributionStore
from attribution_engine.services.attribution.types import (
    ConversionData,
    IdentityKeys,
    RecordId,
    RunSummary,
    SettingsSnapshot,
)
from attribution_engine.services.attribution.windows import longest_lookback
from attribution_engine.telemetry import capture_exception

logger = logging.getLogger(__name__)

# Per-conversion outcomes
PROCESSED = "processed"
SKIPPED = "skipped"
FAILED = "failed"
CANCELLED = "cancelled"


class AttributionRunController:
    """Runs attribution for one tenant at a time on a thread pool.

    Args:
        session_factory: Callable returning a new SQLAlchemy session
            (defaults to database.SessionLocal)
        settings: Application Settings (defaults to get_settings())
        store_factory: Builds a store from a session (defaults to AttributionStore)
        clock: Returns "now" as naive UTC
    """

    def __init__(
        self,
        session_factory: Optional[Callable] = None,
        settings=None,
        store_factory: Callable = AttributionStore,
        clock: Callable[[], datetime] = datetime.utcnow,
        max_workers: Optional[int] = None,
        max_retries: Optional[int] = None,
        retry_base_seconds: Optional[float] = None,
        stale_processing_minutes: Optional[int] = None,
    ):
        if settings is None:
            from attribution_engine.deps import get_settings
            settings = get_settings()
        if session_factory is None:
            from attribution_engine.database import SessionLocal
            session_factory = SessionLocal

        self.session_factory = session_factory
        self.store_factory = store_factory
        self.clock = clock
        self.max_workers = max(1, max_workers or settings.ATTRIBUTION_MAX_WORKERS)
        self.max_retries = max(1, max_retries or settings.ATTRIBUTION_MAX_RETRIES)
        self.retry_base_seconds = (
            retry_base_seconds if retry_base_seconds is not None else settings.ATTRIBUTION_RETRY_BASE_SECONDS
        )
        self.stale_after = timedelta(
            minutes=stale_processing_minutes or settings.ATTRIBUTION_STALE_PROCESSING_MINUTES
        )
        self.recent_days = settings.ATTRIBUTION_RECENT_DAYS
        self.unattributed_max_age_hours = settings.ATTRIBUTION_UNATTRIBUTED_MAX_AGE_HOURS
        self.unattributed_batch_size = settings.ATTRIBUTION_UNATTRIBUTED_BATCH_SIZE
        self._cancel = threading.Event()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Stop before the next conversion; in-flight conversions finish."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def run_batch(self, tenant_id: RecordId, since: Optional[datetime] = None) -> RunSummary:
        """Incremental run over conversions that need work.

        `since` is the previous run's start: touchpoints ingested after it can
        reopen completed conversions. New, pending, failed and stale-settings
        conversions are picked up regardless of when they converted.
        """
        return self._run(
            tenant_id,
            RunTypeEnum.incremental,
            since,
            lambda store, snapshot, fingerprint: store.conversions_needing_work(
                tenant_id, since, fingerprint, lookback=longest_lookback(snapshot.enabled_windows)
            ),
        )

    def recompute_tenant(self, tenant_id: RecordId) -> RunSummary:
        """Recompute every conversion for the tenant regardless of state."""
        return self._run(
            tenant_id,
            RunTypeEnum.full_recompute,
            None,
            lambda store, snapshot, fingerprint: store.fetch_conversions(tenant_id, None),
        )

    def recalculate_recent(self, tenant_id: RecordId, days: Optional[int] = None) -> RunSummary:
        """Recompute conversions from the last `days` days to absorb late touchpoints."""
        days = days if days is not None else self.recent_days
        since = self.clock() - timedelta(days=days)
        return self._run(
            tenant_id,
            RunTypeEnum.recalculate_recent,
            since,
            lambda store, snapshot, fingerprint: store.fetch_conversions(tenant_id, since),
        )

    def process_unattributed(
        self,
        tenant_id: RecordId,
        max_age_hours: Optional[int] = None,
        batch_size: Optional[int] = None,
    ) -> RunSummary:
        """Retry recent conversions that still have no result rows."""
        max_age_hours = max_age_hours if max_age_hours is not None else self.unattributed_max_age_hours
        batch_size = batch_size or self.unattributed_batch_size
        since = self.clock() - timedelta(hours=max_age_hours)
        return self._run(
            tenant_id,
            RunTypeEnum.unattributed,
            since,
            lambda store, snapshot, fingerprint: store.unattributed_conversions(tenant_id, since, batch_size),
        )

    # ------------------------------------------------------------------
    # Run orchestration
    # ------------------------------------------------------------------

    @contextmanager
    def _store(self) -> Iterator[AttributionStore]:
        db = self.session_factory()
        try:
            yield self.store_factory(db)
        finally:
            db.close()

    def _run(
        self,
        tenant_id: RecordId,
        run_type: RunTypeEnum,
        since: Optional[datetime],
        select: Callable[[AttributionStore, SettingsSnapshot, str], List[ConversionData]],
    ) -> RunSummary:
        summary = RunSummary()

        with self._store() as store:
            try:
                snapshot = store.get_attribution_settings(tenant_id)
            except ConfigError as e:
                run = store.create_run(tenant_id, run_type.value, since)
                store.finish_run(run.id, summary, RunStatusEnum.failed, error=e.message)
                logger.error("[ATTRIBUTION] Config error for tenant %s, run aborted: %s", tenant_id, e.message)
                raise

            if not snapshot.enabled:
                logger.info("[ATTRIBUTION] Attribution disabled for tenant %s, skipping", tenant_id)
                return summary

            run = store.create_run(tenant_id, run_type.value, since)
            summary.run_id = run.id

            reclaimed = store.reclaim_stale(tenant_id, self.clock() - self.stale_after)
            if reclaimed:
                logger.warning("[ATTRIBUTION] Reclaimed %d stale processing conversions for tenant %s",
                               reclaimed, tenant_id)

            fingerprint = settings_fingerprint(snapshot)
            conversions = select(store, snapshot, fingerprint)

        logger.info(
            "[ATTRIBUTION] Starting %s run %s for tenant %s: %d conversions (since=%s, workers=%d)",
            run_type.value, summary.run_id, tenant_id, len(conversions), since, self.max_workers,
        )

        try:
            outcomes = self._process_all(tenant_id, conversions, snapshot, fingerprint, summary.run_id)
        except Exception as e:
            self._finish(summary, RunStatusEnum.failed, error=str(e))
            raise

        affected: Set[date] = set()
        for conversion, outcome in zip(conversions, outcomes):
            if outcome == PROCESSED:
                summary.processed += 1
                if conversion.converted_at is not None:
                    affected.add(conversion.converted_at.date())
            elif outcome == SKIPPED:
                summary.skipped += 1
            elif outcome == FAILED:
                summary.failed += 1
            elif outcome == CANCELLED:
                summary.cancelled = True

        summary.affected_dates = sorted(affected)
        self._rebuild_rollups(tenant_id, summary.affected_dates)

        status = RunStatusEnum.cancelled if summary.cancelled else RunStatusEnum.completed
        self._finish(summary, status)

        logger.info(
            "[ATTRIBUTION] Finished %s run %s for tenant %s: processed=%d skipped=%d failed=%d cancelled=%s",
            run_type.value, summary.run_id, tenant_id,
            summary.processed, summary.skipped, summary.failed, summary.cancelled,
        )
        return summary

    def _finish(self, summary: RunSummary, status: RunStatusEnum, error: Optional[str] = None) -> None:
        try:
            with self._store() as store:
                store.finish_run(summary.run_id, summary, status, error=error)
        except TransientStoreError as e:
            logger.error("[ATTRIBUTION] Could not record run %s as %s: %s", summary.run_id, status.value, e.message)
            capture_exception(e, extra={"operation": "attribution_finish_run", "run_id": str(summary.run_id)})

    def _process_all(
        self,
        tenant_id: RecordId,
        conversions: Sequence[ConversionData],
        snapshot: SettingsSnapshot,
        fingerprint: str,
        run_id: Optional[RecordId],
    ) -> List[str]:
        if not conversions:
            return []

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="attribution") as pool:
            futures = [
                pool.submit(self._process_conversion, tenant_id, conversion, snapshot, fingerprint, run_id)
                for conversion in conversions
            ]
            return [future.result() for future in futures]

    def _rebuild_rollups(self, tenant_id: RecordId, days: Sequence[date]) -> None:
        for day in days:
            try:
                with self._store() as store:
                    rollup.rebuild_channel_summaries(store, tenant_id, day)
            except TransientStoreError as e:
                # The daily rollup job reconciles this date later
                logger.error("[ROLLUP] Rebuild failed for tenant %s on %s: %s", tenant_id, day, e.message)
                capture_exception(e, extra={"operation": "attribution_rollup", "tenant_id": str(tenant_id)})

    # ------------------------------------------------------------------
    # Per-conversion work (runs on pool threads)
    # ------------------------------------------------------------------

    def _with_retry(self, conversion_id: RecordId, operation: Callable[[AttributionStore], object]):
        """Run `operation` on a fresh store, retrying TransientStoreError.

        Backoff is retry_base_seconds * 2^(attempt-1). Raises the last
        TransientStoreError once max_retries attempts are used up.
        """
        for attempt in range(1, self.max_retries + 1):
            try:
                with self._store() as store:
                    return operation(store)
            except TransientStoreError as e:
                if attempt >= self.max_retries:
                    raise
                delay = self.retry_base_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "[ATTRIBUTION] Transient error on conversion %s (attempt %d/%d), retrying in %.2fs: %s",
                    conversion_id, attempt, self.max_retries, delay, e.message,
                )
                if delay > 0 and self._cancel.wait(delay):
                    raise

    def _process_conversion(
        self,
        tenant_id: RecordId,
        conversion: ConversionData,
        snapshot: SettingsSnapshot,
        fingerprint: str,
        run_id: Optional[RecordId],
    ) -> str:
        if self._cancel.is_set():
            return CANCELLED

        try:
            claimed = self._with_retry(
                conversion.id, lambda store: store.claim_conversion(tenant_id, conversion.id)
            )
            if not claimed:
                logger.info("[ATTRIBUTION] Conversion %s is already being processed, skipping", conversion.id)
                return SKIPPED

            return self._with_retry(
                conversion.id,
                lambda store: self._attribute(store, tenant_id, conversion, snapshot, fingerprint, run_id),
            )
        except TransientStoreError as e:
            logger.error("[ATTRIBUTION] Giving up on conversion %s after %d attempts: %s",
                         conversion.id, self.max_retries, e.message)
            self._record_failure(tenant_id, conversion.id, e.message)
            return FAILED
        except Exception as e:
            logger.exception("[ATTRIBUTION] Unexpected error on conversion %s", conversion.id)
            capture_exception(e, extra={
                "operation": "attribution_conversion",
                "tenant_id": str(tenant_id),
                "conversion_id": str(conversion.id),
            })
            self._record_failure(tenant_id, conversion.id, f"{type(e).__name__}: {e}")
            return FAILED

    def _attribute(
        self,
        store: AttributionStore,
        tenant_id: RecordId,
        conversion: ConversionData,
        snapshot: SettingsSnapshot,
        fingerprint: str,
        run_id: Optional[RecordId],
    ) -> str:
        try:
            validate_conversion(conversion)
            lookback = longest_lookback(snapshot.enabled_windows)
            touchpoints = store.fetch_touchpoints(
                tenant_id,
                IdentityKeys.from_conversion(conversion),
                since=conversion.converted_at - lookback if lookback is not None else None,
                until=conversion.converted_at,
            )
            outcome = calculate(conversion, touchpoints, snapshot, calculated_at=self.clock())
        except ConversionValidationError as e:
            logger.warning("[ATTRIBUTION] Skipping invalid conversion %s: %s", conversion.id, e.message)
            store.mark_invalid(tenant_id, conversion.id, e.message)
            return SKIPPED

        for error in outcome.model_errors:
            logger.error(
                "[ATTRIBUTION] %s/%s skipped for conversion %s: %s",
                error.model.value, error.window.value, conversion.id, error.message,
            )

        store.replace_results(tenant_id, conversion.id, outcome.rows, run_id=run_id)
        store.mark_completed(tenant_id, conversion.id, fingerprint)
        return PROCESSED

    def _record_failure(self, tenant_id: RecordId, conversion_id: RecordId, message: str) -> None:
        try:
            with self._store() as store:
                store.mark_failed(tenant_id, conversion_id, message)
        except TransientStoreError as e:
            # State stays `processing`; stale reclaim returns it to pending
            logger.error("[ATTRIBUTION] Could not mark conversion %s failed: %s", conversion_id, e.message)
