"""Rollup aggregator.

WHAT: Folds attribution result rows into daily channel summaries keyed by
      (date, model, window, channel, platform)
WHY: Dashboards read the summary table; it is a derived cache and can be
     rebuilt for any date from the result rows alone
REFERENCES:
  - services/attribution/store.py: fetch_result_rows_for_date, fetch_spend,
    replace_channel_summaries
  - workers/arq_worker.py: scheduled_daily_rollup, rebuild_channel_summary

Aggregation rules:
  - date is the conversion's converted_at date (UTC)
  - rows with zero credit are ignored (they carry no revenue)
  - touchpoints = distinct touchpoint ids, conversions = distinct conversion ids
  - revenue = Σ attributed_revenue
  - roas / cpa / conversion_rate are None when the denominator is 0 or unknown
"""

import logging
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

from attribution_engine.services.attribution.types import AttributionResultRow, ChannelSummaryDelta

logger = logging.getLogger(__name__)

SpendKey = Tuple[date, str, str]

ROAS_QUANTUM = Decimal("0.0001")
CPA_QUANTUM = Decimal("0.0001")
RATE_QUANTUM = Decimal("0.000001")


def _ratio(numerator: Decimal, denominator: Optional[Decimal], quantum: Decimal) -> Optional[Decimal]:
    if denominator is None or denominator == 0:
        return None
    return (Decimal(numerator) / Decimal(denominator)).quantize(quantum, rounding=ROUND_HALF_UP)


def derive_metrics(
    revenue: Decimal,
    spend: Optional[Decimal],
    conversions: int,
    touchpoints: int,
) -> Tuple[Optional[Decimal], Optional[Decimal], Optional[Decimal]]:
    """Return (roas, cpa, conversion_rate)."""
    roas = _ratio(revenue, spend, ROAS_QUANTUM)
    cpa = _ratio(spend, Decimal(conversions), CPA_QUANTUM) if spend is not None else None
    conversion_rate = _ratio(Decimal(conversions), Decimal(touchpoints), RATE_QUANTUM)
    return roas, cpa, conversion_rate


def aggregate(
    rows: Iterable[AttributionResultRow],
    spend_lookup: Optional[Mapping[SpendKey, Decimal]] = None,
) -> List[ChannelSummaryDelta]:
    """Group result rows into one ChannelSummaryDelta per key.

    Args:
        rows: Result rows carrying channel, platform and converted_at
        spend_lookup: Optional spend per (date, channel, platform)

    Returns:
        Deltas sorted by key, derived metrics filled in
    """
    spend_lookup = spend_lookup or {}
    deltas: Dict[tuple, ChannelSummaryDelta] = {}
    touchpoint_ids: Dict[tuple, Set[str]] = {}
    conversion_ids: Dict[tuple, Set[str]] = {}

    for row in rows:
        if row.converted_at is None or not row.credit:
            continue

        model = getattr(row.model, "value", row.model)
        window = getattr(row.window, "value", row.window)
        key = (row.converted_at.date(), model, window, row.channel or "direct", row.platform or "")

        delta = deltas.get(key)
        if delta is None:
            delta = ChannelSummaryDelta(
                date=key[0], model=key[1], window=key[2], channel=key[3], platform=key[4]
            )
            deltas[key] = delta
            touchpoint_ids[key] = set()
            conversion_ids[key] = set()

        delta.revenue += Decimal(row.attributed_revenue)
        touchpoint_ids[key].add(str(row.touchpoint_id))
        conversion_ids[key].add(str(row.conversion_id))

    for key, delta in deltas.items():
        delta.touchpoints = len(touchpoint_ids[key])
        delta.conversions = len(conversion_ids[key])
        delta.spend = spend_lookup.get((delta.date, delta.channel, delta.platform))
        delta.roas, delta.cpa, delta.conversion_rate = derive_metrics(
            delta.revenue, delta.spend, delta.conversions, delta.touchpoints
        )

    return [deltas[key] for key in sorted(deltas)]


def rebuild_channel_summaries(store, tenant_id, day: date) -> List[ChannelSummaryDelta]:
    """Recompute the full summary for one date and replace what is stored.

    Used after every run for the dates it touched, and by the daily rollup
    job to reconcile drift.
    """
    rows = store.fetch_result_rows_for_date(tenant_id, day)
    spend = store.fetch_spend(tenant_id, day)
    deltas = aggregate(rows, spend)
    store.replace_channel_summaries(tenant_id, day, deltas)

    logger.info(
        "[ROLLUP] Rebuilt %d channel summary rows for tenant %s on %s",
        len(deltas), tenant_id, day.isoformat(),
    )
    return deltas


def rebuild_range(store, tenant_id, start: date, end: date) -> Dict[date, int]:
    """Rebuild every date in [start, end]; returns rows written per date."""
    if end < start:
        raise ValueError(f"end ({end}) is before start ({start})")

    written: Dict[date, int] = {}
    day = start
    while day <= end:
        written[day] = len(rebuild_channel_summaries(store, tenant_id, day))
        day += timedelta(days=1)
    return written
