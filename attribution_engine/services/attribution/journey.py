"""Journey builder.

WHAT: Turns one identity's candidate touchpoints into an ordered journey per
      enabled attribution window
WHY:  Every model is order-dependent, so ordering and window membership must
      be identical across re-runs

Rules:
  - clicks_only drops `view` touchpoints (clicks and engagements stay)
  - touchpoints after converted_at never count
  - window w keeps occurred_at >= converted_at - duration(w); `ltv` is unbounded
  - order is (occurred_at, created_at, str(id)) ascending; created_at is the
    ingestion sequence, id breaks any remaining tie
"""

import logging
from datetime import datetime
from typing import Dict, Iterable, List

from attribution_engine.models import (
    AttributionModeEnum,
    AttributionWindowEnum,
    TouchpointTypeEnum,
)
from attribution_engine.services.attribution.types import (
    ConversionData,
    SettingsSnapshot,
    TouchpointData,
)
from attribution_engine.services.attribution.windows import window_start

logger = logging.getLogger(__name__)

Journey = List[TouchpointData]


def _sort_key(touchpoint: TouchpointData):
    created = touchpoint.created_at or datetime.min
    return (touchpoint.occurred_at, created, str(touchpoint.id))


def sort_touchpoints(touchpoints: Iterable[TouchpointData]) -> Journey:
    """Deterministic ascending order; see module docstring for the tie-break."""
    return sorted(touchpoints, key=_sort_key)


def filter_by_mode(touchpoints: Iterable[TouchpointData], mode: AttributionModeEnum) -> Journey:
    if AttributionModeEnum(mode) == AttributionModeEnum.clicks_only:
        return [tp for tp in touchpoints if tp.touchpoint_type != TouchpointTypeEnum.view.value]
    return list(touchpoints)


def build_journey(
    conversion: ConversionData,
    candidates: Iterable[TouchpointData],
    settings: SettingsSnapshot,
) -> Dict[AttributionWindowEnum, Journey]:
    """Build the ordered journey for every enabled window.

    Args:
        conversion: The conversion being attributed (converted_at must be set)
        candidates: Touchpoints already scoped to the conversion's identity
        settings: Tenant settings snapshot (mode + enabled windows)

    Returns:
        Mapping window → ordered touchpoints. Every enabled window is present;
        an empty list means nothing to attribute for that window.
    """
    converted_at = conversion.converted_at
    candidates = list(candidates)
    eligible = [
        tp for tp in filter_by_mode(candidates, settings.attribution_mode)
        if tp.occurred_at <= converted_at
    ]
    ordered = sort_touchpoints(eligible)

    journeys: Dict[AttributionWindowEnum, Journey] = {}
    for window in settings.enabled_windows:
        start = window_start(window, converted_at)
        if start is None:
            journeys[window] = list(ordered)
        else:
            journeys[window] = [tp for tp in ordered if tp.occurred_at >= start]

    logger.debug(
        "[JOURNEY] conversion=%s candidates=%d eligible=%d windows=%s",
        conversion.id,
        len(candidates),
        len(ordered),
        {w.value: len(j) for w, j in journeys.items()},
    )
    return journeys
