"""Attribution window helpers: lookback durations and membership checks."""

from datetime import datetime, timedelta
from typing import Dict, Optional

from attribution_engine.models import AttributionWindowEnum


# None = unbounded lookback (identity's earliest touchpoint)
WINDOW_DURATIONS: Dict[AttributionWindowEnum, Optional[timedelta]] = {
    AttributionWindowEnum.one_day: timedelta(days=1),
    AttributionWindowEnum.three_days: timedelta(days=3),
    AttributionWindowEnum.seven_days: timedelta(days=7),
    AttributionWindowEnum.fourteen_days: timedelta(days=14),
    AttributionWindowEnum.twenty_eight_days: timedelta(days=28),
    AttributionWindowEnum.thirty_days: timedelta(days=30),
    AttributionWindowEnum.ninety_days: timedelta(days=90),
    AttributionWindowEnum.ltv: None,
}


def window_duration(window: AttributionWindowEnum) -> Optional[timedelta]:
    """Lookback for a window, or None for `ltv`."""
    return WINDOW_DURATIONS[AttributionWindowEnum(window)]


def window_start(window: AttributionWindowEnum, converted_at: datetime) -> Optional[datetime]:
    """Earliest instant (inclusive) a touchpoint may occur at to count."""
    duration = window_duration(window)
    if duration is None:
        return None
    return converted_at - duration


def is_in_window(
    occurred_at: datetime,
    converted_at: datetime,
    window: AttributionWindowEnum,
) -> bool:
    """True if occurred_at lies in [converted_at - duration, converted_at]."""
    if occurred_at > converted_at:
        return False
    start = window_start(window, converted_at)
    return start is None or occurred_at >= start


def longest_lookback(windows) -> Optional[timedelta]:
    """Widest lookback across windows (None if any window is unbounded).

    Used to bound the touchpoint fetch to what the widest window can use.
    """
    longest = timedelta(0)
    for window in windows:
        duration = window_duration(window)
        if duration is None:
            return None
        longest = max(longest, duration)
    return longest
