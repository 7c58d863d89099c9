"""Unit tests for journey building and attribution window helpers."""

from datetime import datetime, timedelta
from decimal import Decimal

from attribution_engine.models import AttributionModeEnum, AttributionWindowEnum
from attribution_engine.services.attribution.journey import build_journey, filter_by_mode, sort_touchpoints
from attribution_engine.services.attribution.types import ConversionData, SettingsSnapshot, TouchpointData
from attribution_engine.services.attribution.windows import (
    is_in_window,
    longest_lookback,
    window_duration,
    window_start,
)

CONVERTED_AT = datetime(2026, 5, 20, 15, 30, 0)
CONVERSION = ConversionData(
    id="conv-1",
    order_id="order-1",
    revenue=Decimal("100.00"),
    converted_at=CONVERTED_AT,
    visitor_id="visitor-1",
)


def _tp(tp_id, delta, touchpoint_type="click", channel="google", created_at=None):
    return TouchpointData(
        id=tp_id,
        occurred_at=CONVERTED_AT - delta,
        channel=channel,
        touchpoint_type=touchpoint_type,
        created_at=created_at,
    )


def _settings(**overrides):
    values = {
        "enabled_windows": (AttributionWindowEnum.seven_days, AttributionWindowEnum.fourteen_days),
    }
    values.update(overrides)
    return SettingsSnapshot(**values)


def test_touchpoint_outside_short_window_only_counts_in_longer_one() -> None:
    ten_days = _tp("tp-old", timedelta(days=10))
    recent = _tp("tp-new", timedelta(days=2))

    journeys = build_journey(CONVERSION, [ten_days, recent], _settings())

    assert [tp.id for tp in journeys[AttributionWindowEnum.seven_days]] == ["tp-new"]
    assert [tp.id for tp in journeys[AttributionWindowEnum.fourteen_days]] == ["tp-old", "tp-new"]


def test_touchpoints_after_conversion_are_excluded() -> None:
    after = _tp("tp-after", timedelta(minutes=-5))
    before = _tp("tp-before", timedelta(hours=3))

    journeys = build_journey(CONVERSION, [after, before], _settings())

    for journey in journeys.values():
        assert [tp.id for tp in journey] == ["tp-before"]


def test_touchpoint_exactly_at_conversion_counts() -> None:
    at = _tp("tp-at", timedelta(0))
    journeys = build_journey(CONVERSION, [at], _settings())
    assert journeys[AttributionWindowEnum.seven_days] == [at]


def test_window_boundary_is_inclusive() -> None:
    boundary = _tp("tp-edge", timedelta(days=7))
    just_outside = _tp("tp-out", timedelta(days=7, seconds=1))

    journeys = build_journey(CONVERSION, [boundary, just_outside], _settings())

    assert [tp.id for tp in journeys[AttributionWindowEnum.seven_days]] == ["tp-edge"]


def test_clicks_only_drops_views() -> None:
    view = _tp("tp-view", timedelta(days=1), touchpoint_type="view")
    click = _tp("tp-click", timedelta(hours=5))
    engagement = _tp("tp-engage", timedelta(hours=2), touchpoint_type="engagement")

    clicks_only = build_journey(CONVERSION, [view, click, engagement], _settings())
    with_views = build_journey(
        CONVERSION,
        [view, click, engagement],
        _settings(attribution_mode=AttributionModeEnum.clicks_and_views),
    )

    assert [tp.id for tp in clicks_only[AttributionWindowEnum.seven_days]] == ["tp-click", "tp-engage"]
    assert [tp.id for tp in with_views[AttributionWindowEnum.seven_days]] == [
        "tp-view", "tp-click", "tp-engage",
    ]


def test_legacy_mode_name_is_accepted() -> None:
    settings = SettingsSnapshot(attribution_mode="clicks_plus_views")
    assert settings.attribution_mode == AttributionModeEnum.clicks_and_views

    view = _tp("tp-view", timedelta(days=1), touchpoint_type="view")
    assert filter_by_mode([view], settings.attribution_mode) == [view]


def test_equal_timestamps_order_by_ingestion_then_id() -> None:
    """Identical occurred_at must give the same order on every run."""
    ingested = datetime(2026, 5, 19)
    b_late = _tp("b", timedelta(hours=1), created_at=ingested + timedelta(seconds=2))
    a_late = _tp("a", timedelta(hours=1), created_at=ingested + timedelta(seconds=2))
    c_early = _tp("c", timedelta(hours=1), created_at=ingested)

    first = [tp.id for tp in sort_touchpoints([b_late, a_late, c_early])]
    second = [tp.id for tp in sort_touchpoints([c_early, a_late, b_late])]

    assert first == ["c", "a", "b"]
    assert first == second


def test_no_candidates_gives_empty_journey_per_window() -> None:
    journeys = build_journey(CONVERSION, [], _settings())
    assert set(journeys) == {AttributionWindowEnum.seven_days, AttributionWindowEnum.fourteen_days}
    assert all(journey == [] for journey in journeys.values())


def test_ltv_window_is_unbounded() -> None:
    ancient = _tp("tp-ancient", timedelta(days=900))
    journeys = build_journey(
        CONVERSION,
        [ancient],
        _settings(enabled_windows=(AttributionWindowEnum.ltv, AttributionWindowEnum.ninety_days)),
    )
    assert journeys[AttributionWindowEnum.ltv] == [ancient]
    assert journeys[AttributionWindowEnum.ninety_days] == []


def test_build_journey_accepts_generators() -> None:
    candidates = (_tp(f"tp-{i}", timedelta(hours=i + 1)) for i in range(3))
    journeys = build_journey(CONVERSION, candidates, _settings())
    assert len(journeys[AttributionWindowEnum.seven_days]) == 3


class TestWindows:
    def test_durations(self) -> None:
        assert window_duration(AttributionWindowEnum.one_day) == timedelta(days=1)
        assert window_duration("28d") == timedelta(days=28)
        assert window_duration(AttributionWindowEnum.ltv) is None

    def test_window_start(self) -> None:
        assert window_start(AttributionWindowEnum.three_days, CONVERTED_AT) == CONVERTED_AT - timedelta(days=3)
        assert window_start(AttributionWindowEnum.ltv, CONVERTED_AT) is None

    def test_is_in_window(self) -> None:
        assert is_in_window(CONVERTED_AT - timedelta(days=1), CONVERTED_AT, AttributionWindowEnum.one_day)
        assert not is_in_window(CONVERTED_AT - timedelta(days=2), CONVERTED_AT, AttributionWindowEnum.one_day)
        assert not is_in_window(CONVERTED_AT + timedelta(seconds=1), CONVERTED_AT, AttributionWindowEnum.ltv)

    def test_longest_lookback(self) -> None:
        assert longest_lookback([AttributionWindowEnum.one_day, AttributionWindowEnum.thirty_days]) == timedelta(days=30)
        assert longest_lookback([AttributionWindowEnum.seven_days, AttributionWindowEnum.ltv]) is None
