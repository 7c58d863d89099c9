"""
Credit Calculator Tests (Unit)
==============================

WHAT: End-to-end crediting of one conversion, revenue allocation, validation
      and the settings fingerprint.
WHY: These are the row-level guarantees the store and rollup rely on.

REFERENCES:
- attribution_engine/services/attribution/calculator.py
"""

from collections import defaultdict
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from attribution_engine.models import AttributionModelEnum, AttributionWindowEnum
from attribution_engine.services.attribution.calculator import (
    allocate_revenue,
    calculate,
    currency_quantum,
    settings_fingerprint,
    validate_conversion,
)
from attribution_engine.services.attribution.credit_models import MODEL_FUNCTIONS
from attribution_engine.services.attribution.errors import ConversionValidationError
from attribution_engine.services.attribution.types import (
    ConversionData,
    PositionWeights,
    SettingsSnapshot,
    TouchpointData,
)

CONVERTED_AT = datetime(2026, 8, 1, 18, 0, 0)
SEVEN_DAYS = AttributionWindowEnum.seven_days


def _conversion(revenue="100.00", currency="USD", **overrides):
    values = dict(
        id="conv-1",
        order_id="order-1",
        revenue=Decimal(revenue) if revenue is not None else None,
        converted_at=CONVERTED_AT,
        currency=currency,
        visitor_id="visitor-1",
    )
    values.update(overrides)
    return ConversionData(**values)


JOURNEY = [
    TouchpointData(id="tp-instagram", occurred_at=CONVERTED_AT - timedelta(days=5), channel="instagram", platform="meta"),
    TouchpointData(id="tp-google", occurred_at=CONVERTED_AT - timedelta(days=2), channel="google", platform="google"),
    TouchpointData(id="tp-direct", occurred_at=CONVERTED_AT - timedelta(hours=1), channel="direct"),
]


def _settings(**overrides):
    values = {"enabled_windows": (SEVEN_DAYS,)}
    values.update(overrides)
    return SettingsSnapshot(**values)


def _revenue_by_touchpoint(outcome, model, window=SEVEN_DAYS):
    return {
        row.touchpoint_id: row.attributed_revenue
        for row in outcome.rows
        if row.model == model and row.window == window
    }


# =============================================================================
# END TO END
# =============================================================================

def test_three_touch_journey_per_model() -> None:
    outcome = calculate(_conversion(), JOURNEY, _settings())

    assert _revenue_by_touchpoint(outcome, AttributionModelEnum.first_touch) == {
        "tp-instagram": Decimal("100.00"),
        "tp-google": Decimal("0.00"),
        "tp-direct": Decimal("0.00"),
    }
    assert _revenue_by_touchpoint(outcome, AttributionModelEnum.last_touch)["tp-direct"] == Decimal("100.00")
    assert _revenue_by_touchpoint(outcome, AttributionModelEnum.last_non_direct)["tp-google"] == Decimal("100.00")
    assert _revenue_by_touchpoint(outcome, AttributionModelEnum.linear) == {
        "tp-instagram": Decimal("33.33"),
        "tp-google": Decimal("33.33"),
        "tp-direct": Decimal("33.34"),
    }


def test_rows_carry_positions_and_rollup_fields() -> None:
    outcome = calculate(_conversion(), JOURNEY, _settings(enabled_models=(AttributionModelEnum.linear,)))

    assert [row.touchpoint_position for row in outcome.rows] == [1, 2, 3]
    assert {row.total_touchpoints for row in outcome.rows} == {3}
    assert [row.channel for row in outcome.rows] == ["instagram", "google", "direct"]
    assert outcome.rows[0].platform == "meta"
    assert all(row.converted_at == CONVERTED_AT for row in outcome.rows)


def test_one_row_per_touchpoint_model_and_window() -> None:
    settings = _settings(enabled_windows=(AttributionWindowEnum.one_day, SEVEN_DAYS, AttributionWindowEnum.thirty_days))
    outcome = calculate(_conversion(), JOURNEY, settings)

    keys = [(row.touchpoint_id, row.model, row.window) for row in outcome.rows]
    assert len(keys) == len(set(keys))
    # 1d only sees the direct touchpoint, 7d and 30d see all three
    assert len(outcome.rows) == len(settings.enabled_models) * (1 + 3 + 3)


@pytest.mark.parametrize(
    "revenue,currency",
    [("100.00", "USD"), ("0.01", "USD"), ("99.99", "EUR"), ("1000", "JPY"), ("12.345", "KWD"), ("0", "USD")],
)
def test_revenue_and_credit_are_conserved(revenue, currency) -> None:
    outcome = calculate(_conversion(revenue=revenue, currency=currency), JOURNEY, _settings())

    credit = defaultdict(Decimal)
    attributed = defaultdict(Decimal)
    for row in outcome.rows:
        credit[(row.model, row.window)] += row.credit
        attributed[(row.model, row.window)] += row.attributed_revenue

    expected = Decimal(revenue).quantize(currency_quantum(currency))
    assert len(credit) == len(AttributionModelEnum)
    assert all(total == Decimal("1.000000") for total in credit.values())
    assert all(total == expected for total in attributed.values())
    assert all(row.attributed_revenue >= 0 for row in outcome.rows)


def test_zero_decimal_currency_allocates_whole_units() -> None:
    outcome = calculate(
        _conversion(revenue="1000", currency="JPY"),
        JOURNEY,
        _settings(enabled_models=(AttributionModelEnum.linear,)),
    )
    assert [row.attributed_revenue for row in outcome.rows] == [Decimal("333"), Decimal("333"), Decimal("334")]


def test_repeated_calls_are_identical() -> None:
    calculated_at = datetime(2026, 8, 2)
    first = calculate(_conversion(), JOURNEY, _settings(), calculated_at=calculated_at)
    second = calculate(_conversion(), list(reversed(JOURNEY)), _settings(), calculated_at=calculated_at)
    assert first.rows == second.rows


def test_empty_journey_writes_nothing() -> None:
    outcome = calculate(_conversion(), [], _settings())

    assert outcome.rows == []
    assert not outcome.has_rows
    assert outcome.empty_windows == [SEVEN_DAYS]
    assert outcome.model_errors == []


def test_window_without_touchpoints_is_reported_empty() -> None:
    only_old = [JOURNEY[0]]
    outcome = calculate(_conversion(), only_old, _settings(enabled_windows=(AttributionWindowEnum.one_day, SEVEN_DAYS)))

    assert outcome.empty_windows == [AttributionWindowEnum.one_day]
    assert {row.window for row in outcome.rows} == {SEVEN_DAYS}


def test_failing_model_does_not_block_siblings(monkeypatch) -> None:
    monkeypatch.setitem(
        MODEL_FUNCTIONS,
        AttributionModelEnum.time_decay,
        lambda journey, config: [float("inf")] * len(journey),
    )
    outcome = calculate(_conversion(), JOURNEY, _settings())

    models = {row.model for row in outcome.rows}
    assert AttributionModelEnum.time_decay not in models
    assert AttributionModelEnum.linear in models
    assert [(e.model, e.window) for e in outcome.model_errors] == [(AttributionModelEnum.time_decay, SEVEN_DAYS)]


def test_position_based_weights_flow_through() -> None:
    settings = _settings(
        enabled_models=(AttributionModelEnum.position_based,),
        position_based_weights=PositionWeights(first=50, middle=0, last=50),
    )
    outcome = calculate(_conversion(), JOURNEY, settings)
    assert [row.attributed_revenue for row in outcome.rows] == [Decimal("50.00"), Decimal("0.00"), Decimal("50.00")]


# =============================================================================
# VALIDATION
# =============================================================================

@pytest.mark.parametrize(
    "overrides",
    [
        {"revenue": "-1.00"},
        {"revenue": None},
        {"converted_at": None},
        {"id": None},
    ],
)
def test_invalid_conversions_are_rejected(overrides) -> None:
    overrides = dict(overrides)
    revenue = overrides.pop("revenue", "100.00")
    conversion = _conversion(revenue=revenue, **overrides)

    with pytest.raises(ConversionValidationError):
        validate_conversion(conversion)
    with pytest.raises(ConversionValidationError):
        calculate(conversion, JOURNEY, _settings())


def test_validation_error_names_the_conversion() -> None:
    with pytest.raises(ConversionValidationError) as exc:
        validate_conversion(_conversion(revenue="-5"))
    assert exc.value.conversion_id == "conv-1"
    assert "negative" in exc.value.message


# =============================================================================
# ALLOCATION
# =============================================================================

def test_allocate_revenue_remainder_goes_to_highest_credit() -> None:
    credits = [Decimal("0.2"), Decimal("0.5"), Decimal("0.3")]
    assert allocate_revenue(Decimal("0.05"), credits) == [Decimal("0.01"), Decimal("0.02"), Decimal("0.02")]


def test_allocate_revenue_empty() -> None:
    assert allocate_revenue(Decimal("10.00"), []) == []


def test_currency_quantum() -> None:
    assert currency_quantum("usd") == Decimal("0.01")
    assert currency_quantum("JPY") == Decimal("1")
    assert currency_quantum("BHD") == Decimal("0.001")
    assert currency_quantum(None) == Decimal("0.01")


# =============================================================================
# FINGERPRINT
# =============================================================================

def test_fingerprint_ignores_order_and_non_result_fields() -> None:
    a = SettingsSnapshot(enabled_models=(AttributionModelEnum.linear, AttributionModelEnum.first_touch))
    b = SettingsSnapshot(
        enabled_models=(AttributionModelEnum.first_touch, AttributionModelEnum.linear),
        default_model=AttributionModelEnum.linear,
    )
    assert settings_fingerprint(a) == settings_fingerprint(b)


@pytest.mark.parametrize(
    "change",
    [
        {"time_decay_half_life_hours": 72},
        {"enabled_windows": (AttributionWindowEnum.ninety_days,)},
        {"attribution_mode": "clicks_and_views"},
        {"position_based_weights": PositionWeights(first=30, middle=40, last=30)},
        {"enabled_models": (AttributionModelEnum.linear,)},
    ],
)
def test_fingerprint_changes_with_result_affecting_settings(change) -> None:
    assert settings_fingerprint(SettingsSnapshot()) != settings_fingerprint(SettingsSnapshot(**change))
