"""
Credit Model Tests (Unit)
=========================

WHAT: Unit tests for the pure crediting functions and credit rounding.
WHY: Every stored credit flows through these; sum-to-one and ordering rules
     must not regress.

NOTE:
These tests live outside `attribution_engine/tests/` so they run without the
integration `conftest.py` (no database, no environment variables).

REFERENCES:
- attribution_engine/services/attribution/credit_models.py
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from attribution_engine.models import AttributionModelEnum
from attribution_engine.services.attribution import credit_models
from attribution_engine.services.attribution.credit_models import (
    MODEL_FUNCTIONS,
    compute_credits,
    round_credits,
)
from attribution_engine.services.attribution.errors import NumericError
from attribution_engine.services.attribution.types import CreditConfig, PositionWeights, TouchpointData

CONVERTED_AT = datetime(2026, 3, 10, 12, 0, 0)


def _journey(*specs):
    """Build a journey from (hours_before_conversion, channel) pairs."""
    return [
        TouchpointData(
            id=f"tp-{index}",
            occurred_at=CONVERTED_AT - timedelta(hours=hours),
            channel=channel,
        )
        for index, (hours, channel) in enumerate(specs)
    ]


def _config(half_life=168.0, weights=None):
    return CreditConfig(
        converted_at=CONVERTED_AT,
        half_life_hours=half_life,
        position_weights=weights or PositionWeights(),
    )


THREE = _journey((120, "instagram"), (48, "google"), (1, "direct"))


def test_every_model_is_registered() -> None:
    assert set(MODEL_FUNCTIONS) == set(AttributionModelEnum)


@pytest.mark.parametrize("model", list(AttributionModelEnum))
@pytest.mark.parametrize("size", [1, 2, 3, 5, 17])
def test_credits_sum_to_one(model, size) -> None:
    journey = _journey(*[(size * 10 - i * 7, "google" if i % 2 else "direct") for i in range(size)])

    credits = compute_credits(model, journey, _config())

    assert len(credits) == size
    assert abs(sum(credits) - 1.0) < 1e-6
    assert all(c >= 0 for c in credits)


def test_first_and_last_touch() -> None:
    assert compute_credits(AttributionModelEnum.first_touch, THREE, _config()) == [1.0, 0.0, 0.0]
    assert compute_credits(AttributionModelEnum.last_touch, THREE, _config()) == [0.0, 0.0, 1.0]


def test_linear_is_uniform() -> None:
    journey = _journey((40, "a"), (30, "b"), (20, "c"), (10, "d"))
    assert compute_credits(AttributionModelEnum.linear, journey, _config()) == [0.25] * 4


def test_last_non_direct_skips_direct() -> None:
    assert compute_credits(AttributionModelEnum.last_non_direct, THREE, _config()) == [0.0, 1.0, 0.0]


def test_last_non_direct_falls_back_to_last_when_all_direct() -> None:
    journey = _journey((30, "direct"), (20, "Direct"), (10, "direct"))
    assert compute_credits(AttributionModelEnum.last_non_direct, journey, _config()) == [0.0, 0.0, 1.0]


class TestPositionBased:
    def test_single_touchpoint_gets_everything(self) -> None:
        journey = _journey((5, "google"))
        assert compute_credits(AttributionModelEnum.position_based, journey, _config()) == [1.0]

    def test_two_touchpoints_split_first_and_last(self) -> None:
        journey = _journey((5, "google"), (1, "meta"))
        assert compute_credits(AttributionModelEnum.position_based, journey, _config()) == [0.5, 0.5]

    def test_two_touchpoints_with_uneven_weights(self) -> None:
        journey = _journey((5, "google"), (1, "meta"))
        weights = PositionWeights(first=30, middle=50, last=20)
        credits = compute_credits(AttributionModelEnum.position_based, journey, _config(weights=weights))
        assert credits == pytest.approx([0.6, 0.4])

    def test_two_touchpoints_with_zero_end_weights_split_evenly(self) -> None:
        journey = _journey((5, "google"), (1, "meta"))
        weights = PositionWeights(first=0, middle=100, last=0)
        credits = compute_credits(AttributionModelEnum.position_based, journey, _config(weights=weights))
        assert credits == [0.5, 0.5]

    def test_five_touchpoints_split_the_middle(self) -> None:
        journey = _journey((50, "a"), (40, "b"), (30, "c"), (20, "d"), (10, "e"))
        credits = compute_credits(AttributionModelEnum.position_based, journey, _config())
        assert credits == pytest.approx([0.40, 0.2 / 3, 0.2 / 3, 0.2 / 3, 0.40])
        assert round(credits[1], 4) == 0.0667


class TestTimeDecay:
    def test_half_life_halves_the_weight(self) -> None:
        journey = _journey((168, "google"), (0, "meta"))
        credits = compute_credits(AttributionModelEnum.time_decay, journey, _config(half_life=168))
        assert credits == pytest.approx([1 / 3, 2 / 3])

    def test_monotonic_towards_conversion(self) -> None:
        journey = _journey((700, "a"), (300, "b"), (300, "c"), (90, "d"), (2, "e"))
        credits = compute_credits(AttributionModelEnum.time_decay, journey, _config(half_life=24))
        for earlier, later in zip(credits, credits[1:]):
            assert later >= earlier

    def test_very_old_touchpoints_do_not_underflow(self) -> None:
        journey = _journey((500_000, "a"), (400_000, "b"))
        credits = compute_credits(AttributionModelEnum.time_decay, journey, _config(half_life=1))
        assert credits == pytest.approx([0.0, 1.0])
        assert abs(sum(credits) - 1.0) < 1e-9

    def test_touchpoint_after_conversion_is_clamped(self) -> None:
        journey = _journey((-5, "a"), (0, "b"))
        credits = compute_credits(AttributionModelEnum.time_decay, journey, _config())
        assert credits == pytest.approx([0.5, 0.5])

    def test_non_positive_half_life_raises(self) -> None:
        with pytest.raises(NumericError):
            compute_credits(AttributionModelEnum.time_decay, THREE, _config(half_life=0))


def test_data_driven_is_a_labelled_blend() -> None:
    assert credit_models.DATA_DRIVEN_IS_APPROXIMATION is True

    linear = compute_credits(AttributionModelEnum.linear, THREE, _config())
    decay = compute_credits(AttributionModelEnum.time_decay, THREE, _config())
    blended = compute_credits(AttributionModelEnum.data_driven, THREE, _config())

    assert blended == pytest.approx([(a + b) / 2 for a, b in zip(linear, decay)])


def test_empty_journey_has_no_credits() -> None:
    for model in AttributionModelEnum:
        assert compute_credits(model, [], _config()) == []


def test_model_returning_nan_raises_numeric_error(monkeypatch) -> None:
    monkeypatch.setitem(
        MODEL_FUNCTIONS,
        AttributionModelEnum.linear,
        lambda journey, config: [float("nan")] * len(journey),
    )
    with pytest.raises(NumericError) as exc:
        compute_credits(AttributionModelEnum.linear, THREE, _config())
    assert exc.value.model == "linear"


def test_model_not_summing_to_one_raises_numeric_error(monkeypatch) -> None:
    monkeypatch.setitem(
        MODEL_FUNCTIONS,
        AttributionModelEnum.linear,
        lambda journey, config: [0.5] * len(journey),
    )
    with pytest.raises(NumericError):
        compute_credits(AttributionModelEnum.linear, THREE, _config())


class TestRoundCredits:
    def test_linear_three_rounds_up_the_last(self) -> None:
        rounded = round_credits([1 / 3, 1 / 3, 1 / 3])
        assert rounded == [Decimal("0.333333"), Decimal("0.333333"), Decimal("0.333334")]
        assert sum(rounded) == Decimal("1.000000")

    def test_position_five_trims_the_last_end(self) -> None:
        rounded = round_credits([0.4, 0.2 / 3, 0.2 / 3, 0.2 / 3, 0.4])
        assert sum(rounded) == Decimal("1.000000")
        assert rounded[0] == Decimal("0.400000")
        assert rounded[1] == Decimal("0.066667")
        assert rounded[-1] == Decimal("0.399999")

    def test_residual_goes_to_largest(self) -> None:
        rounded = round_credits([1 / 7, 1 / 7, 5 / 7])
        assert sum(rounded) == Decimal("1.000000")
        assert rounded[:2] == [Decimal("0.142857"), Decimal("0.142857")]

    def test_empty(self) -> None:
        assert round_credits([]) == []
