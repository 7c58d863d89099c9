"""Attribution model library.

WHAT: One pure function per attribution model, mapping an ordered journey to
      a credit vector of the same length that sums to 1.0
WHY:  The set of models is closed; dispatch goes through MODEL_FUNCTIONS so
      every model is enumerable and testable, with no dynamic lookup

Models:
  - first_touch:      100% to the first touchpoint
  - last_touch:       100% to the last touchpoint
  - last_non_direct:  100% to the last touchpoint whose channel is not "direct";
                      if every touchpoint is direct, falls back to last_touch
  - linear:           1/N each
  - time_decay:       weight 2^(-Δt_hours / half_life), normalised
  - position_based:   first/middle/last percentages (see position_based_credit)
  - data_driven:      APPROXIMATION, see data_driven_credit

Storage precision is six decimals; round_credits folds the rounding residual
into the largest credit so stored credits sum to exactly 1.
"""

import math
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Dict, List, Sequence

from attribution_engine.models import AttributionModelEnum
from attribution_engine.services.attribution.errors import NumericError
from attribution_engine.services.attribution.types import CreditConfig, TouchpointData

CREDIT_QUANTUM = Decimal("0.000001")
CREDIT_SUM_TOLERANCE = 1e-6
DIRECT_CHANNEL = "direct"

# data_driven is NOT a Shapley/Markov/regression model. Consumers that show
# model labels should surface this flag.
DATA_DRIVEN_IS_APPROXIMATION = True
DATA_DRIVEN_LINEAR_SHARE = 0.5

CreditFunction = Callable[[Sequence[TouchpointData], CreditConfig], List[float]]


def first_touch_credit(journey: Sequence[TouchpointData], config: CreditConfig) -> List[float]:
    credits = [0.0] * len(journey)
    credits[0] = 1.0
    return credits


def last_touch_credit(journey: Sequence[TouchpointData], config: CreditConfig) -> List[float]:
    credits = [0.0] * len(journey)
    credits[-1] = 1.0
    return credits


def last_non_direct_credit(journey: Sequence[TouchpointData], config: CreditConfig) -> List[float]:
    """Last non-direct touchpoint; all-direct journeys fall back to the actual last touchpoint."""
    credits = [0.0] * len(journey)
    for index in range(len(journey) - 1, -1, -1):
        if (journey[index].channel or DIRECT_CHANNEL).lower() != DIRECT_CHANNEL:
            credits[index] = 1.0
            return credits
    credits[-1] = 1.0
    return credits


def linear_credit(journey: Sequence[TouchpointData], config: CreditConfig) -> List[float]:
    share = 1.0 / len(journey)
    return [share] * len(journey)


def time_decay_credit(journey: Sequence[TouchpointData], config: CreditConfig) -> List[float]:
    """Exponential decay with a configurable half-life.

    Computed in log2 space with the max log-weight subtracted before
    exponentiating, so very old touchpoints cannot underflow the total to 0.
    Negative ages (touchpoint after conversion) are clamped to 0.
    """
    half_life = config.half_life_hours
    if not half_life or half_life <= 0 or not math.isfinite(half_life):
        raise NumericError(f"time_decay half-life must be positive, got {half_life}", model="time_decay")

    log_weights = []
    for touchpoint in journey:
        age_hours = (config.converted_at - touchpoint.occurred_at).total_seconds() / 3600.0
        log_weights.append(-max(age_hours, 0.0) / half_life)

    peak = max(log_weights)
    weights = [2.0 ** (lw - peak) for lw in log_weights]
    total = sum(weights)
    return [w / total for w in weights]


def position_based_credit(journey: Sequence[TouchpointData], config: CreditConfig) -> List[float]:
    """Position-based (U-shaped) credit.

    N == 1: 100% to the only touchpoint
    N == 2: first/(first+last) and last/(first+last); if both are 0 the two
            touchpoints split evenly
    N >= 3: first% and last% at the ends, middle% split across the N-2 interior
    """
    weights = config.position_weights
    count = len(journey)
    if count == 1:
        return [1.0]

    if count == 2:
        ends = weights.first + weights.last
        if ends <= 0:
            return [0.5, 0.5]
        return [weights.first / ends, weights.last / ends]

    interior = (weights.middle / 100.0) / (count - 2)
    credits = [interior] * count
    credits[0] = weights.first / 100.0
    credits[-1] = weights.last / 100.0
    return credits


def data_driven_credit(journey: Sequence[TouchpointData], config: CreditConfig) -> List[float]:
    """Placeholder data-driven model: 50/50 blend of linear and time_decay.

    APPROXIMATION: there is no conversion-lift or counterfactual data source
    behind this. It is deterministic and sums to 1, but it is not a Shapley,
    Markov removal-effect or regression model and must not be presented as
    one.
    """
    linear = linear_credit(journey, config)
    decay = time_decay_credit(journey, config)
    share = DATA_DRIVEN_LINEAR_SHARE
    return [share * a + (1.0 - share) * b for a, b in zip(linear, decay)]


MODEL_FUNCTIONS: Dict[AttributionModelEnum, CreditFunction] = {
    AttributionModelEnum.first_touch: first_touch_credit,
    AttributionModelEnum.last_touch: last_touch_credit,
    AttributionModelEnum.last_non_direct: last_non_direct_credit,
    AttributionModelEnum.linear: linear_credit,
    AttributionModelEnum.time_decay: time_decay_credit,
    AttributionModelEnum.position_based: position_based_credit,
    AttributionModelEnum.data_driven: data_driven_credit,
}


def compute_credits(
    model: AttributionModelEnum,
    journey: Sequence[TouchpointData],
    config: CreditConfig,
) -> List[float]:
    """Run one model and check its output.

    Raises:
        NumericError: non-finite, negative, or non-normalisable output
    """
    if not journey:
        return []

    model = AttributionModelEnum(model)
    credits = MODEL_FUNCTIONS[model](journey, config)

    if len(credits) != len(journey):
        raise NumericError(
            f"{model.value} returned {len(credits)} credits for {len(journey)} touchpoints",
            model=model.value,
        )
    if any(not math.isfinite(c) or c < 0 for c in credits):
        raise NumericError(f"{model.value} produced a non-finite or negative credit", model=model.value)

    total = sum(credits)
    if total <= 0:
        raise NumericError(f"{model.value} credits sum to {total}", model=model.value)
    if abs(total - 1.0) > CREDIT_SUM_TOLERANCE:
        raise NumericError(f"{model.value} credits sum to {total}, expected 1.0", model=model.value)

    return credits


def round_credits(credits: Sequence[float]) -> List[Decimal]:
    """Round to six decimals and fold the residual into the largest credit.

    The last index wins ties (a linear journey rounds up its final
    touchpoint), so the result is stable across runs and the rounded credits
    sum to exactly Decimal("1.000000").
    """
    if not credits:
        return []

    rounded = [Decimal(repr(c)).quantize(CREDIT_QUANTUM, rounding=ROUND_HALF_UP) for c in credits]
    residual = Decimal("1.000000") - sum(rounded)
    if residual:
        largest = max(range(len(rounded)), key=lambda i: (rounded[i], i))
        rounded[largest] += residual
    return rounded
