"""Credit calculator.

WHAT: Validates one conversion, builds its journeys, runs every enabled
      (window, model) pair and turns the credit vectors into result rows
WHY: One place owns the row invariants (credits sum to exactly 1, attributed
     revenue sums exactly to the conversion's revenue, empty journeys write
     nothing), so the store and the rollup can trust every row they see
REFERENCES:
  - services/attribution/journey.py: ordered journey per window
  - services/attribution/credit_models.py: MODEL_FUNCTIONS, round_credits
  - services/attribution/run_controller.py: calls calculate() per conversion

Revenue allocation:
  - each share = credit × revenue, rounded to the currency minor unit
    (ROUND_HALF_UP)
  - the remainder goes to the highest-credit touchpoint, last index on ties
    e.g. linear $100 over three touchpoints → 33.33 / 33.33 / 33.34
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional, Sequence

from attribution_engine.models import AttributionModelEnum, AttributionWindowEnum
from attribution_engine.services.attribution.credit_models import compute_credits, round_credits
from attribution_engine.services.attribution.errors import ConversionValidationError, NumericError
from attribution_engine.services.attribution.journey import build_journey
from attribution_engine.services.attribution.types import (
    AttributionResultRow,
    ConversionData,
    CreditConfig,
    SettingsSnapshot,
    TouchpointData,
)

logger = logging.getLogger(__name__)

# ISO 4217 currencies without a minor unit
ZERO_DECIMAL_CURRENCIES = frozenset({
    "BIF", "CLP", "DJF", "GNF", "ISK", "JPY", "KMF", "KRW", "PYG",
    "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
})
THREE_DECIMAL_CURRENCIES = frozenset({"BHD", "IQD", "JOD", "KWD", "LYD", "OMR", "TND"})


@dataclass(frozen=True)
class ModelError:
    """A model that was skipped for one window of one conversion."""

    model: AttributionModelEnum
    window: AttributionWindowEnum
    message: str


@dataclass
class CalculationOutcome:
    """Rows to persist for one conversion plus any isolated model failures."""

    conversion_id: object
    rows: List[AttributionResultRow] = field(default_factory=list)
    model_errors: List[ModelError] = field(default_factory=list)
    empty_windows: List[AttributionWindowEnum] = field(default_factory=list)

    @property
    def has_rows(self) -> bool:
        return bool(self.rows)


def currency_quantum(currency: Optional[str]) -> Decimal:
    """Smallest unit of a currency as a Decimal exponent (0.01 by default)."""
    code = (currency or "").upper()
    if code in ZERO_DECIMAL_CURRENCIES:
        return Decimal("1")
    if code in THREE_DECIMAL_CURRENCIES:
        return Decimal("0.001")
    return Decimal("0.01")


def validate_conversion(conversion: ConversionData) -> None:
    """Reject conversions the engine cannot attribute.

    Raises:
        ConversionValidationError: missing id, missing converted_at, missing
            or negative revenue
    """
    tenant_id = str(conversion.tenant_id) if conversion.tenant_id else None
    if conversion.id is None:
        raise ConversionValidationError("Conversion has no id", tenant_id=tenant_id)

    conversion_id = str(conversion.id)
    if conversion.converted_at is None:
        raise ConversionValidationError(
            "Conversion has no converted_at", conversion_id=conversion_id, tenant_id=tenant_id
        )
    if conversion.revenue is None:
        raise ConversionValidationError(
            "Conversion has no revenue", conversion_id=conversion_id, tenant_id=tenant_id
        )
    if Decimal(conversion.revenue) < 0:
        raise ConversionValidationError(
            f"Conversion revenue is negative ({conversion.revenue})",
            conversion_id=conversion_id,
            tenant_id=tenant_id,
        )


def allocate_revenue(revenue: Decimal, credits: Sequence[Decimal], currency: str = "USD") -> List[Decimal]:
    """Split revenue by credit so the shares sum exactly to revenue.

    Args:
        revenue: Conversion revenue (non-negative)
        credits: Rounded credits for one (model, window), summing to 1
        currency: ISO 4217 code; decides the rounding unit

    Returns:
        One amount per credit, each rounded to the currency minor unit
    """
    if not credits:
        return []

    quantum = currency_quantum(currency)
    total = Decimal(revenue).quantize(quantum, rounding=ROUND_HALF_UP)
    shares = [(total * credit).quantize(quantum, rounding=ROUND_HALF_UP) for credit in credits]

    remainder = total - sum(shares)
    if remainder:
        highest = max(range(len(credits)), key=lambda i: (credits[i], i))
        shares[highest] += remainder
    return shares


def settings_fingerprint(settings: SettingsSnapshot) -> str:
    """Stable hash of everything that changes the computed rows.

    Stored on the conversion's processing state; a mismatch marks the
    conversion for recomputation.
    """
    weights = settings.position_based_weights
    payload = {
        "models": sorted(m.value for m in settings.enabled_models),
        "windows": sorted(w.value for w in settings.enabled_windows),
        "mode": settings.attribution_mode.value,
        "half_life_hours": round(float(settings.time_decay_half_life_hours), 6),
        "weights": [round(weights.first, 6), round(weights.middle, 6), round(weights.last, 6)],
    }
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


def calculate(
    conversion: ConversionData,
    touchpoints: Iterable[TouchpointData],
    settings: SettingsSnapshot,
    calculated_at: Optional[datetime] = None,
) -> CalculationOutcome:
    """Compute every result row for one conversion.

    Pure: reads only its arguments, so two calls with the same inputs (and
    the same calculated_at) return identical rows.

    Raises:
        ConversionValidationError: conversion cannot be attributed at all
    """
    validate_conversion(conversion)

    outcome = CalculationOutcome(conversion_id=conversion.id)
    journeys = build_journey(conversion, touchpoints, settings)
    config = CreditConfig.from_settings(settings, conversion.converted_at)
    revenue = Decimal(conversion.revenue)

    for window in settings.enabled_windows:
        journey = journeys.get(window) or []
        if not journey:
            outcome.empty_windows.append(window)
            continue

        total = len(journey)
        for model in settings.enabled_models:
            try:
                credits = round_credits(compute_credits(model, journey, config))
            except NumericError as e:
                logger.warning(
                    "[ATTRIBUTION] Model %s failed for conversion %s window %s: %s",
                    model.value, conversion.id, window.value, e.message,
                )
                outcome.model_errors.append(ModelError(model=model, window=window, message=e.message))
                continue

            amounts = allocate_revenue(revenue, credits, conversion.currency)
            for position, (touchpoint, credit, amount) in enumerate(zip(journey, credits, amounts), start=1):
                outcome.rows.append(
                    AttributionResultRow(
                        conversion_id=conversion.id,
                        touchpoint_id=touchpoint.id,
                        model=model,
                        window=window,
                        credit=credit,
                        attributed_revenue=amount,
                        touchpoint_position=position,
                        total_touchpoints=total,
                        calculated_at=calculated_at,
                        channel=touchpoint.channel or "direct",
                        platform=touchpoint.platform,
                        converted_at=conversion.converted_at,
                    )
                )

    logger.debug(
        "[ATTRIBUTION] Calculated conversion %s: rows=%d empty_windows=%d model_errors=%d",
        conversion.id, len(outcome.rows), len(outcome.empty_windows), len(outcome.model_errors),
    )
    return outcome
