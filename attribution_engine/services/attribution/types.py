"""
Attribution Engine Value Objects
================================

Plain immutable values passed between the journey builder, the model
library, the calculator and the rollup. None of them hold a session or any
other mutable shared state, so one settings snapshot can be read by every
worker thread without locking.

- TouchpointData / ConversionData: detached copies of the ORM rows
- IdentityKeys: the linking keys used to scope a touchpoint fetch
- SettingsSnapshot: validated, frozen per-tenant configuration
- CreditConfig: the subset of settings a crediting function needs
- AttributionResultRow / ChannelSummaryDelta / RunSummary: outputs
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional, Tuple, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from attribution_engine.models import (
    AttributionModeEnum,
    AttributionModelEnum,
    AttributionWindowEnum,
    TouchpointTypeEnum,
)

RecordId = Union[UUID, str]

# Sum-to-100 tolerance for position weights entered as percentages in the UI
POSITION_WEIGHT_TOLERANCE = 0.01

DEFAULT_ENABLED_MODELS: Tuple[AttributionModelEnum, ...] = tuple(AttributionModelEnum)
DEFAULT_ENABLED_WINDOWS: Tuple[AttributionWindowEnum, ...] = (
    AttributionWindowEnum.one_day,
    AttributionWindowEnum.seven_days,
    AttributionWindowEnum.fourteen_days,
    AttributionWindowEnum.twenty_eight_days,
    AttributionWindowEnum.thirty_days,
)
DEFAULT_HALF_LIFE_HOURS = 168.0


# =============================================================================
# INPUTS
# =============================================================================

@dataclass(frozen=True)
class TouchpointData:
    """Detached touchpoint used by the journey builder and the models."""

    id: RecordId
    occurred_at: datetime
    channel: str = "direct"
    touchpoint_type: str = TouchpointTypeEnum.click.value
    platform: Optional[str] = None
    visitor_id: Optional[str] = None
    session_id: Optional[str] = None
    customer_id: Optional[str] = None
    source: Optional[str] = None
    medium: Optional[str] = None
    campaign: Optional[str] = None
    # Ingestion sequence; secondary sort key and late-arrival marker
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class ConversionData:
    """Detached conversion. revenue/converted_at stay Optional so validation can reject them."""

    id: RecordId
    order_id: str
    revenue: Optional[Decimal]
    converted_at: Optional[datetime]
    currency: str = "USD"
    tenant_id: Optional[RecordId] = None
    customer_id: Optional[str] = None
    visitor_id: Optional[str] = None
    session_id: Optional[str] = None
    conversion_type: str = "purchase"


@dataclass(frozen=True)
class IdentityKeys:
    """Linking keys for one identity; a touchpoint matches if ANY key matches."""

    visitor_id: Optional[str] = None
    session_id: Optional[str] = None
    customer_id: Optional[str] = None

    @classmethod
    def from_conversion(cls, conversion: ConversionData) -> "IdentityKeys":
        return cls(
            visitor_id=conversion.visitor_id,
            session_id=conversion.session_id,
            customer_id=conversion.customer_id,
        )

    def is_empty(self) -> bool:
        return not (self.visitor_id or self.session_id or self.customer_id)


# =============================================================================
# SETTINGS SNAPSHOT
# =============================================================================

class PositionWeights(BaseModel):
    """First/middle/last percentages for position_based (sum 100)."""

    model_config = ConfigDict(frozen=True)

    first: float = Field(40.0, ge=0)
    middle: float = Field(20.0, ge=0)
    last: float = Field(40.0, ge=0)

    @model_validator(mode="after")
    def _sum_to_100(self) -> "PositionWeights":
        total = self.first + self.middle + self.last
        if abs(total - 100.0) > POSITION_WEIGHT_TOLERANCE:
            raise ValueError(f"position_based_weights must sum to 100, got {total:g}")
        return self


class SettingsSnapshot(BaseModel):
    """Immutable per-tenant settings, loaded once per run.

    Validation failures surface as pydantic ValidationError here; the store
    converts them to ConfigError so the run controller can abort the tenant.
    """

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    default_model: AttributionModelEnum = AttributionModelEnum.time_decay
    default_window: AttributionWindowEnum = AttributionWindowEnum.seven_days
    attribution_mode: AttributionModeEnum = AttributionModeEnum.clicks_only
    enabled_models: Tuple[AttributionModelEnum, ...] = Field(DEFAULT_ENABLED_MODELS, min_length=1)
    enabled_windows: Tuple[AttributionWindowEnum, ...] = Field(DEFAULT_ENABLED_WINDOWS, min_length=1)
    time_decay_half_life_hours: float = Field(DEFAULT_HALF_LIFE_HOURS, gt=0)
    position_based_weights: PositionWeights = Field(default_factory=PositionWeights)

    @field_validator("attribution_mode", mode="before")
    @classmethod
    def _legacy_mode_alias(cls, value):
        if value == "clicks_plus_views":
            return AttributionModeEnum.clicks_and_views
        return value

    @field_validator("enabled_models", "enabled_windows", mode="after")
    @classmethod
    def _dedupe(cls, value):
        # Keep first occurrence order; duplicates would double-write result rows
        return tuple(dict.fromkeys(value))

    @classmethod
    def from_record(cls, record) -> "SettingsSnapshot":
        """Build a snapshot from an AttributionSettingsRecord row."""
        return cls(
            enabled=record.enabled if record.enabled is not None else True,
            default_model=record.default_model or AttributionModelEnum.time_decay,
            default_window=record.default_window or AttributionWindowEnum.seven_days,
            attribution_mode=record.attribution_mode or AttributionModeEnum.clicks_only,
            enabled_models=tuple(record.enabled_models or ()),
            enabled_windows=tuple(record.enabled_windows or ()),
            time_decay_half_life_hours=(
                record.time_decay_half_life_hours
                if record.time_decay_half_life_hours is not None
                else DEFAULT_HALF_LIFE_HOURS
            ),
            position_based_weights=record.position_based_weights or PositionWeights(),
        )


@dataclass(frozen=True)
class CreditConfig:
    """What a crediting function may read: the conversion instant and model parameters."""

    converted_at: datetime
    half_life_hours: float = DEFAULT_HALF_LIFE_HOURS
    position_weights: PositionWeights = field(default_factory=PositionWeights)

    @classmethod
    def from_settings(cls, settings: SettingsSnapshot, converted_at: datetime) -> "CreditConfig":
        return cls(
            converted_at=converted_at,
            half_life_hours=settings.time_decay_half_life_hours,
            position_weights=settings.position_based_weights,
        )


# =============================================================================
# OUTPUTS
# =============================================================================

@dataclass(frozen=True)
class AttributionResultRow:
    """One (conversion, touchpoint, model, window) credit.

    channel/platform/converted_at are carried along for the rollup and are not
    persisted on the result table.
    """

    conversion_id: RecordId
    touchpoint_id: RecordId
    model: AttributionModelEnum
    window: AttributionWindowEnum
    credit: Decimal
    attributed_revenue: Decimal
    touchpoint_position: int
    total_touchpoints: int
    calculated_at: Optional[datetime] = None
    channel: str = "direct"
    platform: Optional[str] = None
    converted_at: Optional[datetime] = None


@dataclass
class ChannelSummaryDelta:
    """Aggregate for one (date, model, window, channel, platform)."""

    date: date
    model: str
    window: str
    channel: str
    platform: str
    touchpoints: int = 0
    conversions: int = 0
    revenue: Decimal = Decimal("0.00")
    spend: Optional[Decimal] = None
    roas: Optional[Decimal] = None
    cpa: Optional[Decimal] = None
    conversion_rate: Optional[Decimal] = None

    @property
    def key(self) -> Tuple[date, str, str, str, str]:
        return (self.date, self.model, self.window, self.channel, self.platform)


@dataclass
class RunSummary:
    """Outcome of one run controller invocation."""

    processed: int = 0
    skipped: int = 0
    failed: int = 0
    cancelled: bool = False
    run_id: Optional[RecordId] = None
    affected_dates: List[date] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "run_id": str(self.run_id) if self.run_id else None,
            "processed": self.processed,
            "skipped": self.skipped,
            "failed": self.failed,
            "cancelled": self.cancelled,
        }
