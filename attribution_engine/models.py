"""SQLAlchemy ORM models and enums.

This module defines the attribution schema using UUID primary keys. Every
table carries `tenant_id`; nothing here is readable across tenants.

Touchpoints and conversions are written by ingestion (external) and are
immutable from the engine's point of view. Results are replaced per
conversion; channel summaries are a rebuildable cache.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base, relationship


# Single Base used by the entire application
Base = declarative_base()


# Enums ---------------------------------------------------------

class AttributionModelEnum(str, enum.Enum):
    """Closed set of crediting algorithms."""
    first_touch = "first_touch"
    last_touch = "last_touch"
    linear = "linear"
    time_decay = "time_decay"
    position_based = "position_based"
    data_driven = "data_driven"
    last_non_direct = "last_non_direct"


class AttributionWindowEnum(str, enum.Enum):
    """Lookback windows. `ltv` means unbounded."""
    one_day = "1d"
    three_days = "3d"
    seven_days = "7d"
    fourteen_days = "14d"
    twenty_eight_days = "28d"
    thirty_days = "30d"
    ninety_days = "90d"
    ltv = "ltv"


class AttributionModeEnum(str, enum.Enum):
    clicks_only = "clicks_only"
    clicks_and_views = "clicks_and_views"


class TouchpointTypeEnum(str, enum.Enum):
    click = "click"
    view = "view"
    engagement = "engagement"


class ConversionTypeEnum(str, enum.Enum):
    purchase = "purchase"
    signup = "signup"
    lead = "lead"
    add_to_cart = "add_to_cart"
    custom = "custom"


class ProcessingStatusEnum(str, enum.Enum):
    """Per-conversion state machine.

    pending → processing → completed | failed | invalid
    processing (stale) → pending (reclaimed by the run controller)

    failed is retried by later runs. invalid means the conversion itself
    cannot be attributed; only a full recompute looks at it again.
    """
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    invalid = "invalid"


class RunTypeEnum(str, enum.Enum):
    incremental = "incremental"
    full_recompute = "full_recompute"
    recalculate_recent = "recalculate_recent"
    unattributed = "unattributed"


class RunStatusEnum(str, enum.Enum):
    running = "running"
    completed = "completed"
    cancelled = "cancelled"
    failed = "failed"


# Core models ----------------------------------------------------

class Tenant(Base):
    """Tenant represents one merchant account using the attribution product."""
    __tablename__ = "tenants"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    settings = relationship("AttributionSettingsRecord", back_populates="tenant", uselist=False)
    runs = relationship("AttributionRun", back_populates="tenant")

    def __str__(self):
        return self.name


class AttributionSettingsRecord(Base):
    """Per-tenant attribution configuration (one row per tenant).

    WHAT: Which models/windows are computed and how the parametric models behave
    WHY: The run controller snapshots this row once per run; a change here
         invalidates every stored result through the settings fingerprint
    """
    __tablename__ = "attribution_settings"
    __table_args__ = (UniqueConstraint("tenant_id", name="uq_attribution_settings_tenant"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False)

    enabled = Column(Boolean, nullable=False, default=True)
    default_model = Column(String, nullable=False, default=AttributionModelEnum.time_decay.value)
    default_window = Column(String, nullable=False, default=AttributionWindowEnum.seven_days.value)
    attribution_mode = Column(String, nullable=False, default=AttributionModeEnum.clicks_only.value)

    # Lists of enum values; JSON keeps the schema portable to SQLite in tests
    enabled_models = Column(JSON, nullable=False, default=list)
    enabled_windows = Column(JSON, nullable=False, default=list)

    time_decay_half_life_hours = Column(Float, nullable=False, default=168.0)
    # {"first": 40, "middle": 20, "last": 40}
    position_based_weights = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    tenant = relationship("Tenant", back_populates="settings")

    def __str__(self):
        return f"Attribution settings for {self.tenant_id}"


class Touchpoint(Base):
    """One marketing interaction (click, view, engagement).

    WHAT: Written by ingestion from pixel events and ad click webhooks
    WHY: Journeys are rebuilt from these rows on every (re)calculation
    NOTE: created_at is the ingestion sequence; it is used both as the sort
          tie-breaker and to detect late-arriving touchpoints
    """
    __tablename__ = "attribution_touchpoints"
    __table_args__ = (
        Index("ix_touchpoints_tenant_visitor", "tenant_id", "visitor_id"),
        Index("ix_touchpoints_tenant_customer", "tenant_id", "customer_id"),
        Index("ix_touchpoints_tenant_session", "tenant_id", "session_id"),
        Index("ix_touchpoints_tenant_created", "tenant_id", "created_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False)

    # Identity
    visitor_id = Column(String, nullable=False)
    session_id = Column(String, nullable=True)
    customer_id = Column(String, nullable=True)

    # Channel and source info
    channel = Column(String, nullable=False, default="direct")
    source = Column(String, nullable=True)
    medium = Column(String, nullable=True)
    campaign = Column(String, nullable=True)
    content = Column(String, nullable=True)
    term = Column(String, nullable=True)

    # Platform-specific identifiers
    platform = Column(String, nullable=True)
    ad_id = Column(String, nullable=True)
    adset_id = Column(String, nullable=True)
    campaign_id = Column(String, nullable=True)

    # Click identifiers
    fbclid = Column(String, nullable=True)
    gclid = Column(String, nullable=True)
    ttclid = Column(String, nullable=True)
    msclkid = Column(String, nullable=True)

    touchpoint_type = Column(String, nullable=False, default=TouchpointTypeEnum.click.value)
    landing_page = Column(String, nullable=True)
    referrer = Column(String, nullable=True)

    occurred_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __str__(self):
        return f"{self.touchpoint_type} via {self.channel} at {self.occurred_at}"


class Conversion(Base):
    """One purchase/signup event."""
    __tablename__ = "attribution_conversions"
    __table_args__ = (
        UniqueConstraint("tenant_id", "order_id", name="uq_conversion_tenant_order"),
        Index("ix_conversions_tenant_converted_at", "tenant_id", "converted_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False)

    order_id = Column(String, nullable=False)
    order_number = Column(String, nullable=True)

    # Identity links supplied by the identity-resolution collaborator
    customer_id = Column(String, nullable=True)
    visitor_id = Column(String, nullable=True)
    session_id = Column(String, nullable=True)

    revenue = Column(Numeric(14, 3), nullable=True)
    currency = Column(String, nullable=False, default="USD")
    conversion_type = Column(String, nullable=False, default=ConversionTypeEnum.purchase.value)
    is_first_purchase = Column(Boolean, default=False)

    converted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    results = relationship("AttributionResult", back_populates="conversion", cascade="all, delete-orphan")
    state = relationship("ConversionProcessingState", back_populates="conversion", uselist=False)

    def __str__(self):
        return f"Order {self.order_id} - {self.revenue} {self.currency}"


class AttributionResult(Base):
    """Credit assigned to one touchpoint for one (model, window).

    WHAT: The output fact of the credit engine
    WHY: Fast dashboard queries; the rollup is rebuilt from these rows
    NOTE: Rows for a conversion are always replaced as a unit
    """
    __tablename__ = "attribution_results"
    __table_args__ = (
        UniqueConstraint(
            "conversion_id", "touchpoint_id", "model", "attribution_window",
            name="uq_attribution_result_key",
        ),
        Index("ix_attribution_results_tenant_conversion", "tenant_id", "conversion_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False)
    conversion_id = Column(UUID(as_uuid=True), ForeignKey("attribution_conversions.id"), nullable=False)
    touchpoint_id = Column(UUID(as_uuid=True), ForeignKey("attribution_touchpoints.id"), nullable=False)

    model = Column(String, nullable=False)
    attribution_window = Column(String, nullable=False)

    credit = Column(Numeric(8, 6), nullable=False)
    attributed_revenue = Column(Numeric(14, 3), nullable=False)
    touchpoint_position = Column(Integer, nullable=False)
    total_touchpoints = Column(Integer, nullable=False)

    run_id = Column(UUID(as_uuid=True), ForeignKey("attribution_runs.id"), nullable=True)
    calculated_at = Column(DateTime, default=datetime.utcnow)

    conversion = relationship("Conversion", back_populates="results")
    touchpoint = relationship("Touchpoint")

    def __str__(self):
        return f"{self.model}/{self.attribution_window} credit={self.credit} -> {self.touchpoint_id}"


class ChannelSummary(Base):
    """Daily rollup by (model, window, channel, platform).

    Derived from AttributionResult; safe to delete and rebuild at any time.
    """
    __tablename__ = "attribution_channel_summary"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "date", "model", "attribution_window", "channel", "platform",
            name="uq_channel_summary_key",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False)
    date = Column(Date, nullable=False)
    model = Column(String, nullable=False)
    attribution_window = Column(String, nullable=False)
    channel = Column(String, nullable=False)
    # Empty string instead of NULL so the unique constraint holds on every backend
    platform = Column(String, nullable=False, default="")

    touchpoints = Column(Integer, nullable=False, default=0)
    conversions = Column(Integer, nullable=False, default=0)
    revenue = Column(Numeric(16, 3), nullable=False, default=0)
    spend = Column(Numeric(16, 3), nullable=True)

    # Derived metrics (None when the denominator is zero/unknown)
    roas = Column(Numeric(12, 4), nullable=True)
    cpa = Column(Numeric(12, 4), nullable=True)
    conversion_rate = Column(Numeric(12, 6), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __str__(self):
        return f"{self.date} {self.model}/{self.attribution_window} {self.channel}: {self.revenue}"


class ChannelSpend(Base):
    """Externally supplied ad spend per day/channel/platform (ROAS/CPA input)."""
    __tablename__ = "attribution_channel_spend"
    __table_args__ = (
        UniqueConstraint("tenant_id", "date", "channel", "platform", name="uq_channel_spend_key"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False)
    date = Column(Date, nullable=False)
    channel = Column(String, nullable=False)
    platform = Column(String, nullable=False, default="")
    spend = Column(Numeric(16, 3), nullable=False, default=0)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ConversionProcessingState(Base):
    """Processing state for one conversion.

    WHAT: pending/processing/completed/failed/invalid plus the settings fingerprint
          that produced the stored result rows
    WHY: At-most-once processing, crash recovery (stale `processing` rows are
         reclaimed) and change detection without recomputing everything
    """
    __tablename__ = "attribution_conversion_states"
    __table_args__ = (
        UniqueConstraint("conversion_id", name="uq_conversion_state_conversion"),
        Index("ix_conversion_states_tenant_status", "tenant_id", "status"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False)
    conversion_id = Column(UUID(as_uuid=True), ForeignKey("attribution_conversions.id"), nullable=False)

    status = Column(String, nullable=False, default=ProcessingStatusEnum.pending.value)
    attempts = Column(Integer, nullable=False, default=0)
    settings_fingerprint = Column(String, nullable=True)
    last_error = Column(Text, nullable=True)

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    conversion = relationship("Conversion", back_populates="state")

    def __str__(self):
        return f"{self.conversion_id} ({self.status})"


class AttributionRun(Base):
    """One execution of the run controller for a tenant."""
    __tablename__ = "attribution_runs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False)
    run_type = Column(String, nullable=False, default=RunTypeEnum.incremental.value)
    status = Column(String, nullable=False, default=RunStatusEnum.running.value)
    since = Column(DateTime, nullable=True)

    processed = Column(Integer, nullable=False, default=0)
    skipped = Column(Integer, nullable=False, default=0)
    failed = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)

    started_at = Column(DateTime, default=datetime.utcnow)
    finished_at = Column(DateTime, nullable=True)

    tenant = relationship("Tenant", back_populates="runs")

    def __str__(self):
        return f"{self.run_type} - {self.started_at} ({self.status})"
