"""
Attribution Credit Engine
=========================

Assigns fractional conversion credit to the marketing touchpoints that
preceded each conversion, for every enabled attribution model and lookback
window, and rolls the results up into daily channel summaries.

Modules:
- windows.py: window durations and membership
- types.py: value objects and the settings snapshot
- journey.py: ordered journey per window
- credit_models.py: one crediting function per model
- calculator.py: result rows and revenue allocation for one conversion
- rollup.py: daily channel summaries
- store.py: SQLAlchemy persistence and processing state
- run_controller.py: batch orchestration on a worker pool

Usage:
    from attribution_engine.services.attribution import AttributionRunController

    summary = AttributionRunController().run_batch(tenant_id, since)
"""

from attribution_engine.services.attribution.calculator import calculate, settings_fingerprint
from attribution_engine.services.attribution.errors import (
    AttributionError,
    ConfigError,
    ConversionValidationError,
    NumericError,
    TransientStoreError,
)
from attribution_engine.services.attribution.run_controller import AttributionRunController
from attribution_engine.services.attribution.store import AttributionStore
from attribution_engine.services.attribution.types import RunSummary, SettingsSnapshot

__all__ = [
    "AttributionRunController",
    "AttributionStore",
    "RunSummary",
    "SettingsSnapshot",
    "calculate",
    "settings_fingerprint",
    "AttributionError",
    "ConfigError",
    "ConversionValidationError",
    "NumericError",
    "TransientStoreError",
]
