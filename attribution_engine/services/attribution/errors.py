"""
Attribution Engine Exceptions
=============================

Error taxonomy for the credit engine. Each class maps to one recovery policy
in the run controller:

    ConversionValidationError  skip the record, log, continue the batch
    ConfigError                abort the tenant's run, write nothing
    TransientStoreError        retry with bounded backoff, then mark failed
    NumericError               skip that model for that conversion only

RELATED FILES
-------------
- services/attribution/calculator.py: raises ConversionValidationError, recovers NumericError
- services/attribution/credit_models.py: raises NumericError
- services/attribution/store.py: raises ConfigError, TransientStoreError
- services/attribution/run_controller.py: applies the recovery policies
"""

from typing import Optional


class AttributionError(Exception):
    """Base exception for all attribution engine errors.

    Allows catching every engine error with a single except clause while
    still being able to handle specific error types.
    """

    def __init__(self, message: str, tenant_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.tenant_id = tenant_id


class ConversionValidationError(AttributionError):
    """Malformed conversion or touchpoint (negative revenue, missing timestamp).

    RECOVERY:
        The record is skipped and logged; never fatal to the batch.
    """

    def __init__(self, message: str, conversion_id: Optional[str] = None, tenant_id: Optional[str] = None):
        super().__init__(message, tenant_id)
        self.conversion_id = conversion_id


class ConfigError(AttributionError):
    """Tenant settings violate an invariant.

    Examples: position weights not summing to 100, empty enabled_models,
    non-positive half-life, unknown model or window names.

    RECOVERY:
        Fatal for the tenant's run; no result rows are written.
    """


class TransientStoreError(AttributionError):
    """I/O failure while reading inputs or writing results.

    RECOVERY:
        Retried at the conversion level with bounded exponential backoff;
        after the last attempt the conversion is marked failed and picked up
        again by the next scheduled run.
    """


class NumericError(AttributionError):
    """A model produced NaN/inf or could not normalise its weights.

    Treated as a model bug. Only that model's computation for that
    conversion is skipped; sibling models still complete.
    """

    def __init__(self, message: str, model: Optional[str] = None):
        super().__init__(message)
        self.model = model
