class ReconciliationError(Exception):
    """Base class for errors raised by the reconciliation pipeline."""


class TransientFetchFailure(ReconciliationError):
    """Fetching observations failed. Nothing was mutated; safe to retry."""


class MalformedFeatureWindow(ReconciliationError):
    """A feature window does not have the shape a model expects."""


class ScalerConfigurationMissing(ReconciliationError):
    """Normalization parameters for a model could not be loaded."""


__all__ = [
    "ReconciliationError",
    "TransientFetchFailure",
    "MalformedFeatureWindow",
    "ScalerConfigurationMissing",
]
