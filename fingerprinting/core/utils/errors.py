"""
Error taxonomy for the fingerprinting engine.

Only configuration errors are allowed to escape the core. Enrichment
failures (geolocation, anomaly scoring, pattern aggregation) are logged and
degraded to safe defaults by the components that own them.
"""


class FingerprintingError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(FingerprintingError):
    """Fatal misconfiguration; initialization must abort."""


class VectorSizeMismatchError(ConfigurationError):
    """Feature vector width does not match a model input layer."""

    def __init__(self, expected: int, actual: int, component: str = "model"):
        self.expected = expected
        self.actual = actual
        self.component = component
        super().__init__(
            f"Feature vector length {actual} does not match {component} input width {expected}"
        )


class ModelInitializationError(ConfigurationError):
    """The numeric backend or the networks could not be initialized."""
