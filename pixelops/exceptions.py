"""
Exception hierarchy for the pixelops package.

Configuration problems are raised eagerly when an op is built (or when its
channel schema is first queried), serialization problems abort the whole
graph reconstruction, and model loading failures are stored by the model
wrapper and re-raised on every later call.
"""


class PixelOpsError(Exception):
    """Base class for all pixelops errors."""


class ConfigurationError(PixelOpsError, ValueError):
    """
    Raised when an op or binding is configured inconsistently.

    Common causes include:
    - Value arrays whose length is neither 1 nor the channel count
    - Identical lower and upper percentiles for percentile normalization
    - Empty op lists for combinators, or no channels to extract
    - Branches of a split-combine producing different channel counts
    """


class SerializationError(PixelOpsError):
    """
    Raised when an op graph cannot be written to or rebuilt from JSON.

    Unknown type tags fail the entire deserialization; partial graphs are
    never returned.
    """


class ModelLoadError(PixelOpsError):
    """
    Raised when a prediction model cannot be loaded.

    Attributes:
        source: Path or description of the model that failed to load
    """

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"Unable to load model from {source}: {reason}")
