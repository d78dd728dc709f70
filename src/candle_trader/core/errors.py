"""Failure taxonomy for the candle pipeline.

Only ``InitializationError`` is allowed to stop the process; everything else
is logged and degrades to running on stale or partial data.
"""


class CandlePipelineError(Exception):
    """Base class for pipeline errors."""


class InvalidCandleError(CandlePipelineError, ValueError):
    """A candle has missing, non-finite or inconsistent OHLCV fields."""


class DataCorruptionError(CandlePipelineError):
    """The persisted series could not be parsed."""


class TransientFetchError(CandlePipelineError):
    """A historical fetch failed; retry on a later reconciliation."""


class StreamFailureError(CandlePipelineError):
    """The live trade feed closed or errored."""


class InitializationError(CandlePipelineError):
    """No usable closed candle exists after startup reconciliation."""
