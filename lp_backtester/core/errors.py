"""Exception taxonomy shared by the price feed and the simulation engine."""
from typing import Optional


class BacktestError(Exception):
    pass


class InvalidConfigError(BacktestError, ValueError):
    """Configuration rejected before any network call."""


class PriceSourceError(BacktestError):
    """A single price source failed (HTTP error, bad payload, too few points)."""

    def __init__(self, source: str, message: str):
        super().__init__(f"{source}: {message}")
        self.source = source


class PriceDataUnavailableError(BacktestError):
    """Every price source failed for the requested pair and window."""

    def __init__(self, error: str, source: str = "none"):
        super().__init__(error)
        self.error = error
        self.source = source


class InsufficientDataError(BacktestError):
    """A price series was obtained but it is shorter than required."""

    def __init__(self, required: int, available: int, source: Optional[str] = None, purpose: str = "backtest"):
        message = (
            f"Insufficient price data for {purpose}: "
            f"need at least {required} points, got {available}"
        )
        if source:
            message += f" (source={source})"
        super().__init__(message)
        self.required = required
        self.available = available
        self.source = source
