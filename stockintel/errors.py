"""
Exception types raised by the intelligence pipeline.

Only the synthesis errors are meant to reach callers; everything raised
inside a source gatherer is contained there and turned into a missing report.
"""
from typing import Optional


class StockIntelError(Exception):
    """Base class for all pipeline errors."""
    pass


class InsufficientDataError(StockIntelError, ValueError):
    """An indicator was asked for more history than the series holds."""

    def __init__(self, indicator: str, required: int, available: int):
        self.indicator = indicator
        self.required = required
        self.available = available
        super().__init__(
            f"{indicator} needs at least {required} data points, got {available}"
        )


class ProviderError(StockIntelError):
    """Transport, status or parse failure from an upstream data provider."""

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        self.provider = provider
        self.status_code = status_code
        super().__init__(f"{provider}: {message}")


class SynthesisError(StockIntelError):
    """Base class for failures of the scenario synthesis call."""

    user_message = "Scenario synthesis failed."

    def __init__(self, message: Optional[str] = None, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message or self.user_message)


class InvalidCredentialError(SynthesisError):
    user_message = "Invalid API key. Please check your synthesis API key in settings."


class RateLimitError(SynthesisError):
    user_message = "API rate limit reached. Please wait a moment and try again."


class UpstreamUnavailableError(SynthesisError):
    user_message = "The synthesis server is temporarily unavailable. Please try again later."


class MalformedUpstreamResponse(SynthesisError):
    user_message = "The synthesis response could not be parsed into scenarios."
