"""
Custom exceptions for the enrichment subsystem.

Clean error hierarchy for distinct failure modes. Everything except
InvalidBatchError and ConfigurationError is resolved inside the fallback
orchestrator and never reaches a pipeline caller.
"""


class EnrichmentError(Exception):
    """Base exception for all enrichment-related errors."""


class ConfigurationError(EnrichmentError):
    """Missing or invalid credentials / settings detected at startup."""

    def __init__(self, message: str, missing: list[str] | None = None):
        super().__init__(message)
        self.missing = missing or []


class UnsupportedSymbolError(EnrichmentError):
    """Broker ticker cannot be enriched by any fundamentals provider."""

    def __init__(self, symbol: str, message: str = ""):
        self.symbol = symbol
        super().__init__(message or f"Symbol not supported by fundamentals providers: {symbol}")


class QuotaExhaustedError(EnrichmentError):
    """Usage ledger reports no remaining capacity for a provider."""

    def __init__(self, provider: str, message: str = ""):
        self.provider = provider
        super().__init__(message or f"Quota exhausted for provider: {provider}")


class ProviderRejectedError(EnrichmentError):
    """The provider itself signalled throttling (HTTP 429, frequency notes)."""

    def __init__(self, provider: str, message: str = ""):
        self.provider = provider
        super().__init__(message or f"Rate limited by provider: {provider}")


class TransientProviderError(EnrichmentError):
    """Network errors, timeouts and 5xx responses. Eligible for retry."""

    def __init__(self, provider: str, message: str = "", status_code: int | None = None):
        self.provider = provider
        self.status_code = status_code
        super().__init__(message or f"Transient failure from provider: {provider}")


class InvalidBatchError(EnrichmentError):
    """Structurally invalid enrichment request."""
