from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any

import aiohttp
import structlog

from folio_enrich.exceptions import (
    ConfigurationError,
    ProviderRejectedError,
    TransientProviderError,
)

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30


class FundamentalsProvider(ABC):
    """
    Abstract Base Class for all fundamentals data providers.

    This interface ensures that providers (Alpha Vantage, Tiingo, ...) can be
    used interchangeably by the fallback orchestrator.
    """

    key: str = ""
    name: str = ""

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this fetcher is configured (API key present)."""

    @abstractmethod
    async def get_fundamentals(self, symbol: str) -> dict[str, Any] | None:
        """
        Returns a CompanyFundamentals-shaped dict for the symbol.

        Returns None when the provider confirms it has no data (unknown symbol,
        empty or malformed payload); callers cache that as a tombstone.

        Raises:
            ProviderRejectedError: the provider throttled the request.
            TransientProviderError: network failure, timeout or 5xx.
            ConfigurationError: the API key was refused.
        """

    async def close(self) -> None:
        """Release network resources. Safe to call multiple times."""


class JsonApiFetcher(FundamentalsProvider):
    """Shared aiohttp session handling and HTTP status classification."""

    base_url: str = ""

    def __init__(self, api_key: str | None, timeout: float = DEFAULT_TIMEOUT_SECONDS):
        self.api_key = api_key or None
        self.timeout = timeout
        self._session: aiohttp.ClientSession | None = None
        self._key_validated = False

    async def __aenter__(self):
        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.timeout)
        )
        return self

    async def __aexit__(self, *args):
        await self.close()

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def is_available(self) -> bool:
        return self.api_key is not None

    def _auth_params(self) -> dict[str, str]:
        return {}

    async def _get(self, path: str, params: dict | None = None) -> Any | None:
        """
        GET a JSON document.

        Returns:
            Parsed JSON, or None for 404 and malformed bodies.
        """
        if not self.is_available():
            raise ConfigurationError(f"{self.name} API key is not configured")

        if not self._session or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )

        url = f"{self.base_url}{path}"
        query = dict(params or {})
        query.update(self._auth_params())

        try:
            async with self._session.get(url, params=query) as response:
                status = response.status

                if status == 200:
                    try:
                        data = await response.json(content_type=None)
                    except (ValueError, aiohttp.ContentTypeError) as e:
                        logger.debug("malformed_json", provider=self.key, path=path, error=str(e))
                        return None
                    self._key_validated = True
                    return data

                if status == 404:
                    logger.debug("not_found", provider=self.key, path=path)
                    return None

                if status == 429:
                    raise ProviderRejectedError(
                        self.key, f"{self.name} API rate limit exceeded (HTTP 429)"
                    )

                if status in (401, 403):
                    if not self._key_validated:
                        logger.error("api_key_rejected", provider=self.key, status=status)
                        raise ConfigurationError(
                            f"{self.name} API key is invalid or expired. Check your configuration."
                        )
                    # Key worked earlier in this session; treat as throttling
                    raise ProviderRejectedError(
                        self.key, f"{self.name} returned {status} (possible rate limit)"
                    )

                if status >= 500:
                    raise TransientProviderError(
                        self.key,
                        f"{self.name} temporarily unavailable (HTTP {status})",
                        status_code=status,
                    )

                logger.debug("unexpected_status", provider=self.key, path=path, status=status)
                return None

        except aiohttp.ClientError as e:
            raise TransientProviderError(self.key, f"{self.name} network error: {e}") from e
        except asyncio.TimeoutError as e:
            raise TransientProviderError(self.key, f"{self.name} request timed out") from e


def to_number(value: Any) -> float | None:
    """Parse a provider numeric field. Missing, non-numeric and zero values are unknown."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if value in ("", "None", "-", "N/A"):
            return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number or number == 0:  # NaN or zero
        return None
    return number


def to_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text or text in ("None", "-"):
        return None
    return text
