"""
Trading212 REST client.

Read-only access to open positions. Responses are cached for a few seconds
and concurrent callers share one in-flight request, because the broker API
throttles /equity/portfolio aggressively.

Usage:
    async with Trading212Client(api_key, ledger=ledger) as client:
        positions = await client.get_positions()
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import Any

import aiohttp
import structlog
from pydantic import ValidationError

from folio_enrich.exceptions import (
    ConfigurationError,
    ProviderRejectedError,
    TransientProviderError,
)
from folio_enrich.ledger import UsageLedger
from folio_enrich.models import Position

logger = structlog.get_logger(__name__)

PROVIDER_KEY = "trading212"
DEFAULT_BASE_URL = "https://live.trading212.com/api/v0"
PORTFOLIO_PATH = "/equity/portfolio"
ACCOUNT_CASH_PATH = "/equity/account/cash"


class Trading212Client:
    """aiohttp wrapper with a short positions cache and request de-duplication."""

    def __init__(
        self,
        api_key: str | None,
        base_url: str = DEFAULT_BASE_URL,
        ledger: UsageLedger | None = None,
        cache_seconds: float = 5.0,
        timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.api_key = api_key or None
        self.base_url = base_url.rstrip("/")
        self.cache_seconds = cache_seconds
        self.timeout = timeout
        self._ledger = ledger
        self._clock = clock
        self._session: aiohttp.ClientSession | None = None
        self._positions: list[Position] | None = None
        self._positions_expire_at = 0.0
        self._pending: asyncio.Task | None = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.close()

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def is_available(self) -> bool:
        return self.api_key is not None

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _get(self, path: str) -> Any:
        if not self.is_available():
            raise ConfigurationError("Trading212 API key is not configured")

        if not self._session or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers=self._headers(),
            )

        url = f"{self.base_url}{path}"
        logger.debug("trading212_request", path=path)
        success = False
        error: str | None = None
        try:
            async with self._session.get(url) as response:
                status = response.status
                if status == 200:
                    data = await response.json(content_type=None)
                    success = True
                    return data
                if status == 401:
                    error = "Invalid Trading212 API key. Please check your configuration."
                    raise ConfigurationError(error)
                if status == 429:
                    error = "Trading212 API rate limit exceeded. Please try again later."
                    raise ProviderRejectedError(PROVIDER_KEY, error)
                error = f"Trading212 API returned HTTP {status}"
                raise TransientProviderError(PROVIDER_KEY, error, status_code=status)
        except aiohttp.ClientError as e:
            error = f"Trading212 network error: {e}"
            raise TransientProviderError(PROVIDER_KEY, error) from e
        except asyncio.TimeoutError as e:
            error = "Trading212 request timed out"
            raise TransientProviderError(PROVIDER_KEY, error) from e
        finally:
            if self._ledger is not None:
                self._ledger.record_call(PROVIDER_KEY, success=success, error=error)

    async def _fetch_positions(self) -> list[Position]:
        raw = await self._get(PORTFOLIO_PATH)
        if not isinstance(raw, list):
            raise TransientProviderError(PROVIDER_KEY, "Unexpected positions payload")

        positions = []
        for item in raw:
            try:
                positions.append(Position.model_validate(item))
            except ValidationError as e:
                logger.warning(
                    "trading212_position_invalid",
                    ticker=item.get("ticker") if isinstance(item, dict) else None,
                    error=str(e),
                )
        logger.info("trading212_positions_fetched", count=len(positions))
        return positions

    async def get_positions(self) -> list[Position]:
        """Open positions; served from the short-lived cache when possible."""
        if self._positions is not None and self._clock() < self._positions_expire_at:
            logger.debug("trading212_positions_cache_hit")
            return self._positions

        if self._pending is None:
            self._pending = asyncio.get_running_loop().create_task(self._fetch_positions())
        pending = self._pending

        try:
            positions = await asyncio.shield(pending)
        finally:
            if self._pending is pending and pending.done():
                self._pending = None

        self._positions = positions
        self._positions_expire_at = self._clock() + self.cache_seconds
        return positions

    async def get_account_cash(self) -> dict[str, Any]:
        data = await self._get(ACCOUNT_CASH_PATH)
        return data if isinstance(data, dict) else {}

    def invalidate(self) -> None:
        self._positions = None
        self._positions_expire_at = 0.0
