"""
Pricing Oracle - current USD cost per 1M tokens

Reads the model price list from OpenRouter and caches one weighted rate for
an hour. Any failure degrades to FALLBACK_RATE_PER_1M for that call only;
the cache only ever holds a successfully fetched rate.

Usage:
    oracle = PricingOracle()
    rate = await oracle.get_unit_price()   # USD per 1M tokens
"""

import asyncio
import logging
import os
import time
from typing import Any, Callable, Optional

import httpx

from .config import (
    FALLBACK_RATE_PER_1M,
    PRICING_CACHE_TTL_SECONDS,
    PRICING_ENDPOINT,
    PRICING_INPUT_WEIGHT,
    PRICING_MODEL_ID,
    PRICING_OUTPUT_WEIGHT,
    PRICING_TIMEOUT_SECONDS,
)
from .errors import PricingFetchFailed

logger = logging.getLogger(__name__)


class PricingOracle:
    """Process-wide price source. Construct once and inject."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model_id: str = PRICING_MODEL_ID,
        endpoint: str = PRICING_ENDPOINT,
        ttl_seconds: float = PRICING_CACHE_TTL_SECONDS,
        fallback_rate: float = FALLBACK_RATE_PER_1M,
        clock: Callable[[], float] = time.monotonic,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._api_key = api_key
        self.model_id = model_id
        self.endpoint = endpoint
        self.ttl_seconds = ttl_seconds
        self.fallback_rate = fallback_rate
        self._clock = clock
        self._transport = transport

        self._rate: Optional[float] = None
        self._last_fetch: Optional[float] = None
        self._lock = asyncio.Lock()

    @property
    def api_key(self) -> str:
        return self._api_key if self._api_key is not None else os.environ.get("OPENROUTER_API_KEY", "")

    @property
    def cached_rate(self) -> Optional[float]:
        return self._rate if self._is_fresh() else None

    def invalidate(self):
        self._rate = None
        self._last_fetch = None

    def _is_fresh(self) -> bool:
        if self._rate is None or self._last_fetch is None:
            return False
        return (self._clock() - self._last_fetch) < self.ttl_seconds

    async def get_unit_price(self) -> float:
        """Return USD per 1M tokens (cached, fetched, or fallback)."""
        if self._is_fresh():
            return self._rate

        async with self._lock:
            # Another caller may have refreshed while we waited
            if self._is_fresh():
                return self._rate

            try:
                rate = await self._fetch_rate()
            except PricingFetchFailed as e:
                logger.warning(f"Pricing fetch failed, using fallback rate {self.fallback_rate}: {e}")
                return self.fallback_rate

            self._rate = rate
            self._last_fetch = self._clock()
            logger.info(f"Pricing refreshed for {self.model_id}: ${rate:.4f} per 1M tokens")
            return rate

    async def _fetch_rate(self) -> float:
        api_key = self.api_key
        if not api_key:
            raise PricingFetchFailed("OPENROUTER_API_KEY not set")

        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": os.environ.get("OPENROUTER_SITE_URL", "https://localhost"),
        }

        try:
            async with httpx.AsyncClient(
                timeout=PRICING_TIMEOUT_SECONDS, transport=self._transport
            ) as client:
                response = await client.get(self.endpoint, headers=headers)
        except httpx.HTTPError as e:
            raise PricingFetchFailed(f"Request error: {e}") from e

        if not response.is_success:
            raise PricingFetchFailed(f"HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError as e:
            raise PricingFetchFailed("Malformed pricing payload") from e

        return self._weighted_rate(self._find_model(payload))

    def _find_model(self, payload: Any) -> dict:
        models = payload.get("data") if isinstance(payload, dict) else payload
        if not isinstance(models, list):
            raise PricingFetchFailed("Pricing payload has no model list")

        for entry in models:
            if isinstance(entry, dict) and entry.get("id") == self.model_id:
                return entry
        raise PricingFetchFailed(f"Model {self.model_id} not found in price list")

    def _weighted_rate(self, model: dict) -> float:
        pricing = model.get("pricing")
        if not isinstance(pricing, dict):
            raise PricingFetchFailed(f"Model {self.model_id} has no pricing")

        try:
            # Prices are USD per single token, sometimes sent as strings
            prompt = float(pricing["prompt"])
            completion = float(pricing["completion"])
        except (KeyError, TypeError, ValueError) as e:
            raise PricingFetchFailed(f"Invalid pricing for {self.model_id}") from e

        rate = (prompt * PRICING_INPUT_WEIGHT + completion * PRICING_OUTPUT_WEIGHT) * 1_000_000
        if rate <= 0:
            raise PricingFetchFailed(f"Non-positive rate for {self.model_id}")
        return rate
