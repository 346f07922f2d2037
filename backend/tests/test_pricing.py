"""
Test Suite: PricingOracle

- Weighted 80/20 rate from the provider price list
- One-hour cache driven by an injected clock
- Fallback rate on any failure, never cached
- Concurrent refreshes coalesce into one fetch
"""

import asyncio
import pytest
import sys
from pathlib import Path

import httpx

sys.path.insert(0, str(Path(__file__).parent.parent))

from token_meter.config import FALLBACK_RATE_PER_1M
from token_meter.pricing import PricingOracle

MODEL_ID = "google/gemini-2.5-flash-lite"

PRICE_LIST = {
    "data": [
        {"id": "other/model", "pricing": {"prompt": "0.000009", "completion": "0.000009"}},
        {"id": MODEL_ID, "pricing": {"prompt": "0.0000001", "completion": "0.0000004"}},
    ]
}

# (0.1 * 0.8 + 0.4 * 0.2) per 1M
EXPECTED_RATE = 0.16


def make_oracle(clock, handler, calls=None):
    def counting_handler(request):
        if calls is not None:
            calls.append(request)
        return handler(request)

    return PricingOracle(
        api_key="test-key",
        model_id=MODEL_ID,
        clock=clock,
        transport=httpx.MockTransport(counting_handler),
    )


class TestPricingFetch:

    @pytest.mark.asyncio
    async def test_weighted_rate(self, clock):
        calls = []
        oracle = make_oracle(clock, lambda request: httpx.Response(200, json=PRICE_LIST), calls)

        rate = await oracle.get_unit_price()

        assert rate == pytest.approx(EXPECTED_RATE)
        assert calls[0].headers["Authorization"] == "Bearer test-key"

    @pytest.mark.asyncio
    async def test_bare_list_payload(self, clock):
        oracle = make_oracle(clock, lambda request: httpx.Response(200, json=PRICE_LIST["data"]))
        assert await oracle.get_unit_price() == pytest.approx(EXPECTED_RATE)

    @pytest.mark.asyncio
    async def test_numeric_prices(self, clock):
        payload = {"data": [{"id": MODEL_ID, "pricing": {"prompt": 0.0000001, "completion": 0.0000004}}]}
        oracle = make_oracle(clock, lambda request: httpx.Response(200, json=payload))
        assert await oracle.get_unit_price() == pytest.approx(EXPECTED_RATE)


class TestPricingCache:

    @pytest.mark.asyncio
    async def test_cached_within_ttl(self, clock):
        calls = []
        oracle = make_oracle(clock, lambda request: httpx.Response(200, json=PRICE_LIST), calls)

        await oracle.get_unit_price()
        clock.advance(3599)
        await oracle.get_unit_price()

        assert len(calls) == 1
        assert oracle.cached_rate == pytest.approx(EXPECTED_RATE)

    @pytest.mark.asyncio
    async def test_refetch_after_ttl(self, clock):
        calls = []
        oracle = make_oracle(clock, lambda request: httpx.Response(200, json=PRICE_LIST), calls)

        await oracle.get_unit_price()
        clock.advance(3600)
        assert oracle.cached_rate is None
        await oracle.get_unit_price()

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_invalidate(self, clock):
        calls = []
        oracle = make_oracle(clock, lambda request: httpx.Response(200, json=PRICE_LIST), calls)

        await oracle.get_unit_price()
        oracle.invalidate()
        await oracle.get_unit_price()

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_fetch(self, clock):
        calls = []
        oracle = make_oracle(clock, lambda request: httpx.Response(200, json=PRICE_LIST), calls)

        rates = await asyncio.gather(*(oracle.get_unit_price() for _ in range(5)))

        assert len(calls) == 1
        assert all(rate == pytest.approx(EXPECTED_RATE) for rate in rates)


class TestPricingFallback:

    @pytest.mark.asyncio
    async def test_http_error_status(self, clock):
        oracle = make_oracle(clock, lambda request: httpx.Response(503))
        assert await oracle.get_unit_price() == FALLBACK_RATE_PER_1M
        assert oracle.cached_rate is None

    @pytest.mark.asyncio
    async def test_network_error(self, clock):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        oracle = make_oracle(clock, handler)
        assert await oracle.get_unit_price() == FALLBACK_RATE_PER_1M

    @pytest.mark.asyncio
    async def test_model_missing(self, clock):
        payload = {"data": [{"id": "other/model", "pricing": {"prompt": "1", "completion": "1"}}]}
        oracle = make_oracle(clock, lambda request: httpx.Response(200, json=payload))
        assert await oracle.get_unit_price() == FALLBACK_RATE_PER_1M

    @pytest.mark.asyncio
    async def test_malformed_json(self, clock):
        oracle = make_oracle(clock, lambda request: httpx.Response(200, content=b"<html>"))
        assert await oracle.get_unit_price() == FALLBACK_RATE_PER_1M

    @pytest.mark.asyncio
    async def test_zero_price_rejected(self, clock):
        payload = {"data": [{"id": MODEL_ID, "pricing": {"prompt": "0", "completion": "0"}}]}
        oracle = make_oracle(clock, lambda request: httpx.Response(200, json=payload))
        assert await oracle.get_unit_price() == FALLBACK_RATE_PER_1M

    @pytest.mark.asyncio
    async def test_missing_api_key(self, clock, monkeypatch):
        monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
        calls = []
        oracle = PricingOracle(
            clock=clock,
            transport=httpx.MockTransport(lambda request: calls.append(request) or httpx.Response(200)),
        )
        assert await oracle.get_unit_price() == FALLBACK_RATE_PER_1M
        assert calls == []

    @pytest.mark.asyncio
    async def test_failure_does_not_poison_cache(self, clock):
        responses = [httpx.Response(500), httpx.Response(200, json=PRICE_LIST)]
        oracle = make_oracle(clock, lambda request: responses.pop(0))

        assert await oracle.get_unit_price() == FALLBACK_RATE_PER_1M
        assert await oracle.get_unit_price() == pytest.approx(EXPECTED_RATE)
