"""
Test Suite: FastAPI error mapping

- InsufficientBalance / TrialRestricted -> 402 with purchase hints
- UnknownFeature / InvalidPurchaseAmount -> 400
- LedgerConflict -> 409
"""

import pytest
import sys
from pathlib import Path

from fastapi import FastAPI
from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).parent.parent))

from token_meter.api import denial_payload, register_exception_handlers
from token_meter.errors import (
    InsufficientBalance,
    InvalidPurchaseAmount,
    LedgerConflict,
    TrialRestricted,
    UnknownFeature,
)


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.post("/seo/enhanced")
    async def enhanced():
        raise InsufficientBalance(required=2200, available=500, feature="enhanced-item-seo")

    @app.post("/sitemap")
    async def sitemap():
        raise TrialRestricted(
            feature="optimized-sitemap",
            plan="growth extra",
            trial_ends_at="2026-03-04T12:00:00+00:00",
            tokens_required=38500,
            purchased_available=20000,
        )

    @app.post("/feature/{name}")
    async def feature(name: str):
        raise UnknownFeature(name)

    @app.post("/purchase")
    async def purchase():
        raise InvalidPurchaseAmount(7)

    @app.post("/busy")
    async def busy():
        raise LedgerConflict("shop")

    return TestClient(app)


class TestDenialPayload:

    def test_insufficient_balance(self):
        payload = denial_payload(InsufficientBalance(required=2200, available=500, feature="collection-seo"))

        assert payload["error_code"] == "INSUFFICIENT_BALANCE"
        assert payload["tokens_needed"] == 1700
        assert payload["requires_purchase"] is True
        assert payload["requires_activation"] is False
        assert "options" not in payload

    def test_trial_restricted(self):
        payload = denial_payload(TrialRestricted(feature="collection-seo", tokens_required=1650))

        assert payload["error_code"] == "TRIAL_RESTRICTED"
        assert payload["tokens_needed"] == 1650
        assert payload["requires_activation"] is True
        assert [o["action"] for o in payload["options"]] == ["activate_plan", "purchase_tokens"]


class TestExceptionHandlers:

    def test_insufficient_balance_is_402(self, client):
        response = client.post("/seo/enhanced")

        assert response.status_code == 402
        data = response.json()
        assert data["feature"] == "enhanced-item-seo"
        assert data["tokens_required"] == 2200
        assert data["tokens_available"] == 500
        assert data["tokens_needed"] == 1700

    def test_trial_restricted_is_402(self, client):
        response = client.post("/sitemap")

        assert response.status_code == 402
        data = response.json()
        assert data["current_plan"] == "growth extra"
        assert data["trial_ends_at"] == "2026-03-04T12:00:00+00:00"
        assert data["tokens_needed"] == 18500
        assert len(data["options"]) == 2

    def test_unknown_feature_is_400(self, client):
        response = client.post("/feature/telepathy")
        assert response.status_code == 400
        assert response.json()["error_code"] == "UNKNOWN_FEATURE"

    def test_invalid_amount_is_400(self, client):
        response = client.post("/purchase")
        assert response.status_code == 400
        assert response.json()["amount"] == 7

    def test_ledger_conflict_is_409(self, client):
        response = client.post("/busy")
        assert response.status_code == 409
        assert response.json()["error_code"] == "LEDGER_CONFLICT"
