"""
Token Ledger Service

Per-tenant ledger operations:
- Lazy ledger creation
- Purchases (direct, or pending -> completed)
- Included pool replacement on plan renewal / plan change
- History queries

CRITICAL: Every mutation is a single conditional update on the tenant
document. History rows are appended, never deleted.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pymongo import ReturnDocument

from .config import LEDGER_COLLECTION, MAX_LEDGER_ATTEMPTS
from .errors import LedgerConflict
from .estimator import revenue_split
from .models import TokenLedger

logger = logging.getLogger(__name__)

INCLUDED_POOL_FEATURE = "plan-included-tokens"


def normalize_tenant(tenant: str) -> str:
    key = str(tenant or "").lower().strip()
    if not key:
        raise ValueError("Tenant is required")
    return key


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_ledger_doc(tenant: str) -> Dict[str, Any]:
    now = utc_now()
    return {
        "tenant": tenant,
        "balance": 0,
        "included_pool": 0,
        "included_plan": None,
        "pool_generation": 0,
        "total_purchased": 0,
        "total_used": 0,
        "last_purchase": None,
        "purchases": [],
        "usage_entries": [],
        "created_at": now,
        "updated_at": now,
    }


class TokenLedgerService:
    """Service for managing per-tenant token ledgers."""

    def __init__(self, db):
        self.db = db
        self.collection = db[LEDGER_COLLECTION]

    async def find(self, tenant: str) -> Optional[TokenLedger]:
        doc = await self.collection.find_one({"tenant": normalize_tenant(tenant)}, {"_id": 0})
        return TokenLedger(**doc) if doc else None

    async def get_or_create(self, tenant: str) -> TokenLedger:
        """
        Get existing ledger or create one lazily.

        Uses $setOnInsert so concurrent first requests create a single document.
        """
        tenant = normalize_tenant(tenant)
        ledger = await self.find(tenant)
        if ledger:
            return ledger

        await self.collection.update_one(
            {"tenant": tenant},
            {"$setOnInsert": new_ledger_doc(tenant)},
            upsert=True
        )
        logger.info(f"Created token ledger for {tenant}")
        return await self.find(tenant)

    async def has_balance(self, tenant: str, amount: int) -> bool:
        ledger = await self.get_or_create(tenant)
        return ledger.has_balance(amount)

    # ==================== PURCHASES ====================

    def _purchase_row(
        self,
        usd_amount: float,
        tokens: int,
        external_charge_id: Optional[str],
        status: str,
        now: str
    ) -> Dict[str, Any]:
        app_share, token_share = revenue_split(usd_amount)
        return {
            "usd_amount": usd_amount,
            "app_revenue_share": app_share,
            "token_budget_share": token_share,
            "tokens_received": tokens,
            "timestamp": now,
            "external_charge_id": external_charge_id,
            "status": status,
        }

    async def record_purchase(
        self,
        tenant: str,
        usd_amount: float,
        tokens_received: int,
        external_charge_id: Optional[str] = None
    ) -> TokenLedger:
        """
        Credit purchased tokens.

        Purchased tokens never expire and never count toward the included pool.
        A charge id that is already on the ledger is not credited twice.
        """
        tenant = normalize_tenant(tenant)
        await self.get_or_create(tenant)
        now = utc_now()

        query: Dict[str, Any] = {"tenant": tenant}
        if external_charge_id:
            query["purchases.external_charge_id"] = {"$ne": external_charge_id}

        result = await self.collection.find_one_and_update(
            query,
            {
                "$inc": {"balance": tokens_received, "total_purchased": tokens_received},
                "$push": {"purchases": self._purchase_row(
                    usd_amount, tokens_received, external_charge_id, "completed", now
                )},
                "$set": {
                    "last_purchase": {
                        "usd_amount": usd_amount,
                        "tokens": tokens_received,
                        "timestamp": now,
                        "external_charge_id": external_charge_id,
                    },
                    "updated_at": now,
                },
            },
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER
        )

        if result is None:
            logger.warning(f"Charge {external_charge_id} already recorded for {tenant}, skipping credit")
            return await self.get_or_create(tenant)

        logger.info(f"Credited {tokens_received} purchased tokens to {tenant} (${usd_amount:.2f})")
        return TokenLedger(**result)

    async def record_pending_purchase(
        self,
        tenant: str,
        usd_amount: float,
        tokens_quoted: int,
        external_charge_id: str
    ) -> TokenLedger:
        """Record a purchase awaiting payment approval. Balance is untouched."""
        tenant = normalize_tenant(tenant)
        await self.get_or_create(tenant)
        now = utc_now()

        result = await self.collection.find_one_and_update(
            {"tenant": tenant, "purchases.external_charge_id": {"$ne": external_charge_id}},
            {
                "$push": {"purchases": self._purchase_row(
                    usd_amount, tokens_quoted, external_charge_id, "pending", now
                )},
                "$set": {"updated_at": now},
            },
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER
        )
        if result is None:
            logger.warning(f"Charge {external_charge_id} already on ledger for {tenant}")
            return await self.get_or_create(tenant)
        return TokenLedger(**result)

    async def complete_purchase(
        self,
        tenant: str,
        external_charge_id: str,
        tokens_received: Optional[int] = None
    ) -> Optional[TokenLedger]:
        """
        Move a pending purchase to completed and credit its tokens exactly once.

        Returns None when no pending purchase matches (unknown or already completed).
        """
        tenant = normalize_tenant(tenant)
        ledger = await self.find(tenant)
        pending = None
        if ledger:
            pending = next(
                (p for p in ledger.purchases
                 if p.external_charge_id == external_charge_id and p.status == "pending"),
                None
            )
        if pending is None:
            logger.warning(f"No pending purchase {external_charge_id} for {tenant}")
            return None

        tokens = pending.tokens_received if tokens_received is None else tokens_received
        now = utc_now()

        result = await self.collection.find_one_and_update(
            {
                "tenant": tenant,
                "purchases": {"$elemMatch": {
                    "external_charge_id": external_charge_id,
                    "status": "pending",
                }},
            },
            {
                "$inc": {"balance": tokens, "total_purchased": tokens},
                "$set": {
                    "purchases.$.status": "completed",
                    "purchases.$.tokens_received": tokens,
                    "last_purchase": {
                        "usd_amount": pending.usd_amount,
                        "tokens": tokens,
                        "timestamp": now,
                        "external_charge_id": external_charge_id,
                    },
                    "updated_at": now,
                },
            },
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER
        )
        if result is None:
            logger.warning(f"Purchase {external_charge_id} for {tenant} completed concurrently")
            return None

        logger.info(f"Completed purchase {external_charge_id} for {tenant}: +{tokens} tokens")
        return TokenLedger(**result)

    async def fail_purchase(self, tenant: str, external_charge_id: str) -> bool:
        tenant = normalize_tenant(tenant)
        result = await self.collection.update_one(
            {
                "tenant": tenant,
                "purchases": {"$elemMatch": {
                    "external_charge_id": external_charge_id,
                    "status": "pending",
                }},
            },
            {"$set": {"purchases.$.status": "failed", "updated_at": utc_now()}}
        )
        return result.modified_count > 0

    # ==================== INCLUDED POOL ====================

    async def replace_included_pool(
        self,
        tenant: str,
        new_pool_size: int,
        plan_name: Optional[str],
        reason_id: Optional[str] = None
    ) -> TokenLedger:
        """
        Replace the plan's included tokens, keeping purchased tokens.

        balance = purchased_remaining + new_pool_size. The audit entry records
        old_balance - new_balance (negative = tokens added).

        Bumps pool_generation: included shares of reservations opened before
        the replacement are not refunded into the new pool.
        """
        if new_pool_size < 0:
            raise ValueError("Included pool size cannot be negative")
        tenant = normalize_tenant(tenant)

        for attempt in range(MAX_LEDGER_ATTEMPTS):
            ledger = await self.get_or_create(tenant)
            purchased_remaining = ledger.purchased_remaining
            new_balance = purchased_remaining + new_pool_size
            delta = ledger.balance - new_balance
            now = utc_now()

            entry = {
                "feature": INCLUDED_POOL_FEATURE,
                "tokens_reserved": delta,
                "tokens_actual": None,
                "status": "recorded",
                "reservation_id": None,
                "metadata": {
                    "plan": plan_name,
                    "previous_included": ledger.included_pool,
                    "new_included": new_pool_size,
                    "purchased_remaining": purchased_remaining,
                    "reason_id": reason_id,
                    "type": "included-replace",
                },
                "timestamp": now,
            }

            result = await self.collection.find_one_and_update(
                {
                    "tenant": tenant,
                    "balance": ledger.balance,
                    "included_pool": ledger.included_pool,
                },
                {
                    "$set": {
                        "balance": new_balance,
                        "included_pool": new_pool_size,
                        "included_plan": plan_name,
                        "updated_at": now,
                    },
                    "$inc": {"pool_generation": 1},
                    "$push": {"usage_entries": entry},
                },
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER
            )
            if result is not None:
                logger.info(
                    f"Replaced included pool for {tenant}: {ledger.included_pool} -> {new_pool_size} "
                    f"(plan={plan_name}, purchased_remaining={purchased_remaining})"
                )
                return TokenLedger(**result)

            logger.warning(f"Ledger changed during pool replacement for {tenant}, retrying...")

        raise LedgerConflict(tenant)

    # ==================== HISTORY ====================

    async def get_history(self, tenant: str, usage_limit: int = 50) -> Dict[str, Any]:
        """Purchases and recent usage, most recent first."""
        ledger = await self.find(tenant)
        if not ledger:
            return {"purchases": [], "usage": []}

        recent = ledger.usage_entries[-usage_limit:] if usage_limit > 0 else []
        return {
            "purchases": [p.model_dump() for p in reversed(ledger.purchases)],
            "usage": [u.model_dump() for u in reversed(recent)],
        }
