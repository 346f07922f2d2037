"""
Reservation Manager - reserve -> finalize (or cancel)

Net effect of reserve + finalize on balance is exactly -actual_tokens,
however far the estimate missed. The one exception is an included share
that expires because the pool was replaced while the reservation was open.

Each step is one conditional find_one_and_update on the tenant document:
- reserve:  only if balance still covers the amount
- finalize: only if the entry is still 'reserved' (settles once)
- cancel:   only if the entry is still 'reserved'

The external AI call happens between reserve and finalize, never inside
a ledger update.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

from pymongo import ReturnDocument

from .config import MAX_LEDGER_ATTEMPTS
from .errors import InsufficientBalance, LedgerConflict, ReservationNotFound
from .features import Feature
from .ledger import TokenLedgerService, normalize_tenant, utc_now
from .models import FundingSource, Reservation, Settlement, UsageEntry

logger = logging.getLogger(__name__)

STALE_RESERVATION_AGE = timedelta(hours=1)


class ReservationManager:
    """Pessimistic token reservations against a TokenLedgerService."""

    def __init__(self, ledger: TokenLedgerService):
        self.ledger = ledger

    @property
    def collection(self):
        return self.ledger.collection

    async def reserve(
        self,
        tenant: str,
        amount: int,
        feature: Union[Feature, str],
        metadata: Optional[Dict[str, Any]] = None,
        funding: FundingSource = FundingSource.INCLUDED_POOL
    ) -> Reservation:
        """
        Debit `amount` immediately and open a reservation.

        INCLUDED_POOL draws the included pool first, then purchased tokens.
        PURCHASED_TOKENS draws purchased tokens only.

        Raises:
            InsufficientBalance: the funding source cannot cover the amount
            LedgerConflict: every conditional update lost a race
        """
        if amount < 0:
            raise ValueError("Reservation amount cannot be negative")
        if funding not in (FundingSource.INCLUDED_POOL, FundingSource.PURCHASED_TOKENS):
            raise ValueError(f"Cannot reserve with funding source {funding.value}")

        tenant = normalize_tenant(tenant)
        feature_name = Feature.parse(feature).value

        for attempt in range(MAX_LEDGER_ATTEMPTS):
            ledger = await self.ledger.get_or_create(tenant)

            available = ledger.available_for(funding)
            if available < amount:
                raise InsufficientBalance(required=amount, available=available, feature=feature_name)

            if funding == FundingSource.PURCHASED_TOKENS:
                included_share = 0
                # purchased_remaining >= amount, with included_pool pinned below
                min_balance = amount + ledger.included_pool
            else:
                included_share = min(max(ledger.included_pool, 0), amount)
                min_balance = amount
            purchased_share = amount - included_share

            reservation_id = uuid.uuid4().hex
            entry = {
                "feature": feature_name,
                "tokens_reserved": amount,
                "tokens_actual": None,
                "status": "reserved",
                "reservation_id": reservation_id,
                "funding": funding.value,
                "included_reserved": included_share,
                "purchased_reserved": purchased_share,
                "refunded_amount": 0,
                "pool_generation": ledger.pool_generation,
                "metadata": dict(metadata or {}),
                "timestamp": utc_now(),
                "settled_at": None,
            }

            result = await self.collection.find_one_and_update(
                {
                    "tenant": tenant,
                    "balance": {"$gte": min_balance},
                    "included_pool": ledger.included_pool,
                    "pool_generation": ledger.pool_generation,
                },
                {
                    "$inc": {"balance": -amount, "included_pool": -included_share},
                    "$push": {"usage_entries": entry},
                    "$set": {"updated_at": entry["timestamp"]},
                },
                projection={"_id": 0, "balance": 1},
                return_document=ReturnDocument.AFTER
            )

            if result is not None:
                logger.debug(f"Reserved {amount} tokens for {tenant} ({feature_name}, id={reservation_id})")
                return Reservation(
                    reservation_id=reservation_id,
                    tenant=tenant,
                    feature=feature_name,
                    tokens_reserved=amount,
                    included_reserved=included_share,
                    purchased_reserved=purchased_share,
                    funding=funding,
                    balance_after=result["balance"],
                )

            logger.warning(f"Race condition in token reservation for {tenant}, retrying...")

        raise LedgerConflict(tenant)

    async def _open_entry(self, tenant: str, reservation_id: str):
        ledger = await self.ledger.find(tenant)
        entry = ledger.find_reservation(reservation_id) if ledger else None
        if entry is None or entry.status != "reserved":
            raise ReservationNotFound(tenant, reservation_id)
        return ledger, entry

    @staticmethod
    def _pool_replaced(ledger, entry) -> bool:
        """True when the included pool that funded `entry` has since been replaced."""
        return entry.pool_generation is not None and entry.pool_generation != ledger.pool_generation

    def _settle_query(self, tenant: str, reservation_id: str, ledger) -> Dict[str, Any]:
        return {
            "tenant": tenant,
            "pool_generation": ledger.pool_generation,
            "usage_entries": {"$elemMatch": {
                "reservation_id": reservation_id,
                "status": "reserved",
            }},
        }

    async def finalize(
        self,
        tenant: str,
        reservation_id: str,
        actual_tokens: int
    ) -> Optional[Settlement]:
        """
        Settle a reservation to the actual token usage.

        difference = reserved - actual; balance += difference.
        A missing or already-settled reservation is logged and ignored:
        the AI work already happened and cannot be undone.

        If the included pool was replaced while the reservation was open, the
        unused included share expires with the old pool instead of being
        refunded into the new one.
        """
        if actual_tokens < 0:
            raise ValueError("Actual token usage cannot be negative")
        tenant = normalize_tenant(tenant)

        for attempt in range(MAX_LEDGER_ATTEMPTS):
            try:
                ledger, entry = await self._open_entry(tenant, reservation_id)
            except ReservationNotFound as e:
                logger.warning(f"Finalize skipped: {e}")
                return None

            query = self._settle_query(tenant, reservation_id, ledger)
            difference = entry.tokens_reserved - actual_tokens
            expired = 0
            if difference >= 0:
                # Unused tail of the reservation is the purchased share first
                purchased_refund = min(difference, entry.purchased_reserved)
                included_delta = difference - purchased_refund
                if included_delta and self._pool_replaced(ledger, entry):
                    expired, included_delta = included_delta, 0
            else:
                overspend = -difference
                included_take = 0
                if entry.funding != FundingSource.PURCHASED_TOKENS.value:
                    included_take = min(overspend, max(ledger.included_pool, 0))
                    # Only this branch reads the pool
                    query["included_pool"] = ledger.included_pool
                included_delta = -included_take
                logger.warning(
                    f"Reservation {reservation_id} for {tenant} exceeded estimate by {overspend} tokens"
                )

            refunded = max(0, difference) - expired
            now = utc_now()
            result = await self.collection.find_one_and_update(
                query,
                {
                    "$inc": {
                        "balance": difference - expired,
                        "included_pool": included_delta,
                        "total_used": actual_tokens,
                    },
                    "$set": {
                        "usage_entries.$.status": "finalized",
                        "usage_entries.$.tokens_actual": actual_tokens,
                        "usage_entries.$.refunded_amount": refunded,
                        "usage_entries.$.included_expired": expired,
                        "usage_entries.$.settled_at": now,
                        "updated_at": now,
                    },
                },
                projection={"_id": 0, "balance": 1},
                return_document=ReturnDocument.AFTER
            )

            if result is not None:
                if expired:
                    logger.warning(
                        f"Reservation {reservation_id} for {tenant} outlived its included pool, "
                        f"{expired} included tokens expired"
                    )
                logger.info(
                    f"Finalized {reservation_id} for {tenant}: reserved={entry.tokens_reserved}, "
                    f"actual={actual_tokens}, difference={difference}"
                )
                return Settlement(
                    reservation_id=reservation_id,
                    tenant=tenant,
                    status="finalized",
                    tokens_reserved=entry.tokens_reserved,
                    tokens_actual=actual_tokens,
                    difference=difference,
                    refunded_amount=refunded,
                    included_expired=expired,
                    balance_after=result["balance"],
                )

            logger.warning(f"Race condition finalizing {reservation_id} for {tenant}, retrying...")

        raise LedgerConflict(tenant)

    async def cancel(self, tenant: str, reservation_id: str) -> Optional[Settlement]:
        """
        Release a reservation whose operation failed before any AI cost.

        Refunds the full reserved split, except an included share whose pool
        has been replaced since. Missing or settled ids are a no-op.
        """
        tenant = normalize_tenant(tenant)

        for attempt in range(MAX_LEDGER_ATTEMPTS):
            try:
                ledger, entry = await self._open_entry(tenant, reservation_id)
            except ReservationNotFound as e:
                logger.warning(f"Cancel skipped: {e}")
                return None

            included_refund = entry.included_reserved
            expired = 0
            if included_refund and self._pool_replaced(ledger, entry):
                expired, included_refund = included_refund, 0
            refunded = entry.tokens_reserved - expired

            now = utc_now()
            result = await self.collection.find_one_and_update(
                self._settle_query(tenant, reservation_id, ledger),
                {
                    "$inc": {
                        "balance": refunded,
                        "included_pool": included_refund,
                    },
                    "$set": {
                        "usage_entries.$.status": "cancelled",
                        "usage_entries.$.tokens_actual": 0,
                        "usage_entries.$.refunded_amount": refunded,
                        "usage_entries.$.included_expired": expired,
                        "usage_entries.$.settled_at": now,
                        "updated_at": now,
                    },
                },
                projection={"_id": 0, "balance": 1},
                return_document=ReturnDocument.AFTER
            )

            if result is not None:
                if expired:
                    logger.warning(
                        f"Reservation {reservation_id} for {tenant} outlived its included pool, "
                        f"{expired} included tokens expired"
                    )
                logger.info(f"Cancelled {reservation_id} for {tenant}, refunded {refunded} tokens")
                return Settlement(
                    reservation_id=reservation_id,
                    tenant=tenant,
                    status="cancelled",
                    tokens_reserved=entry.tokens_reserved,
                    tokens_actual=0,
                    difference=entry.tokens_reserved,
                    refunded_amount=refunded,
                    included_expired=expired,
                    balance_after=result["balance"],
                )

            logger.warning(f"Race condition cancelling {reservation_id} for {tenant}, retrying...")

        raise LedgerConflict(tenant)

    async def find_stale_reservations(
        self,
        tenant: str,
        older_than: timedelta = STALE_RESERVATION_AGE,
        now: Optional[datetime] = None
    ) -> List[UsageEntry]:
        """
        List reservations left open longer than `older_than`.

        These are never refunded automatically: once abandoned, the true
        cost is unknowable.
        """
        ledger = await self.ledger.find(tenant)
        if not ledger:
            return []

        cutoff = (now or datetime.now(timezone.utc)) - older_than
        stale = []
        for entry in ledger.usage_entries:
            if entry.status != "reserved":
                continue
            if datetime.fromisoformat(entry.timestamp) < cutoff:
                logger.warning(
                    f"Orphaned reservation {entry.reservation_id} for {ledger.tenant}: "
                    f"{entry.tokens_reserved} tokens held since {entry.timestamp}"
                )
                stale.append(entry)
        return stale
