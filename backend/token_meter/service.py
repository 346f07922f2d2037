"""
Metering Service - single entry point for token-metered operations

All metered AI work should go through this service so the plan policy,
estimate, reservation and settlement happen in one place.

Usage:
    from token_meter.service import MeteringService

    metering = MeteringService(db, oracle)

    async with metering.metered(shop, snapshot, "enhanced-item-seo", {"languages": 2}) as op:
        response = await call_ai_provider(...)       # outside any ledger update
        op.record_usage(response["usage"])

    # Denials raise InsufficientBalance / TrialRestricted before any tokens move.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Optional, Tuple, Union

from .estimator import (
    CostEstimator,
    OptionsLike,
    actual_tokens_from_usage,
    estimate_with_margin,
    validate_purchase_amount,
)
from .features import Feature
from .ledger import TokenLedgerService
from .models import (
    CostEstimate,
    FundingDecision,
    FundingSource,
    PlanSnapshot,
    Reservation,
    Settlement,
    TokenLedger,
)
from .plan_policy import PlanPolicy
from .pricing import PricingOracle
from .reservations import ReservationManager

logger = logging.getLogger(__name__)


@dataclass
class MeteredOperation:
    """Handle yielded by MeteringService.metered()"""
    tenant: str
    feature: str
    estimate: CostEstimate
    decision: FundingDecision
    reservation: Optional[Reservation] = None
    actual_tokens: Optional[int] = None
    settlement: Optional[Settlement] = None

    def record_usage(self, usage: Optional[Dict[str, Any]]) -> int:
        """Add a provider usage block to the actual total. Returns tokens added."""
        tokens = actual_tokens_from_usage(usage)
        self.actual_tokens = (self.actual_tokens or 0) + tokens
        return tokens


class MeteringService:
    """Facade over policy, estimator, ledger and reservations."""

    def __init__(self, db, oracle: Optional[PricingOracle] = None):
        self.db = db
        self.oracle = oracle or PricingOracle()
        self.estimator = CostEstimator(self.oracle)
        self.ledger = TokenLedgerService(db)
        self.reservations = ReservationManager(self.ledger)
        self.policy = PlanPolicy()

    async def authorize(
        self,
        tenant: str,
        snapshot: PlanSnapshot,
        feature: Union[Feature, str],
        options: OptionsLike = None,
        now: Optional[datetime] = None
    ) -> Tuple[FundingDecision, CostEstimate]:
        """
        Run the plan policy against the estimate with margin.

        Raises TrialRestricted / InsufficientBalance on denial.
        """
        estimate = estimate_with_margin(feature, options)
        ledger = await self.ledger.get_or_create(tenant)
        decision = self.policy.resolve_funding_source(
            snapshot, feature, ledger, estimate.with_margin, now
        )
        decision.raise_for_denial()
        return decision, estimate

    @asynccontextmanager
    async def metered(
        self,
        tenant: str,
        snapshot: PlanSnapshot,
        feature: Union[Feature, str],
        options: OptionsLike = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> AsyncIterator[MeteredOperation]:
        """
        Authorize, reserve, yield, then finalize (or cancel on error).

        If the caller records no usage, the reservation settles at the
        estimate without margin.
        """
        decision, estimate = await self.authorize(tenant, snapshot, feature, options)
        op = MeteredOperation(
            tenant=tenant,
            feature=estimate.feature,
            estimate=estimate,
            decision=decision,
        )

        if decision.source == FundingSource.NOT_REQUIRED:
            yield op
            return

        op.reservation = await self.reservations.reserve(
            tenant,
            estimate.with_margin,
            estimate.feature,
            metadata,
            funding=decision.source
        )
        rid = op.reservation.reservation_id

        try:
            yield op
        except BaseException:
            logger.info(f"Metered {estimate.feature} failed for {tenant}, releasing reservation {rid}")
            await self.reservations.cancel(tenant, rid)
            raise

        actual = estimate.estimated if op.actual_tokens is None else op.actual_tokens
        op.settlement = await self.reservations.finalize(tenant, rid, actual)

    # ==================== PURCHASES ====================

    async def quote_tokens(self, usd_amount: Any) -> int:
        return await self.estimator.usd_to_tokens(validate_purchase_amount(usd_amount))

    async def purchase_tokens(
        self,
        tenant: str,
        usd_amount: Any,
        external_charge_id: Optional[str] = None
    ) -> TokenLedger:
        """Validate, size with current pricing, and credit a completed purchase."""
        amount = validate_purchase_amount(usd_amount)
        tokens = await self.estimator.usd_to_tokens(amount)
        return await self.ledger.record_purchase(tenant, amount, tokens, external_charge_id)

    async def begin_purchase(self, tenant: str, usd_amount: Any, external_charge_id: str) -> TokenLedger:
        """Record a pending purchase while the charge awaits approval."""
        amount = validate_purchase_amount(usd_amount)
        tokens = await self.estimator.usd_to_tokens(amount)
        return await self.ledger.record_pending_purchase(tenant, amount, tokens, external_charge_id)

    async def confirm_purchase(self, tenant: str, external_charge_id: str) -> Optional[TokenLedger]:
        """Complete a pending purchase, re-sizing tokens with the price at approval time."""
        ledger = await self.ledger.find(tenant)
        pending = None
        if ledger:
            pending = next(
                (p for p in ledger.purchases
                 if p.external_charge_id == external_charge_id and p.status == "pending"),
                None
            )
        if pending is None:
            logger.warning(f"Confirm skipped: no pending purchase {external_charge_id} for {tenant}")
            return None

        tokens = await self.estimator.usd_to_tokens(pending.usd_amount)
        return await self.ledger.complete_purchase(tenant, external_charge_id, tokens)

    # ==================== PLAN POOL ====================

    async def renew_included_pool(
        self,
        tenant: str,
        snapshot: PlanSnapshot,
        reason_id: Optional[str] = None
    ) -> TokenLedger:
        """Replace the included pool with the plan's allotment for a new cycle."""
        return await self.ledger.replace_included_pool(
            tenant,
            snapshot.included_pool_size,
            snapshot.plan_key or snapshot.plan,
            reason_id
        )

    async def balance_summary(self, tenant: str, recent: int = 10) -> Dict[str, Any]:
        ledger = await self.ledger.get_or_create(tenant)
        return {
            "tenant": ledger.tenant,
            "balance": ledger.balance,
            "included_pool": ledger.included_pool,
            "included_plan": ledger.included_plan,
            "included_usd_value": await self.estimator.tokens_to_usd(ledger.included_pool),
            "purchased_remaining": ledger.purchased_remaining,
            "total_purchased": ledger.total_purchased,
            "total_used": ledger.total_used,
            "last_purchase": ledger.last_purchase.model_dump() if ledger.last_purchase else None,
            "recent_usage": [u.model_dump() for u in reversed(ledger.usage_entries[-recent:])] if recent > 0 else [],
        }
