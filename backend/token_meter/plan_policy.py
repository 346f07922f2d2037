"""
Plan Policy - decides whether a feature may be attempted and how it is funded

Rules:
- Features outside TOKEN_REQUIRED_FEATURES need no tokens
- Trial-blocked features are denied only when funding would come from the
  included pool; purchased tokens are always usable
- Otherwise the ledger balance must cover the estimate with margin

Request flow: PlanCheck -> TrialCheck -> BalanceCheck -> {funded | denied}.
No state is kept between requests.
"""

import logging
from datetime import datetime
from typing import Optional, Union

from .config import PLAN_INCLUDED_TOKENS
from .features import Feature, TOKEN_REQUIRED_FEATURES, TRIAL_BLOCKED_FEATURES
from .models import FundingDecision, FundingSource, PlanSnapshot, TokenLedger, resolve_plan_key

logger = logging.getLogger(__name__)


def included_tokens_for_plan(plan: Optional[str]) -> int:
    key = resolve_plan_key(plan)
    return PLAN_INCLUDED_TOKENS.get(key, 0) if key else 0


def is_feature_gated(feature: Union[Feature, str]) -> bool:
    return Feature.parse(feature) in TOKEN_REQUIRED_FEATURES


def is_blocked_during_trial(feature: Union[Feature, str]) -> bool:
    return Feature.parse(feature) in TRIAL_BLOCKED_FEATURES


class PlanPolicy:
    """Pure decision function over (plan snapshot, trial window, ledger)."""

    is_feature_gated = staticmethod(is_feature_gated)
    is_blocked_during_trial = staticmethod(is_blocked_during_trial)

    def resolve_funding_source(
        self,
        snapshot: PlanSnapshot,
        feature: Union[Feature, str],
        ledger: TokenLedger,
        required: int,
        now: Optional[datetime] = None
    ) -> FundingDecision:
        parsed = Feature.parse(feature)
        decision = dict(
            feature=parsed.value,
            tokens_required=required,
            plan=snapshot.plan_key or snapshot.plan,
            trial_ends_at=snapshot.trial_ends_at,
        )

        # PlanCheck
        if not is_feature_gated(parsed):
            return FundingDecision(source=FundingSource.NOT_REQUIRED, **decision)

        purchased = max(0, ledger.purchased_remaining)
        has_pool_plan = snapshot.included_pool_size > 0

        # TrialCheck
        if has_pool_plan and snapshot.in_trial(now) and is_blocked_during_trial(parsed):
            if purchased >= required:
                return FundingDecision(
                    source=FundingSource.PURCHASED_TOKENS,
                    tokens_available=purchased,
                    **decision
                )
            logger.info(f"Trial restriction for {parsed.value} on plan {decision['plan']}")
            return FundingDecision(
                source=FundingSource.DENIED,
                reason="TRIAL_RESTRICTED",
                tokens_available=purchased,
                **decision
            )

        # BalanceCheck: included tokens are spent first, then purchased
        if ledger.has_balance(required):
            if ledger.included_pool > 0:
                source = FundingSource.INCLUDED_POOL
            else:
                source = FundingSource.PURCHASED_TOKENS
            return FundingDecision(source=source, tokens_available=ledger.balance, **decision)

        return FundingDecision(
            source=FundingSource.DENIED,
            reason="INSUFFICIENT_BALANCE",
            tokens_available=max(ledger.balance, 0),
            **decision
        )
