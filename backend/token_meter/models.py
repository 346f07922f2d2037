"""
Token Meter Data Models

Pydantic models for ledger documents and metering results.
These define the structure of documents stored in the token_ledgers collection.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Literal, Dict, Any

from pydantic import BaseModel, ConfigDict, Field

from .config import INACTIVE_PLAN_STATUSES, PLAN_INCLUDED_TOKENS, PLAN_KEY_VARIANTS
from .errors import InsufficientBalance, TrialRestricted


class FundingSource(str, Enum):
    INCLUDED_POOL = "included_pool"
    PURCHASED_TOKENS = "purchased_tokens"
    NOT_REQUIRED = "not_required"
    DENIED = "denied"


# ==================== LEDGER MODELS ====================

class PurchaseRecord(BaseModel):
    """Token purchase paid with real money"""
    usd_amount: float
    app_revenue_share: float
    token_budget_share: float
    tokens_received: int
    timestamp: str  # ISO datetime string
    external_charge_id: Optional[str] = None
    status: Literal["pending", "completed", "failed", "refunded"] = "pending"


class LastPurchase(BaseModel):
    usd_amount: float
    tokens: int
    timestamp: str
    external_charge_id: Optional[str] = None


class UsageEntry(BaseModel):
    """Usage row: an open/settled reservation or an audit record"""
    feature: str
    tokens_reserved: int
    tokens_actual: Optional[int] = None
    status: Literal["reserved", "finalized", "cancelled", "recorded"]
    reservation_id: Optional[str] = None
    funding: Optional[str] = None
    included_reserved: int = 0
    purchased_reserved: int = 0
    refunded_amount: int = 0
    pool_generation: Optional[int] = None
    included_expired: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: str
    settled_at: Optional[str] = None


class TokenLedger(BaseModel):
    """Per-tenant token ledger"""
    model_config = ConfigDict(extra="ignore")

    tenant: str
    balance: int = 0
    included_pool: int = 0
    included_plan: Optional[str] = None
    pool_generation: int = 0
    total_purchased: int = 0
    total_used: int = 0
    last_purchase: Optional[LastPurchase] = None
    purchases: List[PurchaseRecord] = Field(default_factory=list)
    usage_entries: List[UsageEntry] = Field(default_factory=list)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def purchased_remaining(self) -> int:
        return self.balance - self.included_pool

    def has_balance(self, amount: int) -> bool:
        return self.balance >= amount

    def available_for(self, funding: FundingSource) -> int:
        """Tokens a reservation funded from `funding` may draw on."""
        if funding == FundingSource.PURCHASED_TOKENS:
            return max(0, min(self.purchased_remaining, self.balance))
        return self.balance

    def find_reservation(self, reservation_id: str) -> Optional[UsageEntry]:
        for entry in self.usage_entries:
            if entry.reservation_id == reservation_id:
                return entry
        return None


# ==================== ESTIMATE MODELS ====================

class CostOptions(BaseModel):
    """Sizing inputs for a feature cost"""
    model_config = ConfigDict(populate_by_name=True)

    languages: int = 1
    product_count: int = Field(0, alias="productCount")


class CostEstimate(BaseModel):
    feature: str
    estimated: int
    with_margin: int
    margin: int


# ==================== RESERVATION MODELS ====================

class Reservation(BaseModel):
    """Handle returned by ReservationManager.reserve"""
    reservation_id: str
    tenant: str
    feature: str
    tokens_reserved: int
    included_reserved: int = 0
    purchased_reserved: int = 0
    funding: FundingSource = FundingSource.INCLUDED_POOL
    balance_after: int


class Settlement(BaseModel):
    """Result of finalizing or cancelling a reservation"""
    reservation_id: str
    tenant: str
    status: Literal["finalized", "cancelled"]
    tokens_reserved: int
    tokens_actual: int
    difference: int
    refunded_amount: int
    included_expired: int = 0
    balance_after: int


# ==================== PLAN MODELS ====================

def resolve_plan_key(plan: Optional[str]) -> Optional[str]:
    """Normalize a plan name ('Growth_Extra ' -> 'growth extra'). None if unknown."""
    key = " ".join(str(plan or "").lower().split())
    if not key:
        return None
    if key in PLAN_INCLUDED_TOKENS:
        return key
    return PLAN_KEY_VARIANTS.get(key)


class PlanSnapshot(BaseModel):
    """Tenant subscription state at request time"""
    plan: Optional[str] = None
    status: str = "active"
    trial_ends_at: Optional[datetime] = None

    @property
    def plan_key(self) -> Optional[str]:
        return resolve_plan_key(self.plan)

    @property
    def is_active(self) -> bool:
        return (self.status or "").lower() not in INACTIVE_PLAN_STATUSES

    @property
    def included_pool_size(self) -> int:
        if not self.is_active or not self.plan_key:
            return 0
        return PLAN_INCLUDED_TOKENS.get(self.plan_key, 0)

    def in_trial(self, now: Optional[datetime] = None) -> bool:
        if not self.trial_ends_at:
            return False
        now = now or datetime.now(timezone.utc)
        ends = self.trial_ends_at
        if ends.tzinfo is None:
            ends = ends.replace(tzinfo=timezone.utc)
        return now < ends


class FundingDecision(BaseModel):
    """Outcome of PlanPolicy.resolve_funding_source"""
    feature: str
    source: FundingSource
    tokens_required: int = 0
    tokens_available: int = 0
    reason: Optional[Literal["TRIAL_RESTRICTED", "INSUFFICIENT_BALANCE"]] = None
    plan: Optional[str] = None
    trial_ends_at: Optional[datetime] = None

    @property
    def allowed(self) -> bool:
        return self.source != FundingSource.DENIED

    @property
    def shortfall(self) -> int:
        return max(0, self.tokens_required - self.tokens_available)

    def raise_for_denial(self) -> None:
        if self.allowed:
            return
        if self.reason == "TRIAL_RESTRICTED":
            raise TrialRestricted(
                feature=self.feature,
                plan=self.plan,
                trial_ends_at=self.trial_ends_at.isoformat() if self.trial_ends_at else None,
                tokens_required=self.tokens_required,
                purchased_available=self.tokens_available,
            )
        raise InsufficientBalance(
            required=self.tokens_required,
            available=self.tokens_available,
            feature=self.feature,
        )
