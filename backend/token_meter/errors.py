"""
Token Meter Errors

Every denial carries enough structured data (feature, required amount,
available amount, funding hint) for the caller to render an actionable message.
"""

from typing import Any, Dict, Optional

from .config import ERROR_CODES


class TokenMeterError(Exception):
    """Base class for token meter errors."""
    error_code = "TOKEN_METER_ERROR"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or ERROR_CODES.get(self.error_code, self.error_code))
        self.message = str(self)

    def to_dict(self) -> Dict[str, Any]:
        return {"error_code": self.error_code, "message": self.message}


class InsufficientBalance(TokenMeterError):
    """Raised when the ledger cannot cover a reservation."""
    error_code = "INSUFFICIENT_BALANCE"

    def __init__(self, required: int, available: int, feature: Optional[str] = None):
        self.required = required
        self.available = available
        self.feature = feature
        super().__init__(
            f"Insufficient token balance: required {required}, available {available}"
        )

    @property
    def shortfall(self) -> int:
        return max(0, self.required - self.available)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "feature": self.feature,
            "tokens_required": self.required,
            "tokens_available": self.available,
            "tokens_needed": self.shortfall,
        })
        return data


class UnknownFeature(TokenMeterError):
    """Raised when a feature name is not in the cost table."""
    error_code = "UNKNOWN_FEATURE"

    def __init__(self, feature: Any):
        self.feature = feature
        super().__init__(f"Unknown feature: {feature}")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["feature"] = str(self.feature)
        return data


class ReservationNotFound(TokenMeterError):
    """Raised internally when finalize/cancel targets a missing or settled reservation."""
    error_code = "RESERVATION_NOT_FOUND"

    def __init__(self, tenant: str, reservation_id: str):
        self.tenant = tenant
        self.reservation_id = reservation_id
        super().__init__(f"Reservation {reservation_id} not found for {tenant}")


class PricingFetchFailed(TokenMeterError):
    """Raised inside PricingOracle when the price list cannot be used."""
    error_code = "PRICING_FETCH_FAILED"


class TrialRestricted(TokenMeterError):
    """Raised when a trial tenant asks for a trial-blocked feature funded by the included pool."""
    error_code = "TRIAL_RESTRICTED"

    def __init__(
        self,
        feature: str,
        plan: Optional[str] = None,
        trial_ends_at: Optional[str] = None,
        tokens_required: int = 0,
        purchased_available: int = 0,
    ):
        self.feature = feature
        self.plan = plan
        self.trial_ends_at = trial_ends_at
        self.tokens_required = tokens_required
        self.purchased_available = purchased_available
        super().__init__(f"Feature {feature} is not available during trial")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "feature": self.feature,
            "current_plan": self.plan,
            "trial_ends_at": self.trial_ends_at,
            "tokens_required": self.tokens_required,
            "tokens_available": self.purchased_available,
        })
        return data


class InvalidPurchaseAmount(TokenMeterError):
    """Raised when a USD purchase amount violates min/max/increment rules."""
    error_code = "INVALID_PURCHASE_AMOUNT"

    def __init__(self, amount: Any):
        self.amount = amount
        super().__init__(ERROR_CODES["INVALID_PURCHASE_AMOUNT"])

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["amount"] = self.amount
        return data


class LedgerConflict(TokenMeterError):
    """Raised when a conditional ledger update keeps losing races."""
    error_code = "LEDGER_CONFLICT"

    def __init__(self, tenant: str):
        self.tenant = tenant
        super().__init__(f"Ledger update for {tenant} conflicted repeatedly")
