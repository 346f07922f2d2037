"""
Token Meter Configuration and Constants

Purchase sizing, plan inclusions, pricing source and error messages
are defined here. All values are in USD and tokens.
"""

import os

# ==================== PURCHASE SIZING (USD) ====================
PURCHASE_PRESETS = (10, 20, 50, 100)

TOKEN_PURCHASE = {
    "minimum_usd": 5,
    "maximum_usd": 1000,
    "increment_usd": 5,
    "custom_allowed": True,
}

# Revenue split (internal only - not shown to tenants)
APP_REVENUE_SHARE = 0.70
TOKEN_BUDGET_SHARE = 0.30

# ==================== RESERVATION ====================
# Safety margin added to estimates before reservation (10%)
SAFETY_MARGIN_PERCENT = 10

# Conditional update attempts before giving up on a contended ledger
MAX_LEDGER_ATTEMPTS = 3

# ==================== PLAN INCLUDED TOKENS ====================
# Fixed allotment per billing cycle, replaced (not accumulated) on renewal
PLAN_INCLUDED_TOKENS = {
    "starter": 0,
    "professional": 0,
    "professional plus": 0,
    "growth": 0,
    "growth plus": 0,
    "growth extra": 100_000_000,
    "enterprise": 300_000_000,
}

# Spellings seen from billing integrations
PLAN_KEY_VARIANTS = {
    "growth_extra": "growth extra",
    "growthextra": "growth extra",
    "growth_plus": "growth plus",
    "growthplus": "growth plus",
    "professional_plus": "professional plus",
    "professionalplus": "professional plus",
}

# Subscription statuses that forfeit the included pool
INACTIVE_PLAN_STATUSES = {"cancelled", "expired"}

# ==================== DYNAMIC PRICING ====================
PRICING_ENDPOINT = "https://openrouter.ai/api/v1/models"
PRICING_MODEL_ID = os.environ.get("OPENROUTER_MODEL", "google/gemini-2.5-flash-lite")
PRICING_CACHE_TTL_SECONDS = 60 * 60
PRICING_TIMEOUT_SECONDS = 10.0

# Most of the workload is prompt text: 80% input, 20% output
PRICING_INPUT_WEIGHT = 0.8
PRICING_OUTPUT_WEIGHT = 0.2

# USD per 1M tokens when the price list is unavailable
FALLBACK_RATE_PER_1M = 0.10

# ==================== COLLECTIONS ====================
LEDGER_COLLECTION = "token_ledgers"
META_COLLECTION = "token_meter_meta"

# ==================== ERROR CODES ====================
ERROR_CODES = {
    "INSUFFICIENT_BALANCE": "You need more tokens to use this feature.",
    "TRIAL_RESTRICTED": "This AI-enhanced feature requires plan activation or token purchase.",
    "UNKNOWN_FEATURE": "Unknown feature.",
    "RESERVATION_NOT_FOUND": "Reservation not found or already settled.",
    "PRICING_FETCH_FAILED": "Could not fetch current model pricing.",
    "INVALID_PURCHASE_AMOUNT": (
        f"Invalid amount. Must be between ${TOKEN_PURCHASE['minimum_usd']} and "
        f"${TOKEN_PURCHASE['maximum_usd']}, in increments of ${TOKEN_PURCHASE['increment_usd']}."
    ),
    "LEDGER_CONFLICT": "Token ledger is busy. Please try again.",
}

# Actions offered when a trial blocks a feature
TRIAL_OPTIONS = [
    {
        "action": "activate_plan",
        "label": "End Trial & Activate Plan",
        "description": "Your plan will be charged immediately",
    },
    {
        "action": "purchase_tokens",
        "label": "Purchase Tokens Only",
        "description": "Keep your trial running",
    },
]
