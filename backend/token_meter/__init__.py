"""
Token Meter Module
Token-based metering and reservation for pay-as-you-go AI features

This module provides:
- Cost estimation per feature (fixed integer tables + 10% safety margin)
- Per-tenant token ledger (purchased tokens + plan included pool)
- Reserve / finalize / cancel protocol with atomic conditional updates
- Dynamic unit pricing from OpenRouter with cache and fallback
- Plan and trial feature gating

Collections used:
- token_ledgers: One document per tenant (balance, totals, history)
- token_meter_meta: Init version stamp
"""

__version__ = "1.0.0"
