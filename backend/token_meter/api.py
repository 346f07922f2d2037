"""
FastAPI boundary for metering errors

Hosts call register_exception_handlers(app) once; metered routes can then
let InsufficientBalance / TrialRestricted propagate and the client receives
a 402 with enough detail to offer a purchase or plan activation.
"""

import logging
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .config import TRIAL_OPTIONS
from .errors import (
    InsufficientBalance,
    InvalidPurchaseAmount,
    LedgerConflict,
    TokenMeterError,
    TrialRestricted,
    UnknownFeature,
)

logger = logging.getLogger(__name__)


def denial_payload(error: TokenMeterError) -> Dict[str, Any]:
    """Structured 402 body for a denied metered request."""
    data = error.to_dict()
    data.setdefault("tokens_needed", max(0, data.get("tokens_required", 0) - data.get("tokens_available", 0)))

    if isinstance(error, TrialRestricted):
        data["requires_purchase"] = True
        data["requires_activation"] = True
        data["options"] = [dict(option) for option in TRIAL_OPTIONS]
    else:
        data["requires_purchase"] = True
        data["requires_activation"] = False
    return data


def register_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(InsufficientBalance)
    async def insufficient_balance_handler(request: Request, exc: InsufficientBalance):
        logger.info(f"402 {request.url.path}: {exc}")
        return JSONResponse(status_code=402, content=denial_payload(exc))

    @app.exception_handler(TrialRestricted)
    async def trial_restricted_handler(request: Request, exc: TrialRestricted):
        logger.info(f"402 {request.url.path}: {exc}")
        return JSONResponse(status_code=402, content=denial_payload(exc))

    @app.exception_handler(UnknownFeature)
    async def unknown_feature_handler(request: Request, exc: UnknownFeature):
        logger.error(f"Unknown feature requested at {request.url.path}: {exc.feature}")
        return JSONResponse(status_code=400, content=exc.to_dict())

    @app.exception_handler(InvalidPurchaseAmount)
    async def invalid_amount_handler(request: Request, exc: InvalidPurchaseAmount):
        return JSONResponse(status_code=400, content=exc.to_dict())

    @app.exception_handler(LedgerConflict)
    async def ledger_conflict_handler(request: Request, exc: LedgerConflict):
        logger.warning(f"409 {request.url.path}: {exc}")
        return JSONResponse(status_code=409, content=exc.to_dict())
