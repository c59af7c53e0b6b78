"""Credit API endpoints."""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, Query

from ieco.credits.schemas import (
    CreditBalanceResponse,
    CreditHistoryResponse,
    CreditRecordResponse,
    CreditStatsResponse,
    GrantCreditsRequest,
    UseCreditsRequest,
    UseCreditsResponse,
)
from ieco.dependencies import get_admin_id, get_current_user_id, get_services
from ieco.services import Services

router = APIRouter(prefix="/api/v1/credits", tags=["Credits"])


@router.get("/balance", response_model=CreditBalanceResponse)
async def get_balance(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),  # noqa: B008
):
    """Cached balance for the current user."""
    balance = await services.ledger.get_user_balance(user_id)
    return CreditBalanceResponse.model_validate(balance)


@router.get("/stats", response_model=CreditStatsResponse)
async def get_stats(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),  # noqa: B008
):
    stats = await services.ledger.get_credit_stats(user_id)
    return CreditStatsResponse(**asdict(stats))


@router.get("/history", response_model=CreditHistoryResponse)
async def get_history(
    limit: int = Query(50, ge=1, le=200),
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),  # noqa: B008
):
    records = await services.ledger.get_credit_history(user_id, limit=limit)
    return CreditHistoryResponse(records=[CreditRecordResponse.model_validate(r) for r in records])


@router.get("/expiring", response_model=CreditHistoryResponse)
async def get_expiring(
    days: int = Query(30, ge=1, le=365),
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),  # noqa: B008
):
    """Unspent credits expiring within ``days``."""
    records = await services.ledger.get_expiring_credits(user_id, days=days)
    return CreditHistoryResponse(records=[CreditRecordResponse.model_validate(r) for r in records])


@router.post("/use", response_model=UseCreditsResponse)
async def use_credits(
    body: UseCreditsRequest,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),  # noqa: B008
):
    """Spend credits. ``success`` is false when the balance is insufficient."""
    success = await services.ledger.use_credits(user_id, body.amount, body.purpose, metadata=body.metadata)
    available = await services.ledger.get_available_credits(user_id)
    return UseCreditsResponse(success=success, available_credits=available)


@router.post("/grant", response_model=CreditRecordResponse, status_code=201)
async def grant_credits(
    body: GrantCreditsRequest,
    admin_id: str = Depends(get_admin_id),
    services: Services = Depends(get_services),  # noqa: B008
):
    """Admin grant, outside the reward rules."""
    record = await services.ledger.add_credits(
        user_id=body.user_id,
        amount=body.amount,
        source=body.source,
        source_id=f"admin:{admin_id}",
        description=body.description,
        idempotency_key=body.idempotency_key,
    )
    return CreditRecordResponse.model_validate(record)
