"""
Credit Wallet API Endpoints.

Thin HTTP surface over LedgerService. The caller (an authenticated gateway)
supplies the user_id; idempotency keys travel in the Idempotency-Key header.
"""

from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, status

from backend.app.core.dependencies import get_ledger_service
from backend.app.domain.credits.ledger_service import LedgerService
from backend.app.schemas.credits import (
    AffordabilityResponse,
    BookingCostRequest,
    BookingCostResponse,
    DepositRequest,
    DepositResponse,
    EstimateRequest,
    EstimateResponse,
    ExpiringCreditResponse,
    ExpiringCreditsResponse,
    PaymentPlanResponse,
    RefundRequest,
    SpendRequest,
    TransactionPageResponse,
    TransactionResponse,
    WalletResponse,
)

router = APIRouter(prefix="/credits", tags=["Credits"])


@router.post("/estimate", response_model=EstimateResponse)
async def estimate_credits(
    request: EstimateRequest,
    service: LedgerService = Depends(get_ledger_service),
):
    """
    Estimate the credits a week would earn, without depositing it.
    """
    estimate = await service.estimate(
        request.season, request.location_multiplier, request.room_type_multiplier
    )
    return EstimateResponse.model_validate(estimate)


@router.post("/estimate-booking", response_model=BookingCostResponse)
async def estimate_booking_cost(
    request: BookingCostRequest,
    service: LedgerService = Depends(get_ledger_service),
):
    """
    Price a stay in credits.
    """
    cost = await service.estimate_booking_cost(
        request.season, request.location_multiplier, request.room_type_multiplier, request.nights
    )
    return BookingCostResponse.model_validate(cost)


@router.post(
    "/users/{user_id}/deposits",
    response_model=DepositResponse,
    status_code=status.HTTP_201_CREATED,
)
async def deposit_week(
    request: DepositRequest,
    user_id: int = Path(..., ge=1),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key", max_length=128),
    service: LedgerService = Depends(get_ledger_service),
):
    """
    Convert a week into credits.
    """
    result = await service.deposit_week(
        user_id=user_id,
        week_id=request.week_id,
        season=request.season,
        location_multiplier=request.location_multiplier,
        room_type_multiplier=request.room_type_multiplier,
        idempotency_key=idempotency_key,
        requires_confirmation=request.requires_confirmation,
    )
    return DepositResponse(
        transaction=TransactionResponse.model_validate(result.transaction),
        credits_earned=result.credits_earned,
        replayed=result.replayed,
    )


@router.post("/users/{user_id}/deposits/{transaction_id}/confirm", response_model=TransactionResponse)
async def confirm_deposit(
    user_id: int = Path(..., ge=1),
    transaction_id: int = Path(..., ge=1),
    service: LedgerService = Depends(get_ledger_service),
):
    """
    Confirm a pending deposit; its credits become spendable.
    """
    deposit = await service.confirm_deposit(user_id, transaction_id)
    return TransactionResponse.model_validate(deposit)


@router.post("/users/{user_id}/deposits/{transaction_id}/cancel", response_model=TransactionResponse)
async def cancel_deposit(
    user_id: int = Path(..., ge=1),
    transaction_id: int = Path(..., ge=1),
    service: LedgerService = Depends(get_ledger_service),
):
    """
    Cancel a pending deposit and release its week.
    """
    deposit = await service.cancel_deposit(user_id, transaction_id)
    return TransactionResponse.model_validate(deposit)


@router.get("/users/{user_id}/affordability", response_model=AffordabilityResponse)
async def check_affordability(
    user_id: int = Path(..., ge=1),
    required_credits: Decimal = Query(..., ge=0),
    service: LedgerService = Depends(get_ledger_service),
):
    """
    Check whether the wallet covers a price.
    """
    result = await service.check_affordability(user_id, required_credits)
    return AffordabilityResponse.model_validate(result)


@router.get("/users/{user_id}/payment-plan", response_model=PaymentPlanResponse)
async def plan_payment(
    user_id: int = Path(..., ge=1),
    required_credits: Decimal = Query(..., ge=0),
    service: LedgerService = Depends(get_ledger_service),
):
    """
    Split a price between credits and a cash top-up.
    """
    plan = await service.plan_payment(user_id, required_credits)
    return PaymentPlanResponse.model_validate(plan)


@router.post(
    "/users/{user_id}/spends",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def spend_credits(
    request: SpendRequest,
    user_id: int = Path(..., ge=1),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key", max_length=128),
    service: LedgerService = Depends(get_ledger_service),
):
    """
    Spend credits on a booking or swap.
    """
    spend = await service.spend_credits(
        user_id=user_id,
        amount=request.amount,
        reference_type=request.reference_type,
        reference_id=request.reference_id,
        idempotency_key=idempotency_key,
        description=request.description,
    )
    return TransactionResponse.model_validate(spend)


@router.post(
    "/users/{user_id}/refunds",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def refund_credits(
    request: RefundRequest,
    user_id: int = Path(..., ge=1),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key", max_length=128),
    service: LedgerService = Depends(get_ledger_service),
):
    """
    Refund a completed spend in full.
    """
    refund = await service.refund_credits(user_id, request.transaction_id, idempotency_key)
    return TransactionResponse.model_validate(refund)


@router.get("/users/{user_id}/wallet", response_model=WalletResponse)
async def get_wallet(
    user_id: int = Path(..., ge=1),
    service: LedgerService = Depends(get_ledger_service),
):
    """
    Current balance and lifetime aggregates.
    """
    summary = await service.get_wallet(user_id)
    return WalletResponse.model_validate(summary)


@router.get("/users/{user_id}/transactions", response_model=TransactionPageResponse)
async def get_transactions(
    user_id: int = Path(..., ge=1),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1),
    service: LedgerService = Depends(get_ledger_service),
):
    """
    Transaction history, newest first.
    """
    result = await service.get_transactions(user_id, page=page, limit=limit)
    return TransactionPageResponse(
        items=[TransactionResponse.model_validate(item) for item in result.items],
        total=result.total,
        page=result.page,
        limit=result.limit,
    )


@router.get("/users/{user_id}/expiring", response_model=ExpiringCreditsResponse)
async def get_expiring(
    user_id: int = Path(..., ge=1),
    days: Optional[int] = Query(None, ge=0, le=3650),
    service: LedgerService = Depends(get_ledger_service),
):
    """
    Credits that will expire within the next `days` days.
    """
    result = await service.get_expiring(user_id, days)
    return ExpiringCreditsResponse(
        days=result.days,
        total=result.total,
        transactions=[
            ExpiringCreditResponse(
                transaction_id=lot.transaction.id,
                amount=lot.amount,
                remaining=lot.remaining,
                expires_at=lot.expires_at,
            )
            for lot in result.lots
        ],
    )
