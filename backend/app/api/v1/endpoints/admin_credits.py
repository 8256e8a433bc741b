"""
Admin Credit API Endpoints.

Manual adjustments, rate table management, expiration sweeps,
dead letter retries and the audit trail.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Path, Query, status
from sqlalchemy import desc, select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import ResourceNotFoundError
from backend.app.core.timeutils import to_naive_utc
from backend.app.core.dependencies import get_expiration_scheduler, get_ledger_service
from backend.app.db.session import get_db
from backend.app.domain.credits.expiration import ExpirationScheduler
from backend.app.domain.credits.ledger_service import LedgerService
from backend.app.domain.credits.rate_table import RateTable
from backend.app.models.credit_rate_table import CreditRateTable
from backend.app.models.dlq import DeadLetterQueue, DLQStatus
from backend.app.schemas.credits import (
    AdjustmentRequest,
    AuditLogResponse,
    AuditTrailResponse,
    DeadLetterResponse,
    RateTableCreate,
    RateTableResponse,
    SweepResponse,
    TransactionResponse,
)
from backend.app.services.audit import log_event, AuditAction, get_audit_trail

router = APIRouter(prefix="/admin/credits", tags=["Admin - Credits"])


@router.post(
    "/users/{user_id}/adjustments",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def adjust_credits(
    request: AdjustmentRequest,
    user_id: int = Path(..., ge=1),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key", max_length=128),
    service: LedgerService = Depends(get_ledger_service),
):
    """
    Credit or debit a wallet by hand. Audited.
    """
    adjustment = await service.adjust_credits(
        user_id=user_id,
        amount=request.amount,
        direction=request.direction,
        reason=request.reason,
        actor_id=request.actor_id,
        idempotency_key=idempotency_key,
    )
    return TransactionResponse.model_validate(adjustment)


@router.post("/expiration-sweeps", response_model=SweepResponse)
async def run_expiration_sweep(
    scheduler: ExpirationScheduler = Depends(get_expiration_scheduler),
):
    """
    Run the expiration sweep now instead of waiting for the daily job.
    """
    report = await scheduler.sweep()
    return SweepResponse.model_validate(report)


@router.post("/rate-tables", response_model=RateTableResponse, status_code=status.HTTP_201_CREATED)
async def create_rate_table(
    request: RateTableCreate,
    db: AsyncSession = Depends(get_db),
):
    """
    Create a rate table. The newest active table in its validity window wins.
    """
    rate_table = RateTable.build(
        season_values=request.season_values,
        location_multipliers=request.location_multipliers,
        room_type_multipliers=request.room_type_multipliers,
        expiration_months=request.expiration_months,
        name=request.name,
        nightly_costs=request.nightly_costs,
    )
    maps = rate_table.as_json()

    row = CreditRateTable(
        name=request.name,
        season_values=maps["season_values"],
        location_multipliers=maps["location_multipliers"],
        room_type_multipliers=maps["room_type_multipliers"],
        nightly_costs=maps["nightly_costs"] or None,
        expiration_months=rate_table.expiration_months,
        effective_from=to_naive_utc(request.effective_from),
        effective_until=to_naive_utc(request.effective_until) if request.effective_until else None,
        is_active=True,
        created_by_admin_id=request.created_by_admin_id,
    )
    db.add(row)
    await db.flush()

    await log_event(
        db=db,
        action=AuditAction.RATE_TABLE_CREATED,
        actor_id=request.created_by_admin_id,
        metadata={"rate_table_id": row.id, "name": row.name},
    )
    await db.commit()
    await db.refresh(row)

    return row


@router.get("/rate-tables", response_model=List[RateTableResponse])
async def list_rate_tables(
    db: AsyncSession = Depends(get_db),
):
    """
    List all rate tables, newest first.
    """
    result = await db.execute(
        select(CreditRateTable).order_by(desc(CreditRateTable.effective_from), desc(CreditRateTable.id))
    )
    return result.scalars().all()


@router.post("/rate-tables/{rate_table_id}/deactivate", response_model=RateTableResponse)
async def deactivate_rate_table(
    rate_table_id: int = Path(..., ge=1),
    actor_id: Optional[int] = None,
    db: AsyncSession = Depends(get_db),
):
    """
    Deactivate a rate table; estimates fall back to the next applicable one.
    """
    row = await db.get(CreditRateTable, rate_table_id)
    if row is None:
        raise ResourceNotFoundError("Rate table", rate_table_id)

    row.is_active = False
    await log_event(
        db=db,
        action=AuditAction.RATE_TABLE_DEACTIVATED,
        actor_id=actor_id,
        metadata={"rate_table_id": row.id, "name": row.name},
    )
    await db.commit()
    await db.refresh(row)

    return row


@router.get("/dead-letters", response_model=List[DeadLetterResponse])
async def list_dead_letters(
    status_filter: Optional[DLQStatus] = Query(None, alias="status"),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    """
    List sweep work items that failed, newest first.
    """
    query = select(DeadLetterQueue).order_by(desc(DeadLetterQueue.id)).limit(limit)
    if status_filter is not None:
        query = query.where(DeadLetterQueue.status == status_filter)
    result = await db.execute(query)
    return result.scalars().all()


@router.post("/dead-letters/{dlq_id}/retry", response_model=DeadLetterResponse)
async def retry_dead_letter(
    dlq_id: int = Path(..., ge=1, description="DLQ Item ID"),
    scheduler: ExpirationScheduler = Depends(get_expiration_scheduler),
):
    """
    Re-run the expiration of the deposit behind a failed sweep item.
    """
    item = await scheduler.retry_dead_letter(dlq_id)
    return DeadLetterResponse.model_validate(item)


@router.get("/audit-logs", response_model=AuditTrailResponse)
async def get_audit_logs(
    user_id: Optional[int] = Query(None, description="Filter by target user ID"),
    action: Optional[str] = Query(None, description="Filter by action type"),
    limit: int = Query(100, ge=1, le=500, description="Maximum records to return"),
    db: AsyncSession = Depends(get_db),
):
    """
    Audit trail of adjustments, rate table changes and sweeps.
    """
    logs = await get_audit_trail(db=db, target_user_id=user_id, action=action, limit=limit)
    return AuditTrailResponse(
        logs=[AuditLogResponse.model_validate(log) for log in logs],
        total=len(logs),
    )
