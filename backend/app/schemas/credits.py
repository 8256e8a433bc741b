"""
Credit Ledger Schemas.

Amounts are Decimals and serialize as strings.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union
from backend.app.models.dlq import DLQStatus
from backend.app.models.credit_enums import (
    Direction, ReferenceType, Season, TransactionStatus, TransactionType,
)

# Tier name ("GOLD") or tier value (1.3)
MultiplierInput = Union[Decimal, str]


class TransactionResponse(BaseModel):
    """Schema for displaying a ledger row."""
    id: int
    user_id: int
    type: TransactionType
    status: TransactionStatus
    direction: Direction
    amount: Decimal
    description: Optional[str]
    reference_type: Optional[ReferenceType]
    reference_id: Optional[str]
    refund_of_id: Optional[int] = None
    expires_at: Optional[datetime]
    completed_at: Optional[datetime]
    created_at: datetime
    details: Optional[Dict[str, Any]] = Field(default=None, validation_alias="meta_data")

    class Config:
        from_attributes = True


class EstimateRequest(BaseModel):
    season: Season
    location_multiplier: MultiplierInput
    room_type_multiplier: MultiplierInput


class EstimateResponse(BaseModel):
    credits: Decimal
    breakdown: Dict[str, str]
    expiration_date: datetime

    class Config:
        from_attributes = True


class BookingCostRequest(EstimateRequest):
    nights: int = Field(..., ge=1, le=365)


class BookingCostResponse(BaseModel):
    credits_per_night: Decimal
    nights: int
    total_credits: Decimal
    breakdown: Dict[str, str]

    class Config:
        from_attributes = True


class DepositRequest(EstimateRequest):
    """Schema for depositing a week."""
    week_id: int
    requires_confirmation: bool = False


class DepositResponse(BaseModel):
    transaction: TransactionResponse
    credits_earned: Decimal
    replayed: bool

    class Config:
        from_attributes = True


class SpendRequest(BaseModel):
    """Schema for spending credits on a booking or swap."""
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    reference_type: ReferenceType
    reference_id: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=255)


class RefundRequest(BaseModel):
    transaction_id: int


class AdjustmentRequest(BaseModel):
    """Schema for a manual balance correction."""
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    direction: Direction
    reason: str = Field(..., min_length=1, max_length=500)
    actor_id: Optional[int] = None


class AffordabilityResponse(BaseModel):
    can_afford: bool
    required: Decimal
    balance: Decimal
    shortfall: Decimal

    class Config:
        from_attributes = True


class PaymentPlanResponse(BaseModel):
    required: Decimal
    balance: Decimal
    credits_applied: Decimal
    credit_shortfall: Decimal
    cash_required: Decimal
    credit_to_cash_rate: Decimal

    class Config:
        from_attributes = True


class WalletResponse(BaseModel):
    """Schema for displaying a wallet."""
    user_id: int
    balance: Decimal
    pending_expiry: Decimal
    total_earned: Decimal
    total_spent: Decimal
    total_expired: Decimal
    total_refunded: Decimal
    expiring_30_days: Decimal
    expiring_60_days: Decimal
    expiring_90_days: Decimal
    version: int
    updated_at: Optional[datetime]

    class Config:
        from_attributes = True


class TransactionPageResponse(BaseModel):
    items: List[TransactionResponse]
    total: int
    page: int
    limit: int

    class Config:
        from_attributes = True


class ExpiringCreditResponse(BaseModel):
    transaction_id: int
    amount: Decimal
    remaining: Decimal
    expires_at: datetime


class ExpiringCreditsResponse(BaseModel):
    days: int
    total: Decimal
    transactions: List[ExpiringCreditResponse]


class SweepResponse(BaseModel):
    started_at: datetime
    examined: int
    expired: int
    skipped: int
    failed: int
    credits_expired: Decimal

    class Config:
        from_attributes = True


class RateTableCreate(BaseModel):
    """Schema for creating a rate table."""
    name: str = Field(..., min_length=1, max_length=100)
    season_values: Dict[str, Decimal]
    location_multipliers: Dict[str, Decimal]
    room_type_multipliers: Dict[str, Decimal]
    nightly_costs: Dict[str, Decimal] = Field(default_factory=dict)
    expiration_months: int = Field(6, ge=1, le=120)
    effective_from: datetime
    effective_until: Optional[datetime] = None
    created_by_admin_id: Optional[int] = None


class RateTableResponse(BaseModel):
    """Schema for displaying a rate table."""
    id: int
    name: str
    season_values: Dict[str, str]
    location_multipliers: Dict[str, str]
    room_type_multipliers: Dict[str, str]
    nightly_costs: Optional[Dict[str, str]] = None
    expiration_months: int
    effective_from: datetime
    effective_until: Optional[datetime]
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True


class DeadLetterResponse(BaseModel):
    """Schema for a failed sweep work item."""
    id: int
    task_name: str
    user_id: Optional[int]
    error_code: Optional[str]
    error_message: str
    payload: Optional[Dict[str, Any]]
    status: DLQStatus
    retry_count: int
    created_at: datetime
    last_retry_at: Optional[datetime]

    class Config:
        from_attributes = True


class AuditLogResponse(BaseModel):
    """Schema for audit log entry."""
    id: int
    actor_id: Optional[int]
    action: str
    target_user_id: Optional[int]
    meta_data: Optional[Dict[str, Any]]
    timestamp: datetime

    class Config:
        from_attributes = True


class AuditTrailResponse(BaseModel):
    logs: List[AuditLogResponse]
    total: int
