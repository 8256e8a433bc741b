"""
Ledger Service (Domain Logic).

Orchestrates deposits, spends, refunds and adjustments against the ledger.

Every mutation is one atomic unit:
1. Acquire the user's in-process lock
2. Open a DB transaction and lock the wallet row
3. Idempotency check
4. Re-project the balance from the ledger
5. Append ledger rows / guarded status transitions
6. Update the wallet aggregates and reconcile them with the projection
7. Commit (or roll back everything on any error)
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Optional, Tuple, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.config import Settings, settings as default_settings
from backend.app.core.exceptions import (
    AppException,
    CollaboratorUnavailableError,
    CoordinationTimeoutError,
    IdempotencyConflictError,
    InsufficientCreditsError,
    InvalidReferenceError,
    InvalidRequestError,
    NotRefundableError,
    AlreadyRefundedError,
    TransactionNotFoundError,
    WeekAlreadyConsumedError,
    WeekNotFoundError,
    WeekNotOwnedError,
)
from backend.app.core.reliability import CircuitBreaker, CircuitOpenError
from backend.app.core.timeutils import add_months, utcnow
from backend.app.domain.credits.amounts import ZERO, parse_amount, quantize
from backend.app.domain.credits.estimation import BookingCost, CreditEstimate, EstimationEngine, Multiplier
from backend.app.domain.credits.ledger import TransactionLedger, TransactionPage
from backend.app.domain.credits.locks import UserLockRegistry
from backend.app.domain.credits.projector import CreditLot, WalletProjector, WalletView, lock_wallet
from backend.app.domain.credits.rate_table import RateTableResolver
from backend.app.models.credit_enums import (
    Direction,
    ReferenceType,
    Season,
    TransactionStatus,
    TransactionType,
)
from backend.app.models.credit_transaction import CreditTransaction
from backend.app.models.credit_wallet import CreditWallet
from backend.app.services.audit import AuditAction, log_event
from backend.app.services.week_registry import WeekRegistry

logger = logging.getLogger("credit_ledger.service")


@dataclass(frozen=True)
class DepositResult:
    transaction: CreditTransaction
    credits_earned: Decimal
    replayed: bool = False


@dataclass(frozen=True)
class Affordability:
    can_afford: bool
    required: Decimal
    balance: Decimal
    shortfall: Decimal


@dataclass(frozen=True)
class PaymentPlan:
    required: Decimal
    balance: Decimal
    credits_applied: Decimal
    credit_shortfall: Decimal
    cash_required: Decimal
    credit_to_cash_rate: Decimal


@dataclass(frozen=True)
class WalletSummary:
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


@dataclass(frozen=True)
class ExpiringCredits:
    days: int
    total: Decimal
    lots: Tuple[CreditLot, ...]


class LedgerService:

    def __init__(
        self,
        session_factory: async_sessionmaker,
        week_registry: WeekRegistry,
        *,
        settings: Settings = default_settings,
        locks: Optional[UserLockRegistry] = None,
        clock: Callable[[], datetime] = utcnow,
        rate_resolver: Optional[RateTableResolver] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.session_factory = session_factory
        self.week_registry = week_registry
        self.settings = settings
        self.locks = locks or UserLockRegistry()
        self.clock = clock
        self.rate_resolver = rate_resolver or RateTableResolver(settings)
        self.breaker = breaker or CircuitBreaker(
            failure_threshold=settings.circuit_failure_threshold,
            reset_timeout=settings.circuit_reset_timeout,
            excluded_exceptions=(AppException,),
        )

    # ------------------------------------------------------------------ #
    # Estimation (read-only)
    # ------------------------------------------------------------------ #

    async def estimate(
        self,
        season: Union[Season, str],
        location_multiplier: Multiplier,
        room_type_multiplier: Multiplier,
    ) -> CreditEstimate:
        now = self.clock()
        async with self.session_factory() as db:
            rate_table = await self.rate_resolver.resolve(db, now)
        return EstimationEngine.estimate(rate_table, season, location_multiplier, room_type_multiplier, now)

    async def estimate_booking_cost(
        self,
        season: Union[Season, str],
        location_multiplier: Multiplier,
        room_type_multiplier: Multiplier,
        nights: int,
    ) -> BookingCost:
        async with self.session_factory() as db:
            rate_table = await self.rate_resolver.resolve(db, self.clock())
        return EstimationEngine.booking_cost(
            rate_table, season, location_multiplier, room_type_multiplier, nights
        )

    # ------------------------------------------------------------------ #
    # Deposits
    # ------------------------------------------------------------------ #

    async def deposit_week(
        self,
        user_id: int,
        week_id: int,
        season: Union[Season, str],
        location_multiplier: Multiplier,
        room_type_multiplier: Multiplier,
        idempotency_key: Optional[str] = None,
        requires_confirmation: bool = False,
    ) -> DepositResult:
        """
        Convert a week into credits.

        The deposit row and the week's consumed flag are written in the same
        transaction; if marking the week fails or times out nothing is kept.

        Args:
            requires_confirmation: Create the deposit PENDING. Credits become
                spendable (and start expiring) only after confirm_deposit.

        Raises:
            WeekNotFoundError, WeekNotOwnedError, WeekAlreadyConsumedError,
            InvalidRateInputError, CoordinationTimeoutError
        """
        reference_id = str(week_id)

        async with self.locks.hold(user_id):
            async with self.session_factory() as db:
                async with db.begin():
                    now = self.clock()
                    wallet = await lock_wallet(db, user_id, now)

                    existing = await self._replay(
                        db, user_id, idempotency_key, TransactionType.DEPOSIT,
                        ReferenceType.WEEK, reference_id,
                    )
                    if existing is not None:
                        return DepositResult(existing, existing.amount, replayed=True)

                    rate_table = await self.rate_resolver.resolve(db, now)
                    estimate = EstimationEngine.estimate(
                        rate_table, season, location_multiplier, room_type_multiplier, now
                    )

                    owner_id = await self._call_collaborator(
                        "week lookup", self.week_registry.owner_of, db, week_id
                    )
                    if owner_id is None:
                        raise WeekNotFoundError(week_id)
                    if owner_id != user_id:
                        raise WeekNotOwnedError(week_id, user_id)
                    if await self._call_collaborator(
                        "week lookup", self.week_registry.is_consumed, db, week_id
                    ):
                        raise WeekAlreadyConsumedError(week_id)

                    status = TransactionStatus.PENDING if requires_confirmation else TransactionStatus.COMPLETED
                    deposit = CreditTransaction(
                        user_id=user_id,
                        type=TransactionType.DEPOSIT,
                        status=status,
                        direction=Direction.CREDIT,
                        amount=estimate.credits,
                        description=f"Week {week_id} deposited ({estimate.breakdown['season']})",
                        reference_type=ReferenceType.WEEK,
                        reference_id=reference_id,
                        idempotency_key=idempotency_key,
                        meta_data={
                            "breakdown": estimate.breakdown,
                            "expiration_months": rate_table.expiration_months,
                        },
                        expires_at=None if requires_confirmation else estimate.expiration_date,
                        completed_at=None if requires_confirmation else now,
                        created_at=now,
                    )
                    await TransactionLedger.append(db, deposit)

                    await self._call_collaborator(
                        "week registry", self.week_registry.mark_consumed, db, week_id, user_id
                    )

                    if not requires_confirmation:
                        wallet.apply(now, earned=deposit.amount)
                    await WalletProjector.reconcile(db, wallet, now)

        logger.info(
            "Week deposited",
            extra={
                "user_id": user_id,
                "week_id": week_id,
                "transaction_id": deposit.id,
                "credits": str(deposit.amount),
                "status": deposit.status.value,
            },
        )
        return DepositResult(deposit, deposit.amount)

    async def confirm_deposit(self, user_id: int, transaction_id: int) -> CreditTransaction:
        """
        Complete a PENDING deposit. The expiration window starts now.

        Raises:
            TransactionNotFoundError, InvalidStatusTransitionError
        """
        async with self.locks.hold(user_id):
            async with self.session_factory() as db:
                async with db.begin():
                    now = self.clock()
                    wallet = await lock_wallet(db, user_id, now)
                    deposit = await self._owned_transaction(db, user_id, transaction_id, TransactionType.DEPOSIT)

                    months = (deposit.meta_data or {}).get(
                        "expiration_months", self.settings.credit_expiration_months
                    )
                    await TransactionLedger.transition(
                        db, deposit, TransactionStatus.COMPLETED,
                        completed_at=now, expires_at=add_months(now, int(months)),
                    )
                    wallet.apply(now, earned=deposit.amount)
                    await WalletProjector.reconcile(db, wallet, now)

        logger.info("Deposit confirmed", extra={"user_id": user_id, "transaction_id": transaction_id})
        return deposit

    async def cancel_deposit(self, user_id: int, transaction_id: int) -> CreditTransaction:
        """
        Cancel a PENDING deposit and release its week.

        Raises:
            TransactionNotFoundError, InvalidStatusTransitionError, CoordinationTimeoutError
        """
        async with self.locks.hold(user_id):
            async with self.session_factory() as db:
                async with db.begin():
                    now = self.clock()
                    wallet = await lock_wallet(db, user_id, now)
                    deposit = await self._owned_transaction(db, user_id, transaction_id, TransactionType.DEPOSIT)

                    await TransactionLedger.transition(db, deposit, TransactionStatus.CANCELLED)
                    await self._call_collaborator(
                        "week registry", self.week_registry.release, db, int(deposit.reference_id)
                    )
                    await WalletProjector.reconcile(db, wallet, now)

        logger.info("Deposit cancelled", extra={"user_id": user_id, "transaction_id": transaction_id})
        return deposit

    # ------------------------------------------------------------------ #
    # Spending
    # ------------------------------------------------------------------ #

    async def check_affordability(self, user_id: int, required_credits: Any) -> Affordability:
        """Read-only; past-due credits never count even before the sweep runs."""
        required = parse_amount(required_credits, allow_zero=True)
        view = await self._project(user_id)
        shortfall = max(required - view.balance, ZERO)
        return Affordability(
            can_afford=view.balance >= required,
            required=required,
            balance=view.balance,
            shortfall=shortfall,
        )

    async def plan_payment(self, user_id: int, required_credits: Any) -> PaymentPlan:
        """Split a price between credits on hand and a cash top-up."""
        required = parse_amount(required_credits, allow_zero=True)
        view = await self._project(user_id)
        applied = min(view.balance, required)
        shortfall = required - applied
        rate = self.settings.credit_to_cash_rate
        return PaymentPlan(
            required=required,
            balance=view.balance,
            credits_applied=applied,
            credit_shortfall=shortfall,
            cash_required=quantize(shortfall * rate),
            credit_to_cash_rate=rate,
        )

    async def spend_credits(
        self,
        user_id: int,
        amount: Any,
        reference_type: Union[ReferenceType, str],
        reference_id: str,
        idempotency_key: Optional[str] = None,
        description: Optional[str] = None,
    ) -> CreditTransaction:
        """
        Debit credits for a booking or swap.

        Raises:
            InvalidAmountError, InvalidReferenceError, InsufficientCreditsError
        """
        amount = parse_amount(amount)
        try:
            reference_type = ReferenceType(reference_type)
        except ValueError:
            raise InvalidReferenceError(f"Unknown reference type: {reference_type}", reference_type, reference_id) from None
        reference_id = None if reference_id is None else str(reference_id)
        TransactionLedger.validate_reference(TransactionType.SPEND, reference_type, reference_id)

        async with self.locks.hold(user_id):
            async with self.session_factory() as db:
                async with db.begin():
                    now = self.clock()
                    wallet = await lock_wallet(db, user_id, now)

                    existing = await self._replay(
                        db, user_id, idempotency_key, TransactionType.SPEND,
                        reference_type, reference_id, amount,
                    )
                    if existing is not None:
                        return existing

                    view = await WalletProjector.project(db, user_id, now)
                    if view.balance < amount:
                        logger.info(
                            "Spend rejected: insufficient credits",
                            extra={"user_id": user_id, "required": str(amount), "available": str(view.balance)},
                        )
                        raise InsufficientCreditsError(required=amount, available=view.balance)

                    spend = CreditTransaction(
                        user_id=user_id,
                        type=TransactionType.SPEND,
                        status=TransactionStatus.COMPLETED,
                        direction=Direction.DEBIT,
                        amount=amount,
                        description=description or f"{reference_type.value} {reference_id}",
                        reference_type=reference_type,
                        reference_id=reference_id,
                        idempotency_key=idempotency_key,
                        completed_at=now,
                        created_at=now,
                    )
                    await TransactionLedger.append(db, spend)
                    wallet.apply(now, spent=amount)
                    await WalletProjector.reconcile(db, wallet, now)

        logger.info(
            "Credits spent",
            extra={"user_id": user_id, "transaction_id": spend.id, "amount": str(amount)},
        )
        return spend

    async def refund_credits(
        self,
        user_id: int,
        original_transaction_id: int,
        idempotency_key: Optional[str] = None,
    ) -> CreditTransaction:
        """
        Reverse a completed spend in full.

        Refunded credits are not re-tied to the expiration of the deposits they
        came from: the refund opens a new non-expiring lot.

        Raises:
            TransactionNotFoundError, AlreadyRefundedError, NotRefundableError
        """
        reference_id = str(original_transaction_id)

        async with self.locks.hold(user_id):
            async with self.session_factory() as db:
                async with db.begin():
                    now = self.clock()
                    wallet = await lock_wallet(db, user_id, now)

                    existing = await self._replay(
                        db, user_id, idempotency_key, TransactionType.REFUND,
                        ReferenceType.TRANSACTION, reference_id,
                    )
                    if existing is not None:
                        return existing

                    original = await TransactionLedger.get_for_update(db, original_transaction_id)
                    if original is None or original.user_id != user_id:
                        raise TransactionNotFoundError(original_transaction_id)
                    if original.type != TransactionType.SPEND:
                        raise NotRefundableError(original_transaction_id, f"{original.type.value} is not a spend")
                    if (
                        original.status == TransactionStatus.REFUNDED
                        or await TransactionLedger.find_refund_for(db, original.id) is not None
                    ):
                        raise AlreadyRefundedError(original_transaction_id)
                    if original.status != TransactionStatus.COMPLETED:
                        raise NotRefundableError(original_transaction_id, f"status is {original.status.value}")

                    refund = CreditTransaction(
                        user_id=user_id,
                        type=TransactionType.REFUND,
                        status=TransactionStatus.COMPLETED,
                        direction=Direction.CREDIT,
                        amount=original.amount,
                        description=f"Refund of transaction {original.id}",
                        reference_type=ReferenceType.TRANSACTION,
                        reference_id=reference_id,
                        refund_of_id=original.id,
                        idempotency_key=idempotency_key,
                        completed_at=now,
                        created_at=now,
                    )
                    await TransactionLedger.append(db, refund)
                    await TransactionLedger.transition(db, original, TransactionStatus.REFUNDED)
                    wallet.apply(now, refunded=refund.amount)
                    await WalletProjector.reconcile(db, wallet, now)

        logger.info(
            "Spend refunded",
            extra={"user_id": user_id, "transaction_id": refund.id, "refund_of": original_transaction_id},
        )
        return refund

    async def adjust_credits(
        self,
        user_id: int,
        amount: Any,
        direction: Union[Direction, str],
        reason: str,
        actor_id: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> CreditTransaction:
        """
        Manual correction, appended as an ADJUSTMENT row and audited.

        Credit adjustments never expire. Debit adjustments need enough balance.
        """
        amount = parse_amount(amount)
        try:
            direction = Direction(direction)
        except ValueError:
            raise InvalidRequestError(f"Unknown direction: {direction}") from None
        if not reason or not reason.strip():
            raise InvalidRequestError("An adjustment requires a reason")

        async with self.locks.hold(user_id):
            async with self.session_factory() as db:
                async with db.begin():
                    now = self.clock()
                    wallet = await lock_wallet(db, user_id, now)

                    existing = await self._replay(
                        db, user_id, idempotency_key, TransactionType.ADJUSTMENT,
                        amount=amount, direction=direction,
                    )
                    if existing is not None:
                        return existing

                    if direction == Direction.DEBIT:
                        view = await WalletProjector.project(db, user_id, now)
                        if view.balance < amount:
                            raise InsufficientCreditsError(required=amount, available=view.balance)

                    adjustment = CreditTransaction(
                        user_id=user_id,
                        type=TransactionType.ADJUSTMENT,
                        status=TransactionStatus.COMPLETED,
                        direction=direction,
                        amount=amount,
                        description=reason.strip()[:255],
                        reference_type=ReferenceType.MANUAL,
                        idempotency_key=idempotency_key,
                        meta_data={"reason": reason, "actor_id": actor_id},
                        completed_at=now,
                        created_at=now,
                    )
                    await TransactionLedger.append(db, adjustment)
                    if direction == Direction.CREDIT:
                        wallet.apply(now, earned=amount)
                    else:
                        wallet.apply(now, spent=amount)
                    await WalletProjector.reconcile(db, wallet, now)

                    await log_event(
                        db,
                        action=AuditAction.CREDITS_ADJUSTED,
                        actor_id=actor_id,
                        target_user_id=user_id,
                        metadata={
                            "transaction_id": adjustment.id,
                            "amount": str(amount),
                            "direction": direction.value,
                            "reason": reason,
                        },
                    )

        logger.info(
            "Credits adjusted",
            extra={"user_id": user_id, "transaction_id": adjustment.id, "direction": direction.value},
        )
        return adjustment

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    async def get_wallet(self, user_id: int) -> WalletSummary:
        now = self.clock()
        async with self.session_factory() as db:
            view = await WalletProjector.project(db, user_id, now)
            wallet = await self._wallet_row(db, user_id)

        return WalletSummary(
            user_id=user_id,
            balance=view.balance,
            pending_expiry=view.pending_expiry,
            total_earned=view.total_earned,
            total_spent=view.total_spent,
            total_expired=view.total_expired,
            total_refunded=view.total_refunded,
            expiring_30_days=view.expiring_total(30),
            expiring_60_days=view.expiring_total(60),
            expiring_90_days=view.expiring_total(90),
            version=wallet.version if wallet else 0,
            updated_at=wallet.updated_at if wallet else None,
        )

    async def get_transactions(self, user_id: int, page: int = 1, limit: Optional[int] = None) -> TransactionPage:
        limit = self.settings.default_page_size if limit is None else limit
        if page < 1:
            raise InvalidRequestError("page must be at least 1", details={"page": page})
        if limit < 1 or limit > self.settings.max_page_size:
            raise InvalidRequestError(
                f"limit must be between 1 and {self.settings.max_page_size}", details={"limit": limit}
            )

        async with self.session_factory() as db:
            return await TransactionLedger.list_for_user(db, user_id, page, limit)

    async def get_expiring(self, user_id: int, days: Optional[int] = None) -> ExpiringCredits:
        """Deposits with credits left that expire within the next 'days' days."""
        days = self.settings.expiring_warning_days if days is None else days
        if days < 0:
            raise InvalidRequestError("days must not be negative", details={"days": days})

        view = await self._project(user_id)
        lots = view.expiring_within(days)
        return ExpiringCredits(
            days=days,
            total=sum((lot.remaining for lot in lots), ZERO),
            lots=tuple(lots),
        )

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    async def _project(self, user_id: int) -> WalletView:
        async with self.session_factory() as db:
            return await WalletProjector.project(db, user_id, self.clock())

    async def _wallet_row(self, db: AsyncSession, user_id: int) -> Optional[CreditWallet]:
        result = await db.execute(select(CreditWallet).where(CreditWallet.user_id == user_id))
        return result.scalar_one_or_none()

    async def _owned_transaction(
        self, db: AsyncSession, user_id: int, transaction_id: int, txn_type: TransactionType
    ) -> CreditTransaction:
        transaction = await TransactionLedger.get_for_update(db, transaction_id)
        if transaction is None or transaction.user_id != user_id or transaction.type != txn_type:
            raise TransactionNotFoundError(transaction_id)
        return transaction

    async def _replay(
        self,
        db: AsyncSession,
        user_id: int,
        idempotency_key: Optional[str],
        txn_type: TransactionType,
        reference_type: Optional[ReferenceType] = None,
        reference_id: Optional[str] = None,
        amount: Optional[Decimal] = None,
        direction: Optional[Direction] = None,
    ) -> Optional[CreditTransaction]:
        """
        Return the transaction already created under this idempotency key, if any.

        Raises:
            IdempotencyConflictError: If the key was used for a different request.
        """
        if not idempotency_key:
            return None

        existing = await TransactionLedger.find_by_idempotency_key(db, user_id, idempotency_key)
        if existing is None:
            return None

        conflict = existing.type != txn_type
        if reference_type is not None:
            conflict = conflict or existing.reference_type != reference_type or existing.reference_id != reference_id
        if amount is not None:
            conflict = conflict or existing.amount != amount
        if direction is not None:
            conflict = conflict or existing.direction != direction
        if conflict:
            raise IdempotencyConflictError(idempotency_key, existing.id)

        logger.info(
            "Idempotent replay",
            extra={"user_id": user_id, "idempotency_key": idempotency_key, "transaction_id": existing.id},
        )
        return existing

    async def _call_collaborator(self, operation: str, func: Callable, *args):
        """
        Call an external collaborator with a timeout, behind the circuit breaker.

        Raises:
            CoordinationTimeoutError, CollaboratorUnavailableError
        """
        timeout = self.settings.collaborator_timeout_seconds

        async def guarded():
            return await asyncio.wait_for(func(*args), timeout=timeout)

        try:
            return await self.breaker.call(guarded)
        except asyncio.TimeoutError:
            logger.warning("Collaborator timed out", extra={"operation": operation, "timeout": timeout})
            raise CoordinationTimeoutError(operation, timeout) from None
        except CircuitOpenError:
            logger.warning("Collaborator circuit open", extra={"operation": operation})
            raise CollaboratorUnavailableError(operation) from None
