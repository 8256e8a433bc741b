"""
Transaction Ledger.

Append-only store of CreditTransaction rows. Nothing here commits:
callers own the transaction boundary (flush here, commit in the caller).
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Collection, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import (
    InvalidAmountError,
    InvalidReferenceError,
    InvalidStatusTransitionError,
)
from backend.app.domain.credits.amounts import ZERO, quantize
from backend.app.models.credit_enums import Direction, ReferenceType, TransactionStatus, TransactionType
from backend.app.models.credit_transaction import CreditTransaction

# (type, current status) -> statuses it may move to
ALLOWED_TRANSITIONS = {
    (TransactionType.DEPOSIT, TransactionStatus.PENDING): {
        TransactionStatus.COMPLETED,
        TransactionStatus.CANCELLED,
    },
    (TransactionType.DEPOSIT, TransactionStatus.COMPLETED): {TransactionStatus.EXPIRED},
    (TransactionType.SPEND, TransactionStatus.COMPLETED): {TransactionStatus.REFUNDED},
}

# Allowed reference types per transaction type; None means optional/any
REFERENCE_RULES = {
    TransactionType.DEPOSIT: {ReferenceType.WEEK},
    TransactionType.SPEND: {ReferenceType.BOOKING, ReferenceType.SWAP},
    TransactionType.REFUND: {ReferenceType.TRANSACTION},
    TransactionType.EXPIRE: {ReferenceType.TRANSACTION},
    TransactionType.ADJUSTMENT: None,
}

FIXED_DIRECTIONS = {
    TransactionType.DEPOSIT: Direction.CREDIT,
    TransactionType.SPEND: Direction.DEBIT,
    TransactionType.REFUND: Direction.CREDIT,
    TransactionType.EXPIRE: Direction.DEBIT,
}


@dataclass(frozen=True)
class TransactionPage:
    items: List[CreditTransaction]
    total: int
    page: int
    limit: int


class TransactionLedger:

    @staticmethod
    def validate_reference(
        txn_type: TransactionType,
        reference_type: Optional[ReferenceType],
        reference_id: Optional[str],
    ) -> None:
        """
        Check the (reference_type, reference_id) pair allowed for a transaction type.

        Raises:
            InvalidReferenceError
        """
        allowed = REFERENCE_RULES[txn_type]
        if allowed is None:
            if reference_id is not None and reference_type is None:
                raise InvalidReferenceError(
                    "reference_id given without reference_type", reference_type, reference_id
                )
            return

        if reference_type not in allowed:
            names = ", ".join(sorted(r.value for r in allowed))
            raise InvalidReferenceError(
                f"{txn_type.value} must reference one of: {names}", reference_type, reference_id
            )
        if reference_id is None or not str(reference_id).strip():
            raise InvalidReferenceError(
                f"{txn_type.value} requires a reference_id", reference_type, reference_id
            )

    @staticmethod
    async def append(db: AsyncSession, transaction: CreditTransaction) -> int:
        """
        Validate and insert a new ledger row.

        Returns:
            The new transaction ID
        """
        amount = transaction.amount
        if amount is None or amount <= 0 or quantize(amount) != amount:
            raise InvalidAmountError(amount)

        expected_direction = FIXED_DIRECTIONS.get(transaction.type)
        if expected_direction is not None and transaction.direction != expected_direction:
            raise ValueError(
                f"{transaction.type.value} rows must be {expected_direction.value}, "
                f"got {transaction.direction}"
            )

        if transaction.type == TransactionType.DEPOSIT:
            if transaction.status not in (TransactionStatus.PENDING, TransactionStatus.COMPLETED):
                raise ValueError(f"New deposits must be PENDING or COMPLETED, got {transaction.status}")
            if (transaction.status == TransactionStatus.COMPLETED) != (transaction.expires_at is not None):
                raise ValueError("expires_at is set on exactly the COMPLETED deposits")
        else:
            if transaction.status != TransactionStatus.COMPLETED:
                raise ValueError(f"New {transaction.type.value} rows must be COMPLETED")
            if transaction.expires_at is not None:
                raise ValueError(f"{transaction.type.value} rows never expire")

        TransactionLedger.validate_reference(
            transaction.type, transaction.reference_type, transaction.reference_id
        )

        db.add(transaction)
        await db.flush()
        return transaction.id

    @staticmethod
    async def transition(
        db: AsyncSession,
        transaction: CreditTransaction,
        new_status: TransactionStatus,
        completed_at: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
    ) -> CreditTransaction:
        """
        The only in-place mutation of a ledger row.

        Must be called while holding the owner's wallet lock.

        Raises:
            InvalidStatusTransitionError
        """
        allowed = ALLOWED_TRANSITIONS.get((transaction.type, transaction.status), set())
        if new_status not in allowed:
            raise InvalidStatusTransitionError(
                transaction.id, transaction.status.value, new_status.value
            )

        if new_status == TransactionStatus.COMPLETED:
            if completed_at is None or expires_at is None:
                raise ValueError("Completing a deposit requires completed_at and expires_at")
            transaction.completed_at = completed_at
            transaction.expires_at = expires_at

        transaction.status = new_status
        await db.flush()
        return transaction

    @staticmethod
    async def get(db: AsyncSession, transaction_id: int) -> Optional[CreditTransaction]:
        return await db.get(CreditTransaction, transaction_id)

    @staticmethod
    async def get_for_update(db: AsyncSession, transaction_id: int) -> Optional[CreditTransaction]:
        result = await db.execute(
            select(CreditTransaction)
            .where(CreditTransaction.id == transaction_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def find_by_idempotency_key(
        db: AsyncSession, user_id: int, idempotency_key: str
    ) -> Optional[CreditTransaction]:
        result = await db.execute(
            select(CreditTransaction).where(
                CreditTransaction.user_id == user_id,
                CreditTransaction.idempotency_key == idempotency_key,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def find_refund_for(db: AsyncSession, spend_id: int) -> Optional[CreditTransaction]:
        result = await db.execute(
            select(CreditTransaction).where(CreditTransaction.refund_of_id == spend_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def history(db: AsyncSession, user_id: int) -> List[CreditTransaction]:
        """All rows for a user in insertion order."""
        result = await db.execute(
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.id)
        )
        return list(result.scalars().all())

    @staticmethod
    async def list_for_user(db: AsyncSession, user_id: int, page: int, page_size: int) -> TransactionPage:
        """Newest first."""
        total = await db.scalar(
            select(func.count())
            .select_from(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
        )

        result = await db.execute(
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return TransactionPage(
            items=list(result.scalars().all()),
            total=total or 0,
            page=page,
            limit=page_size,
        )

    @staticmethod
    async def sum_by_type_and_status(
        db: AsyncSession,
        user_id: int,
        txn_type: TransactionType,
        status: TransactionStatus,
    ) -> Decimal:
        total = await db.scalar(
            select(func.sum(CreditTransaction.amount)).where(
                CreditTransaction.user_id == user_id,
                CreditTransaction.type == txn_type,
                CreditTransaction.status == status,
            )
        )
        if total is None:
            return ZERO
        return quantize(Decimal(str(total)))

    @staticmethod
    async def due_for_expiry(
        db: AsyncSession, now: datetime, limit: int, exclude_ids: Collection[int] = ()
    ) -> List[Tuple[int, int]]:
        """(transaction_id, user_id) of COMPLETED deposits whose expiration date has passed."""
        query = select(CreditTransaction.id, CreditTransaction.user_id).where(
            CreditTransaction.type == TransactionType.DEPOSIT,
            CreditTransaction.status == TransactionStatus.COMPLETED,
            CreditTransaction.expires_at <= now,
        )
        if exclude_ids:
            query = query.where(CreditTransaction.id.notin_(list(exclude_ids)))
        result = await db.execute(
            query
            .order_by(CreditTransaction.expires_at, CreditTransaction.id)
            .limit(limit)
        )
        return [(row[0], row[1]) for row in result.all()]
