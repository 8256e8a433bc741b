"""
Wallet Projector.

Derives a wallet from the ledger by replaying it as credit lots:

- DEPOSIT (COMPLETED/EXPIRED), REFUND and CREDIT ADJUSTMENT rows open lots.
  Only deposit lots expire; refunds and credit adjustments never do.
- SPEND (COMPLETED/REFUNDED) and DEBIT ADJUSTMENT rows draw from the lots
  alive at their creation time, soonest expiry first, non-expiring lots last.
- EXPIRE rows close the lot of the deposit they reference.

Balance is lazily expiry-aware: a lot past its expiration date stops counting
at that instant, whether or not the sweep has reconciled it yet. What the sweep
has not reconciled yet is reported separately as pending_expiry.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import LedgerInvariantError
from backend.app.domain.credits.amounts import ZERO
from backend.app.domain.credits.ledger import TransactionLedger
from backend.app.models.credit_enums import Direction, TransactionStatus, TransactionType
from backend.app.models.credit_transaction import CreditTransaction
from backend.app.models.credit_wallet import CreditWallet

logger = logging.getLogger("credit_ledger.projector")

COUNTED_DEPOSIT_STATUSES = (TransactionStatus.COMPLETED, TransactionStatus.EXPIRED)
COUNTED_SPEND_STATUSES = (TransactionStatus.COMPLETED, TransactionStatus.REFUNDED)


@dataclass
class CreditLot:
    transaction: CreditTransaction
    amount: Decimal
    remaining: Decimal
    opened_at: datetime
    expires_at: Optional[datetime]
    closed: bool = False

    def is_live(self, at: datetime) -> bool:
        return not self.closed and (self.expires_at is None or self.expires_at > at)

    def sort_key(self):
        # Soonest expiry first, non-expiring last, then oldest first
        return (
            self.expires_at is None,
            self.expires_at or datetime.max,
            self.opened_at,
            self.transaction.id,
        )


@dataclass(frozen=True)
class WalletView:
    user_id: int
    as_of: datetime
    balance: Decimal
    pending_expiry: Decimal
    total_earned: Decimal
    total_spent: Decimal
    total_expired: Decimal
    total_refunded: Decimal
    lots: Tuple[CreditLot, ...] = field(default=())

    def remaining_of(self, transaction_id: int) -> Decimal:
        for lot in self.lots:
            if lot.transaction.id == transaction_id:
                return lot.remaining
        return ZERO

    def expiring_within(self, days: int) -> List[CreditLot]:
        """Live deposit lots with credits left that expire in (as_of, as_of + days]."""
        horizon = self.as_of + timedelta(days=days)
        lots = [
            lot for lot in self.lots
            if lot.expires_at is not None
            and lot.is_live(self.as_of)
            and lot.expires_at <= horizon
            and lot.remaining > 0
        ]
        return sorted(lots, key=CreditLot.sort_key)

    def expiring_total(self, days: int) -> Decimal:
        return sum((lot.remaining for lot in self.expiring_within(days)), ZERO)


class WalletProjector:

    @staticmethod
    async def project(db: AsyncSession, user_id: int, now: datetime) -> WalletView:
        """Recompute the wallet from the full ledger history."""
        rows = await TransactionLedger.history(db, user_id)
        return WalletProjector.replay(user_id, rows, now)

    @staticmethod
    def replay(user_id: int, rows: Iterable[CreditTransaction], now: datetime) -> WalletView:
        lots: List[CreditLot] = []
        lots_by_txn: Dict[int, CreditLot] = {}
        earned = spent = expired = refunded = ZERO

        events = [row for row in rows if row.effective_at is not None]
        events.sort(key=lambda row: (row.effective_at, row.id))

        for row in events:
            at = row.effective_at

            if row.type == TransactionType.DEPOSIT:
                if row.status not in COUNTED_DEPOSIT_STATUSES:
                    continue
                earned += row.amount
                lot = CreditLot(row, row.amount, row.amount, at, row.expires_at)

            elif row.type == TransactionType.REFUND:
                refunded += row.amount
                lot = CreditLot(row, row.amount, row.amount, at, None)

            elif row.type == TransactionType.ADJUSTMENT and row.direction == Direction.CREDIT:
                earned += row.amount
                lot = CreditLot(row, row.amount, row.amount, at, None)

            elif row.type == TransactionType.EXPIRE:
                WalletProjector._close(user_id, row, lots_by_txn)
                expired += row.amount
                continue

            else:
                # SPEND or DEBIT ADJUSTMENT
                if row.type == TransactionType.SPEND and row.status not in COUNTED_SPEND_STATUSES:
                    continue
                WalletProjector._consume(user_id, row, lots, at)
                spent += row.amount
                continue

            lots.append(lot)
            lots_by_txn[row.id] = lot

        balance = sum((lot.remaining for lot in lots if lot.is_live(now)), ZERO)
        pending = sum(
            (lot.remaining for lot in lots if not lot.closed and not lot.is_live(now)), ZERO
        )

        if balance < 0 or pending < 0:
            raise LedgerInvariantError(user_id, "Projected balance is negative")
        if balance + pending != earned + refunded - spent - expired:
            raise LedgerInvariantError(
                user_id,
                "Projected lots do not add up to ledger totals",
                {"balance": str(balance), "pending_expiry": str(pending)},
            )

        return WalletView(
            user_id=user_id,
            as_of=now,
            balance=balance,
            pending_expiry=pending,
            total_earned=earned,
            total_spent=spent,
            total_expired=expired,
            total_refunded=refunded,
            lots=tuple(lot for lot in lots if not lot.closed and lot.remaining > 0),
        )

    @staticmethod
    def _consume(user_id: int, row: CreditTransaction, lots: List[CreditLot], at: datetime) -> None:
        outstanding = row.amount
        live = [candidate for candidate in lots if candidate.remaining > 0 and candidate.is_live(at)]
        for lot in sorted(live, key=CreditLot.sort_key):
            drawn = min(lot.remaining, outstanding)
            lot.remaining -= drawn
            outstanding -= drawn
            if outstanding == 0:
                return
        raise LedgerInvariantError(
            user_id,
            f"Transaction {row.id} debits more credits than were available",
            {"transaction_id": row.id, "uncovered": str(outstanding)},
        )

    @staticmethod
    def _close(user_id: int, row: CreditTransaction, lots_by_txn: Dict[int, CreditLot]) -> None:
        lot = lots_by_txn.get(int(row.reference_id)) if row.reference_id else None
        if lot is None or lot.closed or lot.remaining != row.amount:
            raise LedgerInvariantError(
                user_id,
                f"Expiration {row.id} does not match the remainder of its deposit",
                {
                    "transaction_id": row.id,
                    "deposit_id": row.reference_id,
                    "remaining": None if lot is None else str(lot.remaining),
                },
            )
        lot.remaining = ZERO
        lot.closed = True

    @staticmethod
    async def reconcile(db: AsyncSession, wallet: CreditWallet, now: datetime) -> WalletView:
        """
        Compare the maintained wallet row with a fresh projection.

        The stored balance still includes pending_expiry (only the sweep removes it).

        Raises:
            LedgerInvariantError: On any mismatch.
        """
        view = await WalletProjector.project(db, wallet.user_id, now)
        expected = {
            "balance": view.balance + view.pending_expiry,
            "total_earned": view.total_earned,
            "total_spent": view.total_spent,
            "total_expired": view.total_expired,
            "total_refunded": view.total_refunded,
        }
        mismatches = {
            name: {"wallet": str(getattr(wallet, name)), "ledger": str(value)}
            for name, value in expected.items()
            if getattr(wallet, name) != value
        }
        if mismatches:
            logger.critical(
                "Wallet aggregates diverged from ledger",
                extra={"user_id": wallet.user_id, "mismatches": mismatches},
            )
            raise LedgerInvariantError(wallet.user_id, "Wallet aggregates diverged from ledger", mismatches)
        return view


async def lock_wallet(db: AsyncSession, user_id: int, now: datetime) -> CreditWallet:
    """
    Select the user's wallet row FOR UPDATE, creating it on first use.

    Serializes writers for the same user across processes.
    """
    result = await db.execute(
        select(CreditWallet).where(CreditWallet.user_id == user_id).with_for_update()
    )
    wallet = result.scalar_one_or_none()
    if wallet is None:
        wallet = CreditWallet.empty(user_id, now)
        db.add(wallet)
        await db.flush()
    return wallet
