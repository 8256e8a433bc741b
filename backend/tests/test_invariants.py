"""
Ledger Invariant Tests.

Replay checks, guarded transitions, reconciliation, adjustments and history.
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update

from backend.app.core.exceptions import (
    IdempotencyConflictError,
    InsufficientCreditsError,
    InvalidAmountError,
    InvalidReferenceError,
    InvalidRequestError,
    InvalidStatusTransitionError,
    LedgerInvariantError,
)
from backend.app.core.timeutils import add_months
from backend.app.domain.credits.ledger import TransactionLedger
from backend.app.domain.credits.projector import WalletProjector
from backend.app.models.credit_enums import (
    Direction,
    ReferenceType,
    Season,
    TransactionStatus,
    TransactionType,
)
from backend.app.models.credit_transaction import CreditTransaction
from backend.app.models.credit_wallet import CreditWallet
from backend.app.services.audit import AuditAction, get_audit_trail

T0 = datetime(2026, 1, 10, 12, 0, 0)


def row(id, type, amount, at, status=TransactionStatus.COMPLETED, direction=None, expires_at=None, reference_id=None):
    """Build an unsaved ledger row for pure replay tests."""
    if direction is None:
        direction = Direction.CREDIT if type in (TransactionType.DEPOSIT, TransactionType.REFUND) else Direction.DEBIT
    return CreditTransaction(
        id=id,
        user_id=1,
        type=type,
        status=status,
        direction=direction,
        amount=Decimal(amount),
        reference_id=reference_id,
        expires_at=expires_at,
        completed_at=at,
        created_at=at,
    )


@pytest.fixture
def fund(ledger_service, make_week):
    async def _fund(user_id: int = 1):
        week_id = await make_week(owner_id=user_id, season=Season.RED)
        result = await ledger_service.deposit_week(user_id, week_id, Season.RED, 1.0, 1.0)
        return result.transaction

    return _fund


# Replay

def test_replay_totals_add_up():
    rows = [
        row(1, TransactionType.DEPOSIT, "1000.00", T0, expires_at=add_months(T0, 6)),
        row(2, TransactionType.SPEND, "250.00", T0 + timedelta(days=1)),
        row(3, TransactionType.REFUND, "250.00", T0 + timedelta(days=2)),
    ]

    view = WalletProjector.replay(1, rows, T0 + timedelta(days=3))

    assert view.balance == Decimal("1000.00")
    assert view.total_earned == Decimal("1000.00")
    assert view.total_spent == Decimal("250.00")
    assert view.total_refunded == Decimal("250.00")
    assert view.remaining_of(1) == Decimal("750.00")
    assert view.remaining_of(3) == Decimal("250.00")


def test_replay_rejects_overdrawn_history():
    rows = [
        row(1, TransactionType.DEPOSIT, "100.00", T0, expires_at=add_months(T0, 6)),
        row(2, TransactionType.SPEND, "150.00", T0 + timedelta(hours=1)),
    ]

    with pytest.raises(LedgerInvariantError) as exc_info:
        WalletProjector.replay(1, rows, T0 + timedelta(days=1))

    assert exc_info.value.details["transaction_id"] == 2
    assert exc_info.value.details["uncovered"] == "50.00"


def test_replay_rejects_spend_from_lapsed_deposit():
    rows = [
        row(1, TransactionType.DEPOSIT, "100.00", T0, expires_at=T0 + timedelta(days=1)),
        row(2, TransactionType.SPEND, "10.00", T0 + timedelta(days=2)),
    ]

    with pytest.raises(LedgerInvariantError):
        WalletProjector.replay(1, rows, T0 + timedelta(days=3))


def test_replay_rejects_expire_row_that_does_not_match_remainder():
    rows = [
        row(1, TransactionType.DEPOSIT, "100.00", T0, status=TransactionStatus.EXPIRED, expires_at=T0 + timedelta(days=1)),
        row(2, TransactionType.SPEND, "40.00", T0 + timedelta(hours=1)),
        row(3, TransactionType.EXPIRE, "100.00", T0 + timedelta(days=1), reference_id="1"),
    ]

    with pytest.raises(LedgerInvariantError):
        WalletProjector.replay(1, rows, T0 + timedelta(days=2))


def test_replay_ignores_pending_and_cancelled_deposits():
    rows = [
        row(1, TransactionType.DEPOSIT, "100.00", T0, status=TransactionStatus.PENDING),
        row(2, TransactionType.DEPOSIT, "200.00", T0, status=TransactionStatus.CANCELLED),
    ]
    rows[0].completed_at = None
    rows[1].completed_at = None

    view = WalletProjector.replay(1, rows, T0)

    assert view.balance == Decimal("0.00")
    assert view.total_earned == Decimal("0.00")


# Ledger rules

@pytest.mark.parametrize("txn_type,reference_type,reference_id", [
    (TransactionType.DEPOSIT, ReferenceType.BOOKING, "1"),
    (TransactionType.DEPOSIT, ReferenceType.WEEK, None),
    (TransactionType.REFUND, ReferenceType.BOOKING, "1"),
    (TransactionType.EXPIRE, None, "1"),
    (TransactionType.ADJUSTMENT, None, "1"),
])
def test_invalid_references(txn_type, reference_type, reference_id):
    with pytest.raises(InvalidReferenceError):
        TransactionLedger.validate_reference(txn_type, reference_type, reference_id)


def test_adjustment_reference_is_optional():
    TransactionLedger.validate_reference(TransactionType.ADJUSTMENT, None, None)
    TransactionLedger.validate_reference(TransactionType.ADJUSTMENT, ReferenceType.MANUAL, None)


@pytest.mark.asyncio
async def test_append_rejects_bad_rows(db_session):
    with pytest.raises(InvalidAmountError):
        await TransactionLedger.append(db_session, row(None, TransactionType.SPEND, "1.005", T0))

    with pytest.raises(ValueError):
        await TransactionLedger.append(
            db_session, row(None, TransactionType.SPEND, "1.00", T0, direction=Direction.CREDIT)
        )

    # Refunds never carry an expiration date
    refund = row(None, TransactionType.REFUND, "1.00", T0, expires_at=T0)
    refund.reference_type = ReferenceType.TRANSACTION
    refund.reference_id = "1"
    with pytest.raises(ValueError):
        await TransactionLedger.append(db_session, refund)


@pytest.mark.parametrize("txn_type,current,requested", [
    (TransactionType.SPEND, TransactionStatus.COMPLETED, TransactionStatus.EXPIRED),
    (TransactionType.DEPOSIT, TransactionStatus.EXPIRED, TransactionStatus.COMPLETED),
    (TransactionType.DEPOSIT, TransactionStatus.CANCELLED, TransactionStatus.COMPLETED),
    (TransactionType.SPEND, TransactionStatus.REFUNDED, TransactionStatus.COMPLETED),
    (TransactionType.REFUND, TransactionStatus.COMPLETED, TransactionStatus.REFUNDED),
])
@pytest.mark.asyncio
async def test_illegal_status_transitions(db_session, txn_type, current, requested):
    transaction = row(5, txn_type, "10.00", T0, status=current)

    with pytest.raises(InvalidStatusTransitionError):
        await TransactionLedger.transition(
            db_session, transaction, requested, completed_at=T0, expires_at=T0
        )

    assert transaction.status == current


# Reconciliation

@pytest.mark.asyncio
async def test_tampered_wallet_is_detected_and_rolled_back(ledger_service, fund, session_factory):
    await fund()

    async with session_factory() as session:
        async with session.begin():
            await session.execute(
                update(CreditWallet).where(CreditWallet.user_id == 1).values(balance=Decimal("5000.00"))
            )

    with pytest.raises(LedgerInvariantError) as exc_info:
        await ledger_service.spend_credits(1, 100, ReferenceType.BOOKING, "bk-1")

    assert "balance" in exc_info.value.details
    async with session_factory() as session:
        spends = await session.scalar(
            select(func.count()).select_from(CreditTransaction).where(
                CreditTransaction.type == TransactionType.SPEND
            )
        )
    assert spends == 0


# Adjustments

@pytest.mark.asyncio
async def test_credit_adjustment_is_audited_and_never_expires(ledger_service, clock, db_session):
    start = clock.now
    adjustment = await ledger_service.adjust_credits(1, "50.00", "CREDIT", "Goodwill", actor_id=99)

    assert adjustment.type == TransactionType.ADJUSTMENT
    assert adjustment.reference_type == ReferenceType.MANUAL
    assert adjustment.expires_at is None

    clock.set(add_months(start, 24))
    wallet = await ledger_service.get_wallet(1)
    assert wallet.balance == Decimal("50.00")
    assert wallet.total_earned == Decimal("50.00")

    logs = await get_audit_trail(db_session, target_user_id=1, action=AuditAction.CREDITS_ADJUSTED)
    assert len(logs) == 1
    assert logs[0].actor_id == 99
    assert logs[0].meta_data["transaction_id"] == adjustment.id
    assert logs[0].meta_data["direction"] == "CREDIT"


@pytest.mark.asyncio
async def test_debit_adjustment_needs_balance(ledger_service, fund):
    await fund()

    debit = await ledger_service.adjust_credits(1, 200, Direction.DEBIT, "Duplicate deposit correction")
    assert debit.direction == Direction.DEBIT

    wallet = await ledger_service.get_wallet(1)
    assert wallet.balance == Decimal("800.00")
    assert wallet.total_spent == Decimal("200.00")

    with pytest.raises(InsufficientCreditsError):
        await ledger_service.adjust_credits(1, "800.01", Direction.DEBIT, "Too much")


@pytest.mark.parametrize("direction,reason", [
    ("SIDEWAYS", "reason"),
    (Direction.CREDIT, ""),
    (Direction.CREDIT, "   "),
])
@pytest.mark.asyncio
async def test_invalid_adjustments(ledger_service, direction, reason):
    with pytest.raises(InvalidRequestError):
        await ledger_service.adjust_credits(1, 10, direction, reason)


# History

@pytest.mark.asyncio
async def test_history_is_newest_first_and_paginated(ledger_service, fund, clock):
    deposit = await fund()
    spends = []
    for i in range(3):
        clock.advance(minutes=5)
        spends.append(await ledger_service.spend_credits(1, 10 + i, ReferenceType.BOOKING, f"bk-{i}"))

    first = await ledger_service.get_transactions(1, page=1, limit=2)
    assert first.total == 4
    assert [t.id for t in first.items] == [spends[2].id, spends[1].id]

    second = await ledger_service.get_transactions(1, page=2, limit=2)
    assert [t.id for t in second.items] == [spends[0].id, deposit.id]

    empty = await ledger_service.get_transactions(1, page=3, limit=2)
    assert empty.items == []

    other_user = await ledger_service.get_transactions(2)
    assert other_user.total == 0


@pytest.mark.parametrize("page,limit", [(0, 10), (1, 0), (1, 101)])
@pytest.mark.asyncio
async def test_history_rejects_bad_pagination(ledger_service, page, limit):
    with pytest.raises(InvalidRequestError):
        await ledger_service.get_transactions(1, page=page, limit=limit)


@pytest.mark.asyncio
async def test_sum_by_type_and_status(ledger_service, fund, db_session):
    await fund()
    first = await ledger_service.spend_credits(1, "10.25", ReferenceType.BOOKING, "bk-1")
    await ledger_service.spend_credits(1, "4.75", ReferenceType.SWAP, "sw-1")
    await ledger_service.refund_credits(1, first.id)

    completed = await TransactionLedger.sum_by_type_and_status(
        db_session, 1, TransactionType.SPEND, TransactionStatus.COMPLETED
    )
    refunded = await TransactionLedger.sum_by_type_and_status(
        db_session, 1, TransactionType.SPEND, TransactionStatus.REFUNDED
    )
    nothing = await TransactionLedger.sum_by_type_and_status(
        db_session, 1, TransactionType.EXPIRE, TransactionStatus.COMPLETED
    )

    assert completed == Decimal("4.75")
    assert refunded == Decimal("10.25")
    assert nothing == Decimal("0.00")


@pytest.mark.asyncio
async def test_adjustment_key_reused_for_other_direction_conflicts(ledger_service, fund):
    await fund()
    credit = await ledger_service.adjust_credits(1, 50, Direction.CREDIT, "Goodwill", idempotency_key="adj-1")

    with pytest.raises(IdempotencyConflictError):
        await ledger_service.adjust_credits(1, 50, Direction.DEBIT, "Goodwill", idempotency_key="adj-1")

    replay = await ledger_service.adjust_credits(1, 50, Direction.CREDIT, "Goodwill", idempotency_key="adj-1")
    assert replay.id == credit.id
    assert (await ledger_service.get_wallet(1)).balance == Decimal("1050.00")
