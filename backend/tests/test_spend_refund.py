"""
Spend and Refund Tests.

Debits, FIFO lot consumption, full refunds and affordability checks.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from backend.app.core.exceptions import (
    AlreadyRefundedError,
    IdempotencyConflictError,
    InsufficientCreditsError,
    InvalidAmountError,
    InvalidReferenceError,
    NotRefundableError,
    TransactionNotFoundError,
)
from backend.app.core.timeutils import add_months
from backend.app.models.credit_enums import (
    Direction,
    ReferenceType,
    Season,
    TransactionStatus,
    TransactionType,
)


@pytest.fixture
def fund(ledger_service, make_week):
    """Deposit a week for a user. Default inputs earn 1000 credits."""
    async def _fund(user_id: int, season: Season = Season.RED, location="STANDARD", room="STANDARD"):
        week_id = await make_week(owner_id=user_id, season=season)
        result = await ledger_service.deposit_week(user_id, week_id, season, location, room)
        return result.transaction

    return _fund


@pytest.mark.asyncio
async def test_spend_debits_balance(ledger_service, fund):
    await fund(1)

    spend = await ledger_service.spend_credits(1, "250.50", ReferenceType.BOOKING, "bk-100")

    assert spend.type == TransactionType.SPEND
    assert spend.direction == Direction.DEBIT
    assert spend.status == TransactionStatus.COMPLETED
    assert spend.amount == Decimal("250.50")
    assert spend.reference_id == "bk-100"

    wallet = await ledger_service.get_wallet(1)
    assert wallet.balance == Decimal("749.50")
    assert wallet.total_spent == Decimal("250.50")
    assert wallet.version == 2


@pytest.mark.asyncio
async def test_spend_exact_balance_reaches_zero(ledger_service, fund):
    await fund(1)

    await ledger_service.spend_credits(1, 1000, "BOOKING", "bk-1")

    wallet = await ledger_service.get_wallet(1)
    assert wallet.balance == Decimal("0.00")


@pytest.mark.asyncio
async def test_insufficient_credits_reports_shortfall(ledger_service, fund):
    await fund(1, season=Season.BLUE)

    with pytest.raises(InsufficientCreditsError) as exc_info:
        await ledger_service.spend_credits(1, "300.01", ReferenceType.SWAP, "sw-1")

    assert exc_info.value.shortfall == Decimal("0.01")
    assert exc_info.value.status_code == 402

    wallet = await ledger_service.get_wallet(1)
    assert wallet.balance == Decimal("300.00")
    assert wallet.total_spent == Decimal("0.00")


@pytest.mark.asyncio
async def test_spend_with_empty_wallet_is_rejected(ledger_service):
    with pytest.raises(InsufficientCreditsError):
        await ledger_service.spend_credits(7, 1, ReferenceType.BOOKING, "bk-1")


@pytest.mark.parametrize("amount", [0, -5, "12.345", "abc", None, True])
@pytest.mark.asyncio
async def test_invalid_spend_amounts(ledger_service, fund, amount):
    await fund(1)

    with pytest.raises(InvalidAmountError):
        await ledger_service.spend_credits(1, amount, ReferenceType.BOOKING, "bk-1")


@pytest.mark.parametrize("reference_type,reference_id", [
    (ReferenceType.WEEK, "1"),
    (ReferenceType.TRANSACTION, "1"),
    ("HOTEL", "1"),
    (ReferenceType.BOOKING, None),
    (ReferenceType.BOOKING, "  "),
])
@pytest.mark.asyncio
async def test_spend_reference_must_be_booking_or_swap(ledger_service, fund, reference_type, reference_id):
    await fund(1)

    with pytest.raises(InvalidReferenceError):
        await ledger_service.spend_credits(1, 10, reference_type, reference_id)


@pytest.mark.asyncio
async def test_refund_restores_balance_and_marks_spend(ledger_service, fund):
    await fund(1)
    spend = await ledger_service.spend_credits(1, 400, ReferenceType.BOOKING, "bk-1")

    refund = await ledger_service.refund_credits(1, spend.id)

    assert refund.type == TransactionType.REFUND
    assert refund.direction == Direction.CREDIT
    assert refund.amount == Decimal("400.00")
    assert refund.refund_of_id == spend.id
    assert refund.reference_type == ReferenceType.TRANSACTION
    assert refund.expires_at is None

    wallet = await ledger_service.get_wallet(1)
    assert wallet.balance == Decimal("1000.00")
    assert wallet.total_spent == Decimal("400.00")
    assert wallet.total_refunded == Decimal("400.00")

    page = await ledger_service.get_transactions(1)
    statuses = {txn.id: txn.status for txn in page.items}
    assert statuses[spend.id] == TransactionStatus.REFUNDED


@pytest.mark.asyncio
async def test_spending_everything_then_refunding_restores_the_balance(ledger_service, fund):
    await fund(1)
    spend = await ledger_service.spend_credits(1, 1000, ReferenceType.BOOKING, "bk-all")
    assert (await ledger_service.get_wallet(1)).balance == Decimal("0.00")

    await ledger_service.refund_credits(1, spend.id)

    wallet = await ledger_service.get_wallet(1)
    assert wallet.balance == Decimal("1000.00")
    assert wallet.balance == wallet.total_earned
    assert wallet.total_spent == wallet.total_refunded == Decimal("1000.00")


@pytest.mark.asyncio
async def test_spend_can_be_refunded_only_once(ledger_service, fund):
    await fund(1)
    spend = await ledger_service.spend_credits(1, 100, ReferenceType.BOOKING, "bk-1")
    await ledger_service.refund_credits(1, spend.id)

    with pytest.raises(AlreadyRefundedError):
        await ledger_service.refund_credits(1, spend.id)

    wallet = await ledger_service.get_wallet(1)
    assert wallet.balance == Decimal("1000.00")


@pytest.mark.asyncio
async def test_refund_rejects_other_users_and_missing_transactions(ledger_service, fund):
    await fund(1)
    spend = await ledger_service.spend_credits(1, 100, ReferenceType.BOOKING, "bk-1")

    with pytest.raises(TransactionNotFoundError):
        await ledger_service.refund_credits(2, spend.id)

    with pytest.raises(TransactionNotFoundError):
        await ledger_service.refund_credits(1, 9999)


@pytest.mark.asyncio
async def test_only_spends_are_refundable(ledger_service, fund):
    deposit = await fund(1)

    with pytest.raises(NotRefundableError):
        await ledger_service.refund_credits(1, deposit.id)


@pytest.mark.asyncio
async def test_spend_draws_from_soonest_expiring_deposit(ledger_service, fund, clock):
    start = clock.now
    first = await fund(1)
    clock.advance(days=31)
    second = await fund(1, season=Season.BLUE)

    await ledger_service.spend_credits(1, 300, ReferenceType.BOOKING, "bk-1")

    expiring = await ledger_service.get_expiring(1, days=365)
    remaining = {lot.transaction.id: lot.remaining for lot in expiring.lots}
    assert remaining == {first.id: Decimal("700.00"), second.id: Decimal("300.00")}

    # Once the first deposit lapses only the untouched second one is spendable
    clock.set(add_months(start, 6) + timedelta(days=1))
    wallet = await ledger_service.get_wallet(1)
    assert wallet.balance == Decimal("300.00")
    assert wallet.pending_expiry == Decimal("700.00")


@pytest.mark.asyncio
async def test_refunded_credits_do_not_expire(ledger_service, fund, clock):
    start = clock.now
    await fund(1)
    spend = await ledger_service.spend_credits(1, 500, ReferenceType.BOOKING, "bk-1")
    await ledger_service.refund_credits(1, spend.id)

    clock.set(add_months(start, 6) + timedelta(days=1))

    wallet = await ledger_service.get_wallet(1)
    assert wallet.balance == Decimal("500.00")
    assert wallet.pending_expiry == Decimal("500.00")

    # The refund lot is still spendable after the deposit lapsed
    await ledger_service.spend_credits(1, 500, ReferenceType.SWAP, "sw-1")
    wallet = await ledger_service.get_wallet(1)
    assert wallet.balance == Decimal("0.00")


@pytest.mark.asyncio
async def test_expired_credits_cannot_be_spent_before_sweep(ledger_service, fund, clock):
    start = clock.now
    await fund(1)
    clock.set(add_months(start, 6))

    with pytest.raises(InsufficientCreditsError) as exc_info:
        await ledger_service.spend_credits(1, 1, ReferenceType.BOOKING, "bk-1")

    assert exc_info.value.available == Decimal("0.00")


@pytest.mark.asyncio
async def test_affordability_and_payment_plan(ledger_service, fund):
    await fund(1)

    enough = await ledger_service.check_affordability(1, "1000")
    assert enough.can_afford is True
    assert enough.shortfall == Decimal("0.00")

    short = await ledger_service.check_affordability(1, "1000.01")
    assert short.can_afford is False
    assert short.shortfall == Decimal("0.01")

    plan = await ledger_service.plan_payment(1, 1500)
    assert plan.credits_applied == Decimal("1000.00")
    assert plan.credit_shortfall == Decimal("500.00")
    assert plan.cash_required == Decimal("500.00")

    covered = await ledger_service.plan_payment(1, 200)
    assert covered.credits_applied == Decimal("200.00")
    assert covered.cash_required == Decimal("0.00")


@pytest.mark.asyncio
async def test_affordability_rejects_negative_amount(ledger_service):
    with pytest.raises(InvalidAmountError):
        await ledger_service.check_affordability(1, -1)


@pytest.mark.asyncio
async def test_spend_retry_with_same_key_is_applied_once(ledger_service, fund):
    await fund(1)

    first = await ledger_service.spend_credits(1, 100, ReferenceType.BOOKING, "bk-1", idempotency_key="spend-1")
    second = await ledger_service.spend_credits(1, 100, ReferenceType.BOOKING, "bk-1", idempotency_key="spend-1")

    assert second.id == first.id
    wallet = await ledger_service.get_wallet(1)
    assert wallet.balance == Decimal("900.00")

    with pytest.raises(IdempotencyConflictError):
        await ledger_service.spend_credits(1, 150, ReferenceType.BOOKING, "bk-1", idempotency_key="spend-1")


@pytest.mark.asyncio
async def test_refund_retry_with_same_key_is_applied_once(ledger_service, fund):
    await fund(1)
    spend = await ledger_service.spend_credits(1, 100, ReferenceType.BOOKING, "bk-1")

    first = await ledger_service.refund_credits(1, spend.id, idempotency_key="refund-1")
    second = await ledger_service.refund_credits(1, spend.id, idempotency_key="refund-1")

    assert second.id == first.id
    wallet = await ledger_service.get_wallet(1)
    assert wallet.total_refunded == Decimal("100.00")
