"""
Expiration Scheduler.

Moves past-due COMPLETED deposits to EXPIRED and books the credits they
still held as an EXPIRE row. Runs daily through APScheduler and on demand.

Each deposit is its own atomic unit under its owner's lock, so a failure on
one row is recorded in the dead letter queue and the sweep carries on.
Re-running is a no-op for rows that are already EXPIRED.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from backend.app.core.config import Settings, settings as default_settings
from backend.app.core.exceptions import AppException, InvalidRequestError, ResourceNotFoundError
from backend.app.core.timeutils import utcnow
from backend.app.domain.credits.amounts import ZERO
from backend.app.domain.credits.ledger import TransactionLedger
from backend.app.domain.credits.locks import UserLockRegistry
from backend.app.domain.credits.projector import WalletProjector, lock_wallet
from backend.app.models.credit_enums import Direction, ReferenceType, TransactionStatus, TransactionType
from backend.app.models.credit_transaction import CreditTransaction
from backend.app.models.dlq import DeadLetterQueue, DLQStatus
from backend.app.services.audit import AuditAction, log_event

logger = logging.getLogger("credit_ledger.expiration")

SWEEP_JOB_ID = "credit-expiration-sweep"
SWEEP_TASK_NAME = "credit_expiration"


@dataclass
class SweepReport:
    started_at: datetime
    examined: int = 0
    expired: int = 0
    skipped: int = 0
    failed: int = 0
    credits_expired: Decimal = field(default=ZERO)

    def as_dict(self) -> Dict[str, str]:
        return {
            "started_at": self.started_at.isoformat(),
            "examined": str(self.examined),
            "expired": str(self.expired),
            "skipped": str(self.skipped),
            "failed": str(self.failed),
            "credits_expired": str(self.credits_expired),
        }


class ExpirationScheduler:

    def __init__(
        self,
        session_factory: async_sessionmaker,
        locks: UserLockRegistry,
        *,
        settings: Settings = default_settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.locks = locks
        self.settings = settings
        self.clock = clock
        self._scheduler: Optional[AsyncIOScheduler] = None

    async def sweep(self) -> SweepReport:
        """Expire every deposit that is past due as of now, one batch at a time."""
        now = self.clock()
        report = SweepReport(started_at=now)
        batch_size = self.settings.expiration_sweep_batch_size
        passed_over: Set[int] = set()

        while True:
            async with self.session_factory() as db:
                due = await TransactionLedger.due_for_expiry(db, now, batch_size, exclude_ids=passed_over)

            for transaction_id, user_id in due:
                report.examined += 1
                try:
                    async with self.locks.hold(user_id):
                        remainder = await self._expire_one(transaction_id, user_id, now)
                except Exception as exc:
                    report.failed += 1
                    passed_over.add(transaction_id)
                    logger.error(
                        "Failed to expire deposit",
                        exc_info=True,
                        extra={"transaction_id": transaction_id, "user_id": user_id},
                    )
                    await self._dead_letter(transaction_id, user_id, exc, now)
                    continue

                if remainder is None:
                    report.skipped += 1
                    passed_over.add(transaction_id)
                else:
                    report.expired += 1
                    report.credits_expired += remainder

            if len(due) < batch_size:
                break

        async with self.session_factory() as db:
            async with db.begin():
                await log_event(db, action=AuditAction.EXPIRATION_SWEEP_COMPLETED, metadata=report.as_dict())

        logger.info("Expiration sweep finished", extra=report.as_dict())
        return report

    async def _expire_one(self, transaction_id: int, user_id: int, now: datetime) -> Optional[Decimal]:
        """
        Expire a single deposit.

        Returns:
            The credits removed (may be zero), or None if the row no longer needed expiring.
        """
        async with self.session_factory() as db:
            async with db.begin():
                wallet = await lock_wallet(db, user_id, now)
                deposit = await TransactionLedger.get_for_update(db, transaction_id)

                # Re-check under the lock: another sweep may have got here first
                if (
                    deposit is None
                    or deposit.type != TransactionType.DEPOSIT
                    or deposit.status != TransactionStatus.COMPLETED
                    or deposit.expires_at is None
                    or deposit.expires_at > now
                ):
                    return None

                view = await WalletProjector.project(db, user_id, now)
                remainder = view.remaining_of(deposit.id)

                await TransactionLedger.transition(db, deposit, TransactionStatus.EXPIRED)
                if remainder > 0:
                    await TransactionLedger.append(db, CreditTransaction(
                        user_id=user_id,
                        type=TransactionType.EXPIRE,
                        status=TransactionStatus.COMPLETED,
                        direction=Direction.DEBIT,
                        amount=remainder,
                        description=f"Expired credits from deposit {deposit.id}",
                        reference_type=ReferenceType.TRANSACTION,
                        reference_id=str(deposit.id),
                        completed_at=now,
                        created_at=now,
                    ))
                    wallet.apply(now, expired=remainder)

                await WalletProjector.reconcile(db, wallet, now)

        logger.info(
            "Deposit expired",
            extra={"transaction_id": transaction_id, "user_id": user_id, "credits": str(remainder)},
        )
        return remainder

    async def _dead_letter(self, transaction_id: int, user_id: int, exc: Exception, now: datetime) -> None:
        """Record a failed expiration, reusing the deposit's unresolved dead letter if there is one."""
        error_code = exc.error_code if isinstance(exc, AppException) else type(exc).__name__
        error_message = str(exc) or type(exc).__name__

        async with self.session_factory() as db:
            async with db.begin():
                result = await db.execute(
                    select(DeadLetterQueue).where(
                        DeadLetterQueue.task_name == SWEEP_TASK_NAME,
                        DeadLetterQueue.user_id == user_id,
                        DeadLetterQueue.status != DLQStatus.PROCESSED,
                    )
                )
                item = next(
                    (i for i in result.scalars() if i.payload and i.payload.get("transaction_id") == transaction_id),
                    None,
                )
                if item is None:
                    db.add(DeadLetterQueue(
                        task_name=SWEEP_TASK_NAME,
                        user_id=user_id,
                        error_code=error_code,
                        error_message=error_message,
                        payload={"transaction_id": transaction_id, "user_id": user_id},
                        status=DLQStatus.FAILED,
                    ))
                else:
                    item.error_code = error_code
                    item.error_message = error_message
                    item.last_retry_at = now

    async def retry_dead_letter(self, dlq_id: int) -> DeadLetterQueue:
        """
        Re-run the expiration recorded in a dead letter row.

        The row becomes PROCESSED on success. On failure its retry_count is
        bumped, and it is ARCHIVED once dlq_max_retries is reached.

        Raises:
            ResourceNotFoundError, InvalidRequestError
        """
        async with self.session_factory() as db:
            item = await db.get(DeadLetterQueue, dlq_id)
        if item is None or item.task_name != SWEEP_TASK_NAME:
            raise ResourceNotFoundError("Dead letter", dlq_id)
        if item.status in (DLQStatus.PROCESSED, DLQStatus.ARCHIVED):
            raise InvalidRequestError(
                f"Dead letter {dlq_id} is {item.status.value}", details={"dlq_id": dlq_id}
            )

        transaction_id = item.payload["transaction_id"]
        user_id = item.payload["user_id"]
        now = self.clock()
        error: Optional[Exception] = None
        try:
            async with self.locks.hold(user_id):
                await self._expire_one(transaction_id, user_id, now)
        except Exception as exc:
            error = exc
            logger.error(
                "Dead letter retry failed",
                exc_info=True,
                extra={"dlq_id": dlq_id, "transaction_id": transaction_id},
            )

        async with self.session_factory() as db:
            async with db.begin():
                item = await db.get(DeadLetterQueue, dlq_id)
                item.last_retry_at = now
                if error is None:
                    item.status = DLQStatus.PROCESSED
                else:
                    item.retry_count = (item.retry_count or 0) + 1
                    item.error_code = error.error_code if isinstance(error, AppException) else type(error).__name__
                    item.error_message = str(error) or type(error).__name__
                    if item.retry_count >= self.settings.dlq_max_retries:
                        item.status = DLQStatus.ARCHIVED
                    else:
                        item.status = DLQStatus.FAILED

        logger.info("Dead letter retried", extra={"dlq_id": dlq_id, "status": item.status.value})
        return item

    # ------------------------------------------------------------------ #
    # Background scheduling
    # ------------------------------------------------------------------ #

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        """Register the daily sweep job. Must be called with a running event loop."""
        if self.running:
            return
        self._scheduler = AsyncIOScheduler(timezone="UTC")
        self._scheduler.add_job(
            self.sweep,
            "cron",
            hour=self.settings.expiration_sweep_hour,
            minute=self.settings.expiration_sweep_minute,
            id=SWEEP_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(
            "Expiration sweep scheduled",
            extra={"hour": self.settings.expiration_sweep_hour, "minute": self.settings.expiration_sweep_minute},
        )

    def get_job(self):
        if self._scheduler is None:
            return None
        return self._scheduler.get_job(SWEEP_JOB_ID)

    def shutdown(self) -> None:
        if self.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
