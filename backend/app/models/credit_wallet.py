"""
Credit Wallet database model.

Maintained aggregates per user, updated in the same transaction as every
ledger change. The row doubles as the per-user lock anchor (SELECT ... FOR UPDATE).
"""

from decimal import Decimal

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, Numeric
from backend.app.db.session import Base

ZERO = Decimal("0.00")


class CreditWallet(Base):
    __tablename__ = "credit_wallets"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, unique=True, index=True)

    # Earned + refunded - spent - expired; includes deposits that are past due
    # but not yet swept (the projected balance excludes those).
    balance = Column(Numeric(14, 2), nullable=False, default=ZERO)
    total_earned = Column(Numeric(14, 2), nullable=False, default=ZERO)
    total_spent = Column(Numeric(14, 2), nullable=False, default=ZERO)
    total_expired = Column(Numeric(14, 2), nullable=False, default=ZERO)
    total_refunded = Column(Numeric(14, 2), nullable=False, default=ZERO)

    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        CheckConstraint('balance >= 0', name='ck_credit_wallets_balance_non_negative'),
    )

    @classmethod
    def empty(cls, user_id: int, now) -> "CreditWallet":
        return cls(
            user_id=user_id,
            balance=ZERO,
            total_earned=ZERO,
            total_spent=ZERO,
            total_expired=ZERO,
            total_refunded=ZERO,
            version=0,
            created_at=now,
            updated_at=now,
        )

    def apply(
        self,
        now,
        *,
        earned: Decimal = ZERO,
        spent: Decimal = ZERO,
        expired: Decimal = ZERO,
        refunded: Decimal = ZERO,
    ) -> None:
        """Move the counters; balance follows from the deltas."""
        self.total_earned += earned
        self.total_spent += spent
        self.total_expired += expired
        self.total_refunded += refunded
        self.balance += earned + refunded - spent - expired
        self.version += 1
        self.updated_at = now

    def __repr__(self):
        return f"<CreditWallet(user={self.user_id}, balance={self.balance}, version={self.version})>"
