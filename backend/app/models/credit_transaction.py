"""
Credit Transaction database model.

Append-only record of every balance change.
"""

from sqlalchemy import (
    CheckConstraint, Column, DateTime, Enum, ForeignKey, Index, Integer, JSON,
    Numeric, String, UniqueConstraint,
)
from backend.app.db.session import Base
from backend.app.models.credit_enums import Direction, ReferenceType, TransactionStatus, TransactionType


class CreditTransaction(Base):
    """
    Credit Transaction model.

    The ledger is the source of truth for every wallet.
    amount and created_at never change after insert; the only in-place
    mutation is the guarded status transition (see TransactionLedger.transition).
    Corrections are new ADJUSTMENT rows.
    """
    __tablename__ = "credit_transactions"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)

    type = Column(Enum(TransactionType), nullable=False)
    status = Column(Enum(TransactionStatus), nullable=False, index=True)
    direction = Column(Enum(Direction), nullable=False)

    # Positive magnitude; direction gives the sign
    amount = Column(Numeric(14, 2), nullable=False)
    description = Column(String(255), nullable=True)

    # Polymorphic link to whatever caused the transaction
    reference_type = Column(Enum(ReferenceType), nullable=True)
    reference_id = Column(String(100), nullable=True)

    # REFUND -> refunded SPEND (unique: one refund per spend)
    refund_of_id = Column(Integer, ForeignKey('credit_transactions.id'), nullable=True, unique=True)

    idempotency_key = Column(String(128), nullable=True)
    meta_data = Column("metadata", JSON, nullable=True)

    # Only COMPLETED/EXPIRED deposits carry an expiration date
    expires_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint('user_id', 'idempotency_key', name='uq_credit_transactions_idempotency'),
        CheckConstraint('amount > 0', name='ck_credit_transactions_amount_positive'),
        Index('ix_credit_transactions_user_created', 'user_id', 'created_at'),
        Index('ix_credit_transactions_expiry', 'type', 'status', 'expires_at'),
    )

    @property
    def effective_at(self):
        """Instant from which the row counts toward the balance."""
        return self.completed_at or self.created_at

    def __repr__(self):
        return (
            f"<CreditTransaction(id={self.id}, user={self.user_id}, type='{self.type.value}', "
            f"status='{self.status.value}', amount={self.amount})>"
        )
