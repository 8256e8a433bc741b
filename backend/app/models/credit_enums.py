"""
Credit ledger enumerations.
"""

import enum


class TransactionType(str, enum.Enum):
    """Credit transaction type enumeration."""
    DEPOSIT = "DEPOSIT"  # Week converted into credits
    SPEND = "SPEND"  # Credits used for a booking or swap
    REFUND = "REFUND"  # Reversal of a spend
    EXPIRE = "EXPIRE"  # Unconsumed remainder of an expired deposit (system only)
    ADJUSTMENT = "ADJUSTMENT"  # Manual correction


class TransactionStatus(str, enum.Enum):
    """Credit transaction status enumeration."""
    PENDING = "PENDING"  # Awaiting external confirmation
    COMPLETED = "COMPLETED"
    REFUNDED = "REFUNDED"  # Spend that was reversed by a REFUND row
    EXPIRED = "EXPIRED"  # Deposit past its expiration date, reconciled by the sweep
    CANCELLED = "CANCELLED"  # Pending deposit that was never confirmed


class Direction(str, enum.Enum):
    """Whether a transaction adds to or removes from the wallet."""
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class ReferenceType(str, enum.Enum):
    """What caused a transaction."""
    WEEK = "WEEK"
    BOOKING = "BOOKING"
    SWAP = "SWAP"
    TRANSACTION = "TRANSACTION"
    MANUAL = "MANUAL"


class Season(str, enum.Enum):
    """Season category of a week."""
    RED = "RED"  # High season
    WHITE = "WHITE"  # Mid season
    BLUE = "BLUE"  # Low season
