"""
Service dependencies for FastAPI.

One ledger service and one expiration scheduler per process; they share the
per-user lock registry so sweeps and user operations never interleave for a wallet.
"""

from backend.app.core.config import settings
from backend.app.db.session import AsyncSessionLocal
from backend.app.domain.credits.expiration import ExpirationScheduler
from backend.app.domain.credits.ledger_service import LedgerService
from backend.app.domain.credits.locks import UserLockRegistry
from backend.app.services.week_registry import SqlWeekRegistry

user_locks = UserLockRegistry(timeout=settings.collaborator_timeout_seconds * 2)

ledger_service = LedgerService(
    AsyncSessionLocal,
    SqlWeekRegistry(),
    settings=settings,
    locks=user_locks,
)

expiration_scheduler = ExpirationScheduler(
    AsyncSessionLocal,
    user_locks,
    settings=settings,
)


def get_ledger_service() -> LedgerService:
    """FastAPI dependency for the ledger service."""
    return ledger_service


def get_expiration_scheduler() -> ExpirationScheduler:
    """FastAPI dependency for the expiration scheduler."""
    return expiration_scheduler
