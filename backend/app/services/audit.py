"""
Audit logging service for administrative and system actions on the ledger.

Audit rows are written inside the caller's transaction, so an action and
its audit record commit or roll back together.
"""

from typing import Optional, Dict, Any
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc
from backend.app.models.audit_log import AuditLog


# Audit event constants
class AuditAction:
    """Standardized audit action constants."""
    CREDITS_ADJUSTED = "CREDITS_ADJUSTED"
    RATE_TABLE_CREATED = "RATE_TABLE_CREATED"
    RATE_TABLE_DEACTIVATED = "RATE_TABLE_DEACTIVATED"
    EXPIRATION_SWEEP_COMPLETED = "EXPIRATION_SWEEP_COMPLETED"


async def log_event(
    db: AsyncSession,
    action: str,
    actor_id: Optional[int] = None,
    target_user_id: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """
    Record an audit event.

    Args:
        db: Database session (transaction managed by caller)
        action: Action being performed (use AuditAction constants)
        actor_id: ID of the admin performing the action (None for system)
        target_user_id: Wallet owner affected, if any
        metadata: Additional context as JSON

    Returns:
        Created AuditLog instance
    """
    audit_log = AuditLog(
        actor_id=actor_id,
        action=action,
        target_user_id=target_user_id,
        meta_data=metadata,
    )

    db.add(audit_log)
    await db.flush()

    return audit_log


async def get_audit_trail(
    db: AsyncSession,
    target_user_id: Optional[int] = None,
    action: Optional[str] = None,
    limit: int = 100
) -> list[AuditLog]:
    """
    Retrieve audit trail with optional filtering, most recent first.
    """
    query = select(AuditLog).order_by(desc(AuditLog.timestamp), desc(AuditLog.id))

    if target_user_id:
        query = query.where(AuditLog.target_user_id == target_user_id)

    if action:
        query = query.where(AuditLog.action == action)

    query = query.limit(limit)

    result = await db.execute(query)
    return list(result.scalars().all())
