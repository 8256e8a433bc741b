"""
Week registry collaborator.

The ledger only needs to know who owns a week and whether it has already
been converted to credits. Registry calls take the caller's session so a
deposit and the week it consumes commit or roll back together.
"""

from datetime import datetime
from typing import Callable, Optional, Protocol

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import WeekAlreadyConsumedError, WeekNotFoundError
from backend.app.core.timeutils import utcnow
from backend.app.models.credit_enums import Season
from backend.app.models.week import Week


class WeekRegistry(Protocol):

    async def owner_of(self, db: AsyncSession, week_id: int) -> Optional[int]:
        ...

    async def is_consumed(self, db: AsyncSession, week_id: int) -> bool:
        ...

    async def mark_consumed(self, db: AsyncSession, week_id: int, user_id: int) -> None:
        ...

    async def release(self, db: AsyncSession, week_id: int) -> None:
        ...


class SqlWeekRegistry:
    """WeekRegistry backed by the weeks table."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock

    async def register(
        self,
        db: AsyncSession,
        owner_id: int,
        season: Optional[Season] = None,
        label: Optional[str] = None,
    ) -> Week:
        week = Week(owner_id=owner_id, season=season, label=label)
        db.add(week)
        await db.flush()
        return week

    async def owner_of(self, db: AsyncSession, week_id: int) -> Optional[int]:
        week = await db.get(Week, week_id)
        return week.owner_id if week else None

    async def is_consumed(self, db: AsyncSession, week_id: int) -> bool:
        week = await db.get(Week, week_id)
        if week is None:
            raise WeekNotFoundError(week_id)
        return week.consumed_at is not None

    async def mark_consumed(self, db: AsyncSession, week_id: int, user_id: int) -> None:
        """
        Flag the week as converted.

        Conditional update, so two racing deposits cannot both succeed.

        Raises:
            WeekAlreadyConsumedError
        """
        result = await db.execute(
            update(Week)
            .where(Week.id == week_id, Week.consumed_at.is_(None))
            .values(consumed_at=self.clock(), consumed_by_user_id=user_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise WeekAlreadyConsumedError(week_id)

    async def release(self, db: AsyncSession, week_id: int) -> None:
        """Undo mark_consumed (used when a pending deposit is cancelled)."""
        await db.execute(
            update(Week)
            .where(Week.id == week_id)
            .values(consumed_at=None, consumed_by_user_id=None)
            .execution_options(synchronize_session=False)
        )
