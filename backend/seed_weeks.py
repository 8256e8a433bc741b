"""
Database seeding script for demo weeks.

Registers a few owned weeks so deposits can be tried out through the API.
Run this script after database is set up but before first use.
"""

import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from backend.app.db.session import AsyncSessionLocal, Base, engine
from backend.app.models.credit_enums import Season
from backend.app.models.week import Week
from backend.app.services.week_registry import SqlWeekRegistry
from sqlalchemy import select, func

DEMO_WEEKS = [
    (1, Season.RED, "Marbella 2026-W31"),
    (1, Season.WHITE, "Marbella 2026-W40"),
    (2, Season.BLUE, "Tenerife 2026-W05"),
]


async def seed_weeks():
    """
    Seed demo weeks.

    Creates:
    - 2 weeks for user 1 (RED, WHITE)
    - 1 week for user 2 (BLUE)
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    registry = SqlWeekRegistry()

    async with AsyncSessionLocal() as db:
        print("🌱 Starting week seeding...")

        existing = await db.scalar(select(func.count()).select_from(Week))
        if existing:
            print("ℹ️  Weeks already exist, skipping seeding")
            return

        for owner_id, season, label in DEMO_WEEKS:
            week = await registry.register(db, owner_id=owner_id, season=season, label=label)
            print(f"✅ Created week {week.id} ({season.value}) for user {owner_id}: {label}")

        await db.commit()

        print("\n🎉 Week seeding completed successfully!")
        print("\nDeposit one with POST /v1/credits/users/{user_id}/deposits")

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(seed_weeks())
