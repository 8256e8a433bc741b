"""
Credit Rate Table database model.

Persisted, effective-dated rate tables. When none is active the
configured defaults apply.
"""

from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, String
from sqlalchemy.sql import func
from backend.app.db.session import Base


class CreditRateTable(Base):
    """
    Rate table model.

    Multiplier maps are stored as {tier_name: "decimal string"}.
    The most recent active table whose validity window covers "now" wins.
    """
    __tablename__ = "credit_rate_tables"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(100), nullable=False)

    season_values = Column(JSON, nullable=False)
    location_multipliers = Column(JSON, nullable=False)
    room_type_multipliers = Column(JSON, nullable=False)
    expiration_months = Column(Integer, nullable=False, default=6)
    nightly_costs = Column(JSON, nullable=True)  # {"SEASON:ROOM_TIER": "decimal string"}

    # Validity
    effective_from = Column(DateTime, nullable=False)
    effective_until = Column(DateTime, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    # Audit
    created_by_admin_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<CreditRateTable(id={self.id}, name='{self.name}', active={self.is_active})>"
