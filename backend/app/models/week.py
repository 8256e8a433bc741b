"""
Week database model.

Registry of deposited timeshare weeks. A week converts into credits at most once.
"""

from sqlalchemy import Column, DateTime, Enum, Integer, String
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.credit_enums import Season


class Week(Base):
    __tablename__ = "weeks"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    owner_id = Column(Integer, nullable=False, index=True)
    label = Column(String(255), nullable=True)
    season = Column(Enum(Season), nullable=True)

    # Set once the week has been converted into credits (or reserved by a pending deposit)
    consumed_at = Column(DateTime, nullable=True)
    consumed_by_user_id = Column(Integer, nullable=True)

    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Week(id={self.id}, owner={self.owner_id}, consumed={self.consumed_at is not None})>"
