"""
SQLAlchemy models for the insight snapshot store.
"""

from sqlalchemy import Column, UniqueConstraint
from sqlalchemy import JSON as JSON_TYPE
from sqlalchemy.types import Float, Integer, String

from app.database import Base


class InsightSnapshot(Base):
    """A READY insight written through from the cache."""
    __tablename__ = "insight_snapshots"
    __table_args__ = (UniqueConstraint("namespace", "fingerprint", name="uq_insight_snapshot_slot"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    namespace = Column(String, index=True, nullable=False)
    fingerprint = Column(String(64), nullable=False)
    value = Column(JSON_TYPE)
    produced_at = Column(Float, nullable=False)
    source_version = Column(Integer, nullable=False, default=0)
