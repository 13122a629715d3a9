# FILE: pharmapos/models/number_series.py
from __future__ import annotations

from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, UniqueConstraint

from pharmapos.db.base import Base


class NumberSeries(Base):
    """Counter row per document key and year, e.g. (INV, 2025)."""
    __tablename__ = "number_series"
    __table_args__ = (
        UniqueConstraint("key", "period_key", name="uq_number_series_key_period"),
    )

    id = Column(Integer, primary_key=True)
    key = Column(String(30), nullable=False)         # INV / PO ...
    period_key = Column(String(10), nullable=False)  # YYYY
    last_value = Column(Integer, nullable=False, default=0)  # last number handed out
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
