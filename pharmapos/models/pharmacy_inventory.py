# FILE: pharmapos/models/pharmacy_inventory.py
from __future__ import annotations

import enum
from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, Boolean, Date, DateTime, Numeric,
    ForeignKey, CheckConstraint, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship

from pharmapos.db.base import Base

Money = Numeric(14, 2)
Price = Numeric(14, 4)


# -------------------------
# Enums
# -------------------------
class MedicineStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class BatchStatus(str, enum.Enum):
    AVAILABLE = "available"
    EXPIRED = "expired"
    DAMAGED = "damaged"
    SOLD_OUT = "sold-out"


class StockTxnType(str, enum.Enum):
    RECEIPT = "RECEIPT"
    SALE = "SALE"
    ADJUSTMENT = "ADJUSTMENT"
    DAMAGE = "DAMAGE"
    REFUND_RESTOCK = "REFUND_RESTOCK"


# -------------------------
# Catalog (read-only for the sale engine)
# -------------------------
class Medicine(Base):
    __tablename__ = "medicines"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False, index=True)
    generic_name = Column(String(255), default="")
    manufacturer = Column(String(255), default="")
    category = Column(String(100), default="")
    dosage_form = Column(String(100), default="")
    strength = Column(String(100), default="")
    barcode = Column(String(100), unique=True, nullable=True)
    prescription_required = Column(Boolean, default=False, nullable=False)
    status = Column(String(16), nullable=False, default=MedicineStatus.ACTIVE.value)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    batches = relationship("MedicineBatch", back_populates="medicine")

    @property
    def is_active(self) -> bool:
        return self.status == MedicineStatus.ACTIVE.value


# -------------------------
# Batch store
# -------------------------
class MedicineBatch(Base):
    """
    One received lot of a medicine.

    ``status`` is a snapshot of compute_batch_status(); only DAMAGED is set by
    hand and is authoritative. Rows are never deleted, sold-out stays on file.
    """
    __tablename__ = "medicine_batches"
    __table_args__ = (
        UniqueConstraint("medicine_id", "batch_number", name="uq_medicine_batch_number"),
        CheckConstraint("quantity >= 0", name="ck_medicine_batch_qty_non_negative"),
        Index("ix_medicine_batch_fefo", "medicine_id", "expiry_date", "created_at"),
        Index("ix_medicine_batch_status", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    medicine_id = Column(Integer, ForeignKey("medicines.id"), nullable=False, index=True)

    batch_number = Column(String(100), nullable=False)
    manufacturing_date = Column(Date, nullable=False)
    expiry_date = Column(Date, nullable=False)

    quantity = Column(Integer, nullable=False, default=0)
    purchase_price = Column(Price, nullable=False, default=0)
    selling_price = Column(Price, nullable=False, default=0)

    status = Column(String(16), nullable=False, default=BatchStatus.AVAILABLE.value)
    supplier_ref = Column(String(100), nullable=True)
    notes = Column(String(1000), default="")

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    medicine = relationship("Medicine", back_populates="batches")
    transactions = relationship("StockTransaction", back_populates="batch")


# -------------------------
# Stock Transactions
# -------------------------
class StockTransaction(Base):
    __tablename__ = "stock_transactions"
    __table_args__ = (
        Index("ix_stock_txn_medicine_time", "medicine_id", "txn_time"),
    )

    id = Column(Integer, primary_key=True, index=True)
    medicine_id = Column(Integer, ForeignKey("medicines.id"), nullable=False, index=True)
    batch_id = Column(Integer, ForeignKey("medicine_batches.id"), nullable=True)

    txn_time = Column(DateTime, default=datetime.utcnow, nullable=False)
    txn_type = Column(String(30), nullable=False)  # RECEIPT / SALE / ADJUSTMENT ...
    ref_type = Column(String(50), default="")
    ref_id = Column(Integer, nullable=True)

    quantity_change = Column(Integer, nullable=False)  # +IN / -OUT
    unit_price = Column(Price, default=0)
    remark = Column(String(1000), default="")
    user_id = Column(Integer, nullable=True)

    batch = relationship("MedicineBatch", back_populates="transactions")
