# FILE: pharmapos/models/pharmacy_sales.py
from __future__ import annotations

import enum
from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, Date, DateTime, Numeric, Text,
    ForeignKey, CheckConstraint, Index
)
from sqlalchemy.orm import relationship

from pharmapos.db.base import Base
from pharmapos.models.pharmacy_inventory import Money, Price


class InvoiceStatus(str, enum.Enum):
    COMPLETED = "completed"
    PARTIALLY_REFUNDED = "partially-refunded"
    REFUNDED = "refunded"


class PaymentStatus(str, enum.Enum):
    PAID = "paid"
    PARTIAL = "partial"
    PENDING = "pending"


class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    CARD = "card"
    ESEWA = "esewa"
    KHALTI = "khalti"
    MOBILE_PAYMENT = "mobile-payment"
    CREDIT = "credit"


class CustomerSyncStatus(str, enum.Enum):
    SKIPPED = "skipped"  # no customer mobile on the sale
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


class SaleInvoice(Base):
    """
    One completed counter sale.

    Amounts are frozen at creation; afterwards only the refund fields, status
    and customer_sync_status change.
    """

    __tablename__ = "sale_invoices"
    __table_args__ = (
        CheckConstraint("refund_amount >= 0", name="ck_sale_invoice_refund_non_negative"),
        CheckConstraint("refund_amount <= total_amount", name="ck_sale_invoice_refund_le_total"),
        Index("ix_sale_invoice_customer_mobile", "customer_mobile"),
        Index("ix_sale_invoice_sale_date", "sale_date"),
    )

    id = Column(Integer, primary_key=True, index=True)
    invoice_number = Column(String(64), unique=True, index=True, nullable=False)

    customer_name = Column(String(255), nullable=True)
    customer_mobile = Column(String(20), nullable=True)
    customer_address = Column(String(500), nullable=True)

    payment_method = Column(String(20), nullable=False, default=PaymentMethod.CASH.value)
    prescription_ref = Column(String(64), nullable=True)
    cashier_id = Column(Integer, nullable=True)

    # Amount fields
    subtotal = Column(Money, nullable=False, default=0)
    discount = Column(Money, nullable=False, default=0)
    discount_percentage = Column(Numeric(5, 2), nullable=False, default=0)
    tax_rate = Column(Numeric(5, 2), nullable=False, default=0)
    tax_amount = Column(Money, nullable=False, default=0)
    total_amount = Column(Money, nullable=False, default=0)
    amount_paid = Column(Money, nullable=False, default=0)
    amount_due = Column(Money, nullable=False, default=0)

    payment_status = Column(String(16), nullable=False, default=PaymentStatus.PAID.value)
    status = Column(String(24), nullable=False, default=InvoiceStatus.COMPLETED.value)

    refund_amount = Column(Money, nullable=False, default=0)
    refund_reason = Column(Text, nullable=True)
    refund_date = Column(DateTime, nullable=True)

    customer_sync_status = Column(String(16), nullable=False,
                                  default=CustomerSyncStatus.SKIPPED.value)
    notes = Column(Text, nullable=True)

    sale_date = Column(Date, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    items = relationship(
        "SaleInvoiceItem",
        back_populates="invoice",
        order_by="SaleInvoiceItem.line_no",
        cascade="all, delete-orphan",
    )


class SaleInvoiceItem(Base):
    """
    One invoice line per requested medicine line. When several batches were
    consumed the unit price is their quantity-weighted average and the batch
    snapshot is the first (earliest expiry) batch; the exact split lives in
    ``allocations``.
    """

    __tablename__ = "sale_invoice_items"
    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_sale_item_qty_positive"),
    )

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(Integer, ForeignKey("sale_invoices.id"), nullable=False, index=True)
    line_no = Column(Integer, nullable=False, default=1)

    medicine_id = Column(Integer, ForeignKey("medicines.id"), nullable=False, index=True)
    batch_id = Column(Integer, ForeignKey("medicine_batches.id"), nullable=False)
    medicine_name = Column(String(255), default="")
    batch_number = Column(String(100), nullable=False)
    manufacturing_date = Column(Date, nullable=False)
    expiry_date = Column(Date, nullable=False)

    quantity = Column(Integer, nullable=False)
    unit_price = Column(Price, nullable=False)
    subtotal = Column(Money, nullable=False)

    invoice = relationship("SaleInvoice", back_populates="items")
    allocations = relationship(
        "SaleInvoiceAllocation",
        back_populates="item",
        order_by="SaleInvoiceAllocation.seq",
        cascade="all, delete-orphan",
    )


class SaleInvoiceAllocation(Base):
    """Per-batch split of an invoice line; source for refund restocking."""

    __tablename__ = "sale_invoice_allocations"

    id = Column(Integer, primary_key=True, index=True)
    item_id = Column(Integer, ForeignKey("sale_invoice_items.id"), nullable=False, index=True)
    seq = Column(Integer, nullable=False, default=1)
    batch_id = Column(Integer, ForeignKey("medicine_batches.id"), nullable=False, index=True)
    batch_number = Column(String(100), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Price, nullable=False)

    item = relationship("SaleInvoiceItem", back_populates="allocations")


class Customer(Base):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True)
    mobile = Column(String(20), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False, default="Unknown")
    address = Column(String(500), nullable=True)
    preferred_payment_method = Column(String(20), nullable=True)
    status = Column(String(16), nullable=False, default="active")

    total_purchases = Column(Integer, nullable=False, default=0)
    total_spent = Column(Money, nullable=False, default=0)
    last_purchase_date = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
