# FILE: pharmapos/schemas/pharmacy.py
from __future__ import annotations

from datetime import datetime, date
from decimal import Decimal
from typing import List, Optional, Literal

from pydantic import BaseModel, Field, ConfigDict, field_validator

PaymentMethodLiteral = Literal["cash", "card", "esewa", "khalti",
                               "mobile-payment", "credit"]

# ---------- Stock ----------


class StockReceiptIn(BaseModel):
    medicine_id: int
    batch_number: str = Field(..., min_length=1, max_length=100)
    manufacturing_date: date
    expiry_date: date
    quantity: int = Field(..., ge=0)
    purchase_price: Decimal = Field(..., ge=0)
    selling_price: Decimal = Field(..., ge=0)
    supplier_ref: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("batch_number")
    @classmethod
    def _strip_batch_number(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Batch number is required")
        return v


class StockAdjustIn(BaseModel):
    adjustment: int
    reason: str = Field(..., min_length=1)


class BatchOut(BaseModel):
    id: int
    medicine_id: int
    batch_number: str
    manufacturing_date: date
    expiry_date: date
    quantity: int
    purchase_price: Decimal
    selling_price: Decimal
    status: str
    notes: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AvailableBatchOut(BaseModel):
    batch_id: int
    batch_number: str
    manufacturing_date: date
    expiry_date: date
    quantity: int
    selling_price: Decimal
    days_until_expiry: int


class MedicineBriefOut(BaseModel):
    id: int
    name: str
    generic_name: Optional[str] = None
    manufacturer: Optional[str] = None
    prescription_required: bool

    model_config = ConfigDict(from_attributes=True)


class MedicineBatchesOut(BaseModel):
    medicine: MedicineBriefOut
    available_stock: int
    batches: List[AvailableBatchOut] = []


class LowStockOut(BaseModel):
    medicine: MedicineBriefOut
    current_stock: int
    minimum_stock: int
    deficit: int


# ---------- Sales ----------


class SaleLineIn(BaseModel):
    medicine_id: int
    quantity: int = Field(..., gt=0)


class SaleCreateIn(BaseModel):
    items: List[SaleLineIn] = Field(..., min_length=1)

    discount: Optional[Decimal] = Field(None, ge=0)
    discount_percentage: Optional[Decimal] = Field(None, ge=0, le=100)
    amount_paid: Optional[Decimal] = Field(None, ge=0)
    payment_method: PaymentMethodLiteral = "cash"

    customer_name: Optional[str] = None
    customer_mobile: Optional[str] = Field(None, pattern=r"^[0-9]{10}$")
    customer_address: Optional[str] = None

    prescription_ref: Optional[str] = None
    notes: Optional[str] = None


class PreviewLineIn(BaseModel):
    quantity: int = Field(..., gt=0)
    unit_price: Decimal = Field(..., ge=0)


class TotalsPreviewIn(BaseModel):
    items: List[PreviewLineIn] = Field(..., min_length=1)
    discount: Optional[Decimal] = Field(None, ge=0)
    discount_percentage: Optional[Decimal] = Field(None, ge=0, le=100)


class TotalsOut(BaseModel):
    subtotal: Decimal
    discount: Decimal
    discount_percentage: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    total_amount: Decimal


class SaleAllocationOut(BaseModel):
    batch_id: int
    batch_number: str
    quantity: int
    unit_price: Decimal

    model_config = ConfigDict(from_attributes=True)


class SaleItemOut(BaseModel):
    line_no: int
    medicine_id: int
    medicine_name: Optional[str] = None
    batch_id: int
    batch_number: str
    manufacturing_date: date
    expiry_date: date
    quantity: int
    unit_price: Decimal
    subtotal: Decimal
    allocations: List[SaleAllocationOut] = []

    model_config = ConfigDict(from_attributes=True)


class SaleOut(BaseModel):
    id: int
    invoice_number: str
    customer_name: Optional[str] = None
    customer_mobile: Optional[str] = None
    payment_method: str
    prescription_ref: Optional[str] = None

    subtotal: Decimal
    discount: Decimal
    discount_percentage: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    amount_paid: Decimal
    amount_due: Decimal
    payment_status: str
    status: str

    refund_amount: Decimal
    refund_reason: Optional[str] = None
    refund_date: Optional[datetime] = None
    customer_sync_status: str

    sale_date: date
    created_at: datetime
    items: List[SaleItemOut] = []

    model_config = ConfigDict(from_attributes=True)


class RefundIn(BaseModel):
    refund_amount: Decimal = Field(..., gt=0)
    refund_reason: str = Field(..., min_length=1)
    restock: Optional[bool] = None
