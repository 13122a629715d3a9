# FILE: pharmapos/services/pharmacy_sales.py
from __future__ import annotations

import logging
import math
from collections import OrderedDict
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, selectinload

from pharmapos.core.config import settings
from pharmapos.models.pharmacy_sales import (
    CustomerSyncStatus,
    InvoiceStatus,
    PaymentMethod,
    PaymentStatus,
    SaleInvoice,
    SaleInvoiceAllocation,
    SaleInvoiceItem,
)
from pharmapos.services.billing_math import (
    HUNDRED,
    MONEY_MAX,
    compute_invoice_amounts,
    money2,
    parse_money,
    weighted_unit_price,
)
from pharmapos.services.customer_stats import sync_customer_for_invoice
from pharmapos.services.errors import (
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    ValidationError,
)
from pharmapos.services.inventory import (
    BatchAllocation,
    allocate_batches_fefo,
    available_quantity,
    get_medicine,
    require_positive_int,
    restock_allocation,
)
from pharmapos.services.number_series import next_document_number
from pharmapos.services.transactions import unit_of_work
from pharmapos.utils.timezone import now_local, today_local

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def _get(data: Any, name: str, default: Any = None) -> Any:
    if isinstance(data, dict):
        return data.get(name, default)
    return getattr(data, name, default)


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


# ---------- Totals ----------


def calculate_invoice_totals(
    lines: Iterable[Any],
    discount_percentage=None,
    discount=None,
) -> Dict[str, Decimal]:
    """
    Preview totals for (quantity, unit_price) lines without touching stock.
    Lines may be dicts, objects or plain tuples.
    """
    subtotal = ZERO
    for line in lines:
        if isinstance(line, (tuple, list)):
            qty, price = line
        else:
            qty, price = _get(line, "quantity"), _get(line, "unit_price")
        qty = require_positive_int(qty)
        price = parse_money(price, "unit_price")
        if price is None:
            raise ValidationError("unit_price is required for every line")
        subtotal += qty * price
    if subtotal > MONEY_MAX:
        raise ValidationError("Subtotal is out of range", subtotal=str(subtotal))

    amounts = compute_invoice_amounts(
        subtotal,
        tax_rate=settings.TAX_RATE,
        discount_amount=parse_money(discount, "discount"),
        discount_percentage=parse_money(discount_percentage, "discount_percentage",
                                        maximum=HUNDRED),
    )
    _check_discount(amounts)
    amounts.pop("amount_paid")
    amounts.pop("amount_due")
    return amounts


def _check_discount(amounts: Dict[str, Decimal]) -> None:
    if amounts["discount"] < 0:
        raise ValidationError("Discount cannot be negative")
    if amounts["discount"] > amounts["subtotal"]:
        raise ValidationError(
            "Discount cannot exceed subtotal",
            discount=str(amounts["discount"]),
            subtotal=str(amounts["subtotal"]),
        )


def derive_payment_status(amount_paid: Decimal, amount_due: Decimal) -> PaymentStatus:
    if amount_due <= 0:
        return PaymentStatus.PAID
    if amount_paid <= 0:
        return PaymentStatus.PENDING
    return PaymentStatus.PARTIAL


# ---------- Invoice build ----------


def _requested_lines(payload: Any) -> List[tuple[int, int]]:
    items = _get(payload, "items") or []
    if not items:
        raise ValidationError("At least one item is required")

    out: List[tuple[int, int]] = []
    for item in items:
        medicine_id = _get(item, "medicine_id")
        if medicine_id is None:
            raise ValidationError("medicine_id is required for every item")
        out.append((medicine_id, require_positive_int(_get(item, "quantity"))))
    return out


def _precheck_stock(db: Session, lines: List[tuple[int, int]], as_of: date) -> None:
    """Fail fast, before any decrement, when a medicine cannot cover its lines."""
    wanted: "OrderedDict[int, int]" = OrderedDict()
    for medicine_id, qty in lines:
        wanted[medicine_id] = wanted.get(medicine_id, 0) + qty

    for medicine_id, qty in wanted.items():
        medicine = get_medicine(db, medicine_id)
        if not medicine.is_active:
            raise ValidationError(f"Medicine {medicine.name} is not active",
                                  medicine_id=medicine_id)
        available = available_quantity(db, medicine_id, as_of)
        if available < qty:
            raise InsufficientStockError(
                medicine_id=medicine_id,
                available=available,
                requested=qty,
                medicine_name=medicine.name,
            )


def _build_item(
    line_no: int,
    medicine_id: int,
    medicine_name: str,
    allocations: List[BatchAllocation],
) -> SaleInvoiceItem:
    first = allocations[0]
    qty = sum(a.quantity for a in allocations)

    item = SaleInvoiceItem(
        line_no=line_no,
        medicine_id=medicine_id,
        medicine_name=medicine_name,
        batch_id=first.batch_id,
        batch_number=first.batch_number,
        manufacturing_date=first.manufacturing_date,
        expiry_date=first.expiry_date,
        quantity=qty,
        unit_price=weighted_unit_price([(a.quantity, a.unit_price) for a in allocations]),
        subtotal=money2(sum((a.amount for a in allocations), ZERO)),
    )
    for seq, a in enumerate(allocations, start=1):
        item.allocations.append(
            SaleInvoiceAllocation(
                seq=seq,
                batch_id=a.batch_id,
                batch_number=a.batch_number,
                quantity=a.quantity,
                unit_price=a.unit_price,
            ))
    return item


def create_sale_invoice(
    db: Session,
    payload: Any,
    *,
    cashier_id: int | None = None,
    as_of: Optional[date] = None,
    sync_customer: bool = True,
) -> SaleInvoice:
    """
    Build and persist one sale invoice.

    Flow:
    - validate lines, then pre-check availability per medicine (repeated
      medicines are summed) before any stock moves
    - draw the invoice number and allocate every line FEFO in the same
      transaction; any failure rolls back every decrement of every line
    - compute totals (discount, tax at settings.TAX_RATE, paid / due)
    - after commit, update customer statistics best-effort when
      ``sync_customer`` is set and the sale carries a mobile number

    Calling this twice with the same payload creates two invoices.
    """
    as_of = as_of or today_local()
    lines = _requested_lines(payload)

    payment_method = _get(payload, "payment_method") or PaymentMethod.CASH.value
    payment_method = getattr(payment_method, "value", payment_method)
    if payment_method not in {m.value for m in PaymentMethod}:
        raise ValidationError(f"Unknown payment method {payment_method}",
                              payment_method=payment_method)

    discount = parse_money(_get(payload, "discount"), "discount")
    discount_pct = parse_money(_get(payload, "discount_percentage"), "discount_percentage",
                               maximum=HUNDRED)
    amount_paid = parse_money(_get(payload, "amount_paid"), "amount_paid")

    customer_mobile = _clean(_get(payload, "customer_mobile"))

    with unit_of_work(db, "create sale invoice"):
        _precheck_stock(db, lines, as_of)

        invoice = SaleInvoice(
            invoice_number=next_document_number(
                db,
                settings.INVOICE_PREFIX,
                settings.INVOICE_PREFIX,
                on_date=as_of,
                pad=settings.INVOICE_NUMBER_PAD,
            ),
            customer_name=_clean(_get(payload, "customer_name")),
            customer_mobile=customer_mobile,
            customer_address=_clean(_get(payload, "customer_address")),
            payment_method=payment_method,
            prescription_ref=_clean(_get(payload, "prescription_ref")),
            cashier_id=cashier_id,
            notes=_get(payload, "notes"),
            sale_date=as_of,
            status=InvoiceStatus.COMPLETED.value,
            refund_amount=ZERO,
            customer_sync_status=(CustomerSyncStatus.PENDING.value
                                  if customer_mobile else CustomerSyncStatus.SKIPPED.value),
        )
        db.add(invoice)
        db.flush()

        for line_no, (medicine_id, qty) in enumerate(lines, start=1):
            medicine = get_medicine(db, medicine_id)
            allocations = allocate_batches_fefo(
                db,
                medicine_id,
                qty,
                as_of=as_of,
                ref_type="SALE_INVOICE",
                ref_id=invoice.id,
                user_id=cashier_id,
            )
            invoice.items.append(_build_item(line_no, medicine_id, medicine.name, allocations))

        subtotal = sum((item.subtotal for item in invoice.items), ZERO)
        amounts = compute_invoice_amounts(
            subtotal,
            tax_rate=settings.TAX_RATE,
            discount_amount=discount,
            discount_percentage=discount_pct,
            amount_paid=amount_paid,
        )
        _check_discount(amounts)
        if amounts["amount_paid"] > amounts["total_amount"]:
            raise ValidationError(
                "Amount paid cannot exceed total amount",
                amount_paid=str(amounts["amount_paid"]),
                total_amount=str(amounts["total_amount"]),
            )

        for field, value in amounts.items():
            setattr(invoice, field, value)
        invoice.payment_status = derive_payment_status(
            amounts["amount_paid"], amounts["amount_due"]).value

    invoice_id = invoice.id
    logger.info(
        "Sale invoice created invoice_id=%s number=%s lines=%s total=%s",
        invoice_id, invoice.invoice_number, len(lines), invoice.total_amount)

    if sync_customer and customer_mobile:
        sync_customer_for_invoice(db, invoice_id)

    return get_sale_invoice(db, invoice_id)


def get_sale_invoice(db: Session, invoice_id: int) -> SaleInvoice:
    invoice = db.execute(
        select(SaleInvoice).options(
            selectinload(SaleInvoice.items).selectinload(SaleInvoiceItem.allocations)
        ).where(SaleInvoice.id == invoice_id).execution_options(
            populate_existing=True)).scalar_one_or_none()
    if not invoice:
        raise NotFoundError(f"Invoice {invoice_id} not found", invoice_id=invoice_id)
    return invoice


MAX_PAGE_SIZE = 100


def list_sale_invoices(
    db: Session,
    *,
    status: Optional[str] = None,
    customer_mobile: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    page: int = 1,
    limit: int = 20,
) -> Dict[str, Any]:
    """
    Page through invoices, newest sale date first (ties by id, newest first).
    Date bounds are inclusive. Returns the rows plus page, limit, total and
    pages.
    """
    page = require_positive_int(page, "page")
    limit = require_positive_int(limit, "limit")
    if limit > MAX_PAGE_SIZE:
        raise ValidationError(f"limit cannot exceed {MAX_PAGE_SIZE}", limit=limit)

    filters = []
    status = _clean(status)
    if status:
        if status not in {s.value for s in InvoiceStatus}:
            raise ValidationError(f"Unknown invoice status: {status}", status=status)
        filters.append(SaleInvoice.status == status)
    customer_mobile = _clean(customer_mobile)
    if customer_mobile:
        filters.append(SaleInvoice.customer_mobile == customer_mobile)
    if start_date and end_date and start_date > end_date:
        raise ValidationError("start_date cannot be after end_date",
                              start_date=str(start_date), end_date=str(end_date))
    if start_date:
        filters.append(SaleInvoice.sale_date >= start_date)
    if end_date:
        filters.append(SaleInvoice.sale_date <= end_date)

    total = db.execute(
        select(func.count(SaleInvoice.id)).where(*filters)).scalar_one()
    rows = db.execute(
        select(SaleInvoice).options(
            selectinload(SaleInvoice.items).selectinload(SaleInvoiceItem.allocations)
        ).where(*filters)
        .order_by(SaleInvoice.sale_date.desc(), SaleInvoice.id.desc())
        .offset((page - 1) * limit).limit(limit)).scalars().all()

    return {
        "items": list(rows),
        "page": page,
        "limit": limit,
        "total": total,
        "pages": math.ceil(total / limit),
    }


# ---------- Refund ----------


def process_refund(
    db: Session,
    invoice_id: int,
    refund_amount,
    reason: str,
    *,
    restock: Optional[bool] = None,
    user_id: int | None = None,
    as_of: Optional[date] = None,
) -> SaleInvoice:
    """
    Record a (partial or full) refund against an invoice.

    ``refund_amount`` on the invoice is cumulative. Reaching the invoice
    total marks it REFUNDED and, when restocking is on, puts every
    allocated quantity back on its original batch. Partial refunds only
    move money.
    """
    amount = money2(parse_money(refund_amount, "refund_amount") or ZERO)
    if amount <= 0:
        raise ValidationError("Refund amount must be greater than zero",
                              refund_amount=str(refund_amount))
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("Refund reason is required")

    do_restock = settings.REFUND_RESTOCK if restock is None else restock
    restocked = 0

    with unit_of_work(db, "process refund"):
        invoice = get_sale_invoice(db, invoice_id)
        if invoice.status == InvoiceStatus.REFUNDED.value:
            raise ConflictError("Invoice has already been fully refunded",
                                invoice_id=invoice_id)

        already = money2(invoice.refund_amount)
        total = money2(invoice.total_amount)
        new_total = already + amount
        if new_total > total:
            raise ValidationError(
                "Refund amount cannot exceed invoice total",
                invoice_id=invoice_id,
                refundable=str(total - already),
                requested=str(amount),
            )

        status = (InvoiceStatus.REFUNDED if new_total == total
                  else InvoiceStatus.PARTIALLY_REFUNDED)

        # Compare-and-set on the amount read above.
        res = db.execute(
            update(SaleInvoice).where(
                SaleInvoice.id == invoice_id,
                SaleInvoice.status == invoice.status,
                SaleInvoice.refund_amount == already,
            ).values(
                refund_amount=new_total,
                status=status.value,
                refund_reason=reason,
                refund_date=now_local(),
            ).execution_options(synchronize_session=False))
        if res.rowcount != 1:
            raise ConflictError("Invoice changed while refunding, try again",
                                invoice_id=invoice_id)

        if status == InvoiceStatus.REFUNDED and do_restock:
            for item in invoice.items:
                for alloc in item.allocations:
                    restock_allocation(
                        db,
                        batch_id=alloc.batch_id,
                        quantity=alloc.quantity,
                        ref_type="SALE_REFUND",
                        ref_id=invoice.id,
                        as_of=as_of,
                        user_id=user_id,
                        remark=f"Refund of {invoice.invoice_number}",
                    )
                    restocked += alloc.quantity

    logger.info(
        "Refund recorded invoice_id=%s amount=%s cumulative=%s status=%s restocked=%s",
        invoice_id, amount, new_total, status.value, restocked)

    invoice = get_sale_invoice(db, invoice_id)
    if invoice.customer_mobile:
        sync_customer_for_invoice(db, invoice_id)
        invoice = get_sale_invoice(db, invoice_id)
    return invoice
