# FILE: pharmapos/services/customer_stats.py
from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from pharmapos.core.config import settings
from pharmapos.models.pharmacy_sales import (
    Customer,
    CustomerSyncStatus,
    InvoiceStatus,
    SaleInvoice,
)

logger = logging.getLogger(__name__)


def update_customer_stats(
    db: Session,
    mobile: str,
    *,
    name: Optional[str] = None,
    address: Optional[str] = None,
    payment_method: Optional[str] = None,
) -> Customer:
    """
    Create-or-update the customer keyed by ``mobile`` and recompute purchase
    count, net spend and last purchase from their invoices. Does not commit.
    """
    customer = db.execute(
        select(Customer).where(Customer.mobile == mobile)).scalar_one_or_none()
    if customer is None:
        customer = Customer(
            mobile=mobile,
            name=(name or "").strip() or "Unknown",
            address=address,
            preferred_payment_method=payment_method,
            status="active",
        )
        db.add(customer)
        db.flush()

    count, spent, last = db.execute(
        select(
            func.count(SaleInvoice.id),
            func.coalesce(
                func.sum(SaleInvoice.total_amount - SaleInvoice.refund_amount), 0),
            func.max(SaleInvoice.created_at),
        ).where(
            SaleInvoice.customer_mobile == mobile,
            SaleInvoice.status != InvoiceStatus.REFUNDED.value,
        )).one()

    customer.total_purchases = int(count or 0)
    customer.total_spent = spent or 0
    customer.last_purchase_date = last
    return customer


def _mark_sync_failed(db: Session, invoice_id: int) -> None:
    try:
        inv = db.get(SaleInvoice, invoice_id)
        if inv is not None:
            inv.customer_sync_status = CustomerSyncStatus.FAILED.value
            db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Could not flag customer sync failure invoice_id=%s", invoice_id)


def sync_customer_for_invoice(db: Session, invoice_id: int, *, mark_failed: bool = True) -> bool:
    """
    Best-effort customer statistics update for one invoice.

    Runs in its own commit after the invoice is already saved. Any failure
    is logged and (optionally) recorded on the invoice; it is never raised.
    Returns False only when the update failed.
    """
    try:
        inv = db.get(SaleInvoice, invoice_id)
        if inv is None:
            logger.warning("Customer sync skipped, invoice_id=%s not found", invoice_id)
            return True
        if not inv.customer_mobile:
            return True

        update_customer_stats(
            db,
            inv.customer_mobile,
            name=inv.customer_name,
            address=inv.customer_address,
            payment_method=inv.payment_method,
        )
        inv.customer_sync_status = CustomerSyncStatus.SYNCED.value
        db.commit()
        return True
    except Exception:
        db.rollback()
        logger.exception("Error creating/updating customer for invoice_id=%s", invoice_id)
        if mark_failed:
            _mark_sync_failed(db, invoice_id)
        return False


def dispatch_customer_stats(
    invoice_id: int,
    *,
    session_factory: Optional[Callable[[], Session]] = None,
    attempts: Optional[int] = None,
    backoff_seconds: float = 0.5,
) -> bool:
    """
    Background-task entry point: fresh session per attempt, linear backoff.
    Only the last attempt flags the invoice as failed.
    """
    if session_factory is None:
        from pharmapos.db.session import SessionLocal
        session_factory = SessionLocal

    total = attempts or settings.CUSTOMER_STATS_RETRIES
    for attempt in range(1, total + 1):
        db = session_factory()
        try:
            if sync_customer_for_invoice(db, invoice_id, mark_failed=(attempt == total)):
                return True
        finally:
            db.close()
        if attempt < total:
            time.sleep(backoff_seconds * attempt)

    logger.error("Customer stats gave up invoice_id=%s after %s attempts", invoice_id, total)
    return False
