# FILE: pharmapos/api/routes_pharmacy_sales.py
from __future__ import annotations

import logging
from datetime import date
from typing import Callable, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Query
from sqlalchemy.orm import Session

from pharmapos.api.deps import get_db, get_session_factory
from pharmapos.schemas.pharmacy import RefundIn, SaleCreateIn, SaleOut, TotalsOut, TotalsPreviewIn
from pharmapos.services.customer_stats import dispatch_customer_stats
from pharmapos.services.pharmacy_sales import (
    calculate_invoice_totals,
    create_sale_invoice,
    get_sale_invoice,
    list_sale_invoices,
    process_refund,
)
from pharmapos.utils.resp import ok

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/pharmacy", tags=["pharmacy-sales"])


@router.post("/sales")
def create_sale(
    payload: SaleCreateIn,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    cashier_id: Optional[int] = Header(None, alias="X-User-Id"),
):
    # Customer stats run after the response, in their own sessions.
    invoice = create_sale_invoice(db, payload, cashier_id=cashier_id, sync_customer=False)
    data = SaleOut.model_validate(invoice).model_dump()

    if invoice.customer_mobile:
        # End the read transaction before the background task takes the write lock.
        db.close()
        background_tasks.add_task(
            dispatch_customer_stats, data["id"], session_factory=session_factory)
    return ok(data, status_code=201)


@router.post("/sales/preview")
def preview_sale_totals(payload: TotalsPreviewIn):
    totals = calculate_invoice_totals(
        payload.items,
        discount_percentage=payload.discount_percentage,
        discount=payload.discount,
    )
    return ok(TotalsOut(**totals).model_dump())


@router.get("/sales")
def list_sales(
    status: Optional[str] = Query(None),
    customer_mobile: Optional[str] = Query(None),
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    result = list_sale_invoices(
        db,
        status=status,
        customer_mobile=customer_mobile,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
    )
    return ok({
        "sales": [SaleOut.model_validate(x).model_dump() for x in result["items"]],
        "pagination": {k: result[k] for k in ("page", "limit", "total", "pages")},
    })


@router.get("/sales/{invoice_id}")
def get_sale(invoice_id: int, db: Session = Depends(get_db)):
    return ok(SaleOut.model_validate(get_sale_invoice(db, invoice_id)).model_dump())


@router.post("/sales/{invoice_id}/refund")
def refund_sale(
    invoice_id: int,
    payload: RefundIn,
    db: Session = Depends(get_db),
    user_id: Optional[int] = Header(None, alias="X-User-Id"),
):
    invoice = process_refund(
        db,
        invoice_id,
        payload.refund_amount,
        payload.refund_reason,
        restock=payload.restock,
        user_id=user_id,
    )
    return ok(SaleOut.model_validate(invoice).model_dump())
