# FILE: pharmapos/api/routes_pharmacy_stock.py
from __future__ import annotations

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query
from sqlalchemy.orm import Session

from pharmapos.api.deps import get_db
from pharmapos.schemas.pharmacy import (
    AvailableBatchOut,
    BatchOut,
    LowStockOut,
    MedicineBatchesOut,
    MedicineBriefOut,
    StockAdjustIn,
    StockReceiptIn,
)
from pharmapos.services.inventory import (
    add_stock,
    adjust_stock,
    days_until_expiry,
    get_available_batches,
    get_batches_nearing_expiry,
    get_expired_batches,
    get_low_stock_medicines,
    get_medicine,
)
from pharmapos.utils.resp import ok
from pharmapos.utils.timezone import today_local

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/pharmacy", tags=["pharmacy-stock"])


def _batches(rows):
    return [BatchOut.model_validate(b).model_dump() for b in rows]


@router.get("/medicines/{medicine_id}/batches")
def list_available_batches(
    medicine_id: int,
    as_of: Optional[date] = Query(None),
    db: Session = Depends(get_db),
):
    as_of = as_of or today_local()
    medicine = get_medicine(db, medicine_id)
    batches = get_available_batches(db, medicine_id, as_of)

    out = MedicineBatchesOut(
        medicine=MedicineBriefOut.model_validate(medicine),
        available_stock=sum(int(b.quantity or 0) for b in batches),
        batches=[
            AvailableBatchOut(
                batch_id=b.id,
                batch_number=b.batch_number,
                manufacturing_date=b.manufacturing_date,
                expiry_date=b.expiry_date,
                quantity=int(b.quantity or 0),
                selling_price=b.selling_price,
                days_until_expiry=days_until_expiry(b, as_of),
            ) for b in batches
        ],
    )
    return ok(out.model_dump())


@router.post("/stock")
def receive_stock(
    payload: StockReceiptIn,
    db: Session = Depends(get_db),
    user_id: Optional[int] = Header(None, alias="X-User-Id"),
):
    batch = add_stock(db, payload, user_id=user_id)
    return ok(BatchOut.model_validate(batch).model_dump(), status_code=201)


@router.post("/stock/{batch_id}/adjust")
def adjust_batch_stock(
    batch_id: int,
    payload: StockAdjustIn,
    db: Session = Depends(get_db),
    user_id: Optional[int] = Header(None, alias="X-User-Id"),
):
    batch = adjust_stock(db, batch_id, payload.adjustment, payload.reason, user_id=user_id)
    return ok(BatchOut.model_validate(batch).model_dump())


# =========================
# ALERTS
# =========================
@router.get("/stock/alerts/expired")
def expired_batches(db: Session = Depends(get_db)):
    return ok(_batches(get_expired_batches(db)))


@router.get("/stock/alerts/nearing-expiry")
def nearing_expiry_batches(
    months: Optional[int] = Query(None, ge=1, le=36),
    db: Session = Depends(get_db),
):
    return ok(_batches(get_batches_nearing_expiry(db, months=months)))


@router.get("/stock/alerts/low-stock")
def low_stock_medicines(
    threshold: Optional[int] = Query(None, ge=0),
    db: Session = Depends(get_db),
):
    rows = get_low_stock_medicines(db, threshold=threshold)
    return ok([
        LowStockOut(
            medicine=MedicineBriefOut.model_validate(r["medicine"]),
            current_stock=r["current_stock"],
            minimum_stock=r["minimum_stock"],
            deficit=r["deficit"],
        ).model_dump() for r in rows
    ])
