# FILE: pharmapos/services/inventory.py
from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, func, select, update
from sqlalchemy.orm import Session

from pharmapos.core.config import settings
from pharmapos.models.pharmacy_inventory import (
    BatchStatus,
    Medicine,
    MedicineBatch,
    MedicineStatus,
    StockTransaction,
    StockTxnType,
)
from pharmapos.services.billing_math import D, price4
from pharmapos.services.errors import (
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    ValidationError,
)
from pharmapos.services.transactions import unit_of_work
from pharmapos.utils.timezone import today_local

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchAllocation:
    """How much of one batch went into one sale line."""

    batch_id: int
    batch_number: str
    manufacturing_date: date
    expiry_date: date
    quantity: int
    unit_price: Decimal

    @property
    def amount(self) -> Decimal:
        return self.unit_price * self.quantity


class _StaleBatch(Exception):
    """A conditional decrement matched no row: someone else took the stock."""


# ---------- Status ----------


def compute_batch_status(batch: MedicineBatch, as_of: Optional[date] = None) -> BatchStatus:
    """
    Pure derivation of a batch's status.

    DAMAGED is a manual mark and wins. Otherwise an empty batch is SOLD_OUT.
    A batch whose expiry is not after ``as_of``, or whose manufacturing date
    is still ahead of it, is not sellable and reads EXPIRED; the next
    refresh after the manufacturing date flips it to AVAILABLE.
    """
    as_of = as_of or today_local()
    if batch.status == BatchStatus.DAMAGED.value:
        return BatchStatus.DAMAGED
    if int(batch.quantity or 0) <= 0:
        return BatchStatus.SOLD_OUT
    if batch.expiry_date <= as_of or batch.manufacturing_date > as_of:
        return BatchStatus.EXPIRED
    return BatchStatus.AVAILABLE


def refresh_batch_statuses(db: Session, as_of: Optional[date] = None) -> int:
    """Recompute stored status snapshots. Returns how many rows changed."""
    as_of = as_of or today_local()
    changed = 0
    with unit_of_work(db, "refresh batch statuses"):
        rows = db.execute(
            select(MedicineBatch).where(
                MedicineBatch.status != BatchStatus.DAMAGED.value)).scalars().all()
        for batch in rows:
            status = compute_batch_status(batch, as_of).value
            if batch.status != status:
                batch.status = status
                changed += 1
    return changed


# ---------- Ledger ----------


def create_stock_transaction(
    db: Session,
    *,
    medicine_id: int,
    batch_id: int | None,
    qty_delta: int,
    txn_type: StockTxnType,
    ref_type: str = "",
    ref_id: int | None = None,
    unit_price: Decimal | None = None,
    remark: str = "",
    user_id: int | None = None,
) -> StockTransaction:
    """
    Central creator for StockTransaction, always use this so the ledger is consistent.
    """
    st = StockTransaction(
        medicine_id=medicine_id,
        batch_id=batch_id,
        quantity_change=int(qty_delta),
        txn_type=txn_type.value,
        ref_type=ref_type,
        ref_id=ref_id,
        unit_price=unit_price or Decimal("0"),
        remark=remark or "",
        user_id=user_id,
    )
    db.add(st)
    return st


# ---------- Lookups ----------


def get_medicine(db: Session, medicine_id: int) -> Medicine:
    medicine = db.get(Medicine, medicine_id)
    if not medicine:
        raise NotFoundError(f"Medicine {medicine_id} not found",
                            medicine_id=medicine_id)
    return medicine


def get_batch(db: Session, batch_id: int) -> MedicineBatch:
    batch = db.get(MedicineBatch, batch_id)
    if not batch:
        raise NotFoundError(f"Batch {batch_id} not found", batch_id=batch_id)
    return batch


def _eligible_batches_stmt(medicine_id: int, as_of: date):
    return (
        select(MedicineBatch).where(
            MedicineBatch.medicine_id == medicine_id,
            MedicineBatch.quantity > 0,
            MedicineBatch.status != BatchStatus.DAMAGED.value,
            MedicineBatch.expiry_date > as_of,
            MedicineBatch.manufacturing_date <= as_of,
        ).order_by(
            MedicineBatch.expiry_date.asc(),  # earliest expiry first
            MedicineBatch.created_at.asc(),   # then oldest receipt
            MedicineBatch.id.asc(),           # tie-breaker
        ).execution_options(populate_existing=True))


def get_available_batches(
    db: Session,
    medicine_id: int,
    as_of: Optional[date] = None,
) -> List[MedicineBatch]:
    """Eligible batches for ``medicine_id`` in FEFO order."""
    as_of = as_of or today_local()
    return list(db.execute(_eligible_batches_stmt(medicine_id, as_of)).scalars().all())


def available_quantity(db: Session, medicine_id: int, as_of: Optional[date] = None) -> int:
    as_of = as_of or today_local()
    total = db.execute(
        select(func.coalesce(func.sum(MedicineBatch.quantity), 0)).where(
            MedicineBatch.medicine_id == medicine_id,
            MedicineBatch.quantity > 0,
            MedicineBatch.status != BatchStatus.DAMAGED.value,
            MedicineBatch.expiry_date > as_of,
            MedicineBatch.manufacturing_date <= as_of,
        )).scalar()
    return int(total or 0)


# ---------- Quantity writes ----------


def _apply_delta(db: Session, batch: MedicineBatch, delta: int, as_of: date) -> bool:
    """
    Guarded ``quantity = quantity + delta`` that never lets quantity go below
    zero. Returns False when the guard fails (stock moved under us).
    """
    res = db.execute(
        update(MedicineBatch).where(
            MedicineBatch.id == batch.id,
            MedicineBatch.quantity + delta >= 0,
        ).values(quantity=MedicineBatch.quantity + delta).execution_options(
            synchronize_session=False))
    if res.rowcount != 1:
        return False

    db.refresh(batch)
    batch.status = compute_batch_status(batch, as_of).value
    db.flush()
    return True


def _release(db: Session, taken: List[tuple[MedicineBatch, int]], as_of: date) -> None:
    for batch, qty in reversed(taken):
        _apply_delta(db, batch, qty, as_of)


def _take_fefo(
    db: Session,
    batches: List[MedicineBatch],
    quantity: int,
    as_of: date,
) -> List[tuple[MedicineBatch, int, Decimal]]:
    remaining = quantity
    taken: List[tuple[MedicineBatch, int]] = []
    out: List[tuple[MedicineBatch, int, Decimal]] = []

    for batch in batches:
        if remaining <= 0:
            break

        available = int(batch.quantity or 0)
        use_qty = min(available, remaining)
        if use_qty <= 0:
            continue

        # Read the price before the write refreshes the row.
        unit_price = price4(batch.selling_price)
        if not _apply_delta(db, batch, -use_qty, as_of):
            _release(db, taken, as_of)
            raise _StaleBatch(batch.id)

        taken.append((batch, use_qty))
        out.append((batch, use_qty, unit_price))
        remaining -= use_qty

    if remaining > 0:
        # Pre-check passed but the walk came up short: a row changed between
        # the read and the writes.
        _release(db, taken, as_of)
        raise _StaleBatch(None)

    return out


def require_positive_int(value: Any, field: str = "quantity") -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{field} must be a positive integer", **{field: value})
    return value


def allocate_batches_fefo(
    db: Session,
    medicine_id: int,
    quantity: int,
    *,
    as_of: Optional[date] = None,
    ref_type: str = "",
    ref_id: int | None = None,
    user_id: int | None = None,
    max_retries: int | None = None,
) -> List[BatchAllocation]:
    """
    FEFO (First-Expiry-First-Out) allocation for one medicine.

    - Uses only batches with quantity > 0, not damaged, expiry after ``as_of``
      and manufacturing date on or before ``as_of``
    - Orders by expiry, then receipt time, then id
    - Checks total availability before touching any batch
    - Decrements each batch with a guarded UPDATE; if a guard fails the
      attempt's decrements are put back and the walk restarts from a fresh read
    - Writes one SALE ledger row per batch used
    - Returns allocations in consumption order; does not commit

    Raises ValidationError / NotFoundError / InsufficientStockError /
    ConflictError (retries exhausted).
    """
    quantity = require_positive_int(quantity)
    as_of = as_of or today_local()
    retries = settings.ALLOCATION_MAX_RETRIES if max_retries is None else max_retries

    medicine = get_medicine(db, medicine_id)
    if not medicine.is_active:
        raise ValidationError(f"Medicine {medicine.name} is not active",
                              medicine_id=medicine_id)

    for attempt in range(retries + 1):
        batches = get_available_batches(db, medicine_id, as_of)
        total_available = sum(int(b.quantity or 0) for b in batches)
        if total_available < quantity:
            raise InsufficientStockError(
                medicine_id=medicine_id,
                available=total_available,
                requested=quantity,
                medicine_name=medicine.name,
            )

        try:
            taken = _take_fefo(db, batches, quantity, as_of)
        except _StaleBatch as stale:
            logger.warning(
                "FEFO allocation raced medicine_id=%s batch_id=%s attempt=%s",
                medicine_id, stale.args[0] if stale.args else None, attempt + 1)
            continue

        allocations: List[BatchAllocation] = []
        for batch, use_qty, unit_price in taken:
            create_stock_transaction(
                db,
                medicine_id=medicine_id,
                batch_id=batch.id,
                qty_delta=-use_qty,
                txn_type=StockTxnType.SALE,
                ref_type=ref_type,
                ref_id=ref_id,
                unit_price=unit_price,
                remark=f"Sale from {ref_type or 'counter'} {ref_id or ''}".strip(),
                user_id=user_id,
            )
            allocations.append(
                BatchAllocation(
                    batch_id=batch.id,
                    batch_number=batch.batch_number,
                    manufacturing_date=batch.manufacturing_date,
                    expiry_date=batch.expiry_date,
                    quantity=use_qty,
                    unit_price=unit_price,
                ))
        return allocations

    raise ConflictError(
        f"Stock for medicine {medicine_id} kept changing; gave up after {retries + 1} attempts",
        medicine_id=medicine_id,
    )


def restock_allocation(
    db: Session,
    *,
    batch_id: int,
    quantity: int,
    ref_type: str,
    ref_id: int | None,
    as_of: Optional[date] = None,
    user_id: int | None = None,
    remark: str = "",
) -> MedicineBatch:
    """Put sold quantity back on the batch it came from. Does not commit."""
    quantity = require_positive_int(quantity)
    as_of = as_of or today_local()
    batch = get_batch(db, batch_id)
    _apply_delta(db, batch, quantity, as_of)
    create_stock_transaction(
        db,
        medicine_id=batch.medicine_id,
        batch_id=batch.id,
        qty_delta=quantity,
        txn_type=StockTxnType.REFUND_RESTOCK,
        ref_type=ref_type,
        ref_id=ref_id,
        unit_price=D(batch.selling_price),
        remark=remark,
        user_id=user_id,
    )
    return batch


# ---------- Receipt / adjustment ----------


def _field(data: Any, name: str, default: Any = None) -> Any:
    if isinstance(data, dict):
        return data.get(name, default)
    return getattr(data, name, default)


def add_stock(
    db: Session,
    data: Any,
    *,
    user_id: int | None = None,
    as_of: Optional[date] = None,
) -> MedicineBatch:
    """
    Receive stock. A known (medicine, batch number) gets its quantity raised,
    otherwise a new batch is created. Commits.
    """
    as_of = as_of or today_local()

    medicine_id = _field(data, "medicine_id")
    batch_number = (_field(data, "batch_number") or "").strip()
    mfg = _field(data, "manufacturing_date")
    exp = _field(data, "expiry_date")
    qty = _field(data, "quantity")
    purchase_price = D(_field(data, "purchase_price"))
    selling_price = D(_field(data, "selling_price"))

    if not batch_number:
        raise ValidationError("Batch number is required")
    if isinstance(qty, bool) or not isinstance(qty, int) or qty < 0:
        raise ValidationError("Quantity must be a non-negative integer", quantity=qty)
    if mfg is None or exp is None:
        raise ValidationError("Manufacturing and expiry dates are required")
    if mfg > as_of:
        raise ValidationError("Manufacturing date cannot be in the future")
    if exp <= mfg:
        raise ValidationError("Expiry date must be after manufacturing date")
    if exp <= as_of:
        raise ValidationError("Expiry date must be in the future")
    if purchase_price < 0 or selling_price < 0:
        raise ValidationError("Prices cannot be negative")

    with unit_of_work(db, "add stock"):
        get_medicine(db, medicine_id)

        batch = db.execute(
            select(MedicineBatch).where(
                MedicineBatch.medicine_id == medicine_id,
                MedicineBatch.batch_number == batch_number,
            )).scalar_one_or_none()

        if batch is not None:
            if qty:
                _apply_delta(db, batch, qty, as_of)
        else:
            batch = MedicineBatch(
                medicine_id=medicine_id,
                batch_number=batch_number,
                manufacturing_date=mfg,
                expiry_date=exp,
                quantity=qty,
                purchase_price=price4(purchase_price),
                selling_price=price4(selling_price),
                supplier_ref=_field(data, "supplier_ref"),
                notes=_field(data, "notes") or "",
            )
            batch.status = compute_batch_status(batch, as_of).value
            db.add(batch)
            db.flush()

        if qty:
            create_stock_transaction(
                db,
                medicine_id=medicine_id,
                batch_id=batch.id,
                qty_delta=qty,
                txn_type=StockTxnType.RECEIPT,
                ref_type="RECEIPT",
                unit_price=price4(purchase_price),
                remark=f"Received batch {batch_number}",
                user_id=user_id,
            )

    db.refresh(batch)
    logger.info("Stock received medicine_id=%s batch=%s qty=%s",
                medicine_id, batch_number, qty)
    return batch


def adjust_stock(
    db: Session,
    batch_id: int,
    adjustment: int,
    reason: str,
    *,
    user_id: int | None = None,
    as_of: Optional[date] = None,
) -> MedicineBatch:
    """Manual +/- correction with a reason (returns, breakage, recount). Commits."""
    as_of = as_of or today_local()
    if isinstance(adjustment, bool) or not isinstance(adjustment, int) or adjustment == 0:
        raise ValidationError("Adjustment must be a non-zero integer", adjustment=adjustment)
    if not (reason or "").strip():
        raise ValidationError("Reason for adjustment is required")

    with unit_of_work(db, "adjust stock"):
        batch = get_batch(db, batch_id)
        if not _apply_delta(db, batch, adjustment, as_of):
            db.refresh(batch)
            raise ValidationError(
                "Stock cannot be negative",
                batch_id=batch_id,
                quantity=int(batch.quantity or 0),
                adjustment=adjustment,
            )
        batch.notes = reason.strip()
        create_stock_transaction(
            db,
            medicine_id=batch.medicine_id,
            batch_id=batch.id,
            qty_delta=adjustment,
            txn_type=StockTxnType.ADJUSTMENT,
            ref_type="ADJUSTMENT",
            remark=reason.strip(),
            user_id=user_id,
        )

    db.refresh(batch)
    return batch


def mark_batch_damaged(
    db: Session,
    batch_id: int,
    reason: str,
    *,
    user_id: int | None = None,
) -> MedicineBatch:
    if not (reason or "").strip():
        raise ValidationError("Reason is required")

    with unit_of_work(db, "mark batch damaged"):
        batch = get_batch(db, batch_id)
        batch.status = BatchStatus.DAMAGED.value
        batch.notes = reason.strip()
        create_stock_transaction(
            db,
            medicine_id=batch.medicine_id,
            batch_id=batch.id,
            qty_delta=0,
            txn_type=StockTxnType.DAMAGE,
            ref_type="DAMAGE",
            remark=reason.strip(),
            user_id=user_id,
        )

    db.refresh(batch)
    return batch


# ---------- Alerts ----------


def _add_months(d: date, months: int) -> date:
    month_index = d.month - 1 + months
    year = d.year + month_index // 12
    month = month_index % 12 + 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def get_expired_batches(db: Session, as_of: Optional[date] = None) -> List[MedicineBatch]:
    as_of = as_of or today_local()
    return list(
        db.execute(
            select(MedicineBatch).where(
                MedicineBatch.expiry_date <= as_of,
                MedicineBatch.quantity > 0,
            ).order_by(MedicineBatch.expiry_date.asc(),
                       MedicineBatch.id.asc())).scalars().all())


def get_batches_nearing_expiry(
    db: Session,
    months: int | None = None,
    as_of: Optional[date] = None,
) -> List[MedicineBatch]:
    as_of = as_of or today_local()
    months = settings.NEAR_EXPIRY_MONTHS if months is None else months
    if months <= 0:
        raise ValidationError("months must be positive", months=months)
    threshold = _add_months(as_of, months)
    return list(
        db.execute(
            select(MedicineBatch).where(
                MedicineBatch.expiry_date > as_of,
                MedicineBatch.expiry_date <= threshold,
                MedicineBatch.quantity > 0,
                MedicineBatch.status != BatchStatus.DAMAGED.value,
            ).order_by(MedicineBatch.expiry_date.asc(),
                       MedicineBatch.id.asc())).scalars().all())


def get_low_stock_medicines(
    db: Session,
    threshold: int | None = None,
    as_of: Optional[date] = None,
) -> List[Dict[str, Any]]:
    """Active medicines whose eligible stock is below ``threshold``."""
    as_of = as_of or today_local()
    minimum = settings.MINIMUM_STOCK_LEVEL if threshold is None else threshold

    stock = func.coalesce(func.sum(MedicineBatch.quantity), 0)
    rows = db.execute(
        select(Medicine, stock.label("current_stock")).outerjoin(
            MedicineBatch,
            and_(
                MedicineBatch.medicine_id == Medicine.id,
                MedicineBatch.quantity > 0,
                MedicineBatch.status != BatchStatus.DAMAGED.value,
                MedicineBatch.expiry_date > as_of,
                MedicineBatch.manufacturing_date <= as_of,
            ),
        ).where(Medicine.status == MedicineStatus.ACTIVE.value).group_by(
            Medicine.id).having(stock < minimum).order_by(
                Medicine.name.asc())).all()

    return [{
        "medicine": med,
        "current_stock": int(current or 0),
        "minimum_stock": minimum,
        "deficit": minimum - int(current or 0),
    } for med, current in rows]


def days_until_expiry(batch: MedicineBatch, as_of: Optional[date] = None) -> int:
    as_of = as_of or today_local()
    return (batch.expiry_date - as_of).days
