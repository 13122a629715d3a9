# FILE: pharmapos/services/number_series.py
from __future__ import annotations

import logging
from datetime import date
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pharmapos.models.number_series import NumberSeries
from pharmapos.services.errors import ConflictError, ValidationError
from pharmapos.utils.timezone import today_local

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 5


def _period_key(d: date) -> str:
    return d.strftime("%Y")


def _ensure_series_row(db: Session, key: str, period_key: str) -> None:
    exists = db.execute(
        select(NumberSeries.id).where(
            NumberSeries.key == key,
            NumberSeries.period_key == period_key,
        )).first()
    if exists:
        return

    # Two creators may race here; the UNIQUE(key, period_key) makes one lose.
    try:
        with db.begin_nested():
            db.add(NumberSeries(key=key, period_key=period_key, last_value=0))
    except IntegrityError:
        logger.debug("number series %s/%s created concurrently", key, period_key)


def next_document_number(
    db: Session,
    key: str,            # e.g. "INV", "PO"
    prefix: str,         # e.g. "INV", "PO"
    *,
    on_date: Optional[date] = None,
    pad: int = 6,        # 000001, 000002...
) -> str:
    """
    Year-scoped, concurrency-safe document number.

    Example: INV-2025-000001

    The counter is bumped with a single ``UPDATE ... SET last_value =
    last_value + 1`` before it is read back, so the row is write-locked for
    the rest of the caller's transaction and no two transactions can claim
    the same value. Nothing is committed here.
    """
    if not key or not prefix:
        raise ValidationError("Number series key and prefix are required")

    doc_date = on_date or today_local()
    pk = _period_key(doc_date)

    for _ in range(MAX_ATTEMPTS):
        _ensure_series_row(db, key, pk)

        res = db.execute(
            update(NumberSeries).where(
                NumberSeries.key == key,
                NumberSeries.period_key == pk,
            ).values(last_value=NumberSeries.last_value + 1).execution_options(
                synchronize_session=False))
        if res.rowcount != 1:
            continue

        seq = db.execute(
            select(NumberSeries.last_value).where(
                NumberSeries.key == key,
                NumberSeries.period_key == pk,
            )).scalar_one()
        return f"{prefix}-{pk}-{int(seq):0{pad}d}"

    raise ConflictError(f"Could not allocate a {key} number for {pk}")
