from __future__ import annotations

from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

from pharmapos.db.init_db import create_tables
from pharmapos.db.session import make_engine
from pharmapos.models import Medicine, MedicineBatch, MedicineStatus

TODAY = date(2025, 6, 1)


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'pharmapos.db'}", echo=False)
    create_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_medicine(db):
    counter = {"n": 0}

    def _make(name: str | None = None, *, active: bool = True) -> Medicine:
        counter["n"] += 1
        medicine = Medicine(
            name=name or f"Medicine {counter['n']}",
            generic_name="generic",
            manufacturer="Acme Pharma",
            status=MedicineStatus.ACTIVE.value if active else MedicineStatus.INACTIVE.value,
        )
        db.add(medicine)
        db.commit()
        return medicine

    return _make


@pytest.fixture
def make_batch(db):
    counter = {"n": 0}

    def _make(
        medicine: Medicine,
        *,
        quantity: int,
        expiry: date,
        price="10",
        mfg: date | None = None,
        batch_number: str | None = None,
        created_at: datetime | None = None,
        status: str = "available",
    ) -> MedicineBatch:
        counter["n"] += 1
        batch = MedicineBatch(
            medicine_id=medicine.id,
            batch_number=batch_number or f"B{counter['n']:03d}",
            manufacturing_date=mfg or (TODAY - timedelta(days=180)),
            expiry_date=expiry,
            quantity=quantity,
            purchase_price=Decimal(str(price)) / 2,
            selling_price=Decimal(str(price)),
            status=status,
        )
        if created_at is not None:
            batch.created_at = created_at
        db.add(batch)
        db.commit()
        return batch

    return _make


@pytest.fixture
def qty_of(db):
    """Current committed quantity of a batch, bypassing the identity map."""

    def _qty(batch_id: int) -> int:
        db.expire_all()
        return db.get(MedicineBatch, batch_id).quantity

    return _qty
