"""Invoice building, refunds and customer statistics."""

from __future__ import annotations

import threading
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from pharmapos.models import (
    Customer,
    InvoiceStatus,
    NumberSeries,
    SaleInvoice,
    StockTransaction,
    StockTxnType,
)
from pharmapos.services import customer_stats
from pharmapos.services.billing_math import compute_invoice_amounts, weighted_unit_price
from pharmapos.services.errors import (
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    ValidationError,
)
from pharmapos.services.pharmacy_sales import (
    calculate_invoice_totals,
    create_sale_invoice,
    get_sale_invoice,
    list_sale_invoices,
    process_refund,
)

from .conftest import TODAY


def _sale(*lines, **kw):
    payload = {"items": [{"medicine_id": m, "quantity": q} for m, q in lines]}
    payload.update(kw)
    return payload


def _count(db, model):
    return db.execute(select(func.count()).select_from(model)).scalar()


@pytest.fixture
def paracetamol(make_medicine, make_batch):
    """Two batches: 5 @ 10 expiring first, then 8 @ 12."""
    med = make_medicine("Paracetamol 500mg")
    first = make_batch(med, quantity=5, expiry=date(2025, 9, 1), price="10")
    second = make_batch(med, quantity=8, expiry=date(2025, 12, 1), price="12")
    return med, first, second


@pytest.fixture
def single_batch_invoice(db, make_medicine, make_batch):
    """An invoice of 8 units at 9.50 from one batch of 20: total 85.88."""
    med = make_medicine("Cetirizine 10mg")
    batch = make_batch(med, quantity=20, expiry=date(2026, 2, 1), price="9.5")
    invoice = create_sale_invoice(db, _sale((med.id, 8)), as_of=TODAY)
    assert invoice.total_amount == Decimal("85.88")
    return invoice, batch


# ---------------------------------------------------------------------------
# Totals
# ---------------------------------------------------------------------------


def test_tax_and_total_on_plain_subtotal():
    amounts = compute_invoice_amounts(Decimal("76"), tax_rate=Decimal("13"))

    assert amounts["tax_amount"] == Decimal("9.88")
    assert amounts["total_amount"] == Decimal("85.88")
    assert amounts["amount_due"] == Decimal("0.00")


def test_weighted_price_of_two_batches():
    assert weighted_unit_price([(5, Decimal("10")), (3, Decimal("12"))]) == Decimal("10.75")


def test_preview_totals():
    totals = calculate_invoice_totals([(8, Decimal("9.5"))])

    assert totals["subtotal"] == Decimal("76.00")
    assert totals["tax_amount"] == Decimal("9.88")
    assert totals["total_amount"] == Decimal("85.88")


def test_preview_percentage_and_fixed_discount():
    lines = [{"quantity": 2, "unit_price": Decimal("50")}]

    by_pct = calculate_invoice_totals(lines, discount_percentage=Decimal("10"))
    assert by_pct["discount"] == Decimal("10.00")
    assert by_pct["tax_amount"] == Decimal("11.70")
    assert by_pct["total_amount"] == Decimal("101.70")

    # A fixed amount wins over the percentage.
    fixed = calculate_invoice_totals(lines, discount_percentage=Decimal("10"),
                                     discount=Decimal("25"))
    assert fixed["discount"] == Decimal("25.00")

    with pytest.raises(ValidationError):
        calculate_invoice_totals(lines, discount=Decimal("100.01"))


@pytest.mark.parametrize("lines,kw", [
    ([(2, Decimal("50"))], {"discount": "1e27"}),
    ([(2, Decimal("50"))], {"discount_percentage": "NaN"}),
    ([(2, "abc")], {}),
    ([(2, "-Infinity")], {}),
    ([(10, Decimal("999999999999"))], {}),
    ([(0, Decimal("5"))], {}),
])
def test_preview_rejects_unusable_numbers(lines, kw):
    with pytest.raises(ValidationError):
        calculate_invoice_totals(lines, **kw)


# ---------------------------------------------------------------------------
# Invoice build
# ---------------------------------------------------------------------------


def test_multi_batch_line_collapses_to_weighted_price(db, paracetamol, qty_of):
    med, first, second = paracetamol

    invoice = create_sale_invoice(db, _sale((med.id, 8)), as_of=TODAY)

    assert invoice.invoice_number == "INV-2025-000001"
    assert invoice.status == InvoiceStatus.COMPLETED.value
    assert len(invoice.items) == 1
    item = invoice.items[0]
    assert item.quantity == 8
    assert item.unit_price == Decimal("10.7500")
    assert item.subtotal == Decimal("86.00")
    assert item.batch_id == first.id
    assert item.medicine_name == "Paracetamol 500mg"
    assert [(a.batch_id, a.quantity) for a in item.allocations] == [
        (first.id, 5), (second.id, 3)]

    assert invoice.subtotal == Decimal("86.00")
    assert invoice.tax_rate == Decimal("13.00")
    assert invoice.tax_amount == Decimal("11.18")
    assert invoice.total_amount == Decimal("97.18")
    assert invoice.amount_paid == Decimal("97.18")
    assert invoice.amount_due == Decimal("0.00")
    assert invoice.payment_status == "paid"
    assert invoice.customer_sync_status == "skipped"

    assert qty_of(first.id) == 0
    assert qty_of(second.id) == 5


def test_discount_and_partial_payment(db, paracetamol):
    med, _, _ = paracetamol

    invoice = create_sale_invoice(
        db,
        _sale((med.id, 8), discount_percentage=Decimal("10"), amount_paid=Decimal("50")),
        as_of=TODAY,
    )

    assert invoice.discount == Decimal("8.60")
    assert invoice.tax_amount == Decimal("10.06")
    assert invoice.total_amount == Decimal("87.46")
    assert invoice.amount_due == Decimal("37.46")
    assert invoice.payment_status == "partial"


def test_unpaid_credit_sale_is_pending(db, paracetamol):
    med, _, _ = paracetamol
    invoice = create_sale_invoice(
        db, _sale((med.id, 1), amount_paid=0, payment_method="credit"), as_of=TODAY)
    assert invoice.payment_status == "pending"
    assert invoice.amount_due == invoice.total_amount


def test_same_payload_twice_sells_twice(db, make_medicine, make_batch, qty_of):
    med = make_medicine()
    batch = make_batch(med, quantity=10, expiry=date(2026, 1, 1))

    one = create_sale_invoice(db, _sale((med.id, 3)), as_of=TODAY)
    two = create_sale_invoice(db, _sale((med.id, 3)), as_of=TODAY)

    assert one.id != two.id
    assert (one.invoice_number, two.invoice_number) == ("INV-2025-000001", "INV-2025-000002")
    assert qty_of(batch.id) == 4


def test_repeated_medicine_lines_are_checked_together(db, make_medicine, make_batch, qty_of):
    med = make_medicine()
    batch = make_batch(med, quantity=10, expiry=date(2026, 1, 1))

    with pytest.raises(InsufficientStockError) as exc:
        create_sale_invoice(db, _sale((med.id, 6), (med.id, 6)), as_of=TODAY)

    assert exc.value.requested == 12
    assert exc.value.available == 10
    assert qty_of(batch.id) == 10


def test_failed_line_rolls_back_every_line(db, make_medicine, make_batch, qty_of):
    a = make_medicine("A")
    b = make_medicine("B")
    a_batch = make_batch(a, quantity=10, expiry=date(2026, 1, 1))
    make_batch(b, quantity=2, expiry=date(2026, 1, 1))

    with pytest.raises(InsufficientStockError):
        create_sale_invoice(db, _sale((a.id, 4), (b.id, 3)), as_of=TODAY)

    assert qty_of(a_batch.id) == 10
    assert _count(db, SaleInvoice) == 0


def test_late_failure_undoes_decrements_ledger_and_number(db, make_medicine, make_batch, qty_of):
    a = make_medicine("A")
    b = make_medicine("B")
    a_batch = make_batch(a, quantity=10, expiry=date(2026, 1, 1))
    b_batch = make_batch(b, quantity=10, expiry=date(2026, 1, 1))

    # Overpayment is only known after every line is allocated.
    with pytest.raises(ValidationError):
        create_sale_invoice(
            db, _sale((a.id, 4), (b.id, 3), amount_paid=Decimal("100000")), as_of=TODAY)

    assert qty_of(a_batch.id) == 10
    assert qty_of(b_batch.id) == 10
    assert _count(db, SaleInvoice) == 0
    assert _count(db, StockTransaction) == 0
    assert _count(db, NumberSeries) == 0

    invoice = create_sale_invoice(db, _sale((a.id, 4), (b.id, 3)), as_of=TODAY)
    assert invoice.invoice_number == "INV-2025-000001"
    assert [i.line_no for i in invoice.items] == [1, 2]


@pytest.mark.parametrize("payload_kw", [
    {"discount": Decimal("1000")},
    {"discount": Decimal("-1")},
    {"discount_percentage": Decimal("120")},
    {"amount_paid": Decimal("-5")},
    {"payment_method": "barter"},
    {"items": []},
    {"amount_paid": "abc"},
    {"amount_paid": "Infinity"},
    {"amount_paid": "1e27"},
    {"discount": "NaN"},
    {"discount": "1e27"},
    {"discount": True},
    {"discount_percentage": "ten"},
])
def test_rejects_invalid_payloads(db, paracetamol, payload_kw, qty_of):
    med, first, _ = paracetamol
    payload = _sale((med.id, 2))
    payload.update(payload_kw)

    with pytest.raises(ValidationError):
        create_sale_invoice(db, payload, as_of=TODAY)
    assert qty_of(first.id) == 5


def test_unknown_medicine(db):
    with pytest.raises(NotFoundError):
        create_sale_invoice(db, _sale((12345, 1)), as_of=TODAY)


def test_get_sale_invoice(db, single_batch_invoice):
    invoice, _ = single_batch_invoice
    assert get_sale_invoice(db, invoice.id).invoice_number == invoice.invoice_number
    with pytest.raises(NotFoundError):
        get_sale_invoice(db, invoice.id + 100)


def test_concurrent_sales_never_oversell(db, session_factory, make_medicine, make_batch, qty_of):
    med = make_medicine("Azithromycin 500mg")
    first = make_batch(med, quantity=7, expiry=date(2025, 9, 1))
    second = make_batch(med, quantity=6, expiry=date(2025, 12, 1))
    med_id, batch_ids = med.id, (first.id, second.id)
    db.close()

    workers = 8
    numbers: list[str] = []
    refused: list[InsufficientStockError] = []
    errors: list[BaseException] = []
    lock = threading.Lock()
    start = threading.Barrier(workers)

    def worker():
        session = session_factory()
        try:
            start.wait()
            invoice = create_sale_invoice(session, _sale((med_id, 3)), as_of=TODAY)
            with lock:
                numbers.append(invoice.invoice_number)
        except InsufficientStockError as e:
            with lock:
                refused.append(e)
        except BaseException as e:  # surfaced by the assertion below
            with lock:
                errors.append(e)
        finally:
            session.close()

    threads = [threading.Thread(target=worker) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert errors == []
    assert len(numbers) == 4
    assert len(set(numbers)) == 4
    assert len(refused) == 4
    assert sum(qty_of(b) for b in batch_ids) == 1
    assert _count(db, SaleInvoice) == 4


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------


@pytest.fixture
def sales_history(db, make_medicine, make_batch):
    """Four invoices of 2 x 5.00 (11.30 each); the second one fully refunded."""
    med = make_medicine("Amoxicillin 250mg")
    make_batch(med, quantity=50, expiry=date(2026, 6, 1), price="5")
    ids = []
    for day, mobile in [
        (date(2025, 5, 1), "9800000001"),
        (date(2025, 6, 1), "9800000002"),
        (date(2025, 6, 1), "9800000001"),
        (date(2025, 6, 15), None),
    ]:
        invoice = create_sale_invoice(db, _sale((med.id, 2), customer_mobile=mobile), as_of=day)
        ids.append(invoice.id)
    process_refund(db, ids[1], Decimal("11.30"), "returned")
    return ids


def _ids(result):
    return [invoice.id for invoice in result["items"]]


def test_list_newest_first_with_pagination(db, sales_history):
    a, b, c, d = sales_history

    result = list_sale_invoices(db)
    assert _ids(result) == [d, c, b, a]
    assert (result["page"], result["limit"], result["total"], result["pages"]) == (1, 20, 4, 1)

    page_two = list_sale_invoices(db, page=2, limit=3)
    assert _ids(page_two) == [a]
    assert (page_two["total"], page_two["pages"]) == (4, 2)

    assert _ids(list_sale_invoices(db, page=3, limit=3)) == []


def test_list_filters(db, sales_history):
    a, b, c, _ = sales_history

    assert _ids(list_sale_invoices(db, status="refunded")) == [b]
    assert _ids(list_sale_invoices(db, customer_mobile=" 9800000001 ")) == [c, a]
    assert _ids(list_sale_invoices(db, start_date=date(2025, 6, 1),
                                   end_date=date(2025, 6, 1))) == [c, b]
    assert _ids(list_sale_invoices(db, end_date=date(2025, 5, 31))) == [a]

    empty = list_sale_invoices(db, customer_mobile="9899999999")
    assert (empty["items"], empty["total"], empty["pages"]) == ([], 0, 0)


@pytest.mark.parametrize("kw", [
    {"page": 0},
    {"limit": 0},
    {"limit": 101},
    {"status": "void"},
    {"start_date": date(2025, 6, 2), "end_date": date(2025, 6, 1)},
])
def test_list_rejects_bad_arguments(db, kw):
    with pytest.raises(ValidationError):
        list_sale_invoices(db, **kw)

# ---------------------------------------------------------------------------
# Refunds
# ---------------------------------------------------------------------------


def test_partial_then_full_refund(db, single_batch_invoice, qty_of):
    invoice, batch = single_batch_invoice
    assert qty_of(batch.id) == 12

    partial = process_refund(db, invoice.id, Decimal("40"), "one strip returned")
    assert partial.status == InvoiceStatus.PARTIALLY_REFUNDED.value
    assert partial.refund_amount == Decimal("40.00")
    assert partial.refund_reason == "one strip returned"
    assert partial.refund_date is not None
    assert qty_of(batch.id) == 12

    full = process_refund(db, invoice.id, Decimal("45.88"), "rest returned")
    assert full.status == InvoiceStatus.REFUNDED.value
    assert full.refund_amount == Decimal("85.88")
    assert qty_of(batch.id) == 20

    restocks = db.execute(
        select(StockTransaction).where(
            StockTransaction.txn_type == StockTxnType.REFUND_RESTOCK.value)).scalars().all()
    assert [(r.batch_id, r.quantity_change) for r in restocks] == [(batch.id, 8)]


def test_full_refund_without_restock(db, single_batch_invoice, qty_of):
    invoice, batch = single_batch_invoice

    refunded = process_refund(db, invoice.id, Decimal("85.88"), "write-off", restock=False)

    assert refunded.status == InvoiceStatus.REFUNDED.value
    assert qty_of(batch.id) == 12


def test_full_refund_restocks_every_batch(db, paracetamol, qty_of):
    med, first, second = paracetamol
    invoice = create_sale_invoice(db, _sale((med.id, 8)), as_of=TODAY)

    process_refund(db, invoice.id, invoice.total_amount, "wrong medicine")

    assert qty_of(first.id) == 5
    assert qty_of(second.id) == 8


def test_refund_after_full_refund_conflicts(db, single_batch_invoice):
    invoice, _ = single_batch_invoice
    process_refund(db, invoice.id, Decimal("85.88"), "returned")

    with pytest.raises(ConflictError):
        process_refund(db, invoice.id, Decimal("1"), "again")


@pytest.mark.parametrize("amount,reason", [
    (Decimal("0"), "zero"),
    (Decimal("-5"), "negative"),
    (Decimal("85.89"), "more than total"),
    (Decimal("10"), "   "),
    ("1e30", "too large"),
    ("abc", "not a number"),
    ("NaN", "not a number"),
    (None, "missing amount"),
])
def test_refund_validation(db, single_batch_invoice, amount, reason):
    invoice, _ = single_batch_invoice
    with pytest.raises(ValidationError):
        process_refund(db, invoice.id, amount, reason)
    assert get_sale_invoice(db, invoice.id).refund_amount == Decimal("0.00")


def test_cumulative_refund_cannot_pass_total(db, single_batch_invoice):
    invoice, _ = single_batch_invoice
    process_refund(db, invoice.id, Decimal("80"), "most of it")

    with pytest.raises(ValidationError) as exc:
        process_refund(db, invoice.id, Decimal("6"), "a bit more")
    assert exc.value.context["refundable"] == "5.88"


def test_refund_unknown_invoice(db):
    with pytest.raises(NotFoundError):
        process_refund(db, 404, Decimal("1"), "nothing")


# ---------------------------------------------------------------------------
# Customer statistics
# ---------------------------------------------------------------------------


def test_customer_stats_follow_sales_and_refunds(db, single_batch_invoice, make_medicine,
                                                make_batch):
    med = make_medicine()
    make_batch(med, quantity=10, expiry=date(2026, 1, 1), price="100")

    invoice = create_sale_invoice(
        db,
        _sale((med.id, 1), customer_name="Sita", customer_mobile="9800000000"),
        as_of=TODAY,
    )
    assert invoice.customer_sync_status == "synced"

    customer = db.execute(
        select(Customer).where(Customer.mobile == "9800000000")).scalar_one()
    assert customer.name == "Sita"
    assert customer.total_purchases == 1
    assert customer.total_spent == Decimal("113.00")

    process_refund(db, invoice.id, Decimal("13"), "price correction")
    db.refresh(customer)
    assert customer.total_spent == Decimal("100.00")

    process_refund(db, invoice.id, Decimal("100"), "returned")
    db.refresh(customer)
    assert customer.total_purchases == 0
    assert customer.total_spent == Decimal("0.00")


def test_customer_stats_failure_never_fails_the_sale(db, paracetamol, monkeypatch, qty_of):
    med, first, _ = paracetamol

    def boom(*args, **kwargs):
        raise RuntimeError("customer table locked")

    monkeypatch.setattr(customer_stats, "update_customer_stats", boom)

    invoice = create_sale_invoice(
        db, _sale((med.id, 2), customer_mobile="9811111111"), as_of=TODAY)

    assert invoice.id is not None
    assert invoice.customer_sync_status == "failed"
    assert qty_of(first.id) == 3
    assert _count(db, Customer) == 0


def test_dispatch_retries_with_fresh_sessions(db, session_factory, paracetamol, monkeypatch):
    med, _, _ = paracetamol
    invoice = create_sale_invoice(
        db, _sale((med.id, 1), customer_mobile="9822222222"), as_of=TODAY,
        sync_customer=False)
    assert invoice.customer_sync_status == "pending"
    invoice_id = invoice.id
    db.close()

    real = customer_stats.update_customer_stats
    calls = {"n": 0}

    def flaky(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("transient")
        return real(*args, **kwargs)

    monkeypatch.setattr(customer_stats, "update_customer_stats", flaky)

    assert customer_stats.dispatch_customer_stats(
        invoice_id, session_factory=session_factory, attempts=3, backoff_seconds=0)
    assert calls["n"] == 2
    assert get_sale_invoice(db, invoice_id).customer_sync_status == "synced"


def test_dispatch_gives_up_and_flags_invoice(db, session_factory, paracetamol, monkeypatch):
    med, _, _ = paracetamol
    invoice = create_sale_invoice(
        db, _sale((med.id, 1), customer_mobile="9833333333"), as_of=TODAY,
        sync_customer=False)
    invoice_id = invoice.id
    db.close()

    def boom(*args, **kwargs):
        raise RuntimeError("down")

    monkeypatch.setattr(customer_stats, "update_customer_stats", boom)

    assert not customer_stats.dispatch_customer_stats(
        invoice_id, session_factory=session_factory, attempts=2, backoff_seconds=0)
    assert get_sale_invoice(db, invoice_id).customer_sync_status == "failed"
