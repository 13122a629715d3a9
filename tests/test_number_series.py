from __future__ import annotations

import threading
from datetime import date

import pytest

from pharmapos.services.errors import ValidationError
from pharmapos.services.number_series import next_document_number


def test_numbers_are_sequential_and_zero_padded(db):
    d = date(2025, 6, 1)
    first = next_document_number(db, "INV", "INV", on_date=d)
    second = next_document_number(db, "INV", "INV", on_date=d)
    db.commit()

    assert first == "INV-2025-000001"
    assert second == "INV-2025-000002"


def test_each_year_starts_again(db):
    next_document_number(db, "INV", "INV", on_date=date(2025, 12, 31))
    next_document_number(db, "INV", "INV", on_date=date(2025, 12, 31))
    assert next_document_number(db, "INV", "INV", on_date=date(2026, 1, 1)) == "INV-2026-000001"
    assert next_document_number(db, "INV", "INV", on_date=date(2025, 3, 1)) == "INV-2025-000003"


def test_keys_are_independent_and_pad_is_configurable(db):
    d = date(2025, 6, 1)
    next_document_number(db, "INV", "INV", on_date=d)
    assert next_document_number(db, "RFD", "RF", on_date=d, pad=4) == "RF-2025-0001"


def test_rolled_back_numbers_are_reused(db):
    d = date(2025, 6, 1)
    next_document_number(db, "INV", "INV", on_date=d)
    db.rollback()
    assert next_document_number(db, "INV", "INV", on_date=d) == "INV-2025-000001"


@pytest.mark.parametrize("key,prefix", [("", "INV"), ("INV", "")])
def test_key_and_prefix_required(db, key, prefix):
    with pytest.raises(ValidationError):
        next_document_number(db, key, prefix)


def test_concurrent_callers_never_share_a_number(session_factory):
    d = date(2025, 6, 1)
    workers = 8
    results: list[str] = []
    errors: list[BaseException] = []
    lock = threading.Lock()
    start = threading.Barrier(workers)

    def worker():
        session = session_factory()
        try:
            start.wait()
            number = next_document_number(session, "INV", "INV", on_date=d)
            session.commit()
            with lock:
                results.append(number)
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
    assert sorted(results) == [f"INV-2025-{n:06d}" for n in range(1, workers + 1)]
