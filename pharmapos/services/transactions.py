# FILE: pharmapos/services/transactions.py
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from pharmapos.services.errors import InternalError, PharmacyError

logger = logging.getLogger(__name__)


@contextmanager
def unit_of_work(db: Session, action: str) -> Iterator[Session]:
    """
    Commit on success, roll back on any error.

    Business errors propagate unchanged; database failures are logged and
    re-raised as InternalError so callers only deal with PharmacyError.
    """
    try:
        yield db
        db.commit()
    except PharmacyError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("Database failure during %s", action)
        raise InternalError(f"Database failure during {action}") from e
    except Exception:
        db.rollback()
        raise
