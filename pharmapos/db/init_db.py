# pharmapos/db/init_db.py
from __future__ import annotations

import argparse
import logging

from sqlalchemy.engine import Engine

from pharmapos.core.logging import setup_logging
from pharmapos.db.base import Base
from pharmapos.db.session import engine as default_engine

# Import all models so metadata is complete
from pharmapos.models import (  # noqa: F401
    pharmacy_inventory, pharmacy_sales, number_series)

logger = logging.getLogger(__name__)


def create_tables(eng: Engine | None = None) -> None:
    Base.metadata.create_all(bind=eng or default_engine)


def drop_tables(eng: Engine | None = None) -> None:
    Base.metadata.drop_all(bind=eng or default_engine)


def main() -> None:
    parser = argparse.ArgumentParser(description="Create PharmaPOS tables")
    parser.add_argument("--drop", action="store_true",
                        help="drop existing tables first")
    args = parser.parse_args()

    setup_logging()
    if args.drop:
        drop_tables()
        logger.warning("Dropped all PharmaPOS tables")
    create_tables()
    logger.info("Tables ready: %s", ", ".join(sorted(Base.metadata.tables)))


if __name__ == "__main__":
    main()
