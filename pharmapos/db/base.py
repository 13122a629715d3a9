# pharmapos/db/base.py
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """All pharmacy tables (medicines, batches, invoices, series) inherit from this."""
    pass
