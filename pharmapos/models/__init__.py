# pharmapos/models/__init__.py
from .pharmacy_inventory import (
    Medicine,
    MedicineBatch,
    StockTransaction,
    BatchStatus,
    MedicineStatus,
    StockTxnType,
)
from .pharmacy_sales import (
    SaleInvoice,
    SaleInvoiceItem,
    SaleInvoiceAllocation,
    Customer,
    InvoiceStatus,
    PaymentStatus,
    PaymentMethod,
    CustomerSyncStatus,
)
from .number_series import NumberSeries

__all__ = [
    "Medicine",
    "MedicineBatch",
    "StockTransaction",
    "BatchStatus",
    "MedicineStatus",
    "StockTxnType",
    "SaleInvoice",
    "SaleInvoiceItem",
    "SaleInvoiceAllocation",
    "Customer",
    "InvoiceStatus",
    "PaymentStatus",
    "PaymentMethod",
    "CustomerSyncStatus",
    "NumberSeries",
]
