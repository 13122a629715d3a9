# FILE: pharmapos/services/errors.py
from __future__ import annotations

from typing import Any, Dict, Optional


class PharmacyError(RuntimeError):
    """Base of every error the sale engine raises on purpose."""

    status_code = 400
    kind = "error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"kind": self.kind, "msg": self.message}
        if self.context:
            out["context"] = self.context
        return out


class ValidationError(PharmacyError):
    status_code = 422
    kind = "validation_error"


class NotFoundError(PharmacyError):
    status_code = 404
    kind = "not_found"


class InsufficientStockError(PharmacyError):
    status_code = 409
    kind = "insufficient_stock"

    def __init__(
        self,
        medicine_id: int,
        available: int,
        requested: int,
        medicine_name: Optional[str] = None,
    ) -> None:
        label = medicine_name or f"medicine {medicine_id}"
        super().__init__(
            f"Insufficient stock for {label}. "
            f"Available: {available}, Requested: {requested}",
            medicine_id=medicine_id,
            available=available,
            requested=requested,
        )
        self.medicine_id = medicine_id
        self.available = available
        self.requested = requested


class ConflictError(PharmacyError):
    status_code = 409
    kind = "conflict"


class InternalError(PharmacyError):
    status_code = 500
    kind = "internal_error"
