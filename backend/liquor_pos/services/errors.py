"""
Domain errors for stock operations and the uniform result wrapper.

Services raise StockError subclasses for expected business conditions
(unknown product, wrong workflow state, duplicate active session, ...).
Public operations are wrapped with service_result, which turns those into
{"success": False, "error": ...} dictionaries. Storage and programming
errors are not StockErrors and propagate to the caller.
"""
from __future__ import annotations

from functools import wraps

from ..extensions import db


class StockError(Exception):
    """Base class for expected stock-domain failures."""

    def __init__(self, message: str, **extra):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_result(self) -> dict:
        return {"success": False, "error": self.message, **self.extra}


class NotFoundError(StockError):
    """Raised when a product, session or item does not exist."""


class InvalidStateError(StockError):
    """Raised when a workflow step is attempted from the wrong state."""


class ConflictError(StockError):
    """Raised on uniqueness conflicts that are reported rather than retried."""


class StockValidationError(StockError):
    """Raised when input values are out of range or malformed."""


class InsufficientStockError(StockError):
    """Raised when a sale would take live stock below zero."""


def service_result(func):
    """
    Convert StockError into the {"success": False, "error": ...} shape.

    The session is rolled back so nothing half-written is left pending.
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except StockError as exc:
            db.session.rollback()
            return exc.to_result()
    # Callers that want exceptions (other services, tests) use .raw
    wrapper.raw = func
    return wrapper
