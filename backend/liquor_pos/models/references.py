"""
Typed links from log rows back to the entity that caused them.

Movement and audit rows point at "whatever caused this change": a sale, an
inward receipt, a reconciliation session, a ledger entry, or a manual
adjustment. The pair is stored as two columns (reference_type,
reference_id) but is only ever handled in Python as a StockReference, so an
unknown kind cannot be written.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional


class ReferenceKind(str, Enum):
    SALE = "sale"
    STOCK_INWARD = "stock_inward"
    STOCK_RECONCILIATION = "stock_reconciliation"
    DAILY_STOCK = "daily_stock"
    MANUAL_ADJUSTMENT = "manual_adjustment"


@dataclass(frozen=True)
class StockReference:
    kind: ReferenceKind
    id: Optional[str] = None

    def __post_init__(self):
        # Accept the raw string form ("sale") as well as the enum member
        object.__setattr__(self, "kind", ReferenceKind(self.kind))
        if self.id is not None:
            object.__setattr__(self, "id", str(self.id))

    @classmethod
    def sale(cls, sale_id) -> "StockReference":
        return cls(ReferenceKind.SALE, sale_id)

    @classmethod
    def inward(cls, inward_id) -> "StockReference":
        return cls(ReferenceKind.STOCK_INWARD, inward_id)

    @classmethod
    def reconciliation(cls, reconciliation_id) -> "StockReference":
        return cls(ReferenceKind.STOCK_RECONCILIATION, reconciliation_id)

    @classmethod
    def daily_stock(cls, entry_id) -> "StockReference":
        return cls(ReferenceKind.DAILY_STOCK, entry_id)

    @classmethod
    def manual(cls, adjustment_id=None) -> "StockReference":
        return cls(ReferenceKind.MANUAL_ADJUSTMENT, adjustment_id)

    @classmethod
    def from_columns(cls, reference_type: str | None, reference_id: str | None) -> "StockReference | None":
        if reference_type is None:
            return None
        return cls(ReferenceKind(reference_type), reference_id)

    def to_dict(self) -> dict:
        return {"type": self.kind.value, "id": self.id}


SCALAR_TYPES = (str, int, float, bool, type(None))


def validate_metadata(metadata: Mapping[str, Any] | None) -> dict:
    """
    Metadata is an open map of scalar values, stored as-is.

    Nested containers are rejected so the column stays a flat key/value bag.
    """
    if metadata is None:
        return {}
    if not isinstance(metadata, Mapping):
        raise ValueError("metadata must be an object")
    clean = {}
    for key, value in metadata.items():
        if not isinstance(key, str):
            raise ValueError("metadata keys must be strings")
        if not isinstance(value, SCALAR_TYPES):
            raise ValueError(f"metadata value for {key!r} must be a scalar")
        clean[key] = value
    return clean
