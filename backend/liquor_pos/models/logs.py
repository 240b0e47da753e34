from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from ..time_utils import to_utc_z
from .references import StockReference


MOVEMENT_TYPES = ("in", "out", "adjustment", "transfer", "reconciliation")
MOVEMENT_CATEGORIES = (
    "sale",
    "stock_inward",
    "stock_adjustment",
    "stock_transfer",
    "stock_reconciliation",
    "opening_stock",
    "closing_stock",
)
MOVEMENT_STATUSES = ("pending", "processed", "failed", "cancelled")

AUDIT_CHANGE_TYPES = (
    "sale",
    "inward",
    "adjustment",
    "reconciliation",
    "opening_stock",
    "closing_stock",
    "manual_adjustment",
)


class AppendOnlyError(RuntimeError):
    """Raised when code tries to modify or delete an append-only log row."""


class StockMovement(db.Model):
    """
    Business-event view of stock flow: what kind of event moved how many units.

    Append-only. total_cost_cents is computed once at write time.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_product_date", "product_id", "date"),
        db.Index("ix_stock_movements_type_date", "movement_type", "date"),
        db.Index("ix_stock_movements_category_date", "movement_category", "date"),
        db.Index("ix_stock_movements_reference", "reference_id", "reference_type"),
        db.Index("ix_stock_movements_created_by_date", "created_by_user_id", "date"),
        db.Index("ix_stock_movements_status_date", "status", "date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    movement_type = db.Column(db.String(16), nullable=False)
    movement_category = db.Column(db.String(32), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    unit_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cost_cents = db.Column(db.Integer, nullable=False, default=0)

    reference_type = db.Column(db.String(32), nullable=False)
    reference_id = db.Column(db.String(64), nullable=True)
    reference_number = db.Column(db.String(100), nullable=True)

    date = db.Column(db.DateTime(timezone=True), nullable=False)
    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    notes = db.Column(db.String(500), nullable=True)
    meta = db.Column("metadata", db.JSON, nullable=False, default=dict)
    status = db.Column(db.String(16), nullable=False, default="processed")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product")
    created_by = db.relationship("User")

    @property
    def reference(self) -> StockReference:
        return StockReference.from_columns(self.reference_type, self.reference_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "movement_type": self.movement_type,
            "movement_category": self.movement_category,
            "quantity": self.quantity,
            "unit_cost_cents": self.unit_cost_cents,
            "total_cost_cents": self.total_cost_cents,
            "reference": self.reference.to_dict(),
            "reference_number": self.reference_number,
            "date": to_utc_z(self.date),
            "created_by_user_id": self.created_by_user_id,
            "notes": self.notes,
            "metadata": dict(self.meta or {}),
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
        }


class StockAudit(db.Model):
    """
    Value view of stock flow: a product's stock went from old_value to new_value.

    Append-only. quantity_changed is computed once at write time.
    """
    __tablename__ = "stock_audits"
    __table_args__ = (
        db.Index("ix_stock_audits_product_timestamp", "product_id", "timestamp"),
        db.Index("ix_stock_audits_change_type_timestamp", "change_type", "timestamp"),
        db.Index("ix_stock_audits_changed_by_timestamp", "changed_by_user_id", "timestamp"),
        db.Index("ix_stock_audits_reference", "reference_id", "reference_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    change_type = db.Column(db.String(32), nullable=False)
    old_value = db.Column(db.Integer, nullable=False)
    new_value = db.Column(db.Integer, nullable=False)
    quantity_changed = db.Column(db.Integer, nullable=False)

    changed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    timestamp = db.Column(db.DateTime(timezone=True), nullable=False)

    reference_type = db.Column(db.String(32), nullable=True)
    reference_id = db.Column(db.String(64), nullable=True)

    reason = db.Column(db.String(500), nullable=True)
    notes = db.Column(db.String(1000), nullable=True)
    meta = db.Column("metadata", db.JSON, nullable=False, default=dict)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product")
    changed_by = db.relationship("User")

    @property
    def reference(self) -> StockReference | None:
        return StockReference.from_columns(self.reference_type, self.reference_id)

    def to_dict(self) -> dict:
        reference = self.reference
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "change_type": self.change_type,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "quantity_changed": self.quantity_changed,
            "changed_by_user_id": self.changed_by_user_id,
            "changed_by": self.changed_by.username if self.changed_by else None,
            "timestamp": to_utc_z(self.timestamp),
            "reference": reference.to_dict() if reference else None,
            "reason": self.reason,
            "notes": self.notes,
            "metadata": dict(self.meta or {}),
            "created_at": to_utc_z(self.created_at),
        }


@event.listens_for(StockMovement, "before_update")
@event.listens_for(StockAudit, "before_update")
def _reject_log_update(mapper, connection, target):
    raise AppendOnlyError(f"{type(target).__name__} rows are append-only")


@event.listens_for(StockMovement, "before_delete")
@event.listens_for(StockAudit, "before_delete")
def _reject_log_delete(mapper, connection, target):
    raise AppendOnlyError(f"{type(target).__name__} rows are append-only")
