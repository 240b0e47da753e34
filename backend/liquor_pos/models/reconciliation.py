from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class StockReconciliation(db.Model):
    """
    Physical stock count session for one business day.

    LIFECYCLE:
    1. in_progress: items being counted
    2. pending_approval: submitted, waiting for a supervisor
    3. approved: supervisor accepted the counts
    4. completed: variances applied to live stock and ledger (terminal)
    5. rejected: supervisor sent it back (terminal, reachable from pending_approval)

    ONE ACTIVE SESSION PER DAY: active_for_date holds the session date while
    the session is in_progress or pending_approval and is NULL otherwise. The
    unique constraint on it lets the database reject a second active session
    for the same day even when two creates race.

    Aggregate columns are recomputed from the item list by
    ledger_math.summarize_reconciliation_items on every write, under a
    row lock plus version_id check.
    """
    __tablename__ = "stock_reconciliations"
    __table_args__ = (
        db.UniqueConstraint("reconciliation_number", name="uq_reconciliation_number"),
        db.UniqueConstraint("active_for_date", name="uq_reconciliation_active_date"),
        db.Index("ix_reconciliation_date_status", "date", "status"),
        db.Index("ix_reconciliation_reconciled_by_date", "reconciled_by_user_id", "date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable id, e.g. "REC-20250919-001"
    reconciliation_number = db.Column(db.String(32), nullable=False)
    date = db.Column(db.Date, nullable=False)
    active_for_date = db.Column(db.Date, nullable=True)

    status = db.Column(db.String(24), nullable=False, default="in_progress", index=True)
    notes = db.Column(db.String(1000), nullable=True)

    # Aggregates (derived from items)
    total_products = db.Column(db.Integer, nullable=False, default=0)
    products_reconciled = db.Column(db.Integer, nullable=False, default=0)
    total_variance = db.Column(db.Integer, nullable=False, default=0)
    variance_value_cents = db.Column(db.Integer, nullable=False, default=0)

    # User attribution for accountability
    reconciled_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    submitted_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    approved_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    rejected_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    completed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    # Timestamps for each lifecycle stage
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    submission_notes = db.Column(db.String(1000), nullable=True)
    approval_notes = db.Column(db.String(1000), nullable=True)
    rejection_reason = db.Column(db.String(1000), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    reconciled_by = db.relationship("User", foreign_keys=[reconciled_by_user_id])
    submitted_by = db.relationship("User", foreign_keys=[submitted_by_user_id])
    approved_by = db.relationship("User", foreign_keys=[approved_by_user_id])
    rejected_by = db.relationship("User", foreign_keys=[rejected_by_user_id])
    completed_by = db.relationship("User", foreign_keys=[completed_by_user_id])
    items = db.relationship(
        "ReconciliationItem",
        back_populates="reconciliation",
        order_by="ReconciliationItem.id",
        cascade="all, delete-orphan",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_items: bool = False) -> dict:
        data = {
            "id": self.id,
            "reconciliation_number": self.reconciliation_number,
            "date": self.date.isoformat(),
            "status": self.status,
            "notes": self.notes,
            "total_products": self.total_products,
            "products_reconciled": self.products_reconciled,
            "total_variance": self.total_variance,
            "variance_value_cents": self.variance_value_cents,
            "reconciled_by_user_id": self.reconciled_by_user_id,
            "submitted_by_user_id": self.submitted_by_user_id,
            "approved_by_user_id": self.approved_by_user_id,
            "rejected_by_user_id": self.rejected_by_user_id,
            "completed_by_user_id": self.completed_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "submitted_at": to_utc_z(self.submitted_at) if self.submitted_at else None,
            "approved_at": to_utc_z(self.approved_at) if self.approved_at else None,
            "rejected_at": to_utc_z(self.rejected_at) if self.rejected_at else None,
            "completed_at": to_utc_z(self.completed_at) if self.completed_at else None,
            "submission_notes": self.submission_notes,
            "approval_notes": self.approval_notes,
            "rejection_reason": self.rejection_reason,
            "version_id": self.version_id,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class ReconciliationItem(db.Model):
    """
    One product's line in a count session.

    WHY: system_stock is the baseline captured when the session was created;
    variance (physical - system) and variance_value_cents are recomputed
    whenever physical_stock is recorded.
    """
    __tablename__ = "reconciliation_items"
    __table_args__ = (
        db.UniqueConstraint("reconciliation_id", "product_id", name="uq_reconciliation_items_product"),
        db.Index("ix_reconciliation_items_product", "product_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    reconciliation_id = db.Column(
        db.Integer, db.ForeignKey("stock_reconciliations.id"), nullable=False, index=True
    )
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    system_stock = db.Column(db.Integer, nullable=False)
    physical_stock = db.Column(db.Integer, nullable=False, default=0)
    variance = db.Column(db.Integer, nullable=False, default=0)
    variance_value_cents = db.Column(db.Integer, nullable=False, default=0)
    cost_per_unit_cents = db.Column(db.Integer, nullable=False, default=0)

    reason = db.Column(db.String(500), nullable=True)
    reconciled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    counted_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    # Link to the movement written when the variance was applied
    stock_movement_id = db.Column(db.Integer, db.ForeignKey("stock_movements.id"), nullable=True)

    reconciliation = db.relationship("StockReconciliation", back_populates="items")
    product = db.relationship("Product")

    @property
    def is_counted(self) -> bool:
        return self.reconciled_at is not None

    def to_dict(self) -> dict:
        product = self.product
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": product.name if product else None,
            "category_name": product.category.name if product and product.category else None,
            "system_stock": self.system_stock,
            "physical_stock": self.physical_stock,
            "variance": self.variance,
            "variance_value_cents": self.variance_value_cents,
            "cost_per_unit_cents": self.cost_per_unit_cents,
            "reason": self.reason,
            "reconciled_at": to_utc_z(self.reconciled_at) if self.reconciled_at else None,
            "counted_by_user_id": self.counted_by_user_id,
            "stock_movement_id": self.stock_movement_id,
        }


class DocumentSequence(db.Model):
    """
    Per-key counter used to number documents atomically.

    Reconciliation numbers use key "REC-YYYYMMDD", so numbering restarts each day.
    """
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("sequence_key", name="uq_document_sequences_key"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sequence_key = db.Column(db.String(64), nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)
