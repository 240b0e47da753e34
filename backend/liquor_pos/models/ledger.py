from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class DailyStock(db.Model):
    """
    Per-product, per-day stock ledger entry.

    INVARIANTS:
    - Exactly one row per (product_id, date); enforced by uq_daily_stock_product_date.
    - closing_stock == opening_stock + stock_inward - sold_quantity.
    - stock_value_cents == closing_stock * cost_per_unit_cents.
    - Both derived columns are written only via services.ledger_math, never
      assigned directly.
    - opening_stock of day N equals the closing_stock of the most recent
      earlier entry plus opening_adjustment. Manual adjustments and applied
      counts rebase opening_stock on purpose and record the shift there.

    Negative opening/closing values are legal: overselling is tracked, not clamped.
    Rows are never deleted.
    """
    __tablename__ = "daily_stocks"
    __table_args__ = (
        db.UniqueConstraint("product_id", "date", name="uq_daily_stock_product_date"),
        db.Index("ix_daily_stock_date_product", "date", "product_id"),
        db.Index("ix_daily_stock_reconciliation_date", "reconciliation_date"),
        db.Index("ix_daily_stock_created_by_date", "created_by_user_id", "date"),
        db.CheckConstraint("stock_inward >= 0", name="ck_daily_stock_inward_nonneg"),
        db.CheckConstraint("sold_quantity >= 0", name="ck_daily_stock_sold_nonneg"),
        db.CheckConstraint("cost_per_unit_cents >= 0", name="ck_daily_stock_cost_nonneg"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    date = db.Column(db.Date, nullable=False)

    opening_stock = db.Column(db.Integer, nullable=False, default=0)
    stock_inward = db.Column(db.Integer, nullable=False, default=0)
    sold_quantity = db.Column(db.Integer, nullable=False, default=0)
    closing_stock = db.Column(db.Integer, nullable=False, default=0)
    opening_adjustment = db.Column(db.Integer, nullable=False, default=0)

    # Snapshotted from Product.cost_price_cents when the row is created
    cost_per_unit_cents = db.Column(db.Integer, nullable=False, default=0)
    stock_value_cents = db.Column(db.Integer, nullable=False, default=0)

    # Physical count data, filled when a reconciliation is applied
    physical_stock = db.Column(db.Integer, nullable=True)
    stock_variance = db.Column(db.Integer, nullable=True)
    reconciliation_date = db.Column(db.DateTime(timezone=True), nullable=True)
    reconciled_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    notes = db.Column(db.String(500), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product", backref=db.backref("daily_stocks", lazy=True))
    created_by = db.relationship("User", foreign_keys=[created_by_user_id])
    reconciled_by = db.relationship("User", foreign_keys=[reconciled_by_user_id])
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return (
            f"<DailyStock product_id={self.product_id} date={self.date} "
            f"open={self.opening_stock} in={self.stock_inward} sold={self.sold_quantity} "
            f"close={self.closing_stock}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "date": self.date.isoformat(),
            "opening_stock": self.opening_stock,
            "stock_inward": self.stock_inward,
            "sold_quantity": self.sold_quantity,
            "closing_stock": self.closing_stock,
            "opening_adjustment": self.opening_adjustment,
            "cost_per_unit_cents": self.cost_per_unit_cents,
            "stock_value_cents": self.stock_value_cents,
            "physical_stock": self.physical_stock,
            "stock_variance": self.stock_variance,
            "reconciliation_date": to_utc_z(self.reconciliation_date) if self.reconciliation_date else None,
            "reconciled_by_user_id": self.reconciled_by_user_id,
            "created_by_user_id": self.created_by_user_id,
            "notes": self.notes,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
