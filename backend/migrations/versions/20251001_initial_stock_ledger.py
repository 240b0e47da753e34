"""Initial schema: catalog, users, daily stock ledger, stock logs, reconciliations

Revision ID: 20251001_initial
Revises:
Create Date: 2025-10-01 09:00:00.000000
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20251001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    ]


def upgrade():
    # Catalog
    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("parent_id", sa.Integer(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["parent_id"], ["categories.id"]),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_categories_name", "categories", ["name"], unique=False)
    op.create_index("ix_categories_parent_id", "categories", ["parent_id"], unique=False)

    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("category_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("barcode", sa.String(length=100), nullable=True),
        sa.Column("brand", sa.String(length=100), nullable=True),
        sa.Column("volume", sa.String(length=50), nullable=True),
        sa.Column("price_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cost_price_cents", sa.Integer(), nullable=True),
        sa.Column("current_stock", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("min_stock_level", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_stock_update", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["category_id"], ["categories.id"]),
        sa.UniqueConstraint("barcode", name="uq_products_barcode"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_products_category_id", "products", ["category_id"], unique=False)
    op.create_index("ix_products_name", "products", ["name"], unique=False)
    op.create_index("ix_products_status", "products", ["status"], unique=False)
    op.create_index("ix_products_current_stock", "products", ["current_stock"], unique=False)

    # Users and API tokens
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("username", sa.String(length=64), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("role", sa.String(length=32), nullable=False, server_default="biller"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.UniqueConstraint("username", name="uq_users_username"),
        sa.UniqueConstraint("email", name="uq_users_email"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_users_username", "users", ["username"], unique=False)

    op.create_table(
        "session_tokens",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("token_hash", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_revoked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_reason", sa.String(length=255), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_session_tokens_user_id", "session_tokens", ["user_id"], unique=False)
    op.create_index("ix_session_tokens_token_hash", "session_tokens", ["token_hash"], unique=True)
    op.create_index("ix_session_tokens_expires_at", "session_tokens", ["expires_at"], unique=False)
    op.create_index("ix_session_tokens_user_active", "session_tokens", ["user_id", "is_revoked"], unique=False)

    # Daily stock ledger
    op.create_table(
        "daily_stocks",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("opening_stock", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("stock_inward", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sold_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("closing_stock", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("opening_adjustment", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cost_per_unit_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("stock_value_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("physical_stock", sa.Integer(), nullable=True),
        sa.Column("stock_variance", sa.Integer(), nullable=True),
        sa.Column("reconciliation_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reconciled_by_user_id", sa.Integer(), nullable=True),
        sa.Column("created_by_user_id", sa.Integer(), nullable=False),
        sa.Column("notes", sa.String(length=500), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.ForeignKeyConstraint(["reconciled_by_user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"]),
        sa.UniqueConstraint("product_id", "date", name="uq_daily_stock_product_date"),
        sa.CheckConstraint("stock_inward >= 0", name="ck_daily_stock_inward_nonneg"),
        sa.CheckConstraint("sold_quantity >= 0", name="ck_daily_stock_sold_nonneg"),
        sa.CheckConstraint("cost_per_unit_cents >= 0", name="ck_daily_stock_cost_nonneg"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_daily_stock_date_product", "daily_stocks", ["date", "product_id"], unique=False)
    op.create_index("ix_daily_stock_reconciliation_date", "daily_stocks", ["reconciliation_date"], unique=False)
    op.create_index("ix_daily_stock_created_by_date", "daily_stocks", ["created_by_user_id", "date"], unique=False)

    # Append-only stock logs
    op.create_table(
        "stock_movements",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("movement_type", sa.String(length=16), nullable=False),
        sa.Column("movement_category", sa.String(length=32), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_cost_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_cost_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reference_type", sa.String(length=32), nullable=False),
        sa.Column("reference_id", sa.String(length=64), nullable=True),
        sa.Column("reference_number", sa.String(length=100), nullable=True),
        sa.Column("date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_by_user_id", sa.Integer(), nullable=False),
        sa.Column("notes", sa.String(length=500), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="processed"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"]),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_stock_movements_product_id", "stock_movements", ["product_id"], unique=False)
    op.create_index("ix_stock_movements_product_date", "stock_movements", ["product_id", "date"], unique=False)
    op.create_index("ix_stock_movements_type_date", "stock_movements", ["movement_type", "date"], unique=False)
    op.create_index("ix_stock_movements_category_date", "stock_movements", ["movement_category", "date"], unique=False)
    op.create_index("ix_stock_movements_reference", "stock_movements", ["reference_id", "reference_type"], unique=False)
    op.create_index("ix_stock_movements_created_by_date", "stock_movements", ["created_by_user_id", "date"], unique=False)
    op.create_index("ix_stock_movements_status_date", "stock_movements", ["status", "date"], unique=False)

    op.create_table(
        "stock_audits",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("change_type", sa.String(length=32), nullable=False),
        sa.Column("old_value", sa.Integer(), nullable=False),
        sa.Column("new_value", sa.Integer(), nullable=False),
        sa.Column("quantity_changed", sa.Integer(), nullable=False),
        sa.Column("changed_by_user_id", sa.Integer(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reference_type", sa.String(length=32), nullable=True),
        sa.Column("reference_id", sa.String(length=64), nullable=True),
        sa.Column("reason", sa.String(length=500), nullable=True),
        sa.Column("notes", sa.String(length=1000), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.ForeignKeyConstraint(["changed_by_user_id"], ["users.id"]),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_stock_audits_product_id", "stock_audits", ["product_id"], unique=False)
    op.create_index("ix_stock_audits_product_timestamp", "stock_audits", ["product_id", "timestamp"], unique=False)
    op.create_index("ix_stock_audits_change_type_timestamp", "stock_audits", ["change_type", "timestamp"], unique=False)
    op.create_index("ix_stock_audits_changed_by_timestamp", "stock_audits", ["changed_by_user_id", "timestamp"], unique=False)
    op.create_index("ix_stock_audits_reference", "stock_audits", ["reference_id", "reference_type"], unique=False)

    # Reconciliation
    op.create_table(
        "stock_reconciliations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("reconciliation_number", sa.String(length=32), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("active_for_date", sa.Date(), nullable=True),
        sa.Column("status", sa.String(length=24), nullable=False, server_default="in_progress"),
        sa.Column("notes", sa.String(length=1000), nullable=True),
        sa.Column("total_products", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("products_reconciled", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_variance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("variance_value_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reconciled_by_user_id", sa.Integer(), nullable=False),
        sa.Column("submitted_by_user_id", sa.Integer(), nullable=True),
        sa.Column("approved_by_user_id", sa.Integer(), nullable=True),
        sa.Column("rejected_by_user_id", sa.Integer(), nullable=True),
        sa.Column("completed_by_user_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("submission_notes", sa.String(length=1000), nullable=True),
        sa.Column("approval_notes", sa.String(length=1000), nullable=True),
        sa.Column("rejection_reason", sa.String(length=1000), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(["reconciled_by_user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["submitted_by_user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["approved_by_user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["rejected_by_user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["completed_by_user_id"], ["users.id"]),
        sa.UniqueConstraint("reconciliation_number", name="uq_reconciliation_number"),
        sa.UniqueConstraint("active_for_date", name="uq_reconciliation_active_date"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_stock_reconciliations_status", "stock_reconciliations", ["status"], unique=False)
    op.create_index("ix_reconciliation_date_status", "stock_reconciliations", ["date", "status"], unique=False)
    op.create_index(
        "ix_reconciliation_reconciled_by_date",
        "stock_reconciliations",
        ["reconciled_by_user_id", "date"],
        unique=False,
    )

    op.create_table(
        "reconciliation_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("reconciliation_id", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("system_stock", sa.Integer(), nullable=False),
        sa.Column("physical_stock", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("variance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("variance_value_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cost_per_unit_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reason", sa.String(length=500), nullable=True),
        sa.Column("reconciled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("counted_by_user_id", sa.Integer(), nullable=True),
        sa.Column("stock_movement_id", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["reconciliation_id"], ["stock_reconciliations.id"]),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.ForeignKeyConstraint(["counted_by_user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["stock_movement_id"], ["stock_movements.id"]),
        sa.UniqueConstraint("reconciliation_id", "product_id", name="uq_reconciliation_items_product"),
        sqlite_autoincrement=True,
    )
    op.create_index(
        "ix_reconciliation_items_reconciliation_id", "reconciliation_items", ["reconciliation_id"], unique=False
    )
    op.create_index("ix_reconciliation_items_product", "reconciliation_items", ["product_id"], unique=False)

    op.create_table(
        "document_sequences",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("sequence_key", sa.String(length=64), nullable=False),
        sa.Column("next_number", sa.Integer(), nullable=False, server_default="1"),
        sa.UniqueConstraint("sequence_key", name="uq_document_sequences_key"),
        sqlite_autoincrement=True,
    )


def downgrade():
    op.drop_table("document_sequences")
    op.drop_index("ix_reconciliation_items_product", table_name="reconciliation_items")
    op.drop_index("ix_reconciliation_items_reconciliation_id", table_name="reconciliation_items")
    op.drop_table("reconciliation_items")
    op.drop_index("ix_reconciliation_reconciled_by_date", table_name="stock_reconciliations")
    op.drop_index("ix_reconciliation_date_status", table_name="stock_reconciliations")
    op.drop_index("ix_stock_reconciliations_status", table_name="stock_reconciliations")
    op.drop_table("stock_reconciliations")
    op.drop_table("stock_audits")
    op.drop_table("stock_movements")
    op.drop_table("daily_stocks")
    op.drop_table("session_tokens")
    op.drop_table("users")
    op.drop_table("products")
    op.drop_table("categories")
