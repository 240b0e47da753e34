"""
Derived-figure computations for ledger entries and count sessions.

Every mutator calls these immediately before persisting; nothing is
recomputed implicitly on flush. The ledger functions are plain arithmetic
so they accept either Python ints or SQLAlchemy column expressions, which
lets the atomic UPDATE statements in daily_stock_service reuse them.
"""
from __future__ import annotations

from typing import Iterable

# Monetary comparisons allow one cent of drift
VALUE_TOLERANCE_CENTS = 1


def compute_closing_stock(opening_stock, stock_inward, sold_quantity):
    return opening_stock + stock_inward - sold_quantity


def compute_stock_value(closing_stock, cost_per_unit_cents):
    return closing_stock * cost_per_unit_cents


def ledger_totals(opening_stock, stock_inward, sold_quantity, cost_per_unit_cents) -> dict:
    """Derived columns of a ledger entry, keyed by column name."""
    closing = compute_closing_stock(opening_stock, stock_inward, sold_quantity)
    return {
        "closing_stock": closing,
        "stock_value_cents": compute_stock_value(closing, cost_per_unit_cents),
    }


def apply_ledger_totals(entry):
    """Recompute closing_stock and stock_value_cents on a loaded entry."""
    totals = ledger_totals(
        entry.opening_stock,
        entry.stock_inward,
        entry.sold_quantity,
        entry.cost_per_unit_cents,
    )
    entry.closing_stock = totals["closing_stock"]
    entry.stock_value_cents = totals["stock_value_cents"]
    return entry


def entry_integrity_issues(entry) -> list[str]:
    """
    Compare an entry's stored derived figures against its inputs.

    Returns human-readable findings; an empty list means the entry is consistent.
    """
    issues = []
    expected_closing = compute_closing_stock(entry.opening_stock, entry.stock_inward, entry.sold_quantity)
    if entry.closing_stock != expected_closing:
        issues.append(
            f"Closing stock mismatch: expected {expected_closing}, got {entry.closing_stock}"
        )

    expected_value = compute_stock_value(entry.closing_stock, entry.cost_per_unit_cents)
    if abs(expected_value - entry.stock_value_cents) > VALUE_TOLERANCE_CENTS:
        issues.append(
            f"Stock value mismatch: expected {expected_value}, got {entry.stock_value_cents}"
        )

    if entry.stock_inward < 0:
        issues.append("Stock inward cannot be negative")
    if entry.sold_quantity < 0:
        issues.append("Sold quantity cannot be negative")
    return issues


def compute_item_variance(system_stock: int, physical_stock: int, cost_per_unit_cents: int) -> tuple[int, int]:
    """Return (variance, variance_value_cents) for one counted product."""
    variance = physical_stock - system_stock
    return variance, variance * cost_per_unit_cents


def summarize_reconciliation_items(items: Iterable) -> dict:
    """
    Aggregate figures of a count session.

    total_variance is the sum of absolute unit variances; variance_value_cents
    is signed, so overages and shortages offset each other.
    """
    items = list(items)
    return {
        "total_products": len(items),
        "products_reconciled": sum(1 for item in items if item.reconciled_at is not None),
        "total_variance": sum(abs(item.variance) for item in items),
        "variance_value_cents": sum(item.variance_value_cents for item in items),
    }


def apply_reconciliation_totals(session):
    for key, value in summarize_reconciliation_items(session.items).items():
        setattr(session, key, value)
    return session


def summarize_report_rows(rows: Iterable[dict]) -> dict:
    rows = list(rows)
    return {
        "total_products": len({row["product_id"] for row in rows}),
        "total_opening_stock": sum(row["opening_stock"] for row in rows),
        "total_stock_inward": sum(row["stock_inward"] for row in rows),
        "total_sold_quantity": sum(row["sold_quantity"] for row in rows),
        "total_closing_stock": sum(row["closing_stock"] for row in rows),
        "total_stock_value_cents": sum(row["stock_value_cents"] for row in rows),
    }
