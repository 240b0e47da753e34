# backend/liquor_pos/services/stock_service.py
"""
Live stock operations used by sales, receiving and manual adjustment.

Every change goes through the same three writes, in one transaction:
1. Product.current_stock (atomic UPDATE, see live_stock)
2. StockAudit (old -> new value) and StockMovement (business event)
3. The day's ledger entry (sold_quantity / stock_inward), where applicable

Callers (routes, CLI) commit.
"""
from __future__ import annotations

from flask import current_app
from sqlalchemy import case, func

from ..extensions import db
from ..models import Category, Product, StockReference
from ..models.catalog import PRODUCT_STATUS_ACTIVE
from . import audit_service, movement_service
from .concurrency import run_with_retry
from .daily_stock_service import align_closing_stock, get_or_create_daily_stock, increment_daily_stock
from .errors import StockError, StockValidationError, service_result
from .live_stock import change_live_stock, get_product, set_live_stock


def _require_positive_quantity(quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise StockValidationError("Quantity must be a positive integer")
    return quantity


def _sell_one(product_id: int, quantity: int, *, reference, user_id, allow_oversell, day) -> dict:
    quantity = _require_positive_quantity(quantity)
    # Open the day before touching live stock so a new entry is seeded pre-sale
    get_or_create_daily_stock(product_id, day, user_id=user_id)
    old_value, new_value = change_live_stock(product_id, -quantity, allow_negative=allow_oversell)
    product = get_product(product_id)

    audit_service.log_stock_change(
        product_id,
        "sale",
        old_value,
        new_value,
        user_id=user_id,
        reference=reference,
        reason="Sale",
    )
    movement_service.create_movement(
        product_id,
        "out",
        "sale",
        quantity,
        user_id=user_id,
        reference=reference,
        unit_cost_cents=product.cost_price_cents or 0,
    )
    entry, _ = increment_daily_stock(product_id, "sold_quantity", quantity, day, user_id=user_id)
    return {
        "product_id": product_id,
        "product_name": product.name,
        "quantity": quantity,
        "old_stock": old_value,
        "new_stock": new_value,
        "daily_sold_quantity": entry.sold_quantity,
        "daily_closing_stock": entry.closing_stock,
    }


@service_result
def sell_stock(
    items: list[dict],
    *,
    sale_reference: StockReference,
    user_id: int,
    allow_oversell: bool = False,
    day=None,
) -> dict:
    """
    Take sold quantities out of live stock and record them in the ledger.

    Items that fail (unknown product, insufficient stock) are reported in
    errors[] and leave live stock and both logs untouched; the others go
    through.
    """
    if not items:
        raise StockValidationError("At least one item is required")

    def _op():
        results, errors = [], []
        for item in items:
            product_id = item.get("product_id")
            try:
                results.append(_sell_one(
                    product_id,
                    item.get("quantity"),
                    reference=sale_reference,
                    user_id=user_id,
                    allow_oversell=allow_oversell,
                    day=day,
                ))
            except StockError as exc:
                errors.append({"product_id": product_id, **exc.to_result()})
        return results, errors

    results, errors = run_with_retry(_op)
    if errors:
        current_app.logger.warning("Sale %s: %s of %s items failed", sale_reference.id, len(errors), len(items))
    return {
        "success": not errors,
        "reference": sale_reference.to_dict(),
        "items": results,
        "errors": errors,
    }


@service_result
def add_stock(
    product_id: int,
    quantity: int,
    *,
    user_id: int,
    reference: StockReference | None = None,
    unit_cost_cents: int | None = None,
    reference_number: str | None = None,
    notes: str | None = None,
    metadata: dict | None = None,
    day=None,
) -> dict:
    """Receive quantity into live stock (stock inward)."""
    quantity = _require_positive_quantity(quantity)
    reference = reference or StockReference.inward(None)

    def _op():
        get_or_create_daily_stock(product_id, day, user_id=user_id)
        old_value, new_value = change_live_stock(product_id, quantity)
        product = get_product(product_id)
        cost = unit_cost_cents if unit_cost_cents is not None else (product.cost_price_cents or 0)

        audit_service.log_stock_change(
            product_id,
            "inward",
            old_value,
            new_value,
            user_id=user_id,
            reference=reference,
            reason="Stock inward",
            notes=notes,
            metadata=metadata,
        )
        movement = movement_service.create_movement(
            product_id,
            "in",
            "stock_inward",
            quantity,
            user_id=user_id,
            reference=reference,
            unit_cost_cents=cost,
            reference_number=reference_number,
            notes=notes,
            metadata=metadata,
        )
        entry, _ = increment_daily_stock(product_id, "stock_inward", quantity, day, user_id=user_id)
        return {
            "success": True,
            "product_id": product_id,
            "product_name": product.name,
            "quantity_added": quantity,
            "old_stock": old_value,
            "new_stock": new_value,
            "movement_id": movement.id,
            "daily_stock_inward": entry.stock_inward,
            "daily_closing_stock": entry.closing_stock,
        }

    return run_with_retry(_op)


@service_result
def set_stock(
    product_id: int,
    new_value: int,
    *,
    user_id: int,
    reason: str,
    notes: str | None = None,
    metadata: dict | None = None,
    day=None,
) -> dict:
    """
    Manual adjustment: set live stock to new_value.

    The day's ledger entry is rebased in the same transaction so it closes
    at new_value, and later entries follow; the live-stock sync then keeps
    the adjusted figure.
    """
    if isinstance(new_value, bool) or not isinstance(new_value, int) or new_value < 0:
        raise StockValidationError("New stock value must be a non-negative integer")
    if not reason:
        raise StockValidationError("A reason is required for manual adjustments")

    def _op():
        product = get_product(product_id)
        current = db.session.query(Product.current_stock).filter(Product.id == product_id).scalar()
        if current == new_value:
            return {
                "success": True,
                "product_id": product_id,
                "old_stock": new_value,
                "new_stock": new_value,
                "quantity_changed": 0,
            }

        get_or_create_daily_stock(product_id, day, user_id=user_id)
        old_value, _ = set_live_stock(product_id, new_value)
        delta = new_value - old_value
        entry, ledger_change = align_closing_stock(product_id, day, new_value, user_id=user_id)
        reference = StockReference.manual()
        audit_service.log_stock_change(
            product_id,
            "manual_adjustment",
            old_value,
            new_value,
            user_id=user_id,
            reference=reference,
            reason=reason,
            notes=notes,
            metadata=metadata,
        )
        movement_service.create_movement(
            product_id,
            "in" if delta > 0 else "out",
            "stock_adjustment",
            abs(delta),
            user_id=user_id,
            reference=reference,
            unit_cost_cents=product.cost_price_cents or 0,
            notes=notes,
            metadata={"old_stock": old_value, "new_stock": new_value, "reason": reason},
        )
        return {
            "success": True,
            "product_id": product_id,
            "old_stock": old_value,
            "new_stock": new_value,
            "quantity_changed": delta,
            "daily_closing_stock": entry.closing_stock,
            "ledger_change": ledger_change,
        }

    result = run_with_retry(_op)
    if result["quantity_changed"]:
        current_app.logger.info(
            "Manual stock adjustment for product %s: %s -> %s by user %s",
            product_id, result["old_stock"], result["new_stock"], user_id,
        )
    return result


def _stock_row(product: Product, category: Category | None) -> dict:
    cost = product.cost_price_cents or 0
    return {
        "product_id": product.id,
        "name": product.name,
        "brand": product.brand,
        "volume": product.volume,
        "barcode": product.barcode,
        "category_id": category.id if category else None,
        "category_name": category.name if category else None,
        "current_stock": product.current_stock,
        "min_stock_level": product.min_stock_level,
        "cost_price_cents": cost,
        "price_cents": product.price_cents,
        "stock_value_cents": product.current_stock * cost,
        "is_low_stock": product.is_low_stock,
        "last_stock_update": product.to_dict()["last_stock_update"],
    }


def get_current_stock(
    *,
    category_id: int | None = None,
    low_stock: bool = False,
    low_stock_threshold: int | None = None,
) -> dict:
    """Active products with live stock; low_stock keeps those at or under the threshold."""
    query = (
        db.session.query(Product, Category)
        .outerjoin(Category, Category.id == Product.category_id)
        .filter(Product.status == PRODUCT_STATUS_ACTIVE)
    )
    if category_id is not None:
        query = query.filter(Product.category_id == category_id)
    if low_stock:
        threshold = low_stock_threshold
        if threshold is None:
            threshold = current_app.config.get("LOW_STOCK_THRESHOLD", 10)
        query = query.filter(Product.current_stock <= threshold)

    rows = [_stock_row(product, category) for product, category in query.order_by(Product.name).all()]
    return {"success": True, "total": len(rows), "products": rows}


def get_stock_summary() -> dict:
    active = Product.status == PRODUCT_STATUS_ACTIVE
    total_products, total_stock, total_value, low_count, zero_count = (
        db.session.query(
            func.count(Product.id),
            func.coalesce(func.sum(Product.current_stock), 0),
            func.coalesce(func.sum(Product.current_stock * func.coalesce(Product.cost_price_cents, 0)), 0),
            func.coalesce(func.sum(case((Product.current_stock <= Product.min_stock_level, 1), else_=0)), 0),
            func.coalesce(func.sum(case((Product.current_stock <= 0, 1), else_=0)), 0),
        )
        .filter(active)
        .one()
    )
    total_products = int(total_products)
    low_count = int(low_count)
    healthy = total_products - low_count
    return {
        "success": True,
        "summary": {
            "total_products": total_products,
            "total_stock": int(total_stock),
            "total_stock_value_cents": int(total_value),
            "low_stock_products": low_count,
            "zero_stock_products": int(zero_count),
            "average_stock_per_product": round(int(total_stock) / total_products, 2) if total_products else 0,
            "stock_health_percentage": round(healthy * 100 / total_products, 2) if total_products else 100.0,
        },
    }


def validate_stock_availability(items: list[dict]) -> dict:
    """Dry run for a sale: errors block it, warnings flag products that would sit at or under minimum."""
    errors, warnings = [], []
    for item in items or []:
        product_id = item.get("product_id")
        quantity = item.get("quantity")
        product = db.session.get(Product, product_id) if product_id is not None else None
        if not product:
            errors.append({"product_id": product_id, "error": f"Product {product_id} not found"})
            continue
        if not product.is_active:
            errors.append({"product_id": product_id, "error": f"{product.name} is not active"})
            continue
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            errors.append({"product_id": product_id, "error": "Quantity must be a positive integer"})
            continue
        if product.current_stock < quantity:
            errors.append({
                "product_id": product_id,
                "error": (
                    f"Insufficient stock for {product.name}. "
                    f"Available: {product.current_stock}, Required: {quantity}"
                ),
                "available": product.current_stock,
                "requested": quantity,
            })
            continue
        remaining = product.current_stock - quantity
        if remaining <= product.min_stock_level:
            warnings.append({
                "product_id": product_id,
                "warning": f"{product.name} will be at or below its minimum level ({remaining} left)",
                "remaining": remaining,
                "min_stock_level": product.min_stock_level,
            })
    return {"valid": not errors, "errors": errors, "warnings": warnings}


def low_stock_scan() -> list[dict]:
    """Active products whose live stock is at or below their own minimum level."""
    rows = (
        db.session.query(Product, Category)
        .outerjoin(Category, Category.id == Product.category_id)
        .filter(
            Product.status == PRODUCT_STATUS_ACTIVE,
            Product.current_stock <= Product.min_stock_level,
        )
        .order_by(Product.current_stock, Product.name)
        .all()
    )
    return [_stock_row(product, category) for product, category in rows]
