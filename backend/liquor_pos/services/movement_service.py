"""
Stock movement log: what kind of business event moved how many units.

Writers append only. Readers aggregate over the log with bounded result sizes.
"""
from __future__ import annotations

from datetime import date, datetime

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import StockMovement, StockReference
from ..models.logs import MOVEMENT_CATEGORIES, MOVEMENT_STATUSES, MOVEMENT_TYPES
from ..models.references import validate_metadata
from ..time_utils import day_bounds, utcnow
from .errors import StockValidationError


def clamp_limit(limit: int | None) -> int:
    """Bound a caller-supplied result size to [1, MAX_QUERY_LIMIT]."""
    if limit is None:
        limit = current_app.config.get("DEFAULT_QUERY_LIMIT", 100)
    return max(1, min(int(limit), current_app.config.get("MAX_QUERY_LIMIT", 1000)))


def apply_day_range(query, column, start: date | None, end: date | None):
    if start and end:
        lower, upper = day_bounds(start, end)
        return query.filter(column >= lower, column < upper)
    if start:
        return query.filter(column >= day_bounds(start, start)[0])
    if end:
        return query.filter(column < day_bounds(end, end)[1])
    return query


def create_movement(
    product_id: int,
    movement_type: str,
    movement_category: str,
    quantity: int,
    *,
    user_id: int,
    reference: StockReference,
    unit_cost_cents: int = 0,
    reference_number: str | None = None,
    occurred_at: datetime | None = None,
    notes: str | None = None,
    metadata: dict | None = None,
    status: str = "processed",
) -> StockMovement:
    """
    Append a movement row.

    total_cost_cents = quantity * unit_cost_cents, fixed at write time.
    """
    if movement_type not in MOVEMENT_TYPES:
        raise StockValidationError(f"Invalid movement type: {movement_type}")
    if movement_category not in MOVEMENT_CATEGORIES:
        raise StockValidationError(f"Invalid movement category: {movement_category}")
    if status not in MOVEMENT_STATUSES:
        raise StockValidationError(f"Invalid movement status: {status}")
    if quantity < 0:
        raise StockValidationError("Movement quantity cannot be negative")
    if unit_cost_cents is None:
        unit_cost_cents = 0
    if unit_cost_cents < 0:
        raise StockValidationError("Unit cost cannot be negative")
    try:
        meta = validate_metadata(metadata)
    except ValueError as exc:
        raise StockValidationError(str(exc))

    movement = StockMovement(
        product_id=product_id,
        movement_type=movement_type,
        movement_category=movement_category,
        quantity=quantity,
        unit_cost_cents=unit_cost_cents,
        total_cost_cents=quantity * unit_cost_cents,
        reference_type=reference.kind.value,
        reference_id=reference.id,
        reference_number=reference_number,
        date=occurred_at or utcnow(),
        created_by_user_id=user_id,
        notes=notes,
        meta=meta,
        status=status,
    )
    db.session.add(movement)
    db.session.flush()
    return movement


def get_product_movements(
    product_id: int,
    *,
    start: date | None = None,
    end: date | None = None,
    movement_type: str | None = None,
    limit: int | None = None,
) -> list[StockMovement]:
    query = db.session.query(StockMovement).filter(StockMovement.product_id == product_id)
    query = apply_day_range(query, StockMovement.date, start, end)
    if movement_type:
        query = query.filter(StockMovement.movement_type == movement_type)
    return (
        query.order_by(StockMovement.date.desc(), StockMovement.id.desc())
        .limit(clamp_limit(limit))
        .all()
    )


def get_movements_by_type(
    movement_type: str,
    *,
    start: date | None = None,
    end: date | None = None,
    limit: int | None = None,
) -> list[StockMovement]:
    if movement_type not in MOVEMENT_TYPES:
        raise StockValidationError(f"Invalid movement type: {movement_type}")
    query = db.session.query(StockMovement).filter(StockMovement.movement_type == movement_type)
    query = apply_day_range(query, StockMovement.date, start, end)
    return (
        query.order_by(StockMovement.date.desc(), StockMovement.id.desc())
        .limit(clamp_limit(limit))
        .all()
    )


def get_movement_summary(
    *,
    start: date | None = None,
    end: date | None = None,
    product_id: int | None = None,
) -> list[dict]:
    """Totals grouped by (movement_type, movement_category)."""
    query = db.session.query(
        StockMovement.movement_type,
        StockMovement.movement_category,
        func.count(StockMovement.id),
        func.coalesce(func.sum(StockMovement.quantity), 0),
        func.coalesce(func.sum(StockMovement.total_cost_cents), 0),
    )
    if product_id is not None:
        query = query.filter(StockMovement.product_id == product_id)
    query = apply_day_range(query, StockMovement.date, start, end)
    rows = (
        query.group_by(StockMovement.movement_type, StockMovement.movement_category)
        .order_by(StockMovement.movement_type, StockMovement.movement_category)
        .all()
    )
    return [
        {
            "movement_type": movement_type,
            "movement_category": category,
            "count": int(count),
            "total_quantity": int(quantity),
            "total_cost_cents": int(cost),
        }
        for movement_type, category, count, quantity, cost in rows
    ]


def get_stock_flow(product_id: int, *, start: date | None = None, end: date | None = None) -> dict:
    """Units moved per movement type for one product, plus the net flow."""
    query = db.session.query(
        StockMovement.movement_type,
        func.coalesce(func.sum(StockMovement.quantity), 0),
    ).filter(StockMovement.product_id == product_id)
    query = apply_day_range(query, StockMovement.date, start, end)
    totals = {movement_type: 0 for movement_type in MOVEMENT_TYPES}
    for movement_type, quantity in query.group_by(StockMovement.movement_type).all():
        totals[movement_type] = int(quantity)
    return {
        "product_id": product_id,
        "totals": totals,
        "net_flow": totals["in"] - totals["out"],
    }
