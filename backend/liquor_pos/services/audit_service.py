"""
Stock audit log: a product's stock went from old_value to new_value.

Kept apart from the movement log. One business event usually writes one row
in each.
"""
from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import case, func

from ..extensions import db
from ..models import StockAudit, StockReference
from ..models.logs import AUDIT_CHANGE_TYPES
from ..models.references import validate_metadata
from ..time_utils import utcnow
from .errors import StockValidationError
from .movement_service import apply_day_range, clamp_limit


def log_stock_change(
    product_id: int,
    change_type: str,
    old_value: int,
    new_value: int,
    *,
    user_id: int,
    reference: StockReference | None = None,
    reason: str | None = None,
    notes: str | None = None,
    metadata: dict | None = None,
    timestamp: datetime | None = None,
) -> StockAudit:
    if change_type not in AUDIT_CHANGE_TYPES:
        raise StockValidationError(f"Invalid change type: {change_type}")
    try:
        meta = validate_metadata(metadata)
    except ValueError as exc:
        raise StockValidationError(str(exc))

    audit = StockAudit(
        product_id=product_id,
        change_type=change_type,
        old_value=old_value,
        new_value=new_value,
        quantity_changed=new_value - old_value,
        changed_by_user_id=user_id,
        timestamp=timestamp or utcnow(),
        reference_type=reference.kind.value if reference else None,
        reference_id=reference.id if reference else None,
        reason=reason,
        notes=notes,
        meta=meta,
    )
    db.session.add(audit)
    db.session.flush()
    return audit


def get_product_audit_trail(
    product_id: int,
    *,
    start: date | None = None,
    end: date | None = None,
    change_type: str | None = None,
    limit: int | None = None,
) -> list[StockAudit]:
    query = db.session.query(StockAudit).filter(StockAudit.product_id == product_id)
    query = apply_day_range(query, StockAudit.timestamp, start, end)
    if change_type:
        query = query.filter(StockAudit.change_type == change_type)
    return (
        query.order_by(StockAudit.timestamp.desc(), StockAudit.id.desc())
        .limit(clamp_limit(limit))
        .all()
    )


def get_user_audit_trail(
    user_id: int,
    *,
    start: date | None = None,
    end: date | None = None,
    limit: int | None = None,
) -> list[StockAudit]:
    query = db.session.query(StockAudit).filter(StockAudit.changed_by_user_id == user_id)
    query = apply_day_range(query, StockAudit.timestamp, start, end)
    return (
        query.order_by(StockAudit.timestamp.desc(), StockAudit.id.desc())
        .limit(clamp_limit(limit))
        .all()
    )


def get_audit_summary(
    *,
    start: date | None = None,
    end: date | None = None,
    product_id: int | None = None,
) -> list[dict]:
    """Counts and net change grouped by change_type."""
    query = db.session.query(
        StockAudit.change_type,
        func.count(StockAudit.id),
        func.coalesce(func.sum(StockAudit.quantity_changed), 0),
        func.coalesce(func.sum(case((StockAudit.quantity_changed > 0, 1), else_=0)), 0),
        func.coalesce(func.sum(case((StockAudit.quantity_changed < 0, 1), else_=0)), 0),
    )
    if product_id is not None:
        query = query.filter(StockAudit.product_id == product_id)
    query = apply_day_range(query, StockAudit.timestamp, start, end)
    rows = query.group_by(StockAudit.change_type).order_by(StockAudit.change_type).all()
    return [
        {
            "change_type": change_type,
            "count": int(count),
            "total_quantity_changed": int(total),
            "increases": int(increases),
            "decreases": int(decreases),
        }
        for change_type, count, total, increases, decreases in rows
    ]
