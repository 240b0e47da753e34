# backend/liquor_pos/services/reconciliation_service.py
"""
Physical stock count (reconciliation) workflow.

WHY: Counting shelves is slow and error-prone, so counts are entered
incrementally and nothing touches stock until a supervisor approves and
the adjustments are applied explicitly.

LIFECYCLE:
1. in_progress: created with one item per active product, counts being entered
2. pending_approval: submitted by the counter
3. approved: supervisor accepted (may apply in the same call)
4. completed: variances written to live stock, movements, audit and ledger
5. rejected: supervisor declined (from pending_approval only)

Only one in_progress/pending_approval session may exist per business day.
"""
from __future__ import annotations

from datetime import date

from flask import current_app
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DailyStock, DocumentSequence, Product, ReconciliationItem, StockReconciliation, StockReference
from ..models.catalog import PRODUCT_STATUS_ACTIVE
from ..time_utils import utcnow
from . import audit_service, ledger_math, movement_service
from .concurrency import insert_if_absent, lock_for_update, run_with_retry
from .daily_stock_service import get_or_create_daily_stock, record_reconciled_count, to_business_day
from .errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    StockError,
    StockValidationError,
    service_result,
)
from .live_stock import set_live_stock


STATUS_IN_PROGRESS = "in_progress"
STATUS_PENDING_APPROVAL = "pending_approval"
STATUS_APPROVED = "approved"
STATUS_COMPLETED = "completed"
STATUS_REJECTED = "rejected"

STATUSES = (STATUS_IN_PROGRESS, STATUS_PENDING_APPROVAL, STATUS_APPROVED, STATUS_COMPLETED, STATUS_REJECTED)
ACTIVE_STATUSES = (STATUS_IN_PROGRESS, STATUS_PENDING_APPROVAL)

MAX_LIST_LIMIT = 100


def next_reconciliation_number(day: date) -> str:
    """
    Allocate "REC-YYYYMMDD-NNN"; NNN restarts at 001 each day.

    The per-day counter row is created if absent and bumped with a single
    UPDATE, so concurrent creators never share a number.
    """
    key = f"REC-{day:%Y%m%d}"
    insert_if_absent(
        DocumentSequence.__table__,
        {"sequence_key": key, "next_number": 1},
        ["sequence_key"],
    )
    db.session.execute(
        update(DocumentSequence)
        .where(DocumentSequence.sequence_key == key)
        .values(next_number=DocumentSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )
    current = (
        db.session.query(DocumentSequence.next_number)
        .filter(DocumentSequence.sequence_key == key)
        .scalar()
    )
    return f"{key}-{current - 1:03d}"


def _find_session(reference, *, lock: bool = False) -> StockReconciliation:
    """Look a session up by numeric id or by its REC-... number."""
    query = db.session.query(StockReconciliation)
    if isinstance(reference, int) or str(reference).isdigit():
        query = query.filter(StockReconciliation.id == int(reference))
    else:
        query = query.filter(StockReconciliation.reconciliation_number == str(reference))
    if lock:
        query = lock_for_update(query.populate_existing())
    session = query.first()
    if not session:
        raise NotFoundError("Reconciliation not found", reconciliation_id=str(reference))
    return session


def _active_session(day: date) -> StockReconciliation | None:
    return (
        db.session.query(StockReconciliation)
        .filter(
            StockReconciliation.date == day,
            StockReconciliation.status.in_(ACTIVE_STATUSES),
        )
        .first()
    )


def _conflict(existing: StockReconciliation) -> ConflictError:
    return ConflictError(
        f"Reconciliation already in progress for {existing.date.isoformat()}",
        existing_reconciliation_id=existing.reconciliation_number,
    )


@service_result
def create_reconciliation(day: date | str | None = None, *, user_id: int, notes: str | None = None) -> dict:
    """
    Open a count session for day with one item per active product.

    system_stock is the day's ledger closing stock where an entry exists,
    otherwise live stock. It is not refreshed later.
    """
    day = to_business_day(day)

    def _op():
        existing = _active_session(day)
        if existing:
            raise _conflict(existing)

        session = StockReconciliation(
            reconciliation_number=next_reconciliation_number(day),
            date=day,
            active_for_date=day,
            status=STATUS_IN_PROGRESS,
            reconciled_by_user_id=user_id,
            notes=notes,
        )

        closings = dict(
            db.session.query(DailyStock.product_id, DailyStock.closing_stock)
            .filter(DailyStock.date == day)
            .all()
        )
        products = (
            db.session.query(Product)
            .filter(Product.status == PRODUCT_STATUS_ACTIVE)
            .order_by(Product.name)
            .all()
        )
        for product in products:
            session.items.append(ReconciliationItem(
                product_id=product.id,
                system_stock=closings.get(product.id, product.current_stock),
                physical_stock=0,
                variance=0,
                variance_value_cents=0,
                cost_per_unit_cents=product.cost_price_cents or 0,
            ))
        ledger_math.apply_reconciliation_totals(session)

        db.session.add(session)
        try:
            db.session.flush()
        except IntegrityError:
            # Lost the race on uq_reconciliation_active_date
            db.session.rollback()
            existing = _active_session(day)
            if existing:
                raise _conflict(existing)
            raise
        return session

    session = run_with_retry(_op)
    current_app.logger.info(
        "Reconciliation %s created for %s with %s products",
        session.reconciliation_number, day, session.total_products,
    )
    return {
        "success": True,
        "reconciliation_id": session.reconciliation_number,
        "reconciliation": session.to_dict(include_items=True),
    }


@service_result
def record_physical_count(
    reference,
    product_id: int,
    physical_stock: int,
    *,
    user_id: int,
    reason: str | None = None,
) -> dict:
    """Enter one product's counted quantity; variance is recomputed from system_stock."""
    if isinstance(physical_stock, bool) or not isinstance(physical_stock, int) or physical_stock < 0:
        raise StockValidationError("Physical stock must be a non-negative integer")

    def _op():
        session = _find_session(reference, lock=True)
        if session.status != STATUS_IN_PROGRESS:
            raise InvalidStateError("Reconciliation is not in progress", status=session.status)

        item = next((i for i in session.items if i.product_id == product_id), None)
        if item is None:
            raise NotFoundError("Product not found in reconciliation", product_id=product_id)

        item.physical_stock = physical_stock
        item.variance, item.variance_value_cents = ledger_math.compute_item_variance(
            item.system_stock, physical_stock, item.cost_per_unit_cents
        )
        item.reason = reason
        item.reconciled_at = utcnow()
        item.counted_by_user_id = user_id
        ledger_math.apply_reconciliation_totals(session)
        db.session.flush()
        return session, item

    session, item = run_with_retry(_op)
    return {
        "success": True,
        "item": item.to_dict(),
        "reconciliation": session.to_dict(),
    }


@service_result
def submit_for_approval(
    reference,
    *,
    user_id: int,
    notes: str | None = None,
    allow_partial: bool = False,
) -> dict:
    """
    Hand a session to a supervisor.

    Items with non-zero system stock that were never counted block the
    submit unless allow_partial is set. A count of 0 entered explicitly
    counts as counted.
    """
    def _op():
        session = _find_session(reference, lock=True)
        if session.status != STATUS_IN_PROGRESS:
            raise InvalidStateError("Reconciliation is not in progress", status=session.status)

        unreconciled = [
            item.product_id
            for item in session.items
            if not item.is_counted and item.system_stock != 0
        ]
        if unreconciled and not allow_partial:
            raise StockValidationError(
                f"There are {len(unreconciled)} unreconciled items. "
                "Please reconcile all items or use allow_partial option.",
                unreconciled_product_ids=unreconciled,
            )

        session.status = STATUS_PENDING_APPROVAL
        session.submitted_by_user_id = user_id
        session.submitted_at = utcnow()
        session.submission_notes = notes
        ledger_math.apply_reconciliation_totals(session)
        db.session.flush()
        return session, unreconciled

    session, unreconciled = run_with_retry(_op)
    return {
        "success": True,
        "reconciliation": session.to_dict(),
        "unreconciled_items": len(unreconciled),
    }


def _apply(session: StockReconciliation, user_id: int) -> tuple[list[dict], list[dict]]:
    """
    Write counted variances through to stock.

    Live stock is set to the physical count itself. The movement and audit
    rows carry the change actually made to live stock, which can differ from
    the item's variance when sales happened after the session was opened;
    nothing is logged when live stock already matches the count. Every
    counted item is stamped on the session day's ledger entry, and later
    entries are rebased with it so the next live-stock sync keeps the count.
    Uncounted items are left alone.
    """
    reference = StockReference.reconciliation(session.reconciliation_number)
    adjustments, errors = [], []

    for item in session.items:
        if not item.is_counted:
            continue
        try:
            # Seed the entry before live stock moves
            get_or_create_daily_stock(item.product_id, session.date, user_id=user_id)
            applied_change = 0
            if item.variance != 0:
                old_value, new_value = set_live_stock(item.product_id, item.physical_stock)
                applied_change = new_value - old_value

            if applied_change:
                metadata = {
                    "system_stock": item.system_stock,
                    "physical_stock": item.physical_stock,
                    "variance": item.variance,
                    "variance_value_cents": item.variance_value_cents,
                    "applied_change": applied_change,
                }
                movement = movement_service.create_movement(
                    item.product_id,
                    "in" if applied_change > 0 else "out",
                    "stock_reconciliation",
                    abs(applied_change),
                    user_id=user_id,
                    reference=reference,
                    unit_cost_cents=item.cost_per_unit_cents,
                    reference_number=session.reconciliation_number,
                    notes=item.reason,
                    metadata=metadata,
                )
                audit_service.log_stock_change(
                    item.product_id,
                    "reconciliation",
                    old_value,
                    new_value,
                    user_id=user_id,
                    reference=reference,
                    reason=item.reason or "Physical stock count",
                    metadata=metadata,
                )
                item.stock_movement_id = movement.id
                adjustments.append({
                    "product_id": item.product_id,
                    "old_stock": old_value,
                    "new_stock": new_value,
                    "variance": item.variance,
                    "variance_value_cents": item.variance_value_cents,
                    "applied_change": applied_change,
                    "movement_id": movement.id,
                })
            record_reconciled_count(
                item.product_id, session.date, item.physical_stock, applied_change, user_id=user_id
            )
        except StockError as exc:
            current_app.logger.warning(
                "Reconciliation %s: adjustment failed for product %s: %s",
                session.reconciliation_number, item.product_id, exc,
            )
            errors.append({"product_id": item.product_id, "error": exc.message})

    session.status = STATUS_COMPLETED
    session.active_for_date = None
    session.completed_by_user_id = user_id
    session.completed_at = utcnow()
    db.session.flush()
    return adjustments, errors


@service_result
def approve_reconciliation(
    reference,
    *,
    user_id: int,
    notes: str | None = None,
    apply_adjustments: bool = False,
) -> dict:
    def _op():
        session = _find_session(reference, lock=True)
        if session.status != STATUS_PENDING_APPROVAL:
            raise InvalidStateError("Reconciliation is not pending approval", status=session.status)

        session.status = STATUS_APPROVED
        session.active_for_date = None
        session.approved_by_user_id = user_id
        session.approved_at = utcnow()
        session.approval_notes = notes
        db.session.flush()

        applied = _apply(session, user_id) if apply_adjustments else None
        return session, applied

    session, applied = run_with_retry(_op)
    current_app.logger.info("Reconciliation %s approved by user %s", session.reconciliation_number, user_id)

    result = {"success": True, "reconciliation": session.to_dict()}
    if applied is not None:
        adjustments, errors = applied
        result.update({"adjustments_made": len(adjustments), "adjustments": adjustments, "errors": errors})
    return result


@service_result
def reject_reconciliation(reference, *, user_id: int, reason: str) -> dict:
    if not reason:
        raise StockValidationError("A rejection reason is required")

    def _op():
        session = _find_session(reference, lock=True)
        if session.status != STATUS_PENDING_APPROVAL:
            raise InvalidStateError("Reconciliation is not pending approval", status=session.status)

        session.status = STATUS_REJECTED
        session.active_for_date = None
        session.rejected_by_user_id = user_id
        session.rejected_at = utcnow()
        session.rejection_reason = reason
        db.session.flush()
        return session

    session = run_with_retry(_op)
    current_app.logger.info("Reconciliation %s rejected by user %s", session.reconciliation_number, user_id)
    return {"success": True, "reconciliation": session.to_dict()}


@service_result
def apply_adjustments(reference, *, user_id: int) -> dict:
    """
    Apply an approved session's variances; the session ends up completed.

    Items that fail are listed in errors[] and do not stop the others.
    """
    def _op():
        session = _find_session(reference, lock=True)
        if session.status != STATUS_APPROVED:
            raise InvalidStateError(
                "Reconciliation must be approved before applying adjustments",
                status=session.status,
            )
        adjustments, errors = _apply(session, user_id)
        return session, adjustments, errors

    session, adjustments, errors = run_with_retry(_op)
    current_app.logger.info(
        "Reconciliation %s completed: %s adjustments, %s errors",
        session.reconciliation_number, len(adjustments), len(errors),
    )
    return {
        "success": True,
        "reconciliation_id": session.reconciliation_number,
        "adjustments_made": len(adjustments),
        "adjustments": adjustments,
        "errors": errors,
        "reconciliation": session.to_dict(),
    }


@service_result
def get_reconciliation_details(reference) -> dict:
    session = _find_session(reference)
    return {"success": True, "reconciliation": session.to_dict(include_items=True)}


@service_result
def list_reconciliations(
    *,
    status: str | None = None,
    start: date | str | None = None,
    end: date | str | None = None,
    limit: int | None = None,
) -> dict:
    if status is not None and status not in STATUSES:
        raise StockValidationError(f"Invalid status: {status}")
    if limit is None:
        limit = current_app.config.get("RECONCILIATION_LIST_LIMIT", 50)
    limit = max(1, min(int(limit), MAX_LIST_LIMIT))

    query = db.session.query(StockReconciliation)
    if status:
        query = query.filter(StockReconciliation.status == status)
    if start is not None:
        query = query.filter(StockReconciliation.date >= to_business_day(start))
    if end is not None:
        query = query.filter(StockReconciliation.date <= to_business_day(end))

    total = query.count()
    sessions = (
        query.order_by(StockReconciliation.date.desc(), StockReconciliation.id.desc())
        .limit(limit)
        .all()
    )
    return {
        "success": True,
        "total": total,
        "reconciliations": [session.to_dict() for session in sessions],
    }


def reconciliation_summary(*, start: date | str | None = None, end: date | str | None = None) -> dict:
    """Session counts, item totals and net variance value per status."""
    query = db.session.query(
        StockReconciliation.status,
        func.count(StockReconciliation.id),
        func.coalesce(func.sum(StockReconciliation.variance_value_cents), 0),
        func.coalesce(func.sum(StockReconciliation.total_products), 0),
    )
    if start is not None:
        query = query.filter(StockReconciliation.date >= to_business_day(start))
    if end is not None:
        query = query.filter(StockReconciliation.date <= to_business_day(end))

    rows = query.group_by(StockReconciliation.status).order_by(StockReconciliation.status).all()
    return {
        "success": True,
        "summary": [
            {
                "status": status,
                "count": int(count),
                "total_variance_value_cents": int(value),
                "total_items": int(items),
            }
            for status, count, value, items in rows
        ],
    }
