# backend/liquor_pos/services/daily_stock_service.py
"""
Daily stock ledger: one entry per product per business day.

WHY: Live stock (Product.current_stock) says how much is on the shelf now.
The ledger says how it got there, day by day:

    closing_stock = opening_stock + stock_inward - sold_quantity
    stock_value_cents = closing_stock * cost_per_unit_cents

CONCURRENCY:
- Entries are created with INSERT ... ON CONFLICT DO NOTHING on
  (product_id, date), so racing creators end up sharing one row.
- sold_quantity / stock_inward are bumped with UPDATE ... SET x = x + n;
  the derived columns are then recomputed in SQL from the stored inputs.
- Whole-row edits (carry-forward, rebases) go through the ORM and are
  guarded by version_id; raw UPDATEs bump version_id too.

REBASES:
A manual adjustment or an applied count moves opening_stock on purpose.
The shift is kept in opening_adjustment and pushed through every later
entry of the product, so each later day still opens at its predecessor's
closing and the live-stock sync never undoes the correction.

Batch jobs (snapshots, carry-forward, live sync) commit per product and
collect failures into errors[] instead of aborting.
"""
from __future__ import annotations

from collections import OrderedDict
from datetime import date

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import Category, DailyStock, Product, StockReference
from ..models.catalog import PRODUCT_STATUS_ACTIVE
from ..time_utils import normalize_day, utcnow
from . import audit_service, ledger_math
from .concurrency import insert_if_absent, run_with_retry
from .errors import StockError, StockValidationError, service_result
from .live_stock import get_product, set_live_stock


def to_business_day(value) -> date:
    """normalize_day for service inputs; a malformed day is a validation error."""
    try:
        return normalize_day(value)
    except ValueError as exc:
        raise StockValidationError(str(exc)) from exc


def _get_entry(product_id: int, day: date, *, refresh: bool = False) -> DailyStock | None:
    query = db.session.query(DailyStock)
    if refresh:
        query = query.populate_existing()
    return query.filter(DailyStock.product_id == product_id, DailyStock.date == day).one_or_none()


def _previous_entry(product_id: int, day: date) -> DailyStock | None:
    """Most recent entry strictly before day (gaps in the ledger are skipped)."""
    return (
        db.session.query(DailyStock)
        .filter(DailyStock.product_id == product_id, DailyStock.date < day)
        .order_by(DailyStock.date.desc())
        .first()
    )


def get_or_create_daily_stock(
    product_id: int,
    day: date | str | None = None,
    *,
    user_id: int,
    notes: str | None = None,
) -> tuple[DailyStock, bool]:
    """
    Return (entry, created) for product_id on day.

    A new entry opens with the closing stock of the product's most recent
    earlier entry, or with live stock if the product has no history.
    cost_per_unit_cents is copied from the product at this moment.

    Raises:
        NotFoundError: unknown product
    """
    day = to_business_day(day)
    entry = _get_entry(product_id, day)
    if entry:
        return entry, False

    product = get_product(product_id)
    previous = _previous_entry(product_id, day)
    opening = previous.closing_stock if previous else product.current_stock
    cost = product.cost_price_cents or 0

    values = {
        "product_id": product_id,
        "date": day,
        "opening_stock": opening,
        "stock_inward": 0,
        "sold_quantity": 0,
        "opening_adjustment": 0,
        "cost_per_unit_cents": cost,
        "created_by_user_id": user_id,
        "notes": notes,
        "version_id": 1,
        **ledger_math.ledger_totals(opening, 0, 0, cost),
    }
    created = insert_if_absent(DailyStock.__table__, values, ["product_id", "date"])
    entry = _get_entry(product_id, day, refresh=True)
    if created:
        current_app.logger.debug(
            "Created daily stock for product %s on %s (opening %s)", product_id, day, opening
        )
    return entry, created


def increment_daily_stock(
    product_id: int,
    field: str,
    quantity: int,
    day: date | str | None = None,
    *,
    user_id: int,
) -> tuple[DailyStock, int]:
    """
    Atomically add quantity to sold_quantity or stock_inward.

    Returns (entry, old_value). No retry or commit here; callers own the
    transaction.
    """
    if field not in ("sold_quantity", "stock_inward"):
        raise StockValidationError(f"Cannot increment {field}")
    if quantity is None or quantity <= 0:
        raise StockValidationError("Quantity must be positive")

    entry, _ = get_or_create_daily_stock(product_id, day, user_id=user_id)
    column = getattr(DailyStock, field)

    db.session.execute(
        update(DailyStock)
        .where(DailyStock.id == entry.id)
        .values({column: column + quantity, DailyStock.version_id: DailyStock.version_id + 1})
        .execution_options(synchronize_session=False)
    )
    db.session.execute(
        update(DailyStock)
        .where(DailyStock.id == entry.id)
        .values(
            ledger_math.ledger_totals(
                DailyStock.opening_stock,
                DailyStock.stock_inward,
                DailyStock.sold_quantity,
                DailyStock.cost_per_unit_cents,
            )
        )
        .execution_options(synchronize_session=False)
    )
    db.session.refresh(entry)
    return entry, getattr(entry, field) - quantity


def _increment_result(product_id, field, quantity, day, user_id) -> dict:
    entry, old_value = run_with_retry(
        lambda: increment_daily_stock(product_id, field, quantity, day, user_id=user_id)
    )
    return {
        "success": True,
        "product_id": product_id,
        "date": entry.date.isoformat(),
        f"old_{field}": old_value,
        f"new_{field}": getattr(entry, field),
        "quantity_added": quantity,
        "closing_stock": entry.closing_stock,
        "stock_value_cents": entry.stock_value_cents,
    }


@service_result
def record_sale(product_id: int, quantity: int, day: date | str | None = None, *, user_id: int) -> dict:
    """Add quantity to the day's sold_quantity."""
    return _increment_result(product_id, "sold_quantity", quantity, day, user_id)


@service_result
def record_inward(product_id: int, quantity: int, day: date | str | None = None, *, user_id: int) -> dict:
    """Add quantity to the day's stock_inward."""
    return _increment_result(product_id, "stock_inward", quantity, day, user_id)


def _latest_entry(product_id: int) -> DailyStock | None:
    return (
        db.session.query(DailyStock)
        .filter(DailyStock.product_id == product_id)
        .order_by(DailyStock.date.desc())
        .first()
    )


def rebase_ledger(product_id: int, day: date | str | None, change: int, *, user_id: int) -> DailyStock:
    """
    Shift day's opening stock by change and carry the shift forward.

    The day's entry records the shift in opening_adjustment. Every later
    entry of the product moves by the same amount, so the chain of
    closing -> opening stays intact. No commit.
    """
    day = to_business_day(day)
    entry, _ = get_or_create_daily_stock(product_id, day, user_id=user_id)
    if not change:
        return entry

    entries = (
        db.session.query(DailyStock)
        .populate_existing()
        .filter(DailyStock.product_id == product_id, DailyStock.date >= day)
        .order_by(DailyStock.date)
        .all()
    )
    for row in entries:
        row.opening_stock = row.opening_stock + change
        if row.date == day:
            row.opening_adjustment = (row.opening_adjustment or 0) + change
        ledger_math.apply_ledger_totals(row)
    db.session.flush()

    current_app.logger.info(
        "Rebased ledger for product %s from %s by %s (%s entries)",
        product_id, day, change, len(entries),
    )
    return entries[0]


def align_closing_stock(
    product_id: int,
    day: date | str | None,
    closing_stock: int,
    *,
    user_id: int,
) -> tuple[DailyStock, int]:
    """Rebase day's entry so it closes at closing_stock. Returns (entry, change)."""
    entry, _ = get_or_create_daily_stock(product_id, day, user_id=user_id)
    entry = _get_entry(product_id, entry.date, refresh=True)
    change = closing_stock - entry.closing_stock
    return rebase_ledger(product_id, entry.date, change, user_id=user_id), change


def record_reconciled_count(
    product_id: int,
    day: date,
    physical_stock: int,
    applied_change: int,
    *,
    user_id: int,
) -> tuple[DailyStock, int]:
    """
    Stamp a physical count on the day's entry and rebase the ledger onto it.

    The day's entry is rebased so it closes at physical_stock, and later
    entries follow. applied_change is what the count actually did to live
    stock; if it differs from the ledger variance (live stock moved after
    the count), the remainder lands on the product's latest entry so the
    ledger ends where live stock is. Returns (entry, variance against the
    pre-count closing stock).
    """
    entry, _ = get_or_create_daily_stock(product_id, day, user_id=user_id)
    entry = _get_entry(product_id, entry.date, refresh=True)

    variance = physical_stock - entry.closing_stock
    entry.physical_stock = physical_stock
    entry.stock_variance = variance
    entry.reconciliation_date = utcnow()
    entry.reconciled_by_user_id = user_id
    db.session.flush()

    entry = rebase_ledger(product_id, entry.date, variance, user_id=user_id)
    drift = applied_change - variance
    if drift:
        latest = _latest_entry(product_id)
        rebase_ledger(product_id, latest.date, drift, user_id=user_id)
        entry = _get_entry(product_id, entry.date, refresh=True)
    return entry, variance


def _active_products() -> list[tuple[int, str]]:
    return [
        (product_id, name)
        for product_id, name in db.session.query(Product.id, Product.name)
        .filter(Product.status == PRODUCT_STATUS_ACTIVE)
        .order_by(Product.id)
        .all()
    ]


def _entries_for_day(day: date) -> list[tuple[int, int, str]]:
    return (
        db.session.query(DailyStock.id, DailyStock.product_id, Product.name)
        .join(Product, Product.id == DailyStock.product_id)
        .filter(DailyStock.date == day)
        .order_by(DailyStock.product_id)
        .all()
    )


def create_daily_snapshots(day: date | str | None = None, *, user_id: int) -> dict:
    """
    Make sure every active product has a ledger entry for day.

    Safe to re-run: existing entries are reported, not recreated.
    """
    day = to_business_day(day)
    products = _active_products()
    snapshots, errors = [], []
    created_count = existing_count = 0

    for product_id, product_name in products:
        try:
            entry, created = run_with_retry(
                lambda: get_or_create_daily_stock(product_id, day, user_id=user_id)
            )
            db.session.commit()
        except (StockError, SQLAlchemyError) as exc:
            db.session.rollback()
            current_app.logger.warning("Snapshot failed for product %s on %s: %s", product_id, day, exc)
            errors.append({"product_id": product_id, "product_name": product_name, "error": str(exc)})
            continue

        if created:
            created_count += 1
        else:
            existing_count += 1
        snapshots.append({
            "product_id": product_id,
            "product_name": product_name,
            "created": created,
            "opening_stock": entry.opening_stock,
            "closing_stock": entry.closing_stock,
        })

    current_app.logger.info(
        "Daily snapshots for %s: %s created, %s existing, %s errors",
        day, created_count, existing_count, len(errors),
    )
    return {
        "success": True,
        "date": day.isoformat(),
        "total_products": len(products),
        "snapshots_created": created_count,
        "snapshots_existing": existing_count,
        "snapshots": snapshots,
        "errors": errors,
    }


def carry_forward_opening_stock(day: date | str | None = None, *, user_id: int) -> dict:
    """
    Repair day's opening stock from the previous entry's closing stock.

    The expected opening is the previous closing plus the entry's own
    opening_adjustment, so deliberate rebases survive a repair.
    """
    day = to_business_day(day)
    entries = _entries_for_day(day)
    updates, errors = [], []
    skipped = 0

    def _op(product_id):
        entry = _get_entry(product_id, day, refresh=True)
        previous = _previous_entry(product_id, day)
        if previous is None:
            return None
        expected = previous.closing_stock + (entry.opening_adjustment or 0)
        if entry.opening_stock == expected:
            return None

        old_opening = entry.opening_stock
        entry.opening_stock = expected
        ledger_math.apply_ledger_totals(entry)
        audit_service.log_stock_change(
            product_id,
            "opening_stock",
            old_opening,
            entry.opening_stock,
            user_id=user_id,
            reference=StockReference.daily_stock(entry.id),
            reason="Opening stock carried forward from previous day",
            metadata={
                "date": day.isoformat(),
                "previous_date": previous.date.isoformat(),
                "opening_adjustment": entry.opening_adjustment,
            },
        )
        db.session.flush()
        return {
            "old_opening_stock": old_opening,
            "new_opening_stock": entry.opening_stock,
            "previous_day_closing": previous.closing_stock,
            "opening_adjustment": entry.opening_adjustment,
            "closing_stock": entry.closing_stock,
        }

    for _entry_id, product_id, product_name in entries:
        try:
            change = run_with_retry(lambda: _op(product_id))
            db.session.commit()
        except (StockError, SQLAlchemyError) as exc:
            db.session.rollback()
            current_app.logger.warning("Carry-forward failed for product %s on %s: %s", product_id, day, exc)
            errors.append({"product_id": product_id, "product_name": product_name, "error": str(exc)})
            continue
        if change is None:
            skipped += 1
            continue
        updates.append({"product_id": product_id, "product_name": product_name, **change})

    if updates:
        current_app.logger.warning("Carried forward opening stock for %s products on %s", len(updates), day)
    return {
        "success": True,
        "date": day.isoformat(),
        "total_records": len(entries),
        "updates_made": len(updates),
        "unchanged": skipped,
        "updates": updates,
        "errors": errors,
    }


def sync_live_stock_from_snapshot(day: date | str | None = None, *, user_id: int) -> dict:
    """Overwrite Product.current_stock with the day's closing stock where they differ."""
    day = to_business_day(day)
    entries = _entries_for_day(day)
    syncs, errors = [], []

    def _op(product_id):
        entry = _get_entry(product_id, day, refresh=True)
        live = db.session.query(Product.current_stock).filter(Product.id == product_id).scalar()
        if live == entry.closing_stock:
            return None
        old_value, new_value = set_live_stock(product_id, entry.closing_stock)
        audit_service.log_stock_change(
            product_id,
            "closing_stock",
            old_value,
            new_value,
            user_id=user_id,
            reference=StockReference.daily_stock(entry.id),
            reason="Live stock synced from daily ledger",
            metadata={"date": day.isoformat()},
        )
        return {
            "old_current_stock": old_value,
            "new_current_stock": new_value,
            "daily_snapshot_closing": entry.closing_stock,
        }

    for _entry_id, product_id, product_name in entries:
        try:
            change = run_with_retry(lambda: _op(product_id))
            db.session.commit()
        except (StockError, SQLAlchemyError) as exc:
            db.session.rollback()
            current_app.logger.warning("Live stock sync failed for product %s on %s: %s", product_id, day, exc)
            errors.append({"product_id": product_id, "product_name": product_name, "error": str(exc)})
            continue
        if change is not None:
            syncs.append({"product_id": product_id, "product_name": product_name, **change})

    current_app.logger.info("Live stock sync for %s: %s products updated", day, len(syncs))
    return {
        "success": True,
        "date": day.isoformat(),
        "total_records": len(entries),
        "syncs_made": len(syncs),
        "syncs": syncs,
        "errors": errors,
    }


def validate_integrity(day: date | str | None = None) -> dict:
    """Read-only check of every entry's derived figures for day."""
    day = to_business_day(day)
    entries = (
        db.session.query(DailyStock)
        .filter(DailyStock.date == day)
        .order_by(DailyStock.product_id)
        .all()
    )
    issues = []
    for entry in entries:
        findings = ledger_math.entry_integrity_issues(entry)
        if findings:
            issues.append({
                "product_id": entry.product_id,
                "product_name": entry.product.name if entry.product else None,
                "issues": findings,
            })

    if issues:
        current_app.logger.warning("Integrity check for %s found %s invalid records", day, len(issues))
    return {
        "success": True,
        "date": day.isoformat(),
        "valid": not issues,
        "issues": issues,
        "summary": {
            "total_records": len(entries),
            "valid_records": len(entries) - len(issues),
            "invalid_records": len(issues),
        },
    }


@service_result
def continuity_report(
    start: date | str,
    end: date | str,
    *,
    product_id: int | None = None,
) -> dict:
    """
    Flag adjacent entries where opening_stock != previous closing_stock.

    "Adjacent" means consecutive entries of the same product within the
    range, so gaps in the ledger are compared across. A break that is
    exactly the entry's opening_adjustment (a manual adjustment or applied
    count) carries explained=True.
    """
    start = to_business_day(start)
    end = to_business_day(end)
    if start > end:
        raise StockValidationError("start_date must not be after end_date")

    query = (
        db.session.query(DailyStock, Product.name)
        .join(Product, Product.id == DailyStock.product_id)
        .filter(DailyStock.date >= start, DailyStock.date <= end)
    )
    if product_id is not None:
        query = query.filter(DailyStock.product_id == product_id)

    by_product: "OrderedDict[int, tuple[str, list[DailyStock]]]" = OrderedDict()
    for entry, name in query.order_by(DailyStock.product_id, DailyStock.date).all():
        by_product.setdefault(entry.product_id, (name, []))[1].append(entry)

    issues, products = [], []
    for pid, (name, entries) in by_product.items():
        product_issues = 0
        for previous, entry in zip(entries, entries[1:]):
            if entry.opening_stock == previous.closing_stock:
                continue
            product_issues += 1
            issues.append({
                "product_id": pid,
                "product_name": name,
                "date": entry.date.isoformat(),
                "previous_date": previous.date.isoformat(),
                "expected_opening": previous.closing_stock,
                "actual_opening": entry.opening_stock,
                "variance": entry.opening_stock - previous.closing_stock,
                "opening_adjustment": entry.opening_adjustment,
                "explained": entry.opening_stock - previous.closing_stock == entry.opening_adjustment,
                "reconciled": entry.reconciliation_date is not None,
            })
        products.append({
            "product_id": pid,
            "product_name": name,
            "entries": len(entries),
            "issues": product_issues,
        })

    if issues:
        current_app.logger.warning(
            "Continuity check %s..%s found %s issues", start, end, len(issues)
        )
    return {
        "success": True,
        "start_date": start.isoformat(),
        "end_date": end.isoformat(),
        "total_products": len(by_product),
        "continuity_issues": len(issues),
        "issues": issues,
        "products": products,
    }


@service_result
def daily_report(
    day: date | str | None = None,
    *,
    start_date: date | str | None = None,
    end_date: date | str | None = None,
    category_id: int | None = None,
    product_id: int | None = None,
) -> dict:
    """
    Ledger rows joined with product and category, ordered by product name.

    Single-day mode uses day; range mode uses start_date/end_date (both
    inclusive) and orders rows by product name, then date.
    """
    range_mode = start_date is not None or end_date is not None
    if range_mode:
        if start_date is None or end_date is None:
            raise StockValidationError("start_date and end_date are both required")
        start, end = to_business_day(start_date), to_business_day(end_date)
        if start > end:
            raise StockValidationError("start_date must not be after end_date")
    else:
        start = end = to_business_day(day)

    query = (
        db.session.query(DailyStock, Product, Category)
        .join(Product, Product.id == DailyStock.product_id)
        .outerjoin(Category, Category.id == Product.category_id)
        .filter(DailyStock.date >= start, DailyStock.date <= end)
    )
    if category_id is not None:
        query = query.filter(Product.category_id == category_id)
    if product_id is not None:
        query = query.filter(DailyStock.product_id == product_id)

    rows = []
    for entry, product, category in query.order_by(Product.name, DailyStock.date).all():
        rows.append({
            "product_id": product.id,
            "product_name": product.name,
            "brand": product.brand,
            "volume": product.volume,
            "category_id": category.id if category else None,
            "category_name": category.name if category else None,
            "date": entry.date.isoformat(),
            "opening_stock": entry.opening_stock,
            "stock_inward": entry.stock_inward,
            "sold_quantity": entry.sold_quantity,
            "closing_stock": entry.closing_stock,
            "cost_per_unit_cents": entry.cost_per_unit_cents,
            "stock_value_cents": entry.stock_value_cents,
            "physical_stock": entry.physical_stock,
            "stock_variance": entry.stock_variance,
            "opening_adjustment": entry.opening_adjustment,
            "reconciled": entry.reconciliation_date is not None,
        })

    result = {"success": True, "report": rows, "summary": ledger_math.summarize_report_rows(rows)}
    if range_mode:
        result["start_date"] = start.isoformat()
        result["end_date"] = end.isoformat()
    else:
        result["date"] = start.isoformat()
    return result
