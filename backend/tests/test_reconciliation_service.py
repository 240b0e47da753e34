"""
Physical stock count sessions.

Verifies:
- Creation snapshots system stock (ledger closing, else live stock)
- One active session per business day, numbered REC-YYYYMMDD-NNN
- Count entry, submit, approve, reject and apply transitions
- Applying writes live stock, movement, audit and rebases the ledger
"""

import pytest

from liquor_pos.extensions import db
from liquor_pos.models import DailyStock, Product, StockAudit, StockMovement, StockReconciliation, StockReference
from liquor_pos.services import automation_service, daily_stock_service, movement_service, stock_service
from liquor_pos.services import reconciliation_service as rec
from liquor_pos.services.errors import InvalidStateError

from conftest import DAY1, DAY2, DAY3


@pytest.fixture
def shelf(make_product, counter):
    """Two products with a DAY1 ledger entry: Bacardi (50 @ 100c) and Smirnoff (30 @ 80c)."""
    bacardi = make_product(name="Bacardi", current_stock=50, cost_price_cents=100)
    smirnoff = make_product(name="Smirnoff", current_stock=30, cost_price_cents=80)
    for product in (bacardi, smirnoff):
        daily_stock_service.get_or_create_daily_stock(product.id, DAY1, user_id=counter.id)
    db.session.commit()
    return bacardi, smirnoff


def _open(counter, day=DAY1):
    result = rec.create_reconciliation(day, user_id=counter.id)
    db.session.commit()
    assert result["success"] is True, result
    return result["reconciliation_id"]


def _count(number, product, physical, counter, reason=None):
    result = rec.record_physical_count(number, product.id, physical, user_id=counter.id, reason=reason)
    db.session.commit()
    assert result["success"] is True, result
    return result


def _submit(number, counter, **kwargs):
    result = rec.submit_for_approval(number, user_id=counter.id, **kwargs)
    db.session.commit()
    return result


class TestCreate:

    def test_items_snapshot_system_stock(self, shelf, make_product, counter):
        bacardi, smirnoff = shelf
        # Ledger closing drops to 45 while live stock stays at 50
        daily_stock_service.record_sale.raw(bacardi.id, 5, DAY1, user_id=counter.id)
        make_product(name="Vat 69", current_stock=12)
        db.session.commit()

        result = rec.create_reconciliation(DAY1, user_id=counter.id, notes="Month end")
        db.session.commit()

        assert result["reconciliation_id"] == "REC-20250918-001"
        session = result["reconciliation"]
        assert session["status"] == "in_progress"
        assert session["total_products"] == 3
        assert session["products_reconciled"] == 0
        assert session["notes"] == "Month end"

        by_name = {item["product_name"]: item for item in session["items"]}
        assert by_name["Bacardi"]["system_stock"] == 45
        assert by_name["Smirnoff"]["system_stock"] == 30
        assert by_name["Vat 69"]["system_stock"] == 12
        assert by_name["Vat 69"]["category_name"] == "Whisky"
        assert [item["product_name"] for item in session["items"]] == ["Bacardi", "Smirnoff", "Vat 69"]

    def test_second_active_session_conflicts(self, shelf, counter):
        number = _open(counter)

        result = rec.create_reconciliation(DAY1, user_id=counter.id)

        assert result == {
            "success": False,
            "error": "Reconciliation already in progress for 2025-09-18",
            "existing_reconciliation_id": number,
        }
        assert db.session.query(StockReconciliation).count() == 1

    def test_insert_race_reports_winning_session(self, shelf, counter, monkeypatch):
        number = _open(counter)
        lookup = rec._active_session
        calls = []

        def not_seen_yet(day):
            # The other creator commits between our check and our insert
            calls.append(day)
            return None if len(calls) == 1 else lookup(day)

        monkeypatch.setattr(rec, "_active_session", not_seen_yet)

        result = rec.create_reconciliation(DAY1, user_id=counter.id)

        assert result == {
            "success": False,
            "error": "Reconciliation already in progress for 2025-09-18",
            "existing_reconciliation_id": number,
        }
        assert len(calls) == 2
        assert db.session.query(StockReconciliation).count() == 1

    def test_bad_day_is_error_result(self, shelf, counter):
        result = rec.create_reconciliation("18/09/2025", user_id=counter.id)
        assert result == {"success": False, "error": "invalid date: '18/09/2025'"}

    def test_other_day_is_independent(self, shelf, counter):
        assert _open(counter, DAY1) == "REC-20250918-001"
        assert _open(counter, DAY2) == "REC-20250919-001"

    def test_numbering_continues_after_rejection(self, shelf, counter, manager):
        first = _open(counter)
        _submit(first, counter, allow_partial=True)
        rec.reject_reconciliation(first, user_id=manager.id, reason="Recount aisle 3")
        db.session.commit()

        assert _open(counter) == "REC-20250918-002"


class TestCounting:

    def test_variance_and_value(self, shelf, counter):
        bacardi, _ = shelf
        number = _open(counter)

        result = _count(number, bacardi, 47, counter, reason="Breakage")

        item = result["item"]
        assert (item["system_stock"], item["physical_stock"]) == (50, 47)
        assert item["variance"] == -3
        assert item["variance_value_cents"] == -300
        assert item["reason"] == "Breakage"
        assert item["counted_by_user_id"] == counter.id
        assert item["reconciled_at"] is not None

        session = result["reconciliation"]
        assert session["products_reconciled"] == 1
        assert session["total_variance"] == 3
        assert session["variance_value_cents"] == -300

    def test_recount_replaces_previous_figure(self, shelf, counter):
        bacardi, smirnoff = shelf
        number = _open(counter)
        _count(number, bacardi, 47, counter)
        _count(number, smirnoff, 32, counter)

        result = _count(number, bacardi, 52, counter)

        session = result["reconciliation"]
        assert session["products_reconciled"] == 2
        assert session["total_variance"] == 4
        assert session["variance_value_cents"] == 200 + 160

    def test_lookup_by_numeric_id(self, shelf, counter):
        bacardi, _ = shelf
        number = _open(counter)
        session_id = db.session.query(StockReconciliation.id).filter_by(reconciliation_number=number).scalar()

        result = _count(session_id, bacardi, 50, counter)
        assert result["item"]["variance"] == 0

    def test_rejects_negative_count(self, shelf, counter):
        bacardi, _ = shelf
        number = _open(counter)
        result = rec.record_physical_count(number, bacardi.id, -1, user_id=counter.id)
        assert result["success"] is False
        assert result["error"] == "Physical stock must be a non-negative integer"

    def test_unknown_product(self, shelf, counter):
        number = _open(counter)
        result = rec.record_physical_count(number, 9999, 1, user_id=counter.id)
        assert result == {"success": False, "error": "Product not found in reconciliation", "product_id": 9999}

    def test_not_in_progress(self, shelf, counter):
        bacardi, _ = shelf
        number = _open(counter)
        _submit(number, counter, allow_partial=True)

        with pytest.raises(InvalidStateError, match="Reconciliation is not in progress"):
            rec.record_physical_count.raw(number, bacardi.id, 1, user_id=counter.id)
        db.session.rollback()


class TestSubmitAndReview:

    def test_uncounted_items_block_submit(self, shelf, counter):
        bacardi, smirnoff = shelf
        number = _open(counter)
        _count(number, bacardi, 50, counter)

        result = _submit(number, counter)

        assert result["success"] is False
        assert result["error"] == (
            "There are 1 unreconciled items. "
            "Please reconcile all items or use allow_partial option."
        )
        assert result["unreconciled_product_ids"] == [smirnoff.id]

    def test_zero_system_stock_does_not_block(self, make_product, counter):
        make_product(name="Empty Shelf", current_stock=0)
        number = _open(counter)

        result = _submit(number, counter, notes="Nothing on hand")

        assert result["success"] is True
        assert result["unreconciled_items"] == 0
        assert result["reconciliation"]["status"] == "pending_approval"
        assert result["reconciliation"]["submission_notes"] == "Nothing on hand"

    def test_allow_partial(self, shelf, counter):
        number = _open(counter)
        result = _submit(number, counter, allow_partial=True)
        assert result["success"] is True
        assert result["unreconciled_items"] == 2

    def test_approve_requires_pending(self, shelf, counter, manager):
        number = _open(counter)
        result = rec.approve_reconciliation(number, user_id=manager.id)
        assert result["success"] is False
        assert result["error"] == "Reconciliation is not pending approval"
        assert result["status"] == "in_progress"

    def test_approve_without_applying(self, shelf, counter, manager):
        bacardi, _ = shelf
        number = _open(counter)
        _count(number, bacardi, 47, counter)
        _submit(number, counter, allow_partial=True)

        result = rec.approve_reconciliation(number, user_id=manager.id, notes="OK")
        db.session.commit()

        assert result["success"] is True
        assert result["reconciliation"]["status"] == "approved"
        assert result["reconciliation"]["approved_by_user_id"] == manager.id
        assert "adjustments_made" not in result
        assert db.session.get(Product, bacardi.id).current_stock == 50

        # An approved session no longer blocks a new one for the day
        assert _open(counter) == "REC-20250918-002"

    def test_reject(self, shelf, counter, manager):
        number = _open(counter)
        _submit(number, counter, allow_partial=True)

        result = rec.reject_reconciliation(number, user_id=manager.id, reason="Counts look off")
        db.session.commit()

        session = result["reconciliation"]
        assert session["status"] == "rejected"
        assert session["rejection_reason"] == "Counts look off"
        assert session["rejected_by_user_id"] == manager.id

        again = rec.approve_reconciliation(number, user_id=manager.id)
        assert again["success"] is False

    def test_reject_requires_reason(self, shelf, counter, manager):
        number = _open(counter)
        _submit(number, counter, allow_partial=True)
        result = rec.reject_reconciliation(number, user_id=manager.id, reason="")
        assert result == {"success": False, "error": "A rejection reason is required"}


class TestApply:

    def _approved(self, shelf, counter, manager, *, apply_now=False):
        bacardi, smirnoff = shelf
        number = _open(counter)
        _count(number, bacardi, 47, counter, reason="Breakage")
        _count(number, smirnoff, 30, counter)
        _submit(number, counter)
        result = rec.approve_reconciliation(number, user_id=manager.id, apply_adjustments=apply_now)
        db.session.commit()
        return number, result

    def test_apply_requires_approval(self, shelf, counter):
        number = _open(counter)
        result = rec.apply_adjustments(number, user_id=counter.id)
        assert result["error"] == "Reconciliation must be approved before applying adjustments"

    def test_apply_writes_stock_logs_and_ledger(self, shelf, counter, manager):
        bacardi, smirnoff = shelf
        number, _ = self._approved(shelf, counter, manager)

        result = rec.apply_adjustments(number, user_id=manager.id)
        db.session.commit()

        assert result["success"] is True
        assert result["adjustments_made"] == 1
        assert result["errors"] == []
        assert result["reconciliation"]["status"] == "completed"
        adjustment = result["adjustments"][0]
        assert (adjustment["product_id"], adjustment["old_stock"], adjustment["new_stock"]) == (bacardi.id, 50, 47)

        assert db.session.get(Product, bacardi.id).current_stock == 47
        assert db.session.get(Product, smirnoff.id).current_stock == 30

        movement = db.session.query(StockMovement).one()
        assert movement.movement_type == "out"
        assert movement.movement_category == "stock_reconciliation"
        assert movement.quantity == 3
        assert movement.total_cost_cents == 300
        assert movement.reference_number == number
        assert movement.meta["variance"] == -3

        audit = db.session.query(StockAudit).one()
        assert (audit.change_type, audit.old_value, audit.new_value) == ("reconciliation", 50, 47)
        assert audit.reason == "Breakage"

        entry = db.session.query(DailyStock).filter_by(product_id=bacardi.id, date=DAY1).one()
        assert entry.physical_stock == 47
        assert entry.stock_variance == -3
        assert entry.closing_stock == 47
        assert entry.opening_stock == 47
        assert entry.reconciliation_date is not None
        assert entry.reconciled_by_user_id == manager.id

        # Zero-variance items are stamped on the ledger without a movement
        untouched = db.session.query(DailyStock).filter_by(product_id=smirnoff.id, date=DAY1).one()
        assert untouched.physical_stock == 30
        assert untouched.stock_variance == 0

    def test_ledger_jobs_leave_applied_count_alone(self, shelf, counter, manager):
        bacardi, _ = shelf
        number, _ = self._approved(shelf, counter, manager)
        rec.apply_adjustments(number, user_id=manager.id)
        db.session.commit()

        synced = daily_stock_service.sync_live_stock_from_snapshot(DAY1, user_id=manager.id)
        carried = daily_stock_service.carry_forward_opening_stock(DAY1, user_id=manager.id)

        assert synced["syncs_made"] == 0
        assert carried["updates_made"] == 0
        assert db.session.get(Product, bacardi.id).current_stock == 47

    def test_next_day_opens_at_counted_stock(self, shelf, counter, manager):
        bacardi, _ = shelf
        number, _ = self._approved(shelf, counter, manager)
        rec.apply_adjustments(number, user_id=manager.id)
        db.session.commit()

        entry, created = daily_stock_service.get_or_create_daily_stock(bacardi.id, DAY2, user_id=counter.id)
        assert created is True
        assert entry.opening_stock == 47

    def test_approve_and_apply_in_one_step(self, shelf, counter, manager):
        bacardi, _ = shelf
        _number, result = self._approved(shelf, counter, manager, apply_now=True)

        assert result["reconciliation"]["status"] == "completed"
        assert result["adjustments_made"] == 1
        assert db.session.get(Product, bacardi.id).current_stock == 47

    def test_applied_twice_is_rejected(self, shelf, counter, manager):
        number, _ = self._approved(shelf, counter, manager, apply_now=True)
        result = rec.apply_adjustments(number, user_id=manager.id)
        assert result["success"] is False
        assert result["status"] == "completed"
        assert db.session.query(StockMovement).count() == 1

    def test_approval_after_later_day_keeps_count(self, shelf, counter, manager):
        bacardi, smirnoff = shelf
        number = _open(counter)
        _count(number, bacardi, 45, counter)
        _count(number, smirnoff, 30, counter)
        _submit(number, counter)
        # Next morning's job runs before the supervisor approves
        automation_service.daily_stock_process(DAY2, user_id=manager.id)

        result = rec.approve_reconciliation(number, user_id=manager.id, apply_adjustments=True)
        db.session.commit()
        assert result["adjustments_made"] == 1
        assert db.session.get(Product, bacardi.id).current_stock == 45

        automation_service.daily_stock_process(DAY3, user_id=manager.id)

        assert db.session.get(Product, bacardi.id).current_stock == 45
        day2 = db.session.query(DailyStock).filter_by(product_id=bacardi.id, date=DAY2).one()
        assert (day2.opening_stock, day2.closing_stock) == (45, 45)

    def test_sale_after_open_is_not_logged_twice(self, shelf, counter, manager, biller):
        bacardi, smirnoff = shelf
        number = _open(counter)
        stock_service.sell_stock(
            [{"product_id": bacardi.id, "quantity": 3}],
            sale_reference=StockReference.sale("S-9"),
            user_id=biller.id,
            day=DAY1,
        )
        db.session.commit()
        # Shelf count already reflects the sale
        _count(number, bacardi, 47, counter)
        _count(number, smirnoff, 30, counter)
        _submit(number, counter)

        result = rec.approve_reconciliation(number, user_id=manager.id, apply_adjustments=True)
        db.session.commit()

        assert result["adjustments_made"] == 0
        assert db.session.get(Product, bacardi.id).current_stock == 47
        assert movement_service.get_stock_flow(bacardi.id)["totals"]["out"] == 3
        entry = db.session.query(DailyStock).filter_by(product_id=bacardi.id, date=DAY1).one()
        assert (entry.closing_stock, entry.stock_variance) == (47, 0)

    def test_movement_uses_change_actually_applied(self, shelf, counter, manager, biller):
        bacardi, smirnoff = shelf
        number = _open(counter)
        stock_service.sell_stock(
            [{"product_id": bacardi.id, "quantity": 3}],
            sale_reference=StockReference.sale("S-10"),
            user_id=biller.id,
            day=DAY1,
        )
        db.session.commit()
        _count(number, bacardi, 45, counter)
        _count(number, smirnoff, 30, counter)
        _submit(number, counter)

        result = rec.approve_reconciliation(number, user_id=manager.id, apply_adjustments=True)
        db.session.commit()

        adjustment = result["adjustments"][0]
        assert (adjustment["old_stock"], adjustment["new_stock"]) == (47, 45)
        assert (adjustment["variance"], adjustment["applied_change"]) == (-5, -2)
        movement = db.session.query(StockMovement).filter_by(movement_category="stock_reconciliation").one()
        assert (movement.movement_type, movement.quantity) == ("out", 2)
        assert movement.meta["variance"] == -5
        assert movement.meta["applied_change"] == -2


class TestReads:

    def test_details_and_not_found(self, shelf, counter):
        number = _open(counter)

        details = rec.get_reconciliation_details(number)
        assert details["reconciliation"]["reconciliation_number"] == number
        assert len(details["reconciliation"]["items"]) == 2

        missing = rec.get_reconciliation_details("REC-19990101-001")
        assert missing == {
            "success": False,
            "error": "Reconciliation not found",
            "reconciliation_id": "REC-19990101-001",
        }

    def test_list_and_summary(self, shelf, counter, manager):
        first = _open(counter, DAY1)
        _submit(first, counter, allow_partial=True)
        rec.reject_reconciliation(first, user_id=manager.id, reason="Redo")
        db.session.commit()
        _open(counter, DAY2)

        listed = rec.list_reconciliations()
        assert listed["total"] == 2
        assert [r["date"] for r in listed["reconciliations"]] == ["2025-09-19", "2025-09-18"]

        rejected = rec.list_reconciliations(status="rejected")
        assert [r["reconciliation_number"] for r in rejected["reconciliations"]] == [first]

        only_day2 = rec.list_reconciliations(start=DAY2, end=DAY2)
        assert only_day2["total"] == 1

        assert rec.list_reconciliations(status="bogus")["success"] is False

        summary = rec.reconciliation_summary(start=DAY1, end=DAY2)["summary"]
        assert summary == [
            {"status": "in_progress", "count": 1, "total_variance_value_cents": 0, "total_items": 2},
            {"status": "rejected", "count": 1, "total_variance_value_cents": 0, "total_items": 2},
        ]
