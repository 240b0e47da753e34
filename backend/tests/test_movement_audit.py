"""
Append-only movement and audit logs.

Verifies:
- Derived totals are computed at write time
- Rows cannot be updated or deleted through the ORM
- Reference kinds and metadata are validated
- Read helpers filter, group and bound their results
"""

from datetime import datetime

import pytest

from liquor_pos.extensions import db
from liquor_pos.models import StockAudit, StockMovement, StockReference
from liquor_pos.models.logs import AppendOnlyError
from liquor_pos.models.references import ReferenceKind, validate_metadata
from liquor_pos.services import audit_service, movement_service
from liquor_pos.services.errors import StockValidationError

from conftest import DAY1, DAY2


def _movement(product, user, movement_type="in", category="stock_inward", quantity=5, when=None, **kwargs):
    return movement_service.create_movement(
        product.id,
        movement_type,
        category,
        quantity,
        user_id=user.id,
        reference=kwargs.pop("reference", StockReference.inward("IN-1")),
        unit_cost_cents=kwargs.pop("unit_cost_cents", 40),
        occurred_at=when,
        **kwargs,
    )


class TestMovementLog:

    def test_total_cost_computed_at_write(self, product, counter):
        movement = _movement(product, counter, quantity=6, unit_cost_cents=40)
        db.session.commit()
        assert movement.total_cost_cents == 240
        assert movement.to_dict()["reference"] == {"type": "stock_inward", "id": "IN-1"}

    def test_rows_are_append_only(self, product, counter):
        movement = _movement(product, counter)
        db.session.commit()

        movement.quantity = 99
        with pytest.raises(AppendOnlyError):
            db.session.flush()
        db.session.rollback()

        db.session.delete(db.session.get(StockMovement, movement.id))
        with pytest.raises(AppendOnlyError):
            db.session.flush()
        db.session.rollback()

    @pytest.mark.parametrize(
        "movement_type,movement_category,quantity,message",
        [
            ("sideways", "sale", 1, "Invalid movement type: sideways"),
            ("in", "gift", 1, "Invalid movement category: gift"),
            ("in", "sale", -1, "Movement quantity cannot be negative"),
        ],
    )
    def test_validation(self, product, counter, movement_type, movement_category, quantity, message):
        with pytest.raises(StockValidationError, match=message):
            _movement(product, counter, movement_type, movement_category, quantity)

    def test_product_movements_filtered_and_limited(self, product, counter):
        for hour in range(5):
            _movement(product, counter, when=datetime(2025, 9, 18, 10 + hour))
        _movement(product, counter, "out", "sale", 1, when=datetime(2025, 9, 19, 12))
        db.session.commit()

        day1 = movement_service.get_product_movements(product.id, start=DAY1, end=DAY1)
        assert len(day1) == 5
        assert day1[0].date > day1[-1].date

        limited = movement_service.get_product_movements(product.id, limit=2)
        assert len(limited) == 2

        outs = movement_service.get_product_movements(product.id, movement_type="out")
        assert [m.movement_category for m in outs] == ["sale"]

    def test_day_filter_follows_store_timezone(self, product, counter):
        # Store days are Asia/Kolkata (UTC+05:30); timestamps are UTC
        _movement(product, counter, when=datetime(2025, 9, 17, 18, 45))
        _movement(product, counter, when=datetime(2025, 9, 18, 18, 15))
        _movement(product, counter, when=datetime(2025, 9, 18, 20, 0))
        db.session.commit()

        day1 = movement_service.get_product_movements(product.id, start=DAY1, end=DAY1)
        day2 = movement_service.get_product_movements(product.id, start=DAY2, end=DAY2)

        assert sorted(m.date for m in day1) == [datetime(2025, 9, 17, 18, 45), datetime(2025, 9, 18, 18, 15)]
        assert [m.date for m in day2] == [datetime(2025, 9, 18, 20, 0)]

    def test_limit_is_clamped(self, app, product, counter):
        _movement(product, counter)
        db.session.commit()
        assert len(movement_service.get_product_movements(product.id, limit=0)) == 1
        assert movement_service.clamp_limit(10 ** 6) == app.config["MAX_QUERY_LIMIT"]

    def test_summary_and_flow(self, product, counter):
        _movement(product, counter, quantity=10, unit_cost_cents=50, when=datetime(2025, 9, 18, 9))
        _movement(product, counter, "out", "sale", 3, unit_cost_cents=50, when=datetime(2025, 9, 18, 11))
        _movement(product, counter, "out", "sale", 2, unit_cost_cents=50, when=datetime(2025, 9, 18, 12))
        db.session.commit()

        summary = movement_service.get_movement_summary(start=DAY1, end=DAY1)
        assert summary == [
            {"movement_type": "in", "movement_category": "stock_inward", "count": 1,
             "total_quantity": 10, "total_cost_cents": 500},
            {"movement_type": "out", "movement_category": "sale", "count": 2,
             "total_quantity": 5, "total_cost_cents": 250},
        ]

        flow = movement_service.get_stock_flow(product.id)
        assert flow["totals"]["in"] == 10
        assert flow["totals"]["out"] == 5
        assert flow["net_flow"] == 5

        assert len(movement_service.get_movements_by_type("out")) == 2
        assert movement_service.get_movement_summary(start=DAY2, end=DAY2) == []


class TestAuditLog:

    def test_quantity_changed_is_new_minus_old(self, product, counter):
        audit = audit_service.log_stock_change(
            product.id, "adjustment", 20, 14, user_id=counter.id, reason="Breakage"
        )
        db.session.commit()
        assert audit.quantity_changed == -6
        assert audit.reference is None
        assert audit.to_dict()["changed_by"] == "counter"

    def test_rows_are_append_only(self, product, counter):
        audit = audit_service.log_stock_change(product.id, "inward", 0, 5, user_id=counter.id)
        db.session.commit()

        audit.new_value = 6
        with pytest.raises(AppendOnlyError):
            db.session.flush()
        db.session.rollback()

    def test_unknown_change_type(self, product, counter):
        with pytest.raises(StockValidationError):
            audit_service.log_stock_change(product.id, "magic", 0, 5, user_id=counter.id)

    def test_trails_and_summary(self, product, counter, manager):
        audit_service.log_stock_change(product.id, "sale", 20, 18, user_id=counter.id,
                                       timestamp=datetime(2025, 9, 18, 10))
        audit_service.log_stock_change(product.id, "sale", 18, 17, user_id=counter.id,
                                       timestamp=datetime(2025, 9, 18, 11))
        audit_service.log_stock_change(product.id, "inward", 17, 27, user_id=manager.id,
                                       timestamp=datetime(2025, 9, 19, 9),
                                       reference=StockReference.inward("IN-9"))
        db.session.commit()

        trail = audit_service.get_product_audit_trail(product.id, change_type="sale")
        assert [a.new_value for a in trail] == [17, 18]

        by_manager = audit_service.get_user_audit_trail(manager.id)
        assert [a.change_type for a in by_manager] == ["inward"]
        assert by_manager[0].reference == StockReference(ReferenceKind.STOCK_INWARD, "IN-9")

        summary = audit_service.get_audit_summary(start=DAY1, end=DAY2)
        assert summary == [
            {"change_type": "inward", "count": 1, "total_quantity_changed": 10, "increases": 1, "decreases": 0},
            {"change_type": "sale", "count": 2, "total_quantity_changed": -3, "increases": 0, "decreases": 2},
        ]


class TestReferencesAndMetadata:

    def test_reference_accepts_string_kind(self):
        ref = StockReference("stock_reconciliation", 12)
        assert ref.kind is ReferenceKind.STOCK_RECONCILIATION
        assert ref.id == "12"

    def test_unknown_reference_kind(self):
        with pytest.raises(ValueError):
            StockReference("coupon", "1")

    def test_metadata_scalars_only(self):
        assert validate_metadata(None) == {}
        assert validate_metadata({"a": 1, "b": "x", "c": None, "d": 1.5, "e": True}) == {
            "a": 1, "b": "x", "c": None, "d": 1.5, "e": True,
        }
        with pytest.raises(ValueError):
            validate_metadata({"nested": {"x": 1}})
        with pytest.raises(ValueError):
            validate_metadata({1: "x"})
        with pytest.raises(ValueError):
            validate_metadata(["not", "a", "map"])
