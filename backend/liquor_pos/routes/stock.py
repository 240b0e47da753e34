# backend/liquor_pos/routes/stock.py
"""
Stock, daily ledger and reconciliation API routes.

SECURITY: All routes require authentication.
- Read endpoints: any authenticated user
- Sales: any authenticated user
- Stock inward and counting: admin, manager, stock_reconciler
- Manual adjustment, approvals and ledger jobs: admin, manager

Dates are "YYYY-MM-DD" business days (ISO datetimes are accepted and
truncated); a missing date means today in STORE_TIMEZONE.
"""
from functools import wraps

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth, require_role
from ..extensions import db
from ..models import StockReference
from ..models.auth import ROLE_ADMIN, ROLE_MANAGER, ROLE_STOCK_RECONCILER, SUPERVISOR_ROLES
from ..services import (
    audit_service,
    daily_stock_service,
    movement_service,
    reconciliation_service,
    stock_service,
)
from ..services.errors import ConflictError, NotFoundError, StockError
from ..time_utils import normalize_day


stock_bp = Blueprint("stock", __name__, url_prefix="/api/stock")

COUNTING_ROLES = (ROLE_ADMIN, ROLE_MANAGER, ROLE_STOCK_RECONCILER)


def _error_status(exc: StockError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, ConflictError):
        return 409
    return 400


def handle_errors(f):
    """Roll back and translate failures into JSON error responses."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except StockError as e:
            db.session.rollback()
            return jsonify(e.to_result()), _error_status(e)
        except (KeyError, TypeError) as e:
            db.session.rollback()
            return jsonify({"success": False, "error": f"Missing or invalid field: {e}"}), 400
        except ValueError as e:
            db.session.rollback()
            return jsonify({"success": False, "error": str(e)}), 400
        except Exception as e:
            db.session.rollback()
            current_app.logger.exception("Unhandled error in %s", request.path)
            return jsonify({"success": False, "error": f"Unexpected error: {e}"}), 500

    return decorated_function


def _day_arg(name: str, source=None):
    value = (source if source is not None else request.args).get(name)
    return normalize_day(value) if value else None


def _int_arg(name: str):
    value = request.args.get(name)
    return int(value) if value not in (None, "") else None


def _bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _json_body() -> dict:
    return request.get_json(silent=True) or {}


# =============================================================================
# Live stock
# =============================================================================

@stock_bp.get("/current-stock")
@require_auth
@handle_errors
def current_stock():
    """Query: category_id, low_stock=true, threshold."""
    return jsonify(stock_service.get_current_stock(
        category_id=_int_arg("category_id"),
        low_stock=_bool(request.args.get("low_stock", "")),
        low_stock_threshold=_int_arg("threshold"),
    )), 200


@stock_bp.get("/summary")
@require_auth
@handle_errors
def stock_summary():
    return jsonify(stock_service.get_stock_summary()), 200


@stock_bp.post("/validate-availability")
@require_auth
@handle_errors
def validate_availability():
    """Request body: {"items": [{"product_id": int, "quantity": int}]}"""
    data = _json_body()
    return jsonify(stock_service.validate_stock_availability(data.get("items") or [])), 200


@stock_bp.post("/sale")
@require_auth
@handle_errors
def record_sale():
    """
    Take sold items out of stock.

    Request body:
    {
        "sale_id": str,
        "items": [{"product_id": int, "quantity": int}],
        "allow_oversell": bool (optional)
    }

    Returns:
        201: all items recorded
        400: one or more items failed (the others are still recorded)
    """
    data = _json_body()
    result = stock_service.sell_stock.raw(
        data["items"],
        sale_reference=StockReference.sale(data["sale_id"]),
        user_id=g.current_user.id,
        allow_oversell=_bool(data.get("allow_oversell", False)),
    )
    db.session.commit()
    return jsonify(result), 201 if result["success"] else 400


@stock_bp.post("/inward")
@require_auth
@require_role(*COUNTING_ROLES)
@handle_errors
def record_inward():
    """
    Request body:
    {
        "product_id": int,
        "quantity": int,
        "inward_id": str (optional),
        "unit_cost_cents": int (optional),
        "reference_number": str (optional),
        "notes": str (optional),
        "metadata": object (optional, scalar values)
    }
    """
    data = _json_body()
    result = stock_service.add_stock.raw(
        data["product_id"],
        data["quantity"],
        user_id=g.current_user.id,
        reference=StockReference.inward(data.get("inward_id")),
        unit_cost_cents=data.get("unit_cost_cents"),
        reference_number=data.get("reference_number"),
        notes=data.get("notes"),
        metadata=data.get("metadata"),
    )
    db.session.commit()
    return jsonify(result), 201


@stock_bp.post("/adjust")
@require_auth
@require_role(*SUPERVISOR_ROLES)
@handle_errors
def adjust_stock():
    """Request body: {"product_id": int, "new_stock": int, "reason": str, "notes": str (optional)}"""
    data = _json_body()
    result = stock_service.set_stock.raw(
        data["product_id"],
        data["new_stock"],
        user_id=g.current_user.id,
        reason=data.get("reason"),
        notes=data.get("notes"),
        metadata=data.get("metadata"),
    )
    db.session.commit()
    return jsonify(result), 200


# =============================================================================
# Movement and audit logs
# =============================================================================

@stock_bp.get("/movements/<int:product_id>")
@require_auth
@handle_errors
def product_movements(product_id: int):
    """Query: start_date, end_date, movement_type, limit."""
    movements = movement_service.get_product_movements(
        product_id,
        start=_day_arg("start_date"),
        end=_day_arg("end_date"),
        movement_type=request.args.get("movement_type"),
        limit=_int_arg("limit"),
    )
    return jsonify({
        "success": True,
        "product_id": product_id,
        "movements": [m.to_dict() for m in movements],
        "flow": movement_service.get_stock_flow(
            product_id, start=_day_arg("start_date"), end=_day_arg("end_date")
        ),
    }), 200


@stock_bp.get("/movements/summary")
@require_auth
@handle_errors
def movement_summary():
    return jsonify({
        "success": True,
        "summary": movement_service.get_movement_summary(
            start=_day_arg("start_date"),
            end=_day_arg("end_date"),
            product_id=_int_arg("product_id"),
        ),
    }), 200


@stock_bp.get("/audit/<int:product_id>")
@require_auth
@handle_errors
def product_audit_trail(product_id: int):
    """Query: start_date, end_date, change_type, limit."""
    audits = audit_service.get_product_audit_trail(
        product_id,
        start=_day_arg("start_date"),
        end=_day_arg("end_date"),
        change_type=request.args.get("change_type"),
        limit=_int_arg("limit"),
    )
    return jsonify({
        "success": True,
        "product_id": product_id,
        "audit_trail": [a.to_dict() for a in audits],
    }), 200


@stock_bp.get("/audit/summary")
@require_auth
@handle_errors
def audit_summary():
    return jsonify({
        "success": True,
        "summary": audit_service.get_audit_summary(
            start=_day_arg("start_date"),
            end=_day_arg("end_date"),
            product_id=_int_arg("product_id"),
        ),
    }), 200


# =============================================================================
# Daily ledger
# =============================================================================

@stock_bp.post("/daily-snapshots")
@require_auth
@require_role(*SUPERVISOR_ROLES)
@handle_errors
def daily_snapshots():
    """Request body: {"date": "YYYY-MM-DD" (optional)}"""
    day = _day_arg("date", _json_body())
    return jsonify(daily_stock_service.create_daily_snapshots(day, user_id=g.current_user.id)), 200


@stock_bp.post("/carry-forward")
@require_auth
@require_role(*SUPERVISOR_ROLES)
@handle_errors
def carry_forward():
    day = _day_arg("date", _json_body())
    return jsonify(daily_stock_service.carry_forward_opening_stock(day, user_id=g.current_user.id)), 200


@stock_bp.post("/sync-live-stock")
@require_auth
@require_role(*SUPERVISOR_ROLES)
@handle_errors
def sync_live_stock():
    day = _day_arg("date", _json_body())
    return jsonify(daily_stock_service.sync_live_stock_from_snapshot(day, user_id=g.current_user.id)), 200


@stock_bp.get("/daily-report")
@require_auth
@handle_errors
def daily_report():
    """Query: date, or start_date + end_date; category_id; product_id."""
    result = daily_stock_service.daily_report.raw(
        _day_arg("date"),
        start_date=_day_arg("start_date"),
        end_date=_day_arg("end_date"),
        category_id=_int_arg("category_id"),
        product_id=_int_arg("product_id"),
    )
    return jsonify(result), 200


@stock_bp.get("/continuity-report")
@require_auth
@handle_errors
def continuity_report():
    """Query: start_date, end_date (required); product_id."""
    start = _day_arg("start_date")
    end = _day_arg("end_date")
    if not start or not end:
        return jsonify({"success": False, "error": "start_date and end_date are required"}), 400
    result = daily_stock_service.continuity_report.raw(start, end, product_id=_int_arg("product_id"))
    return jsonify(result), 200


@stock_bp.post("/validate-integrity")
@require_auth
@require_role(*SUPERVISOR_ROLES)
@handle_errors
def validate_integrity():
    day = _day_arg("date", _json_body())
    return jsonify(daily_stock_service.validate_integrity(day)), 200


# =============================================================================
# Reconciliation
# =============================================================================

@stock_bp.post("/reconciliation")
@require_auth
@require_role(*COUNTING_ROLES)
@handle_errors
def create_reconciliation():
    """
    Open a count session.

    Request body: {"date": "YYYY-MM-DD" (optional), "notes": str (optional)}

    Returns:
        201: created
        409: an active session already exists for the date (existing id included)
    """
    data = _json_body()
    result = reconciliation_service.create_reconciliation.raw(
        _day_arg("date", data),
        user_id=g.current_user.id,
        notes=data.get("notes"),
    )
    db.session.commit()
    return jsonify(result), 201


@stock_bp.get("/reconciliation")
@require_auth
@handle_errors
def list_reconciliations():
    """Query: status, start_date, end_date, limit (default 50, max 100)."""
    return jsonify(reconciliation_service.list_reconciliations.raw(
        status=request.args.get("status"),
        start=_day_arg("start_date"),
        end=_day_arg("end_date"),
        limit=_int_arg("limit"),
    )), 200


@stock_bp.get("/reconciliation-summary")
@require_auth
@handle_errors
def reconciliation_summary():
    return jsonify(reconciliation_service.reconciliation_summary(
        start=_day_arg("start_date"),
        end=_day_arg("end_date"),
    )), 200


@stock_bp.get("/reconciliation/<reconciliation_id>")
@require_auth
@handle_errors
def reconciliation_details(reconciliation_id: str):
    return jsonify(reconciliation_service.get_reconciliation_details.raw(reconciliation_id)), 200


@stock_bp.put("/reconciliation/<reconciliation_id>/physical-stock")
@require_auth
@require_role(*COUNTING_ROLES)
@handle_errors
def record_physical_stock(reconciliation_id: str):
    """Request body: {"product_id": int, "physical_stock": int, "reason": str (optional)}"""
    data = _json_body()
    result = reconciliation_service.record_physical_count.raw(
        reconciliation_id,
        data["product_id"],
        data["physical_stock"],
        user_id=g.current_user.id,
        reason=data.get("reason"),
    )
    db.session.commit()
    return jsonify(result), 200


@stock_bp.post("/reconciliation/<reconciliation_id>/submit")
@require_auth
@require_role(*COUNTING_ROLES)
@handle_errors
def submit_reconciliation(reconciliation_id: str):
    """Request body: {"notes": str (optional), "allow_partial": bool (optional)}"""
    data = _json_body()
    result = reconciliation_service.submit_for_approval.raw(
        reconciliation_id,
        user_id=g.current_user.id,
        notes=data.get("notes"),
        allow_partial=_bool(data.get("allow_partial", False)),
    )
    db.session.commit()
    return jsonify(result), 200


@stock_bp.post("/reconciliation/<reconciliation_id>/approve")
@require_auth
@require_role(*SUPERVISOR_ROLES)
@handle_errors
def approve_reconciliation(reconciliation_id: str):
    """Request body: {"notes": str (optional), "apply_adjustments": bool (optional)}"""
    data = _json_body()
    result = reconciliation_service.approve_reconciliation.raw(
        reconciliation_id,
        user_id=g.current_user.id,
        notes=data.get("notes"),
        apply_adjustments=_bool(data.get("apply_adjustments", False)),
    )
    db.session.commit()
    return jsonify(result), 200


@stock_bp.post("/reconciliation/<reconciliation_id>/reject")
@require_auth
@require_role(*SUPERVISOR_ROLES)
@handle_errors
def reject_reconciliation(reconciliation_id: str):
    """Request body: {"reason": str}"""
    data = _json_body()
    result = reconciliation_service.reject_reconciliation.raw(
        reconciliation_id,
        user_id=g.current_user.id,
        reason=data.get("reason"),
    )
    db.session.commit()
    return jsonify(result), 200


@stock_bp.post("/reconciliation/<reconciliation_id>/apply")
@require_auth
@require_role(*SUPERVISOR_ROLES)
@handle_errors
def apply_reconciliation(reconciliation_id: str):
    result = reconciliation_service.apply_adjustments.raw(
        reconciliation_id,
        user_id=g.current_user.id,
    )
    db.session.commit()
    return jsonify(result), 200
