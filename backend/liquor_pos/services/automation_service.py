# backend/liquor_pos/services/automation_service.py
"""
Scheduled stock jobs.

Run from cron through the CLI (`flask stock daily`, ...) or the scheduler
endpoints. Every job is safe to run more than once for the same day.

Suggested schedule (store time):
- 01:00  daily_stock_process
- 02:00  stock_continuity_check
- 09:00  low_stock_alert
"""
from __future__ import annotations

from datetime import date, timedelta

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import User
from ..models.auth import ROLE_ADMIN
from ..time_utils import business_today
from . import daily_stock_service, stock_service
from .errors import StockError


def get_system_user() -> User:
    """The actor recorded on rows written by scheduled jobs; created on first use."""
    username = current_app.config.get("SYSTEM_USERNAME", "system")
    user = db.session.query(User).filter_by(username=username).first()
    if user is None:
        user = User(username=username, email=f"{username}@localhost", role=ROLE_ADMIN)
        db.session.add(user)
        db.session.commit()
    return user


def daily_stock_process(day: date | str | None = None, *, user_id: int | None = None) -> dict:
    """
    snapshots -> carry-forward -> live sync -> integrity check -> report.

    A failing step is recorded and the remaining steps still run.
    """
    day = daily_stock_service.to_business_day(day)
    if user_id is None:
        user_id = get_system_user().id

    steps = [
        ("snapshots", lambda: daily_stock_service.create_daily_snapshots(day, user_id=user_id)),
        ("carry_forward", lambda: daily_stock_service.carry_forward_opening_stock(day, user_id=user_id)),
        ("sync", lambda: daily_stock_service.sync_live_stock_from_snapshot(day, user_id=user_id)),
        ("validation", lambda: daily_stock_service.validate_integrity(day)),
        ("report", lambda: daily_stock_service.daily_report(day)),
    ]

    results, errors = {}, []
    for name, step in steps:
        try:
            results[name] = step()
        except (StockError, SQLAlchemyError) as exc:
            db.session.rollback()
            current_app.logger.exception("Daily stock process step %s failed for %s", name, day)
            errors.append({"step": name, "error": str(exc)})

    report = results.get("report") or {}
    current_app.logger.info("Daily stock process finished for %s with %s step errors", day, len(errors))
    return {
        "success": not errors,
        "date": day.isoformat(),
        "snapshots": results.get("snapshots"),
        "carry_forward": results.get("carry_forward"),
        "sync": results.get("sync"),
        "validation": results.get("validation"),
        "report_summary": report.get("summary"),
        "errors": errors,
    }


def stock_continuity_check(start: date | str | None = None, end: date | str | None = None) -> dict:
    """Continuity report over [start, end], defaulting to the trailing CONTINUITY_WINDOW_DAYS."""
    end = daily_stock_service.to_business_day(end) if end is not None else business_today()
    if start is None:
        window = current_app.config.get("CONTINUITY_WINDOW_DAYS", 7)
        start = end - timedelta(days=window)
    return daily_stock_service.continuity_report(start, end)


def low_stock_alert() -> dict:
    products = stock_service.low_stock_scan()
    if products:
        current_app.logger.warning(
            "Low stock alert: %s products at or below minimum level", len(products)
        )
    return {"success": True, "low_stock_count": len(products), "products": products}
