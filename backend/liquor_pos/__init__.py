# backend/liquor_pos/__init__.py
import logging

from flask import Flask, jsonify, request

from .config import Config
from .extensions import db, migrate
from .rate_limit import InMemoryBucketStore, TokenBucketLimiter


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    app.logger.setLevel(getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register blueprints
    from .routes.system import system_bp
    from .routes.stock import stock_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(stock_bp)

    _init_rate_limiter(app)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app


def _init_rate_limiter(app: Flask) -> None:
    """Token bucket per client address on /api/ requests."""
    if not app.config.get("RATE_LIMIT_ENABLED", True):
        return

    limiter = app.config.get("RATE_LIMITER") or TokenBucketLimiter(
        capacity=app.config["RATE_LIMIT_CAPACITY"],
        window_seconds=app.config["RATE_LIMIT_WINDOW_SECONDS"],
        store=InMemoryBucketStore(),
    )
    app.extensions["rate_limiter"] = limiter

    @app.before_request
    def apply_rate_limit():
        if not request.path.startswith("/api/"):
            return None
        decision = limiter.hit(request.remote_addr or "unknown")
        if decision.allowed:
            return None
        response = jsonify({
            "success": False,
            "error": "Too many requests from this IP, please try again later.",
        })
        response.status_code = 429
        response.headers["Retry-After"] = str(max(1, int(decision.retry_after + 0.999)))
        return response
