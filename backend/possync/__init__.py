# backend/possync/__init__.py
from flask import Flask, current_app, request
from werkzeug.exceptions import HTTPException

from .config import Config
from .errors import APIError, InternalError, RateLimitError
from .extensions import db, migrate


def create_app(config_object=None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_object or Config)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Process-wide collaborators, handed to services explicitly via sync_context()
    from .services.events import ChangeFeed
    from .services.rate_limit import FixedWindowLimiter
    from .services.sales_service import STATS_AGGREGATE
    from .services.tenant_cache import TenantCache

    cache = TenantCache.from_config(app.config)
    cache.register_aggregate("sales", STATS_AGGREGATE)
    app.extensions["tenant_cache"] = cache
    app.extensions["change_feed"] = ChangeFeed()
    app.extensions["rate_limiter"] = FixedWindowLimiter(app.config.get("RATE_LIMIT_PER_MINUTE", 0))

    # Register blueprints
    from .routes.system import system_bp
    from .routes.products import products_bp
    from .routes.sales import sales_bp
    from .routes.credits import credits_bp
    from .routes.purchase_orders import purchase_orders_bp
    from .routes.records import customers_bp, employees_bp, clock_events_bp, stock_movements_bp
    from .routes.transfers import transfers_bp
    from .routes.conflicts import conflicts_bp
    from .routes.sync import sync_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(products_bp)
    app.register_blueprint(sales_bp)
    app.register_blueprint(credits_bp)
    app.register_blueprint(purchase_orders_bp)
    app.register_blueprint(customers_bp)
    app.register_blueprint(employees_bp)
    app.register_blueprint(clock_events_bp)
    app.register_blueprint(stock_movements_bp)
    app.register_blueprint(transfers_bp)
    app.register_blueprint(conflicts_bp)
    app.register_blueprint(sync_bp)

    @app.errorhandler(APIError)
    def handle_api_error(exc: APIError):
        response = exc.to_dict()
        headers = {}
        if isinstance(exc, RateLimitError):
            headers["Retry-After"] = str(int(exc.retry_after))
        if exc.status_code >= 500:
            current_app.logger.error("%s %s failed: %s", request.method, request.path, exc)
        return response, exc.status_code, headers

    @app.errorhandler(HTTPException)
    def handle_http_error(exc: HTTPException):
        return {"error": exc.description or exc.name, "statusCode": exc.code}, exc.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(exc: Exception):
        current_app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        db.session.rollback()
        return InternalError().to_dict(), 500

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allowed_origins = {
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            "http://localhost:4173",
            "http://127.0.0.1:4173",
        }
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type, Idempotency-Key"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,DELETE,PATCH,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
