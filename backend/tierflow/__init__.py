# backend/tierflow/__init__.py
import atexit

from flask import Flask, request

from .config import Config
from .extensions import db, migrate



def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Background polling for sync sessions
    from .services.sync_service import SyncManager
    sync_manager = SyncManager(app)
    atexit.register(sync_manager.shutdown)

    # Register blueprints
    from .routes.system import system_bp
    from .routes.nodes import nodes_bp  # Hierarchy directory
    from .routes.orders import orders_bp  # Order ledger
    from .routes.notifications import notifications_bp  # Admin restock feed
    from .routes.stats import stats_bp  # Revenue rollups & user stats
    from .routes.sync import sync_bp  # Polling sessions
    from .routes.products import products_bp  # Catalogue & pricing

    app.register_blueprint(system_bp)
    app.register_blueprint(nodes_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(notifications_bp)
    app.register_blueprint(stats_bp)
    app.register_blueprint(sync_bp)
    app.register_blueprint(products_bp)

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allowed_origins = app.config.get("CORS_ALLOWED_ORIGINS") or set()
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = (
                f"{app.config['PRINCIPAL_HEADER']}, Content-Type"
            )
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,DELETE,PATCH,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
