# backend/flowledger/__init__.py
import logging
from datetime import timedelta

from flask import Flask, request

from .config import Config
from .extensions import db, migrate
from .runtime import NOTIFICATION_BUS_EXTENSION, SYNC_QUEUE_EXTENSION


def create_app(config_overrides: dict | None = None, *, sync_endpoint=None, clock=None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    app.logger.setLevel(getattr(logging, str(app.config["LOG_LEVEL"]).upper(), logging.INFO))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Composition root: the bus and the outbox live for the app's lifetime
    from .services.notification_bus import NotificationBus
    from .services.storage_service import DatabaseKeyValueStore
    from .services.sync_endpoint import HttpSyncEndpoint
    from .services.sync_queue import BackoffPolicy, OfflineSyncQueue
    from .time_utils import utcnow

    clock = clock or utcnow
    storage = DatabaseKeyValueStore(max_value_bytes=app.config["STORAGE_MAX_VALUE_BYTES"])
    bus = NotificationBus(
        storage,
        clock=clock,
        logger=app.logger,
        retention=app.config["NOTIFICATION_RETENTION"],
        degraded_retention=app.config["NOTIFICATION_DEGRADED_RETENTION"],
    )
    queue = OfflineSyncQueue(
        storage,
        sync_endpoint or HttpSyncEndpoint(
            app.config["SYNC_ENDPOINT_URL"],
            timeout=app.config["SYNC_TIMEOUT_SECONDS"],
        ),
        bus=bus,
        clock=clock,
        logger=app.logger,
        max_retries=app.config["SYNC_MAX_RETRIES"],
        backoff=BackoffPolicy(
            base_seconds=app.config["SYNC_BACKOFF_BASE_SECONDS"],
            max_seconds=app.config["SYNC_BACKOFF_MAX_SECONDS"],
        ),
        online=app.config["SYNC_START_ONLINE"],
        claim_timeout=timedelta(seconds=app.config["SYNC_CLAIM_TIMEOUT_SECONDS"]),
    )
    app.extensions[NOTIFICATION_BUS_EXTENSION] = bus
    app.extensions[SYNC_QUEUE_EXTENSION] = queue

    # Register blueprints
    from .routes.system import system_bp
    from .routes.batches import batches_bp
    from .routes.dispatches import dispatches_bp
    from .routes.ledger import ledger_bp
    from .routes.analytics import analytics_bp
    from .routes.notifications import notifications_bp
    from .routes.sync import sync_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(batches_bp)
    app.register_blueprint(dispatches_bp)
    app.register_blueprint(ledger_bp)
    app.register_blueprint(analytics_bp)
    app.register_blueprint(notifications_bp)
    app.register_blueprint(sync_bp)

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allowed_origins = {
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        }
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Content-Type, X-Sync-Queue-Id"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,DELETE,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
