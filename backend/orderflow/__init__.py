# backend/orderflow/__init__.py
import logging

from flask import Flask, request

from .config import Config
from .extensions import db, migrate


def create_app(config_object=Config, *, notifier=None, gateway=None) -> Flask:
    """
    Application factory.

    `notifier` and `gateway` replace the default LoggingNotifier and
    SnapGatewayClient (tests pass fakes here).
    """
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_object)

    logging.basicConfig(
        level=app.config.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Services get their collaborators here, never from module globals
    from .services.registry import EXTENSION_KEY, build_services
    app.extensions[EXTENSION_KEY] = build_services(app.config, notifier=notifier, gateway=gateway)

    # Register blueprints
    from .routes.system import system_bp
    from .routes.orders import orders_bp
    from .routes.payments import payments_bp
    from .routes.inventory import inventory_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(inventory_bp)

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
            response.headers["Access-Control-Allow-Headers"] = "Content-Type, X-Actor-Id, X-Actor-Role"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PATCH,DELETE,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
