# backend/csms/__init__.py
import logging

from flask import Flask, request

from .config import Config
from .extensions import GATEWAY_EXTENSION_KEY, db, migrate


def create_app(config_overrides: dict | None = None, gateway=None) -> Flask:
    """
    Application factory.

    config_overrides are applied before extensions initialise so a test can
    point SQLALCHEMY_DATABASE_URI somewhere else. gateway replaces the
    Stripe gateway built from config (tests pass a double).
    """
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))
    logging.getLogger("csms").setLevel(app.config.get("LOG_LEVEL", "INFO"))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401
    from .models.immutability import register_immutability_listeners
    register_immutability_listeners()

    if gateway is None:
        from .services.stripe_gateway import StripeGateway
        gateway = StripeGateway.from_config(app.config)
    app.extensions[GATEWAY_EXTENSION_KEY] = gateway

    # Register blueprints
    from .routes.system import system_bp
    from .routes.products import products_bp
    from .routes.inventory import inventory_bp
    from .routes.orders import orders_bp
    from .routes.invoices import invoices_bp
    from .routes.payments import payments_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(products_bp)
    app.register_blueprint(inventory_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(invoices_bp)
    app.register_blueprint(payments_bp)

    allowed_origins = set(app.config.get("CORS_ORIGINS", ()))

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,DELETE,PATCH,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
