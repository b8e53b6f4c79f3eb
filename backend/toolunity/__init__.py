# backend/toolunity/__init__.py
from flask import Flask, jsonify, request

from .config import Config
from .extensions import db, mailer, migrate, payments, rate_limiter


def create_app(overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    # Applied before extensions bind so tests can swap the database URI
    if overrides:
        app.config.update(overrides)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)
    payments.init_app(app)
    mailer.init_app(app)
    rate_limiter.init_app(app)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register blueprints
    from .routes.system import system_bp
    from .routes.auth import auth_bp
    from .routes.tools import tools_bp
    from .routes.rentals import rentals_bp
    from .routes.deposits import deposits_bp
    from .routes.tool_requests import tool_requests_bp
    from .routes.subscriptions import subscriptions_bp
    from .routes.webhooks import webhooks_bp
    from .routes.cron import cron_bp
    from .routes.connect import connect_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(tools_bp)
    app.register_blueprint(rentals_bp)
    app.register_blueprint(deposits_bp)
    app.register_blueprint(tool_requests_bp)
    app.register_blueprint(subscriptions_bp)
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(cron_bp)
    app.register_blueprint(connect_bp)

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        if origin and origin == app.config.get("APP_URL"):
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Access-Control-Allow-Credentials"] = "true"
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type, X-CSRF-Token"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PATCH,DELETE,OPTIONS"
        return response

    @app.errorhandler(404)
    def not_found(_error):
        return jsonify({"error": "Not found", "code": "not_found"}), 404

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
