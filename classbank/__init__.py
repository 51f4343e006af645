"""
Application factory for classbank.

This module provides create_app() which initializes Flask, extensions,
logging, error handlers, and registers blueprints.
"""

import os
import logging
from logging.handlers import RotatingFileHandler

from flask import Flask, jsonify
from dotenv import load_dotenv
from sqlalchemy.exc import SQLAlchemyError

# Load environment variables
load_dotenv()


# Validate required environment variables
required_env_vars = ["SECRET_KEY", "DATABASE_URL", "FLASK_ENV", "ENCRYPTION_KEY"]
missing_vars = [var for var in required_env_vars if not os.getenv(var)]
if missing_vars:
    raise RuntimeError(
        "Missing required environment variables: " + ", ".join(missing_vars)
    )


def _env_bool(name, default):
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on"}


def _env_int(name, default):
    value = os.getenv(name)
    return int(value) if value else default


# -------------------- APPLICATION FACTORY --------------------

def create_app():
    """
    Application factory function.

    Creates and configures the Flask application, initializes extensions,
    sets up logging, registers error handlers and blueprints.

    Returns:
        Flask: Configured Flask application instance
    """
    from classbank.utils import constants

    app = Flask(__name__)

    # -------------------- CONFIGURATION --------------------
    app.config.from_mapping(
        DEBUG=False,
        ENV=os.environ["FLASK_ENV"],
        SECRET_KEY=os.environ["SECRET_KEY"],
        SQLALCHEMY_DATABASE_URI=os.environ["DATABASE_URL"],
        SQLALCHEMY_TRACK_MODIFICATIONS=False,
        SESSION_COOKIE_SECURE=True,
        SESSION_COOKIE_HTTPONLY=True,
        SESSION_COOKIE_SAMESITE="Lax",
        RATELIMIT_ENABLED=_env_bool("RATELIMIT_ENABLED", True),
        CRON_SECRET=os.getenv("CRON_SECRET"),
        DEFAULT_TIMEZONE=os.getenv("DEFAULT_TIMEZONE", "Asia/Seoul"),
        SEAT_PRICE_ASSET_RATIO=os.getenv("SEAT_PRICE_ASSET_RATIO", str(constants.SEAT_PRICE_ASSET_RATIO)),
        DEFAULT_SEAT_PRICE=_env_int("DEFAULT_SEAT_PRICE", constants.DEFAULT_SEAT_PRICE),
        MIN_SEAT_PRICE=_env_int("MIN_SEAT_PRICE", constants.MIN_SEAT_PRICE),
        MAX_ACTIVE_LOANS=_env_int("MAX_ACTIVE_LOANS", constants.MAX_ACTIVE_LOANS),
        LOAN_DEFAULT_GRACE_DAYS=_env_int("LOAN_DEFAULT_GRACE_DAYS", constants.LOAN_DEFAULT_GRACE_DAYS),
        LOAN_DEFAULT_CREDIT_PENALTY=_env_int("LOAN_DEFAULT_CREDIT_PENALTY", constants.LOAN_DEFAULT_CREDIT_PENALTY),
        EARLY_REPAYMENT_FEE_RATIO=os.getenv("EARLY_REPAYMENT_FEE_RATIO", str(constants.EARLY_REPAYMENT_FEE_RATIO)),
    )

    # -------------------- EXTENSIONS --------------------
    from classbank.extensions import db, migrate, csrf, limiter

    db.init_app(app)
    migrate.init_app(app, db)
    csrf.init_app(app)
    limiter.init_app(app)

    # -------------------- LOGGING --------------------
    log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, log_level_name, logging.INFO)
    log_format = os.getenv(
        "LOG_FORMAT",
        "[%(asctime)s] %(levelname)s in %(module)s: %(message)s",
    )

    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(log_level)
    stream_handler.setFormatter(logging.Formatter(log_format))

    app.logger.setLevel(log_level)
    # Prevent duplicate log entries by clearing handlers first
    app.logger.handlers.clear()
    app.logger.addHandler(stream_handler)

    if os.getenv("FLASK_ENV", app.config.get("ENV")) == "production":
        log_file = os.getenv("LOG_FILE", "app.log")
        file_handler = RotatingFileHandler(log_file, maxBytes=1_000_000, backupCount=5)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter(log_format))
        app.logger.addHandler(file_handler)

    jobs_logger = logging.getLogger("classbank.jobs")
    jobs_logger.setLevel(log_level)
    if not jobs_logger.handlers:
        jobs_logger.addHandler(stream_handler)

    # -------------------- ERROR HANDLERS --------------------
    from classbank.errors import DependencyFailure, EconomyError
    from flask_wtf.csrf import CSRFError

    @app.errorhandler(EconomyError)
    def handle_economy_error(error):
        """Render domain errors as JSON with the status the error carries."""
        if isinstance(error, DependencyFailure):
            app.logger.error(f"Dependency failure: {error.message}", exc_info=True)
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(SQLAlchemyError)
    def handle_database_error(error):
        db.session.rollback()
        app.logger.error(f"Database error: {error}", exc_info=True)
        return jsonify({"status": "error", "message": "Database error."}), 500

    @app.errorhandler(CSRFError)
    def handle_csrf_error(error):
        app.logger.warning(f"CSRF validation failed: {error.description}")
        return jsonify({"status": "error", "message": error.description}), 400

    @app.errorhandler(404)
    def not_found_error(error):
        return jsonify({"status": "error", "message": "Not found."}), 404

    @app.errorhandler(405)
    def method_not_allowed_error(error):
        return jsonify({"status": "error", "message": "Method not allowed."}), 405

    @app.errorhandler(429)
    def rate_limited_error(error):
        app.logger.warning(f"Rate limit exceeded: {error.description}")
        return jsonify({"status": "error", "message": "Too many requests."}), 429

    # -------------------- BLUEPRINTS --------------------
    from classbank.routes.main import main_bp
    from classbank.routes.admin import admin_bp
    from classbank.routes.student import student_bp
    from classbank.routes.jobs import jobs_bp

    app.register_blueprint(main_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(student_bp)
    app.register_blueprint(jobs_bp)

    # -------------------- CLI COMMANDS --------------------
    from classbank import cli_commands
    cli_commands.init_app(app)

    return app


# Create the application instance for WSGI servers and the test suite
app = create_app()

from classbank.extensions import db
from classbank import models

__all__ = ['app', 'create_app', 'db', 'models']
