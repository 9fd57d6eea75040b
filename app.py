# app.py

import logging
import os

from dotenv import load_dotenv
from flask import Flask, Response, jsonify
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import event

# Load environment variables from .env file first
load_dotenv()

# Module imports after load_dotenv() - E402 is intentional
from config import DevelopmentConfig, ProductionConfig, TestingConfig  # noqa: E402
from config.monitoring import (  # noqa: E402
    DevelopmentMonitoringConfig,
    ProductionMonitoringConfig,
    TestingMonitoringConfig,
)
from registry_app.models import db  # noqa: E402
from registry_app.transfer import init_transfer  # noqa: E402
from registry_app.utils.logging_config import setup_logging  # noqa: E402

logger = logging.getLogger(__name__)

CONFIGS = {
    "production": (ProductionConfig, ProductionMonitoringConfig),
    "testing": (TestingConfig, TestingMonitoringConfig),
    "development": (DevelopmentConfig, DevelopmentMonitoringConfig),
}


def _configure_sqlite_connection(dbapi_connection, connection_record):  # pragma: no cover - instrumentation
    """Apply concurrency-friendly pragmas and enforce foreign keys."""
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.execute("PRAGMA foreign_keys=ON")
    finally:
        cursor.close()


def _register_metrics_endpoint(app: Flask) -> None:
    endpoint = app.config.get("METRICS_ENDPOINT", "/metrics")

    @app.get(endpoint)
    def metrics():
        return Response(generate_latest(), mimetype=CONTENT_TYPE_LATEST)


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(404)
    def not_found_error(error):
        return jsonify({"success": False, "error": "المورد المطلوب غير موجود."}), 404

    @app.errorhandler(500)
    def internal_error(error):
        db.session.rollback()
        return jsonify({"success": False, "error": "حدث خطأ غير متوقع في الخادم."}), 500


def create_app(config_object=None, monitoring_config=None, **overrides) -> Flask:
    """
    Build the application. ``overrides`` are applied after the config objects
    and before any extension reads them.
    """
    flask_env = os.environ.get("FLASK_ENV", "development")
    default_config, default_monitoring = CONFIGS.get(flask_env, CONFIGS["development"])

    app = Flask(__name__)
    app.config.from_object(config_object or default_config)
    app.config.from_object(monitoring_config or default_monitoring)
    app.config.update(overrides)

    setup_logging(app)
    db.init_app(app)

    with app.app_context():
        engine = db.engine
        if engine.url.drivername.startswith("sqlite"):
            event.listen(engine, "connect", _configure_sqlite_connection)
        # Create the database tables only if not in testing mode
        if not app.config.get("TESTING", False):
            db.create_all()

    init_transfer(app)
    if app.config.get("MONITORING_ENABLED", False):
        _register_metrics_endpoint(app)
    _register_error_handlers(app)
    return app


app = create_app()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port)
