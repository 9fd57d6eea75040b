"""
Celery configuration helpers for the transfer worker.

Defaults to a SQLite transport/result backend inside the Flask instance folder
so local development does not need Redis.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Mapping

from celery import Celery
from flask import Flask
from kombu import Queue

DEFAULT_QUEUE_NAME = "transfers"
DEFAULT_SQLITE_FILENAME = "celery.sqlite"
IMPORT_TASK_NAME = "transfer.import_spreadsheet"
EXPORT_TASK_NAME = "transfer.export_spreadsheet"
HEALTHCHECK_TASK_NAME = "transfer.healthcheck"
# Seconds between the soft limit (job marked failed) and the hard kill.
HARD_LIMIT_GRACE = 60


def _configure_quiet_loggers(app: Flask) -> None:
    """
    Keep SQLAlchemy statement logging and Celery strategy chatter at WARNING
    unless ``SQLALCHEMY_ECHO`` asks for it.
    """
    if not app.config.get("SQLALCHEMY_ECHO", False):
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    logging.getLogger("celery.worker.strategy").setLevel(logging.WARNING)


def _normalize_sqlite_path(app: Flask) -> Path:
    """
    Path backing the SQLite transport; ``CELERY_SQLITE_PATH`` overrides the
    instance-folder default. Relative paths resolve against the instance folder.
    """
    configured = app.config.get("CELERY_SQLITE_PATH")
    if configured:
        sqlite_path = Path(configured)
        if not sqlite_path.is_absolute():
            sqlite_path = Path(app.instance_path) / sqlite_path
    else:
        sqlite_path = Path(app.instance_path) / DEFAULT_SQLITE_FILENAME

    sqlite_path.parent.mkdir(parents=True, exist_ok=True)
    return sqlite_path


def _determine_connection_urls(app: Flask) -> tuple[str, str]:
    """
    Resolve broker/result backend URLs, defaulting to SQLite transports.

    Returns:
        tuple[str, str]: (broker_url, result_backend)
    """
    broker_url = app.config.get("CELERY_BROKER_URL")
    result_backend = app.config.get("CELERY_RESULT_BACKEND")

    if broker_url and result_backend:
        return broker_url, result_backend

    normalized = _normalize_sqlite_path(app).as_posix()
    return broker_url or f"sqla+sqlite:///{normalized}", result_backend or f"db+sqlite:///{normalized}"


def _task_time_limits(app: Flask) -> dict[str, dict[str, int]]:
    import_limit = int(app.config.get("TRANSFER_IMPORT_TIME_LIMIT", 30 * 60))
    export_limit = int(app.config.get("TRANSFER_EXPORT_TIME_LIMIT", 10 * 60))
    return {
        IMPORT_TASK_NAME: {
            "soft_time_limit": import_limit,
            "time_limit": import_limit + HARD_LIMIT_GRACE,
            "max_retries": 0,
        },
        EXPORT_TASK_NAME: {
            "soft_time_limit": export_limit,
            "time_limit": export_limit + HARD_LIMIT_GRACE,
            "max_retries": 0,
        },
    }


def _load_extra_conf(app: Flask) -> Mapping[str, Any] | None:
    extra_conf: Mapping[str, Any] | str | None = app.config.get("CELERY_CONFIG")
    if isinstance(extra_conf, str):
        try:
            extra_conf = json.loads(extra_conf)
        except json.JSONDecodeError:
            app.logger.warning("CELERY_CONFIG is not valid JSON; ignoring value.", exc_info=True)
            return None
    return extra_conf or None


def create_celery_app(app: Flask) -> Celery:
    """
    Create and configure a Celery instance bound to the given Flask app.

    Tasks run at most once: late acknowledgement is off and no retries are
    configured, so a crashed job stays failed instead of being replayed.
    """
    broker_url, result_backend = _determine_connection_urls(app)
    celery_app = Celery(
        app.import_name,
        broker=broker_url,
        backend=result_backend,
        include=("registry_app.transfer.tasks",),
    )

    celery_app.conf.update(
        task_default_queue=DEFAULT_QUEUE_NAME,
        task_queues=[Queue(DEFAULT_QUEUE_NAME)],
        task_default_exchange=DEFAULT_QUEUE_NAME,
        task_default_routing_key=DEFAULT_QUEUE_NAME,
        task_acks_late=False,
        worker_prefetch_multiplier=1,
        task_track_started=True,
        result_extended=True,
        broker_connection_retry_on_startup=True,
        task_annotations=_task_time_limits(app),
        worker_log_format="[%(asctime)s: %(levelname)s/%(processName)s] %(message)s",
        worker_task_log_format="[%(asctime)s: %(levelname)s/%(processName)s][%(task_name)s(%(task_id)s)] %(message)s",
        worker_hijack_root_logger=False,
    )

    extra_conf = _load_extra_conf(app)
    app.logger.info(
        "Transfer Celery configuration resolved",
        extra={
            "transfer_celery_extra_conf": extra_conf,
            "transfer_celery_broker_url": broker_url,
            "transfer_celery_result_backend": result_backend,
            "transfer_worker_enabled": app.config.get("TRANSFER_WORKER_ENABLED"),
        },
    )
    if extra_conf:
        celery_app.conf.update(extra_conf)

    _configure_quiet_loggers(app)

    class FlaskContextTask(celery_app.Task):  # type: ignore[misc]
        """
        Run Celery tasks inside a Flask application context automatically.
        """

        def __call__(self, *args, **kwargs):
            with app.app_context():
                return super().__call__(*args, **kwargs)

    celery_app.Task = FlaskContextTask  # type: ignore[assignment]
    celery_app.loader.import_default_modules()
    return celery_app


def ensure_celery_app(app: Flask, state: dict[str, Any]) -> Celery:
    """
    Return (and cache) the Celery instance inside the transfer extension state.
    """
    celery_app: Celery | None = state.get("celery_app")
    if celery_app is None:
        celery_app = create_celery_app(app)
        state["celery_app"] = celery_app
    return celery_app


def get_celery_app(app: Flask) -> Celery | None:
    """
    Fetch the Celery instance registered by ``init_transfer``.
    """
    state: dict[str, Any] | None = app.extensions.get("transfer")  # type: ignore[arg-type]
    if not state:
        return None
    return ensure_celery_app(app, state)
