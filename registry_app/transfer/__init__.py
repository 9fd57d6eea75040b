"""
Bulk spreadsheet import/export for the beneficiary registry.

``init_transfer`` mounts the admin blueprint and the ``flask transfer`` CLI
group and records worker state in ``app.extensions['transfer']``.
"""

from __future__ import annotations

from flask import Flask

from .catalog import FIELD_CATALOG, FieldCatalog, FieldDefinition
from .celery_app import ensure_celery_app, get_celery_app
from .cli import transfer_cli
from .errors import (
    ContainerFormatError,
    PersistenceConflict,
    PersistenceFailure,
    RowDataError,
    SchemaMismatch,
    TransferError,
)
from .exporter import ExportPipeline, ExportResult
from .importer import ImportPipeline, ImportResult
from .views import transfer_blueprint

TRANSFER_EXTENSION_KEY = "transfer"

__all__ = [
    "init_transfer",
    "TRANSFER_EXTENSION_KEY",
    "get_celery_app",
    "FIELD_CATALOG",
    "FieldCatalog",
    "FieldDefinition",
    "ImportPipeline",
    "ImportResult",
    "ExportPipeline",
    "ExportResult",
    "TransferError",
    "SchemaMismatch",
    "RowDataError",
    "PersistenceConflict",
    "PersistenceFailure",
    "ContainerFormatError",
]


def _ensure_extension_state(app: Flask) -> dict:
    return app.extensions.setdefault(
        TRANSFER_EXTENSION_KEY,
        {
            "worker_enabled": False,
            "celery_app": None,
        },
    )


def init_transfer(app: Flask) -> None:
    """
    Register the transfer blueprint, CLI group and Celery worker for ``app``.
    """
    state = _ensure_extension_state(app)
    state["worker_enabled"] = bool(app.config.get("TRANSFER_WORKER_ENABLED", False))
    ensure_celery_app(app, state)

    if transfer_blueprint.name not in app.blueprints:
        app.register_blueprint(transfer_blueprint)

    if transfer_cli.name in app.cli.commands:
        app.cli.commands.pop(transfer_cli.name)
    app.cli.add_command(transfer_cli)

    app.logger.info(
        "Transfer engine initialised",
        extra={"transfer_worker_enabled": state["worker_enabled"], "transfer_fields": len(FIELD_CATALOG)},
    )
