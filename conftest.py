# conftest.py

import os
import tempfile
import uuid

import pytest

# Set testing environment BEFORE importing app so TestingConfig is selected
os.environ["FLASK_ENV"] = "testing"

# Now import app and other modules after environment is set
from app import create_app  # noqa: E402
from config import TestingConfig  # noqa: E402
from config.monitoring import TestingMonitoringConfig  # noqa: E402
from registry_app.models import db  # noqa: E402

ADMIN_TOKEN = "test-admin-token"


@pytest.fixture(scope="function")
def app(tmp_path):
    """Create and configure a test Flask application"""

    # Create a unique temporary database file for each test
    db_fd, temp_db = tempfile.mkstemp(suffix=f"_{uuid.uuid4().hex[:8]}.db")
    instance_dir = tmp_path / "instance"
    instance_dir.mkdir()

    try:
        flask_app = create_app(
            TestingConfig,
            TestingMonitoringConfig,
            SQLALCHEMY_DATABASE_URI=f"sqlite:///{temp_db}",
            ADMIN_API_TOKEN=ADMIN_TOKEN,
            TRANSFER_UPLOAD_DIR=str(instance_dir / "uploads"),
            TRANSFER_ARTIFACT_DIR=str(instance_dir / "artifacts"),
            CELERY_SQLITE_PATH=str(instance_dir / "celery.sqlite"),
            CELERY_CONFIG={"task_always_eager": True, "task_eager_propagates": True},
        )

        with flask_app.app_context():
            # Drop any existing tables to ensure clean state
            db.drop_all()
            db.create_all()
            yield flask_app
            db.session.remove()
            db.drop_all()
            db.engine.dispose()
    finally:
        # Always close and remove the temporary database file, even on error
        try:
            os.close(db_fd)
        except OSError:
            pass
        for suffix in ("", "-wal", "-shm"):
            try:
                if os.path.exists(temp_db + suffix):
                    os.unlink(temp_db + suffix)
            except OSError:
                pass


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    """Create a test client for the Flask application"""
    return app.test_client()


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()


@pytest.fixture
def admin_headers():
    """Headers carrying the configured admin API token"""
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}
