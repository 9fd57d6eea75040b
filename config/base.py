# config/base.py
import os


def _coerce_bool(value, default=False):
    """Convert environment-style truthy/falsey values to bool."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    value_str = str(value).strip().lower()
    if value_str in {"1", "true", "yes", "on"}:
        return True
    if value_str in {"0", "false", "no", "off"}:
        return False
    return default


def _coerce_int(value, default, *, minimum=None):
    """
    Parse an integer environment value, falling back to ``default`` when the
    value is missing or malformed. ``minimum`` clamps the result.
    """
    if value is None or str(value).strip() == "":
        number = default
    else:
        try:
            number = int(str(value).strip())
        except ValueError:
            number = default
    if minimum is not None and number < minimum:
        number = minimum
    return number


class Config:
    # SECRET_KEY must be set via environment variable in production.
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

    if not SECRET_KEY and _is_production:
        raise ValueError(
            "SECRET_KEY environment variable is required in production. "
            'Generate with: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    if not SECRET_KEY and not _is_testing:
        import warnings

        warnings.warn(
            "SECRET_KEY not set. Using default for development only. "
            "Set SECRET_KEY environment variable before deploying.",
            UserWarning,
        )
        SECRET_KEY = "dev-secret-key-change-in-production"

    if not SECRET_KEY:
        SECRET_KEY = "test-secret-key-placeholder"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Admin API access. Requests must present this token as a bearer token or
    # via the X-Admin-Token header.
    ADMIN_API_TOKEN = os.environ.get("ADMIN_API_TOKEN")

    # Background worker (Celery) configuration
    TRANSFER_WORKER_ENABLED = _coerce_bool(os.environ.get("TRANSFER_WORKER_ENABLED"), default=False)
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")

    # File storage for uploads and generated exports (relative to instance path)
    TRANSFER_UPLOAD_DIR = os.environ.get("TRANSFER_UPLOAD_DIR")
    TRANSFER_ARTIFACT_DIR = os.environ.get("TRANSFER_ARTIFACT_DIR")
    TRANSFER_MAX_UPLOAD_MB = _coerce_int(os.environ.get("TRANSFER_MAX_UPLOAD_MB"), 50, minimum=1)
    TRANSFER_FILE_RETENTION_DAYS = _coerce_int(os.environ.get("TRANSFER_FILE_RETENTION_DAYS"), 7, minimum=1)

    # Import/export engine tuning
    TRANSFER_BATCH_SIZE = _coerce_int(os.environ.get("TRANSFER_BATCH_SIZE"), 500, minimum=1)
    TRANSFER_EXPORT_CHUNK_SIZE = _coerce_int(os.environ.get("TRANSFER_EXPORT_CHUNK_SIZE"), 2000, minimum=1)
    TRANSFER_EXPORT_PROGRESS_EVERY = _coerce_int(os.environ.get("TRANSFER_EXPORT_PROGRESS_EVERY"), 500, minimum=1)
    TRANSFER_HEADER_SCAN_ROWS = _coerce_int(os.environ.get("TRANSFER_HEADER_SCAN_ROWS"), 20, minimum=1)
    TRANSFER_ERROR_LIMIT = _coerce_int(os.environ.get("TRANSFER_ERROR_LIMIT"), 50, minimum=1)

    # Uploads larger than both thresholds are routed to the background worker.
    TRANSFER_ASYNC_FILE_SIZE_MB = _coerce_int(os.environ.get("TRANSFER_ASYNC_FILE_SIZE_MB"), 10, minimum=0)
    TRANSFER_ASYNC_ROW_THRESHOLD = _coerce_int(os.environ.get("TRANSFER_ASYNC_ROW_THRESHOLD"), 20000, minimum=0)
    TRANSFER_ESTIMATED_BYTES_PER_ROW = _coerce_int(
        os.environ.get("TRANSFER_ESTIMATED_BYTES_PER_ROW"), 500, minimum=1
    )

    # Wall-clock budgets (seconds) enforced by the worker's time limits
    TRANSFER_IMPORT_TIME_LIMIT = _coerce_int(os.environ.get("TRANSFER_IMPORT_TIME_LIMIT"), 30 * 60, minimum=60)
    TRANSFER_EXPORT_TIME_LIMIT = _coerce_int(os.environ.get("TRANSFER_EXPORT_TIME_LIMIT"), 10 * 60, minimum=60)


class DevelopmentConfig(Config):
    DEBUG = True
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # SQLite URI format: sqlite:///absolute/path (forward slashes on Windows too)
    db_path = os.path.join(instance_path, "registry_dev.db").replace("\\", "/")
    db_uri = f"sqlite:///{db_path}"

    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", db_uri)
    SQLALCHEMY_ECHO = _coerce_bool(os.environ.get("SQLALCHEMY_ECHO"), default=False)
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS = {
            "connect_args": {
                "check_same_thread": False,
                "timeout": 5,
            }
        }
    else:
        SQLALCHEMY_ENGINE_OPTIONS = {}

    ADMIN_API_TOKEN = os.environ.get("ADMIN_API_TOKEN", "dev-admin-token")


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }
    ADMIN_API_TOKEN = "test-admin-token"
    CELERY_CONFIG = {"task_always_eager": True, "task_eager_propagates": True}


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
