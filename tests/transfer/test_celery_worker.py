import json
from typing import Any, Dict

from flask import Flask

from registry_app.transfer import get_celery_app, init_transfer
from registry_app.transfer.celery_app import (
    DEFAULT_QUEUE_NAME,
    EXPORT_TASK_NAME,
    HARD_LIMIT_GRACE,
    HEALTHCHECK_TASK_NAME,
    IMPORT_TASK_NAME,
)


def build_transfer_app(instance_path, **overrides) -> Flask:
    """
    Construct a minimal Flask app with the transfer engine mounted.
    """
    app = Flask(__name__, instance_path=str(instance_path))
    app.config.update(SECRET_KEY="test-secret", TESTING=True)
    app.config.update(overrides)
    init_transfer(app)
    return app


def test_celery_defaults_to_sqlite_transport(tmp_path):
    instance_dir = tmp_path / "instance"
    instance_dir.mkdir()
    sqlite_path = instance_dir / "custom.sqlite"

    app = build_transfer_app(
        instance_dir,
        CELERY_SQLITE_PATH=str(sqlite_path),
        CELERY_CONFIG={"task_always_eager": True, "task_eager_propagates": True},
    )

    celery_app = get_celery_app(app)
    assert celery_app is not None
    assert celery_app.conf.broker_url.startswith("sqla+sqlite:///")
    assert sqlite_path.name in celery_app.conf.broker_url
    assert celery_app.conf.result_backend.startswith("db+sqlite:///")
    assert celery_app.conf.task_default_queue == DEFAULT_QUEUE_NAME
    assert celery_app.conf.worker_prefetch_multiplier == 1
    assert celery_app.conf.task_acks_late is False


def test_explicit_broker_urls_win(tmp_path):
    app = build_transfer_app(
        tmp_path,
        CELERY_BROKER_URL="redis://localhost:6379/0",
        CELERY_RESULT_BACKEND="redis://localhost:6379/1",
    )

    celery_app = get_celery_app(app)
    assert celery_app.conf.broker_url == "redis://localhost:6379/0"
    assert celery_app.conf.result_backend == "redis://localhost:6379/1"


def test_time_limits_follow_job_budgets(tmp_path):
    app = build_transfer_app(tmp_path, TRANSFER_IMPORT_TIME_LIMIT=120, TRANSFER_EXPORT_TIME_LIMIT=90)

    annotations = get_celery_app(app).conf.task_annotations
    assert annotations[IMPORT_TASK_NAME] == {
        "soft_time_limit": 120,
        "time_limit": 120 + HARD_LIMIT_GRACE,
        "max_retries": 0,
    }
    assert annotations[EXPORT_TASK_NAME]["soft_time_limit"] == 90


def test_celery_config_accepts_json_and_ignores_garbage(tmp_path):
    app = build_transfer_app(tmp_path / "a", CELERY_CONFIG='{"task_always_eager": true}')
    assert get_celery_app(app).conf.task_always_eager is True

    app = build_transfer_app(tmp_path / "b", CELERY_CONFIG="{not json")
    assert get_celery_app(app).conf.task_always_eager is False


def test_transfer_tasks_are_registered(tmp_path):
    celery_app = get_celery_app(build_transfer_app(tmp_path))
    for name in (IMPORT_TASK_NAME, EXPORT_TASK_NAME, HEALTHCHECK_TASK_NAME):
        assert name in celery_app.tasks


def test_worker_ping_cli(app, runner):
    app.config["TRANSFER_WORKER_ENABLED"] = True

    result = runner.invoke(args=["transfer", "worker", "ping"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["status"] == "ok"
    assert "timestamp" in payload
    assert "worker_hostname" in payload


def test_worker_run_invokes_celery(app, runner, monkeypatch):
    app.config["TRANSFER_WORKER_ENABLED"] = True
    celery_app = get_celery_app(app)
    assert celery_app is not None

    calls: Dict[str, Any] = {}

    def fake_worker_main(argv=None):
        calls["argv"] = argv

    monkeypatch.setattr(celery_app, "worker_main", fake_worker_main)

    result = runner.invoke(
        args=[
            "transfer",
            "worker",
            "run",
            "--loglevel",
            "debug",
            "--concurrency",
            "2",
            "--pool",
            "solo",
            "--queues",
            "transfers",
        ]
    )

    assert result.exit_code == 0, result.output
    assert calls["argv"] == [
        "worker",
        "--loglevel",
        "debug",
        "-Q",
        "transfers",
        "--concurrency",
        "2",
        "--pool",
        "solo",
    ]
    assert app.extensions["transfer"]["worker_enabled"] is True


def test_worker_group_warns_when_disabled(runner, monkeypatch, app):
    monkeypatch.setattr(get_celery_app(app), "worker_main", lambda argv=None: None)

    result = runner.invoke(args=["transfer", "worker", "run"])

    assert result.exit_code == 0
    assert "TRANSFER_WORKER_ENABLED is false" in result.output
