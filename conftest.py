# conftest.py

import os

import pytest

# Set testing environment BEFORE importing app so app.py picks TestingConfig
os.environ["FLASK_ENV"] = "testing"

# Now import app and other modules after environment is set
from app import app as flask_app  # noqa: E402
from kbo_app.importer import init_importer  # noqa: E402
from kbo_app.models import db  # noqa: E402


def pytest_configure(config):
    config.addinivalue_line("markers", "slow: end-to-end import scenarios")
    config.addinivalue_line("markers", "worker: tests exercising Celery tasks in eager mode")


@pytest.fixture(scope="function")
def app(tmp_path):
    """Create and configure a test Flask application against a fresh in-memory schema."""
    flask_app.config.update(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret-key-for-testing-only",
            "SQLALCHEMY_ECHO": False,
            "ENABLE_FILE_LOGGING": False,
            "ENABLE_CONSOLE_LOGGING": False,
            "IMPORTER_ENABLED": True,
            "IMPORTER_WORKER_ENABLED": False,
            "IMPORTER_UPLOAD_DIR": str(tmp_path / "uploads"),
            "IMPORTER_MAX_UPLOAD_MB": 100,
            "IMPORTER_POLL_DELAY_SECONDS": 0,
            "IMPORTER_BATCH_SIZES": {},
            "IMPORTER_DEFAULT_BATCH_SIZE": 1000,
            "IMPORTER_SMALL_FILE_THRESHOLD": 5000,
            "CELERY_TASK_ALWAYS_EAGER": True,
        }
    )
    init_importer(flask_app)

    with flask_app.app_context():
        # Drop any existing tables to ensure clean state
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


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
