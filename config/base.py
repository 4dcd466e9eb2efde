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
    """Parse an integer setting, falling back to ``default`` on bad input."""
    if value in (None, ""):
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    if minimum is not None and number < minimum:
        return default
    return number


def _parse_name_list(value, default=()):
    """
    Parse a comma-separated list of identifiers while keeping order and removing duplicates.

    Returns:
        tuple[str, ...]: Normalized lower-case identifiers.
    """
    if not value:
        return tuple(default)

    seen = set()
    names = []
    for raw_item in value.split(","):
        item = raw_item.strip().lower()
        if not item or item in seen:
            continue
        seen.add(item)
        names.append(item)
    return tuple(names) or tuple(default)


def _parse_int_mapping(value):
    """
    Parse ``table=size`` pairs such as ``activities=500,addresses=1000``.

    Malformed pairs are skipped; sizes are validated when the sizing policy
    is built so a zero or negative size fails start-up loudly.
    """
    if not value:
        return {}

    parsed = {}
    for raw_item in value.split(","):
        key, sep, raw_number = raw_item.partition("=")
        key = key.strip().lower()
        if not sep or not key:
            continue
        try:
            parsed[key] = int(raw_number.strip())
        except ValueError:
            continue
    return parsed


class Config:
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Only require SECRET_KEY in production mode
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

    # Importer configuration
    IMPORTER_ENABLED = _coerce_bool(os.environ.get("IMPORTER_ENABLED"), default=False)
    IMPORTER_WORKER_ENABLED = _coerce_bool(os.environ.get("IMPORTER_WORKER_ENABLED"), default=False)

    # Batch sizing; unspecified tables fall back to the built-in defaults
    IMPORTER_BATCH_SIZES = _parse_int_mapping(os.environ.get("IMPORTER_BATCH_SIZES", ""))
    IMPORTER_DEFAULT_BATCH_SIZE = _coerce_int(os.environ.get("IMPORTER_DEFAULT_BATCH_SIZE"), 1000)
    IMPORTER_SMALL_FILE_THRESHOLD = _coerce_int(os.environ.get("IMPORTER_SMALL_FILE_THRESHOLD"), 5000, minimum=0)

    IMPORTER_WORKER_TYPES = _parse_name_list(
        os.environ.get("IMPORTER_WORKER_TYPES", ""),
        default=("local", "vercel", "backfill", "web_manual"),
    )
    IMPORTER_DEFAULT_WORKER_TYPE = os.environ.get("IMPORTER_DEFAULT_WORKER_TYPE", "local").strip().lower()
    if IMPORTER_DEFAULT_WORKER_TYPE not in IMPORTER_WORKER_TYPES:
        raise ValueError(
            f"IMPORTER_DEFAULT_WORKER_TYPE '{IMPORTER_DEFAULT_WORKER_TYPE}' is not listed in IMPORTER_WORKER_TYPES."
        )

    IMPORTER_MAX_UPLOAD_MB = _coerce_int(os.environ.get("IMPORTER_MAX_UPLOAD_MB"), 100, minimum=1)
    IMPORTER_UPLOAD_DIR = os.environ.get("IMPORTER_UPLOAD_DIR")
    IMPORTER_POLL_DELAY_SECONDS = _coerce_int(os.environ.get("IMPORTER_POLL_DELAY_SECONDS"), 2, minimum=0)
    IMPORTER_STALE_BATCH_SECONDS = _coerce_int(os.environ.get("IMPORTER_STALE_BATCH_SECONDS"), 900, minimum=1)
    IMPORTER_TASK_TIME_LIMIT = _coerce_int(os.environ.get("IMPORTER_TASK_TIME_LIMIT"), 300, minimum=1)
    IMPORTER_TASK_SOFT_TIME_LIMIT = _coerce_int(os.environ.get("IMPORTER_TASK_SOFT_TIME_LIMIT"), 240, minimum=1)

    # Celery transport; SQLite under the instance folder when unset
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")
    CELERY_TASK_ALWAYS_EAGER = _coerce_bool(os.environ.get("CELERY_TASK_ALWAYS_EAGER"), default=False)


class DevelopmentConfig(Config):
    DEBUG = True
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # SQLite URI format: sqlite:///absolute/path (3 slashes for absolute path)
    db_path_normalized = os.path.join(instance_path, "kbo_dev.db").replace("\\", "/")
    db_uri = f"sqlite:///{db_path_normalized}"

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


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"  # In-memory database for testing
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }
    IMPORTER_ENABLED = True
    CELERY_TASK_ALWAYS_EAGER = True
    IMPORTER_POLL_DELAY_SECONDS = 0


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
