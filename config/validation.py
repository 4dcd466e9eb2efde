# config/validation.py

"""
Environment variable validation for the KBO importer application.
Validates required environment variables at startup.
"""

import os
import sys
from typing import List, Tuple

BATCH_SIZE_CEILING = 50000


def _validate_batch_sizes(errors: List[str]) -> None:
    raw_sizes = os.environ.get("IMPORTER_BATCH_SIZES", "")
    for raw_item in raw_sizes.split(","):
        if not raw_item.strip():
            continue
        table, sep, raw_number = raw_item.partition("=")
        if not sep or not table.strip():
            errors.append(f"IMPORTER_BATCH_SIZES entry '{raw_item.strip()}' must look like 'table=size'.")
            continue
        try:
            size = int(raw_number.strip())
        except ValueError:
            errors.append(f"IMPORTER_BATCH_SIZES entry '{raw_item.strip()}' has a non-integer size.")
            continue
        if size < 1 or size > BATCH_SIZE_CEILING:
            errors.append(
                f"IMPORTER_BATCH_SIZES size for '{table.strip()}' must be between 1 and {BATCH_SIZE_CEILING}."
            )

    raw_default = os.environ.get("IMPORTER_DEFAULT_BATCH_SIZE")
    if raw_default is not None:
        try:
            default_size = int(raw_default)
        except ValueError:
            errors.append("IMPORTER_DEFAULT_BATCH_SIZE must be an integer.")
        else:
            if default_size < 1 or default_size > BATCH_SIZE_CEILING:
                errors.append(f"IMPORTER_DEFAULT_BATCH_SIZE must be between 1 and {BATCH_SIZE_CEILING}.")


def validate_environment(flask_env: str = None) -> Tuple[bool, List[str]]:
    """
    Validate required environment variables.

    Args:
        flask_env: Flask environment (development, production, testing)
                  If None, reads from FLASK_ENV environment variable

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    if flask_env is None:
        flask_env = os.environ.get("FLASK_ENV", "development")

    errors = []

    # Only validate in production
    if flask_env != "production":
        return True, []

    secret_key = os.environ.get("SECRET_KEY", "")
    if not secret_key or secret_key in ("your-secret-key", "your_secret_key"):
        errors.append(
            "SECRET_KEY is required in production and must not be the default value. "
            'Generate a secure key: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    if not os.environ.get("DATABASE_URL"):
        errors.append(
            "DATABASE_URL is required in production. "
            "Set it to your PostgreSQL connection string."
        )

    _validate_batch_sizes(errors)

    if os.environ.get("IMPORTER_WORKER_ENABLED", "false").lower() == "true":
        if not os.environ.get("CELERY_BROKER_URL"):
            errors.append("CELERY_BROKER_URL is required when IMPORTER_WORKER_ENABLED=true")

    is_valid = len(errors) == 0
    return is_valid, errors


def validate_and_exit(flask_env: str = None) -> None:
    """
    Validate environment variables and exit with error if validation fails.
    Intended to be called at application startup.

    Args:
        flask_env: Flask environment (development, production, testing)
    """
    is_valid, errors = validate_environment(flask_env)

    if not is_valid:
        print("=" * 80, file=sys.stderr)
        print("ENVIRONMENT VALIDATION FAILED", file=sys.stderr)
        print("=" * 80, file=sys.stderr)
        print("\nThe following environment variables are missing or invalid:\n", file=sys.stderr)

        for i, error in enumerate(errors, 1):
            print(f"{i}. {error}", file=sys.stderr)

        print("\n" + "=" * 80, file=sys.stderr)
        print("Please check your .env file or environment variables.", file=sys.stderr)
        print("=" * 80, file=sys.stderr)

        sys.exit(1)
