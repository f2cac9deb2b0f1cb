"""
Environment configuration for the RevAI backend.

All runtime options are read from environment variables.  Helpers in
this module resolve individual settings and raise
:class:`ConfigurationError` when a required value is missing so that
callers can fail before any partial work is attempted.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 2
DEFAULT_RETRY_DELAY = 1.0  # seconds, doubled per attempt on rate limits
DEFAULT_OPENAI_TIMEOUT = 60.0
DEFAULT_BATCH_SIZE = 10
DEFAULT_LEASE_SECONDS = 600


class ConfigurationError(RuntimeError):
    """Raised when a required credential or settings record is missing."""


def resolve_api_key(explicit: Optional[str] = None) -> str:
    """Resolve the OpenAI API key.

    An explicitly supplied key wins over the ``OPENAI_API_KEY``
    environment variable.
    """
    key = explicit or os.getenv('OPENAI_API_KEY')
    if key and key.strip():
        return key.strip()
    raise ConfigurationError(
        'OpenAI API key is missing. Please set the OPENAI_API_KEY environment variable.'
    )


def get_database_url() -> str:
    """Resolve the database URL from the environment.

    SQLite is used when ``DATABASE_URL`` is not set.  Heroku style
    ``postgres://`` URLs are rewritten to ``postgresql://`` because
    SQLAlchemy does not recognise the former scheme.
    """
    url = os.getenv('DATABASE_URL')
    if url:
        if url.startswith('postgres://'):
            url = url.replace('postgres://', 'postgresql://', 1)
        return url
    default_path = os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))), 'revai.db')
    return f"sqlite:///{default_path}"


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


def get_max_retries() -> int:
    """Number of additional attempts after a failed model call."""
    return max(0, _int_env('REVAI_MAX_RETRIES', DEFAULT_MAX_RETRIES))


def get_retry_delay() -> float:
    return max(0.0, _float_env('REVAI_RETRY_DELAY', DEFAULT_RETRY_DELAY))


def get_openai_timeout() -> float:
    return _float_env('OPENAI_TIMEOUT', DEFAULT_OPENAI_TIMEOUT)


def get_log_level() -> str:
    return os.getenv('REVAI_LOG_LEVEL', 'INFO').upper()
