"""
Application configuration

Settings come from DEFAULT_CONFIG, overlaid by environment variables,
overlaid by an explicit dictionary passed to the app factory.
"""

import os
from datetime import timedelta
from typing import Dict, Optional

DEFAULT_CONFIG = {
    'SECRET_KEY': 'event-scanner-dev',
    'PERMANENT_SESSION_LIFETIME': timedelta(days=1),
    'DEBUG': True,

    # Durable local store for the offline queue and caches: memory, json or redis
    'LOCAL_STORE': 'json',
    'LOCAL_STORE_PATH': 'offline_store.json',
    'REDIS_HOST': 'localhost',
    'REDIS_PORT': 6379,
    'REDIS_NAMESPACE': 'event_scanner',

    # Authoritative store: memory or sheets
    'REMOTE_STORE': 'memory',
    'GOOGLE_SERVICE_ACCOUNT_JSON': None,
    'SPREADSHEET_NAME': 'Event Scanner',

    'OPERATORS_FILE': 'operators.json',

    'GRACE_PERIOD_MINUTES': 5,
    'SCAN_COOLDOWN_MINUTES': 0,
    'SYNC_MAX_ATTEMPTS': 5,
    'SYNC_BACKOFF_BASE_SECONDS': 30,
    'SYNC_BACKOFF_MAX_SECONDS': 900,
    'CACHE_EXPIRATION_HOURS': 24,

    'LOG_LEVEL': 'INFO',
    'LOG_FILE': None,
}

# Config key -> environment variable
ENVIRONMENT_KEYS = {
    'SECRET_KEY': 'FLASK_SECRET_KEY',
    'DEBUG': 'DEBUG_MODE',
    'LOCAL_STORE': 'LOCAL_STORE',
    'LOCAL_STORE_PATH': 'LOCAL_STORE_PATH',
    'REDIS_HOST': 'REDIS_HOST',
    'REDIS_PORT': 'REDIS_PORT',
    'REDIS_NAMESPACE': 'REDIS_NAMESPACE',
    'REMOTE_STORE': 'REMOTE_STORE',
    'GOOGLE_SERVICE_ACCOUNT_JSON': 'GOOGLE_SERVICE_ACCOUNT_JSON',
    'SPREADSHEET_NAME': 'SPREADSHEET_NAME',
    'OPERATORS_FILE': 'OPERATORS_FILE',
    'GRACE_PERIOD_MINUTES': 'GRACE_PERIOD_MINUTES',
    'SCAN_COOLDOWN_MINUTES': 'SCAN_COOLDOWN_MINUTES',
    'SYNC_MAX_ATTEMPTS': 'SYNC_MAX_ATTEMPTS',
    'SYNC_BACKOFF_BASE_SECONDS': 'SYNC_BACKOFF_BASE_SECONDS',
    'SYNC_BACKOFF_MAX_SECONDS': 'SYNC_BACKOFF_MAX_SECONDS',
    'CACHE_EXPIRATION_HOURS': 'CACHE_EXPIRATION_HOURS',
    'LOG_LEVEL': 'LOG_LEVEL',
    'LOG_FILE': 'LOG_FILE',
}

INT_KEYS = {
    'REDIS_PORT',
    'GRACE_PERIOD_MINUTES',
    'SCAN_COOLDOWN_MINUTES',
    'SYNC_MAX_ATTEMPTS',
    'SYNC_BACKOFF_BASE_SECONDS',
    'SYNC_BACKOFF_MAX_SECONDS',
    'CACHE_EXPIRATION_HOURS',
}


def _coerce(key: str, value):
    if key == 'DEBUG' and isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    if key in INT_KEYS and isinstance(value, str):
        return int(value)
    return value


def load_config(overrides: Optional[Dict] = None, environ: Optional[Dict] = None) -> Dict:
    """
    Build the effective configuration

    Args:
        overrides: Explicit settings, highest precedence
        environ: Environment mapping, defaults to os.environ

    Returns:
        Configuration dictionary

    Raises:
        ValueError: If a numeric setting is not a number
    """
    environ = os.environ if environ is None else environ
    config = dict(DEFAULT_CONFIG)

    for key, variable in ENVIRONMENT_KEYS.items():
        if variable in environ:
            config[key] = environ[variable]

    if overrides:
        config.update(overrides)

    return {key: _coerce(key, value) for key, value in config.items()}
