"""
Configuration Management for Harbormaster
Centralizes all environment-based configuration and settings
"""

import os
import logging
from logging.handlers import RotatingFileHandler
from typing import Optional

from models.upgrade_models import UpgradeSettings


class PollingNoiseFilter(logging.Filter):
    """Filter out routine inspect polling requests to reduce log noise"""
    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()

        # httpx logs every request at INFO:
        # 'HTTP Request: GET https://host/api/endpoints/1/docker/containers/<id>/json "HTTP/1.1 200 OK"'
        # Readiness and stop monitors inspect every 0.5-2 seconds
        if message.startswith('HTTP Request:') and '200 OK' in message:
            if '/docker/containers/' in message and message.split('"')[0].rstrip().endswith('/json'):
                return False
        return True


def setup_logging(level: int = logging.INFO, log_to_file: bool = True):
    """Configure application logging with rotation"""
    from .paths import LOG_DIR

    root_logger = logging.getLogger()

    # Close and clear any existing handlers to ensure our logging configuration
    # is used and prevent file descriptor leaks
    for handler in root_logger.handlers[:]:  # Copy list to avoid modification during iteration
        handler.close()
        root_logger.removeHandler(handler)

    root_logger.setLevel(level)

    # Console handler for stdout
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    root_logger.addHandler(console_handler)

    if log_to_file:
        # Create logs directory with secure permissions
        os.makedirs(LOG_DIR, mode=0o700, exist_ok=True)

        # File handler with rotation for application logs
        # Max 10MB per file, keep 14 backups
        file_handler = RotatingFileHandler(
            os.path.join(LOG_DIR, 'harbormaster.log'),
            maxBytes=10*1024*1024,  # 10MB
            backupCount=14,  # Keep 14 old files
            encoding='utf-8'
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(console_formatter)
        root_logger.addHandler(file_handler)

    # Suppress per-request httpx logs produced by inspect polling
    logging.getLogger("httpx").addFilter(PollingNoiseFilter())


def _env_float(name: str) -> Optional[float]:
    value = os.getenv(name)
    return float(value) if value not in (None, '') else None


def _env_int(name: str) -> Optional[int]:
    value = os.getenv(name)
    return int(value) if value not in (None, '') else None


def _env_bool(name: str) -> Optional[bool]:
    value = os.getenv(name)
    if value in (None, ''):
        return None
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


# env var suffix -> (UpgradeSettings field, parser)
_ENV_FIELDS = {
    'READINESS_INTERVAL': ('readiness_interval', _env_float),
    'READINESS_MAX_WAIT': ('readiness_max_wait', _env_float),
    'READINESS_STABLE_CHECKS': ('required_stable_checks', _env_int),
    'HEALTH_GRACE_SECONDS': ('health_grace_seconds', _env_float),
    'HEALTH_GRACE_CHECKS': ('health_grace_checks', _env_int),
    'NO_HEALTH_MIN_SECONDS': ('no_health_min_seconds', _env_float),
    'QUICK_READY_SECONDS': ('quick_ready_seconds', _env_float),
    'QUICK_READY_CHECKS': ('quick_ready_checks', _env_int),
    'STOP_INTERVAL': ('stop_interval', _env_float),
    'STOP_MAX_WAIT': ('stop_max_wait', _env_float),
    'STABILIZATION_MAX_WAIT': ('stabilization_max_wait', _env_float),
    'STABILIZATION_INTERVAL': ('stabilization_interval', _env_float),
    'DEPENDENT_CLEANUP_DELAY': ('dependent_cleanup_delay', _env_float),
    'DEPENDENT_REBUILD_DELAY': ('dependent_rebuild_delay', _env_float),
    'LOG_TAIL_LINES': ('log_tail_lines', _env_int),
    'REQUEST_TIMEOUT': ('request_timeout', _env_float),
    'MAX_CONCURRENT_UPGRADES': ('max_concurrent_upgrades', _env_int),
    'PULL_IMAGE': ('pull_image_before_create', _env_bool),
}


def load_upgrade_settings() -> UpgradeSettings:
    """
    Build UpgradeSettings from HARBORMASTER_* environment variables.

    Unset variables keep the model defaults. Values are range-checked by
    the model, so a bad value fails loudly at startup instead of in the
    middle of an upgrade.

    Raises:
        pydantic.ValidationError: If a value is out of range
        ValueError: If a value cannot be parsed
    """
    overrides = {}
    for suffix, (field_name, parser) in _ENV_FIELDS.items():
        value = parser(f'HARBORMASTER_{suffix}')
        if value is not None:
            overrides[field_name] = value

    markers = os.getenv('HARBORMASTER_REVERSE_PROXY_IMAGES')
    if markers:
        overrides['reverse_proxy_image_markers'] = [m.strip() for m in markers.split(',') if m.strip()]

    pattern = os.getenv('HARBORMASTER_DATABASE_IMAGE_PATTERN')
    if pattern:
        overrides['database_image_pattern'] = pattern

    return UpgradeSettings(**overrides)
