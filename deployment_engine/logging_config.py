# deployment_engine/logging_config.py
"""Logging setup shared by every command."""

import logging
import os
from typing import Optional

from deployment_engine.core.redaction import SecretRegistry, secret_registry

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class RedactingFilter(logging.Filter):
    """Masks registered secrets in every record that passes through a handler."""

    def __init__(self, registry: SecretRegistry = secret_registry):
        super().__init__()
        self._registry = registry

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = self._registry.redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def setup_logging(level: Optional[str] = None, verbose: bool = False) -> None:
    """
    Configure root logging.

    Args:
        level: Level name; falls back to DEPLOY_LOG_LEVEL, then INFO
        verbose: Force DEBUG
    """
    level = "DEBUG" if verbose else (level or os.getenv("DEPLOY_LOG_LEVEL", "INFO"))
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(
        level=numeric_level,
        format=LOG_FORMAT,
        force=True,
    )

    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, RedactingFilter) for f in handler.filters):
            handler.addFilter(RedactingFilter())

    # urllib3 logs full URLs on retries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
