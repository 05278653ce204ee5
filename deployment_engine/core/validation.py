#deployment_engine\core\validation.py
import re

from deployment_engine.core.errors import ConfigurationError
from deployment_engine.core.models import DeploymentTarget


APP_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9._-]{0,62}$")
SQL_IDENTIFIER_RE = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")
SERVER_NAME_RE = re.compile(r"^[A-Za-z0-9_.*~^\\$ -]+$")


def validate_target(target: DeploymentTarget) -> None:
    # -------------------------
    # Identity
    # -------------------------
    if not APP_NAME_RE.match(target.app_name or ""):
        raise ConfigurationError(
            f"app_name must be lowercase letters, digits, '.', '_' or '-': {target.app_name!r}"
        )

    if not target.install_dir.is_absolute():
        raise ConfigurationError(f"install_dir must be absolute: {target.install_dir}")

    # -------------------------
    # Ports
    # -------------------------
    for label, port in (("public_port", target.public_port), ("internal_port", target.internal_port)):
        if not 1 <= port <= 65535:
            raise ConfigurationError(f"{label} out of range: {port}")

    if target.public_port == target.internal_port:
        raise ConfigurationError(
            f"public_port and internal_port must differ (both {target.public_port})"
        )

    # -------------------------
    # Proxy
    # -------------------------
    if not SERVER_NAME_RE.match(target.server_name or ""):
        raise ConfigurationError(f"invalid server_name pattern: {target.server_name!r}")


def validate_database_identifiers(db_name: str, db_user: str) -> None:
    """Names are interpolated into SQL as identifiers, so keep them boring."""
    for label, value in (("db_name", db_name), ("db_user", db_user)):
        if not SQL_IDENTIFIER_RE.match(value or ""):
            raise ConfigurationError(
                f"{label} must match {SQL_IDENTIFIER_RE.pattern}: {value!r}"
            )


def validate_settings(settings) -> None:
    validate_target(settings.to_target())
    validate_database_identifiers(settings.db_name, settings.db_user)

    if settings.build_fallback_memory_mb > settings.build_memory_mb:
        raise ConfigurationError("build_fallback_memory_mb must not exceed build_memory_mb")

    if settings.password_length < 12:
        raise ConfigurationError("password_length must be at least 12")

    if settings.session_secret_bytes < 32:
        raise ConfigurationError("session_secret_bytes must be at least 32")
