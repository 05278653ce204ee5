# deployment_engine/credentials/env_file.py
"""The environment descriptor (.env) the application reads at startup."""

import logging
from io import StringIO
from typing import Dict, Optional
from urllib.parse import unquote, urlsplit

from dotenv import dotenv_values
from pydantic_settings import BaseSettings, SettingsConfigDict

from deployment_engine.core.models import Credentials, DeploymentTarget

logger = logging.getLogger(__name__)


ENV_FILE_MODE = 0o600

ENV_KEYS = (
    "NODE_ENV",
    "PORT",
    "DATABASE_URL",
    "PGHOST",
    "PGPORT",
    "PGUSER",
    "PGPASSWORD",
    "PGDATABASE",
    "SESSION_SECRET",
)

_NEEDS_QUOTING = set(" \t#\"'$\\`")


def build_environment(
    credentials: Credentials,
    target: DeploymentTarget,
    runtime_mode: str = "production",
    encode_password: bool = True,
) -> Dict[str, str]:
    """The one mapping shared by the .env file and the supervisor descriptor."""
    return {
        "NODE_ENV": runtime_mode,
        "PORT": str(target.internal_port),
        "DATABASE_URL": credentials.database_url(encode_password=encode_password),
        "PGHOST": credentials.db_host,
        "PGPORT": str(credentials.db_port),
        "PGUSER": credentials.db_user,
        "PGPASSWORD": credentials.db_password,
        "PGDATABASE": credentials.db_name,
        "SESSION_SECRET": credentials.session_secret,
    }


def _format_value(value: str) -> str:
    if not any(ch in _NEEDS_QUOTING for ch in value):
        return value
    # Single quotes are literal in dotenv
    if "'" not in value:
        return f"'{value}'"
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def render_env_file(environment: Dict[str, str]) -> str:
    lines = ["# Managed by deployment-engine. Changes are overwritten on deploy/fix."]
    for key in ENV_KEYS:
        if key in environment:
            lines.append(f"{key}={_format_value(environment[key])}")
    for key in sorted(set(environment) - set(ENV_KEYS)):
        lines.append(f"{key}={_format_value(environment[key])}")
    return "\n".join(lines) + "\n"


class EnvironmentDescriptor(BaseSettings):
    """Parsed .env file. Only explicit values count; the process environment is ignored."""

    model_config = SettingsConfigDict(case_sensitive=False, extra="ignore")

    node_env: Optional[str] = None
    port: Optional[int] = None
    database_url: Optional[str] = None
    pghost: Optional[str] = None
    pgport: Optional[int] = None
    pguser: Optional[str] = None
    pgpassword: Optional[str] = None
    pgdatabase: Optional[str] = None
    session_secret: Optional[str] = None

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (init_settings,)


def parse_environment(text: str) -> EnvironmentDescriptor:
    values = {
        key.lower(): value
        for key, value in dotenv_values(stream=StringIO(text)).items()
        if value is not None
    }
    return EnvironmentDescriptor(**values)


def read_environment(host, path) -> Optional[EnvironmentDescriptor]:
    """Load the descriptor written by a previous run, or None."""
    text = host.read_file(path)
    if text is None:
        return None
    return parse_environment(text)


def credentials_from_environment(
    descriptor: Optional[EnvironmentDescriptor],
) -> Optional[Credentials]:
    """
    Recover credentials from a descriptor.

    Individual PG* keys win; DATABASE_URL fills whatever they leave out.
    Returns None when the password or session secret is missing.
    """
    if descriptor is None:
        return None

    user = descriptor.pguser
    password = descriptor.pgpassword
    name = descriptor.pgdatabase
    host = descriptor.pghost
    port = descriptor.pgport

    if descriptor.database_url:
        url = urlsplit(descriptor.database_url)
        user = user or (unquote(url.username) if url.username else None)
        password = password or (unquote(url.password) if url.password else None)
        name = name or (url.path.lstrip("/") or None)
        host = host or url.hostname
        port = port or url.port

    if not (user and password and name and descriptor.session_secret):
        logger.warning("[credentials] environment descriptor is incomplete")
        return None

    return Credentials(
        db_name=name,
        db_user=user,
        db_password=password,
        session_secret=descriptor.session_secret,
        db_host=host or "localhost",
        db_port=port or 5432,
    )
