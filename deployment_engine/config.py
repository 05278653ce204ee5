# deployment_engine/config.py
"""Deployment configuration from environment variables."""

from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from deployment_engine.core.models import DeploymentTarget

# Catch-all server name; a domain issued by `ssl` replaces it on the host
DEFAULT_SERVER_NAME = "_"


class DeploymentSettings(BaseSettings):
    """
    Everything the provisioning scripts used to hard-code.

    Values come from ``DEPLOY_*`` environment variables or a ``deploy.env``
    file next to the operator's working directory.
    """

    model_config = SettingsConfigDict(
        env_prefix="DEPLOY_",
        env_file="deploy.env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Target
    app_name: str = "personal-finance-tracker"
    install_dir: Path = Path("/var/www/personal-finance-tracker")
    source_dir: Optional[Path] = None
    public_port: int = 80
    internal_port: int = 5000
    server_name: str = DEFAULT_SERVER_NAME

    # Database
    db_name: str = "personal_finance_db"
    db_user: str = "finance_user"
    db_host: str = "localhost"
    db_port: int = 5432
    encode_db_password: bool = True
    db_admin_command: List[str] = Field(
        default_factory=lambda: ["sudo", "-u", "postgres", "psql"]
    )
    db_connect_timeout: int = 5

    # Credentials
    password_length: int = 16
    session_secret_bytes: int = 32

    # Application runtime
    runtime_mode: str = "production"
    runtime_binary: str = "node"
    entry_point: str = "dist/index.js"
    install_command: List[str] = Field(default_factory=lambda: ["npm", "install"])
    build_command: List[str] = Field(default_factory=lambda: ["npm", "run", "build"])
    migrate_command: List[str] = Field(default_factory=lambda: ["npm", "run", "db:push"])
    migrate_timeout: int = 300

    # Build
    build_memory_mb: int = 4096
    build_fallback_memory_mb: int = 2048
    build_timeout: int = 600
    build_fallback_timeout: int = 300
    low_memory_threshold_mb: int = 1000
    install_timeout: int = 900

    # Prerequisites
    node_min_major: int = 18
    node_setup_url: str = "https://deb.nodesource.com/setup_20.x"
    system_packages: List[str] = Field(
        default_factory=lambda: [
            "postgresql",
            "postgresql-contrib",
            "nginx",
            "build-essential",
            "curl",
        ]
    )
    package_timeout: int = 900

    # Process supervisor
    pm2_binary: str = "pm2"
    instances: int = 1
    max_memory_restart: str = "1G"
    max_restarts: int = 10
    min_uptime: str = "10s"
    restart_delay_ms: int = 5000
    manual_start_timeout: float = 10.0
    register_startup: bool = True

    # Reverse proxy
    nginx_binary: str = "nginx"
    nginx_sites_available: Path = Path("/etc/nginx/sites-available")
    nginx_sites_enabled: Path = Path("/etc/nginx/sites-enabled")
    nginx_error_log: Path = Path("/var/log/nginx/error.log")
    nginx_mime_types: Path = Path("/etc/nginx/mime.types")
    client_max_body_size: str = "100M"

    # Firewall
    configure_firewall: bool = True
    firewall_ports: List[int] = Field(default_factory=lambda: [22, 80, 443])
    expose_internal_port: bool = False

    # Backups
    backup_dir: Path = Path("/var/backups/personal-finance-tracker")
    backup_retention: int = 7

    # Timeouts / verification
    command_timeout: int = 120
    http_timeout: float = 5.0
    verify_attempts: int = 5
    verify_initial_delay: float = 1.0
    verify_backoff_factor: float = 2.0
    port_poll_interval: float = 0.5

    # Host
    use_sudo: bool = True

    @field_validator("public_port", "internal_port", "db_port")
    @classmethod
    def _valid_port(cls, value: int) -> int:
        if not 1 <= value <= 65535:
            raise ValueError(f"port out of range: {value}")
        return value

    @property
    def env_file_path(self) -> Path:
        return self.install_dir / ".env"

    @property
    def supervisor_config_path(self) -> Path:
        return self.install_dir / "ecosystem.config.cjs"

    @property
    def artifact_path(self) -> Path:
        return self.install_dir / self.entry_point

    @property
    def log_dir(self) -> Path:
        return self.install_dir / "logs"

    def to_target(self) -> DeploymentTarget:
        """Freeze the operator-supplied part of the configuration."""
        return DeploymentTarget(
            app_name=self.app_name,
            install_dir=self.install_dir,
            public_port=self.public_port,
            internal_port=self.internal_port,
            server_name=self.server_name,
        )


def load_settings(env_file: Optional[Path] = None, **overrides) -> DeploymentSettings:
    """Build settings, optionally from an explicit env file."""
    if env_file is not None:
        return DeploymentSettings(_env_file=env_file, **overrides)
    return DeploymentSettings(**overrides)
