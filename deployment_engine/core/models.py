"""Core deployment models."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import quote
from uuid import UUID, uuid4


class StepStatus(Enum):
    """Pipeline step status."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    OK = "OK"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


class RunOutcome(Enum):
    """Overall result of one orchestrator run."""

    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    ABORTED = "ABORTED"


# ============================================
# TARGET & CREDENTIALS
# ============================================

@dataclass(frozen=True)
class DeploymentTarget:
    """Operator-supplied target. Immutable for the duration of a run."""

    app_name: str
    install_dir: Path
    public_port: int = 80
    internal_port: int = 5000
    server_name: str = "_"


@dataclass(frozen=True)
class Credentials:
    """Database and session secrets for one deployment."""

    db_name: str
    db_user: str
    db_password: str
    session_secret: str
    db_host: str = "localhost"
    db_port: int = 5432

    def database_url(self, encode_password: bool = True) -> str:
        password = quote(self.db_password, safe="") if encode_password else self.db_password
        return (
            f"postgresql://{self.db_user}:{password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )

    def secrets(self) -> List[str]:
        """Every string form of a secret that may end up in output."""
        values = [self.db_password, self.session_secret]
        encoded = quote(self.db_password, safe="")
        if encoded != self.db_password:
            values.append(encoded)
        return values

    def __repr__(self) -> str:
        return (
            f"Credentials(db_name={self.db_name!r}, db_user={self.db_user!r}, "
            f"db_password='********', session_secret='********')"
        )


# ============================================
# DESCRIPTORS
# ============================================

@dataclass(frozen=True)
class RestartPolicy:
    """Supervisor restart behaviour."""

    autorestart: bool = True
    max_restarts: int = 10
    min_uptime: str = "10s"
    restart_delay_ms: int = 5000


@dataclass(frozen=True)
class ServiceDescriptor:
    """How the process supervisor runs the application."""

    name: str
    script: str
    cwd: Path
    env: Dict[str, str]
    instances: int = 1
    restart_policy: RestartPolicy = field(default_factory=RestartPolicy)
    max_memory_restart: str = "1G"
    error_file: str = "./logs/err.log"
    out_file: str = "./logs/out.log"
    log_file: str = "./logs/combined.log"


@dataclass(frozen=True)
class ProxyRoute:
    """Virtual host routing public traffic to the application port."""

    name: str
    listen_port: int
    server_name: str
    upstream_port: int
    client_max_body_size: str = "100M"
    forwarded_headers: Dict[str, str] = field(default_factory=lambda: {
        "Upgrade": "$http_upgrade",
        "Connection": "'upgrade'",
        "Host": "$host",
        "X-Real-IP": "$remote_addr",
        "X-Forwarded-For": "$proxy_add_x_forwarded_for",
        "X-Forwarded-Proto": "$scheme",
    })
    security_headers: Dict[str, str] = field(default_factory=lambda: {
        "X-Frame-Options": '"SAMEORIGIN"',
        "X-Content-Type-Options": '"nosniff"',
        "X-XSS-Protection": '"1; mode=block"',
        "Referrer-Policy": '"strict-origin-when-cross-origin"',
        "Content-Security-Policy": (
            "\"default-src 'self' 'unsafe-inline' 'unsafe-eval' data: blob:;\""
        ),
    })
    static_extensions: List[str] = field(default_factory=lambda: [
        "js", "css", "png", "jpg", "jpeg", "gif", "ico", "svg", "woff", "woff2",
    ])
    static_cache_expires: str = "1y"
    gzip: bool = True


# ============================================
# RESULTS
# ============================================

@dataclass
class StepResult:
    """Status of a single pipeline step."""

    name: str
    status: StepStatus = StepStatus.PENDING
    message: str = ""
    diagnostics: str = ""
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


@dataclass
class CheckOutcome:
    """Result of one verification check."""

    name: str
    passed: bool
    message: str = ""
    attempts: int = 1
    diagnostics: str = ""


@dataclass
class DeploymentResult:
    """Report of one orchestrator run. Never persisted."""

    command: str
    run_id: UUID = field(default_factory=uuid4)
    outcome: Optional[RunOutcome] = None
    steps: List[StepResult] = field(default_factory=list)
    checks: List[CheckOutcome] = field(default_factory=list)
    credentials: Optional[Credentials] = None
    credentials_generated: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == RunOutcome.SUCCEEDED

    def step(self, name: str) -> Optional[StepResult]:
        for step in self.steps:
            if step.name == name:
                return step
        return None

    def failed_step(self) -> Optional[StepResult]:
        for step in self.steps:
            if step.status == StepStatus.FAILED:
                return step
        return None
