# deployment_engine/orchestrator/deployment_orchestrator.py
"""Deployment orchestrator - drives the host toward the configured target."""

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, List, Optional

from deployment_engine.config import DEFAULT_SERVER_NAME, DeploymentSettings
from deployment_engine.core.errors import ConfigurationError, FatalStepError, NotDeployedError
from deployment_engine.core.events import EventEmitter
from deployment_engine.core.models import (
    CheckOutcome,
    Credentials,
    DeploymentResult,
    ProxyRoute,
)
from deployment_engine.core.redaction import SecretRegistry
from deployment_engine.core.validation import (
    validate_database_identifiers,
    validate_settings,
    validate_target,
)
from deployment_engine.credentials.env_file import (
    ENV_FILE_MODE,
    build_environment,
    credentials_from_environment,
    read_environment,
    render_env_file,
)
from deployment_engine.credentials.generator import CredentialGenerator
from deployment_engine.infrastructure.host import Host
from deployment_engine.infrastructure.pm2_client import Pm2Process
from deployment_engine.orchestrator.pipeline import PipelineRun
from deployment_engine.provisioning.backup import DatabaseBackup
from deployment_engine.provisioning.build import BuildPipeline
from deployment_engine.provisioning.certificates import CertificateIssuer
from deployment_engine.provisioning.database import DatabaseProvisioner
from deployment_engine.provisioning.firewall import FirewallConfigurator
from deployment_engine.provisioning.prerequisites import PrerequisiteInstaller
from deployment_engine.provisioning.proxy import ProxyConfigurator
from deployment_engine.provisioning.supervisor import SupervisorConfigurator, service_descriptor
from deployment_engine.verifier.checker import Verifier
from deployment_engine.verifier.polling import SINGLE_ATTEMPT

logger = logging.getLogger(__name__)


DEPLOY_STEPS = (
    "credentials",
    "prerequisites",
    "stage",
    "dependencies",
    "database",
    "build",
    "supervisor",
    "proxy",
    "firewall",
    "verify",
)


@dataclass
class StatusReport:
    """Read-only summary for ``status``."""
    app_name: str
    deployed: bool
    processes: List[Pm2Process] = field(default_factory=list)
    proxy_enabled: bool = False
    proxy_valid: bool = False
    database_reachable: Optional[bool] = None
    checks: List[CheckOutcome] = field(default_factory=list)


class DeploymentOrchestrator:
    """
    Orchestrates the deployment pipeline.

    Flow:
    1. Resolve credentials (reuse from .env unless asked for fresh ones)
    2. Prerequisites, staging, dependencies
    3. Database (role, grants, trial connection, schema)
    4. Build, supervised start, proxy, firewall
    5. Verify
    """

    def __init__(
        self,
        settings: DeploymentSettings,
        host: Host,
        generator: CredentialGenerator,
        prerequisites: PrerequisiteInstaller,
        database: DatabaseProvisioner,
        build: BuildPipeline,
        supervisor: SupervisorConfigurator,
        proxy: ProxyConfigurator,
        firewall: FirewallConfigurator,
        verifier: Verifier,
        certificates: CertificateIssuer,
        backup: DatabaseBackup,
        emitter: EventEmitter,
        secrets: SecretRegistry,
    ):
        self.settings = settings
        self.target = settings.to_target()
        self.host = host
        self.generator = generator
        self.prerequisites = prerequisites
        self.database = database
        self.build = build
        self.supervisor = supervisor
        self.proxy = proxy
        self.firewall = firewall
        self.verifier = verifier
        self.certificates = certificates
        self.backup_store = backup
        self.emitter = emitter
        self.secrets = secrets

    # ============================================
    # DEPLOY
    # ============================================

    def deploy(self, fresh_credentials: bool = False) -> DeploymentResult:
        validate_settings(self.settings)
        logger.info(f"[orchestrator] deploying {self.target.app_name} to {self.target.install_dir}")

        def body(run: PipelineRun) -> None:
            run.step("credentials", lambda: self._resolve_credentials(run, preserve=not fresh_credentials))
            credentials = run.result.credentials

            run.step("prerequisites", self.prerequisites.ensure)
            run.step("stage", self._stage)
            run.step("dependencies", self.build.install_dependencies)
            run.step("database", lambda: self.provision_database(credentials, reset=False))
            run.step("build", lambda: self.build.build(env={"NODE_ENV": self.settings.runtime_mode}))
            run.step("supervisor", lambda: self.start_supervised(credentials))
            run.step("proxy", lambda: self.proxy.apply(self.proxy_route()))

            if self.settings.configure_firewall:
                run.step("firewall", self.firewall.ensure)
            else:
                run.skip("firewall", "disabled by configuration")

            run.step("verify", lambda: self.verify_deployment(run))

        return PipelineRun("deploy", DEPLOY_STEPS, self.emitter).execute(body)

    # ============================================
    # OTHER COMMANDS
    # ============================================

    def restart(self) -> DeploymentResult:
        def body(run: PipelineRun) -> None:
            run.step("supervisor", lambda: self.supervisor.restart(self.target.app_name))
            run.step("verify", lambda: self.verify_deployment(run))

        return PipelineRun("restart", ("supervisor", "verify"), self.emitter).execute(body)

    def stop(self) -> DeploymentResult:
        def body(run: PipelineRun) -> None:
            run.step("supervisor", lambda: self.supervisor.stop(self.target.app_name))

        return PipelineRun("stop", ("supervisor",), self.emitter).execute(body)

    def backup(self) -> DeploymentResult:
        credentials = self.require_credentials()

        def body(run: PipelineRun) -> None:
            run.step("backup", lambda: f"wrote {self.backup_store.create(credentials)}")

        return PipelineRun("backup", ("backup",), self.emitter).execute(body)

    def restore(self, dump: Path) -> DeploymentResult:
        credentials = self.require_credentials()

        def body(run: PipelineRun) -> None:
            run.step("restore", lambda: self.backup_store.restore(credentials, dump))

        return PipelineRun("restore", ("restore",), self.emitter).execute(body)

    def ssl(self, domain: str, email: Optional[str] = None) -> DeploymentResult:
        route = self.proxy_route(server_name=domain)
        validate_target(replace(self.target, server_name=domain))

        def body(run: PipelineRun) -> None:
            run.step("proxy", lambda: self.proxy.apply(route, replace_certbot=True))
            run.step("certificates", lambda: self.certificates.issue(domain, email))

        return PipelineRun("ssl", ("proxy", "certificates"), self.emitter).execute(body)

    def status(self) -> StatusReport:
        """Supervisor, proxy and database health. Changes nothing."""
        credentials = self.existing_credentials()
        processes = self.supervisor.status(self.target.app_name)
        deployed = credentials is not None or bool(processes)
        if not deployed:
            raise NotDeployedError(f"{self.target.app_name} is not deployed on this host")

        route = self.proxy_route()
        report = StatusReport(
            app_name=self.target.app_name,
            deployed=deployed,
            processes=processes,
            proxy_enabled=self.proxy.is_enabled(route),
            proxy_valid=self.proxy.is_valid(),
        )
        if credentials is not None:
            report.database_reachable = self.database.is_reachable(credentials)
        report.checks = self.verifier.verify(
            self.target.app_name,
            self.target.internal_port,
            self.target.public_port,
            policy=SINGLE_ATTEMPT,
            short_circuit=False,
        )
        for check in report.checks:
            check.message = self.secrets.redact(check.message)
            check.diagnostics = self.secrets.redact(check.diagnostics)
        return report

    def logs(self, lines: int = 50) -> str:
        """Process and proxy log tails with every known secret masked."""
        self.existing_credentials()
        sections = [
            f"==> pm2 logs {self.target.app_name} <==",
            self.supervisor.logs(self.target.app_name, lines=lines),
            f"==> {self.settings.nginx_error_log} <==",
            self.proxy.error_log_tail(lines),
        ]
        return self.secrets.redact("\n".join(sections))

    # ============================================
    # SHARED PIECES (used by the fixer too)
    # ============================================

    def existing_credentials(self) -> Optional[Credentials]:
        descriptor = read_environment(self.host, self.settings.env_file_path)
        credentials = credentials_from_environment(descriptor)
        if credentials is not None:
            self.secrets.register(*credentials.secrets())
        return credentials

    def require_credentials(self) -> Credentials:
        credentials = self.existing_credentials()
        if credentials is None:
            raise NotDeployedError(f"no usable environment descriptor at {self.settings.env_file_path}")
        return credentials

    def environment(self, credentials: Credentials) -> Dict[str, str]:
        return build_environment(
            credentials,
            self.target,
            runtime_mode=self.settings.runtime_mode,
            encode_password=self.settings.encode_db_password,
        )

    def write_environment(self, credentials: Credentials) -> bool:
        self.host.ensure_directory(self.target.install_dir)
        return self.host.write_file(
            self.settings.env_file_path,
            render_env_file(self.environment(credentials)),
            mode=ENV_FILE_MODE,
        )

    def proxy_route(self, server_name: Optional[str] = None) -> ProxyRoute:
        return ProxyRoute(
            name=self.target.app_name,
            listen_port=self.target.public_port,
            server_name=server_name or self.server_name(),
            upstream_port=self.target.internal_port,
            client_max_body_size=self.settings.client_max_body_size,
        )

    def server_name(self) -> str:
        """Configured server name, else the one already on the managed site."""
        if self.target.server_name != DEFAULT_SERVER_NAME:
            return self.target.server_name
        return self.proxy.current_server_name(self.target.app_name) or DEFAULT_SERVER_NAME

    def check_identifiers(self, credentials: Credentials) -> None:
        """Identifiers read back from the environment descriptor get the same check as settings."""
        try:
            validate_database_identifiers(credentials.db_name, credentials.db_user)
        except ConfigurationError as e:
            raise FatalStepError(
                "credentials",
                f"{self.settings.env_file_path} holds unusable database identifiers: {e}",
            ) from e

    def adopt_credentials(self, run: PipelineRun, credentials: Credentials, generated: bool) -> None:
        self.check_identifiers(credentials)
        self.secrets.register(*credentials.secrets())
        run.result.credentials = credentials
        run.result.credentials_generated = generated

    def _resolve_credentials(self, run: PipelineRun, preserve: bool) -> str:
        existing = self.existing_credentials() if preserve else None
        credentials, generated = self.generator.resolve(
            self.settings.db_name,
            self.settings.db_user,
            db_host=self.settings.db_host,
            db_port=self.settings.db_port,
            existing=existing,
            preserve=preserve,
        )
        self.adopt_credentials(run, credentials, generated)
        return "generated" if generated else "reused from environment descriptor"

    def _stage(self) -> str:
        source = self.settings.source_dir
        install_dir = self.target.install_dir
        self.host.ensure_directory(install_dir)

        if source is not None and source.resolve() != install_dir.resolve():
            if not source.is_dir():
                raise FatalStepError("stage", f"source directory not found: {source}")
            self.host.stage_tree(source, install_dir)
            message = f"copied {source} to {install_dir}"
        else:
            message = f"building in place in {install_dir}"

        if not (install_dir / "package.json").is_file():
            raise FatalStepError("stage", f"package.json not found in {install_dir}")
        return message

    def provision_database(self, credentials: Credentials, reset: bool) -> str:
        # Persist first so a failure below still leaves the credentials on disk
        self.write_environment(credentials)
        verified = self.database.provision(credentials, reset=reset)
        self.database.migrate(self.environment(credentials), cwd=self.target.install_dir)
        return f"{verified}; schema applied"

    def start_supervised(self, credentials: Credentials) -> str:
        # Never hand pm2 a missing bundle
        self.build.verify_artifact()
        descriptor = service_descriptor(self.settings, self.environment(credentials))
        return self.supervisor.apply(descriptor, self.target.internal_port)

    def verify_deployment(self, run: PipelineRun) -> str:
        outcomes = self.verifier.verify(
            self.target.app_name,
            self.target.internal_port,
            self.target.public_port,
        )
        run.result.checks = outcomes
        failed = next((outcome for outcome in outcomes if not outcome.passed), None)
        if failed is not None:
            raise FatalStepError(
                "verify",
                f"{failed.name}: {failed.message}",
                diagnostics=failed.diagnostics,
            )
        return f"{len(outcomes)} checks passed"
