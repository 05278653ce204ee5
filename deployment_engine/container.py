# deployment_engine/container.py

"""Dependency injection container - wires all services together."""

import time
from typing import Callable, Optional

from deployment_engine.config import DeploymentSettings
from deployment_engine.core.events import (
    EventEmitter,
    LoggingEventEmitter,
    MultiEventEmitter,
)
from deployment_engine.core.redaction import SecretRegistry, secret_registry
from deployment_engine.credentials.generator import CredentialGenerator
from deployment_engine.infrastructure.host import Host
from deployment_engine.infrastructure.pm2_client import Pm2Client
from deployment_engine.infrastructure.runner import CommandRunner, SubprocessRunner
from deployment_engine.orchestrator.deployment_orchestrator import DeploymentOrchestrator
from deployment_engine.provisioning.backup import DatabaseBackup
from deployment_engine.provisioning.build import BuildPipeline
from deployment_engine.provisioning.certificates import CertificateIssuer
from deployment_engine.provisioning.database import (
    ConnectionChecker,
    DatabaseProvisioner,
    sqlalchemy_connection_checker,
)
from deployment_engine.provisioning.firewall import FirewallConfigurator
from deployment_engine.provisioning.prerequisites import PrerequisiteInstaller
from deployment_engine.provisioning.proxy import ProxyConfigurator
from deployment_engine.provisioning.supervisor import SupervisorConfigurator
from deployment_engine.verifier.checker import HttpGetter, Verifier, requests_getter
from deployment_engine.verifier.polling import PollPolicy


def build_orchestrator(
    settings: DeploymentSettings,
    runner: Optional[CommandRunner] = None,
    db_checker: Optional[ConnectionChecker] = None,
    http_get: HttpGetter = requests_getter,
    emitter: Optional[EventEmitter] = None,
    secrets: SecretRegistry = secret_registry,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    host: Optional[Host] = None,
) -> DeploymentOrchestrator:
    """Build an orchestrator; tests swap the runner, checker, getter and clock."""

    # ============================================
    # HOST
    # ============================================

    host = host or Host(
        runner or SubprocessRunner(),
        use_sudo=settings.use_sudo,
        command_timeout=settings.command_timeout,
    )
    pm2 = Pm2Client(host, binary=settings.pm2_binary, timeout=settings.command_timeout)

    # ============================================
    # EVENTS
    # ============================================

    emitter = emitter or MultiEventEmitter([
        LoggingEventEmitter(),
    ])

    # ============================================
    # PROVISIONING
    # ============================================

    prerequisites = PrerequisiteInstaller(
        host,
        system_packages=settings.system_packages,
        runtime_binary=settings.runtime_binary,
        node_min_major=settings.node_min_major,
        node_setup_url=settings.node_setup_url,
        pm2_binary=settings.pm2_binary,
        package_timeout=settings.package_timeout,
    )

    database = DatabaseProvisioner(
        host,
        checker=db_checker or sqlalchemy_connection_checker(settings.db_connect_timeout),
        admin_command=settings.db_admin_command,
        migrate_command=settings.migrate_command,
        command_timeout=settings.command_timeout,
        migrate_timeout=settings.migrate_timeout,
    )

    build = BuildPipeline(
        host,
        install_dir=settings.install_dir,
        artifact_path=settings.artifact_path,
        install_command=settings.install_command,
        build_command=settings.build_command,
        memory_mb=settings.build_memory_mb,
        fallback_memory_mb=settings.build_fallback_memory_mb,
        build_timeout=settings.build_timeout,
        fallback_timeout=settings.build_fallback_timeout,
        install_timeout=settings.install_timeout,
        low_memory_threshold_mb=settings.low_memory_threshold_mb,
    )

    supervisor = SupervisorConfigurator(
        host,
        pm2,
        config_path=settings.supervisor_config_path,
        runtime_binary=settings.runtime_binary,
        manual_start_timeout=settings.manual_start_timeout,
        poll_interval=settings.port_poll_interval,
        register_startup=settings.register_startup,
        clock=clock,
        sleep=sleep,
    )

    proxy = ProxyConfigurator(
        host,
        sites_available=settings.nginx_sites_available,
        sites_enabled=settings.nginx_sites_enabled,
        mime_types=settings.nginx_mime_types,
        error_log=settings.nginx_error_log,
        nginx_binary=settings.nginx_binary,
        timeout=settings.command_timeout,
    )

    firewall_ports = list(settings.firewall_ports)
    if settings.expose_internal_port:
        firewall_ports.append(settings.internal_port)
    firewall = FirewallConfigurator(host, ports=firewall_ports, timeout=settings.command_timeout)

    # ============================================
    # VERIFICATION
    # ============================================

    verifier = Verifier(
        host,
        pm2,
        proxy,
        policy=PollPolicy(
            attempts=settings.verify_attempts,
            initial_delay=settings.verify_initial_delay,
            backoff_factor=settings.verify_backoff_factor,
        ),
        http_timeout=settings.http_timeout,
        http_get=http_get,
        sleep=sleep,
    )

    # ============================================
    # ORCHESTRATOR
    # ============================================

    return DeploymentOrchestrator(
        settings=settings,
        host=host,
        generator=CredentialGenerator(
            password_length=settings.password_length,
            session_secret_bytes=settings.session_secret_bytes,
        ),
        prerequisites=prerequisites,
        database=database,
        build=build,
        supervisor=supervisor,
        proxy=proxy,
        firewall=firewall,
        verifier=verifier,
        certificates=CertificateIssuer(host, timeout=settings.package_timeout),
        backup=DatabaseBackup(host, settings.backup_dir, retention=settings.backup_retention),
        emitter=emitter,
        secrets=secrets,
    )
