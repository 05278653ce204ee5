# deployment_engine/provisioning/supervisor.py
"""Process supervisor configurator (pm2)."""

import logging
import time
from pathlib import Path
from typing import Callable, Dict, List

from deployment_engine.core.errors import FatalStepError, NotDeployedError
from deployment_engine.core.models import RestartPolicy, ServiceDescriptor
from deployment_engine.domain.templates import render_ecosystem
from deployment_engine.infrastructure.host import Host
from deployment_engine.infrastructure.pm2_client import Pm2Client, Pm2Process

logger = logging.getLogger(__name__)


STEP = "supervisor"
DESCRIPTOR_MODE = 0o600


def service_descriptor(settings, environment: Dict[str, str]) -> ServiceDescriptor:
    """Descriptor for the application: entry point is the build artifact."""
    log_dir = settings.log_dir
    return ServiceDescriptor(
        name=settings.app_name,
        script=settings.entry_point,
        cwd=settings.install_dir,
        env=dict(environment),
        instances=settings.instances,
        restart_policy=RestartPolicy(
            autorestart=True,
            max_restarts=settings.max_restarts,
            min_uptime=settings.min_uptime,
            restart_delay_ms=settings.restart_delay_ms,
        ),
        max_memory_restart=settings.max_memory_restart,
        error_file=str(log_dir / "err.log"),
        out_file=str(log_dir / "out.log"),
        log_file=str(log_dir / "combined.log"),
    )


class SupervisorConfigurator:
    """
    Registers the application with pm2.

    Flow:
    1. Remove any existing registration of the same name (frees the port)
    2. Manual start outside pm2, bounded by a timeout, until the port is
       bound by that very process; always terminated afterwards
    3. Write the ecosystem file, start, save, register for boot
    """

    def __init__(
        self,
        host: Host,
        client: Pm2Client,
        config_path: Path,
        runtime_binary: str = "node",
        manual_start_timeout: float = 10.0,
        poll_interval: float = 0.5,
        register_startup: bool = True,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._host = host
        self._client = client
        self.config_path = Path(config_path)
        self._runtime_binary = runtime_binary
        self._manual_start_timeout = manual_start_timeout
        self._poll_interval = poll_interval
        self._register_startup = register_startup
        self._clock = clock
        self._sleep = sleep

    # ============================================
    # APPLY
    # ============================================

    def apply(self, descriptor: ServiceDescriptor, port: int) -> str:
        if self._client.delete(descriptor.name):
            logger.info(f"[supervisor] replaced existing registration of {descriptor.name}")

        self.manual_start(descriptor, port)

        self._host.ensure_directory(Path(descriptor.error_file).parent)
        self._host.write_file(self.config_path, render_ecosystem(descriptor), mode=DESCRIPTOR_MODE)

        result = self._client.start(self.config_path)
        if not result.ok:
            raise FatalStepError(
                STEP,
                f"pm2 failed to start {descriptor.name}",
                diagnostics=result.output(tail=40),
            )

        registered = self._client.find(descriptor.name)
        if len(registered) != descriptor.instances:
            raise FatalStepError(
                STEP,
                f"expected {descriptor.instances} {descriptor.name} process(es), "
                f"pm2 has {len(registered)}",
                diagnostics=self._client.logs(descriptor.name, lines=40),
            )

        self._client.save()
        if self._register_startup and not self._client.startup_registered():
            startup = self._client.register_startup()
            if not startup.ok:
                logger.warning(f"[supervisor] ⚠️ boot registration failed: {startup.output(tail=5)}")

        logger.info(f"[supervisor] ✅ {descriptor.name} started under pm2")
        return f"{descriptor.name} registered ({descriptor.instances} instance(s))"

    def manual_start(self, descriptor: ServiceDescriptor, port: int) -> str:
        """
        Start the artifact directly and wait for it to bind ``port``.

        Raises:
            FatalStepError: process exited, or port not bound by it in time
        """
        argv = [self._runtime_binary, descriptor.script]
        logger.info(f"[supervisor] manual start: {' '.join(argv)} (up to {self._manual_start_timeout}s)")
        process = self._host.spawn(argv, env=descriptor.env, cwd=descriptor.cwd)
        deadline = self._clock() + self._manual_start_timeout

        try:
            while True:
                exit_code = process.poll()
                if exit_code is not None:
                    raise FatalStepError(
                        STEP,
                        f"manual start exited with code {exit_code} before binding port {port}",
                        diagnostics=process.output(),
                    )

                listeners = self._host.listeners_on(port)
                if any(process.pid in listener.pids for listener in listeners):
                    logger.info(f"[supervisor] ✅ manual start bound port {port}")
                    return f"manual start bound port {port}"

                if self._clock() >= deadline:
                    owners = "\n".join(listener.describe() for listener in listeners)
                    message = f"manual start did not bind port {port} within {self._manual_start_timeout}s"
                    if owners:
                        message += " (port held by another process)"
                    raise FatalStepError(
                        STEP,
                        message,
                        diagnostics="\n".join(part for part in (owners, process.output()) if part),
                    )

                self._sleep(self._poll_interval)
        finally:
            process.terminate()

    # ============================================
    # LIFECYCLE
    # ============================================

    def restart(self, name: str) -> str:
        if not self._client.find(name):
            if not self._host.exists(self.config_path):
                raise NotDeployedError(f"{name} is not registered with pm2 and no ecosystem file exists")
            result = self._client.start(self.config_path)
        else:
            result = self._client.restart(name)

        if not result.ok:
            raise FatalStepError(STEP, f"pm2 could not restart {name}", diagnostics=result.output(tail=40))
        logger.info(f"[supervisor] ✅ restarted {name}")
        return f"{name} restarted"

    def stop(self, name: str) -> str:
        if not self._client.delete(name):
            logger.info(f"[supervisor] {name} was not registered")
            return f"{name} was not registered"
        self._client.save()
        return f"{name} removed from pm2"

    def status(self, name: str) -> List[Pm2Process]:
        return self._client.find(name)

    def logs(self, name: str, lines: int = 50) -> str:
        return self._client.logs(name, lines=lines)
