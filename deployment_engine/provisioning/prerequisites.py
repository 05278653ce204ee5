# deployment_engine/provisioning/prerequisites.py
"""Prerequisite installer: packages, runtime, supervisor, services."""

import logging
import re
from typing import List, Optional

from deployment_engine.core.errors import FatalStepError
from deployment_engine.infrastructure.host import Host

logger = logging.getLogger(__name__)


STEP = "prerequisites"
NODE_VERSION_RE = re.compile(r"v?(\d+)\.")
APT_ENV = ["env", "DEBIAN_FRONTEND=noninteractive"]


class PrerequisiteInstaller:
    """
    Makes sure the database engine, reverse proxy, language runtime and
    process supervisor are installed and their services are running.

    Checks first, installs only what is missing: on a provisioned host
    nothing mutating is run.
    """

    def __init__(
        self,
        host: Host,
        system_packages: List[str],
        services: Optional[List[str]] = None,
        runtime_binary: str = "node",
        node_min_major: int = 18,
        node_setup_url: str = "https://deb.nodesource.com/setup_20.x",
        pm2_binary: str = "pm2",
        package_timeout: float = 900,
    ):
        self._host = host
        self._system_packages = list(system_packages)
        self._services = list(services) if services is not None else ["postgresql", "nginx"]
        self._runtime_binary = runtime_binary
        self._node_min_major = node_min_major
        self._node_setup_url = node_setup_url
        self._pm2_binary = pm2_binary
        self._package_timeout = package_timeout
        self._apt_updated = False

    def ensure(self) -> str:
        """Converge. Returns a one-line summary of what was done."""
        actions = []

        missing = self.missing_packages()
        if missing:
            self._apt_install(missing)
            actions.append(f"installed {', '.join(missing)}")

        if not self._runtime_ok():
            self._install_runtime()
            actions.append("installed nodejs")

        if self._host.which(self._pm2_binary) is None:
            self._run(
                ["npm", "install", "-g", "pm2"],
                "failed to install pm2",
            )
            actions.append("installed pm2")

        for service in self._services:
            if not self._service_running(service):
                self._run(
                    ["systemctl", "enable", "--now", service],
                    f"failed to start {service}",
                    timeout=120,
                )
                actions.append(f"started {service}")

        if not actions:
            logger.info("[prerequisites] ✅ everything already present")
            return "all prerequisites present"

        summary = "; ".join(actions)
        logger.info(f"[prerequisites] ✅ {summary}")
        return summary

    # ============================================
    # CHECKS
    # ============================================

    def missing_packages(self) -> List[str]:
        missing = []
        for package in self._system_packages:
            result = self._host.run(
                ["dpkg-query", "-W", "-f=${Status}", package],
                timeout=30,
            )
            if not (result.ok and "install ok installed" in result.stdout):
                missing.append(package)
        if missing:
            logger.info(f"[prerequisites] missing packages: {', '.join(missing)}")
        return missing

    def node_major(self) -> Optional[int]:
        if self._host.which(self._runtime_binary) is None:
            return None
        result = self._host.run([self._runtime_binary, "--version"], timeout=30)
        match = NODE_VERSION_RE.match(result.stdout.strip()) if result.ok else None
        return int(match.group(1)) if match else None

    def _runtime_ok(self) -> bool:
        major = self.node_major()
        if major is None:
            logger.info(f"[prerequisites] {self._runtime_binary} not found")
            return False
        if major < self._node_min_major:
            logger.info(
                f"[prerequisites] {self._runtime_binary} v{major} is older than "
                f"v{self._node_min_major}"
            )
            return False
        return True

    def _service_running(self, service: str) -> bool:
        enabled = self._host.run(["systemctl", "is-enabled", service], timeout=30)
        active = self._host.run(["systemctl", "is-active", service], timeout=30)
        return enabled.stdout.strip() == "enabled" and active.stdout.strip() == "active"

    # ============================================
    # INSTALLS
    # ============================================

    def _apt_update(self) -> None:
        if self._apt_updated:
            return
        self._run(APT_ENV + ["apt-get", "update", "-y"], "apt-get update failed")
        self._apt_updated = True

    def _apt_install(self, packages: List[str]) -> None:
        self._apt_update()
        self._run(
            APT_ENV + ["apt-get", "install", "-y", *packages],
            f"failed to install {', '.join(packages)}",
        )

    def _install_runtime(self) -> None:
        self._run(
            ["bash", "-c", f"curl -fsSL {self._node_setup_url} | bash -"],
            "failed to configure the nodejs package source",
        )
        self._apt_updated = False
        self._apt_install(["nodejs"])

    def _run(self, argv: List[str], message: str, timeout: Optional[float] = None) -> None:
        result = self._host.run(
            argv,
            timeout=timeout or self._package_timeout,
            privileged=True,
            mutating=True,
        )
        if not result.ok:
            raise FatalStepError(STEP, message, diagnostics=result.output(tail=40))
