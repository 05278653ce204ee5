# deployment_engine/provisioning/firewall.py
"""Host firewall (ufw)."""

import logging
from typing import Iterable, List

from deployment_engine.core.errors import FatalStepError
from deployment_engine.infrastructure.host import Host

logger = logging.getLogger(__name__)


STEP = "firewall"


class FirewallConfigurator:
    """Opens the given TCP ports and enables ufw. Reads ``ufw status`` first."""

    def __init__(self, host: Host, ports: Iterable[int], timeout: float = 60):
        self._host = host
        self._ports = sorted(set(ports))
        self._timeout = timeout

    def ensure(self) -> str:
        if self._host.which("ufw") is None:
            logger.warning("[firewall] ⚠️ ufw not installed, skipping")
            return "ufw not installed"

        status = self._ufw("status", mutating=False)
        if not status.ok:
            raise FatalStepError(STEP, "cannot read firewall status", diagnostics=status.output(tail=20))

        missing = self.missing_ports(status.stdout)
        for port in missing:
            logger.info(f"[firewall] allowing {port}/tcp")
            self._checked(self._ufw("allow", f"{port}/tcp"), f"ufw allow {port}/tcp failed")

        active = "Status: active" in status.stdout
        if not active:
            logger.info("[firewall] enabling ufw")
            self._checked(self._ufw("--force", "enable"), "ufw enable failed")

        if not missing and active:
            logger.info("[firewall] ✅ already configured")
            return "firewall OK"

        opened = ", ".join(str(port) for port in missing) or "none"
        logger.info(f"[firewall] ✅ opened: {opened}")
        return f"opened: {opened}" + ("" if active else "; enabled")

    def missing_ports(self, status_output: str) -> List[int]:
        allowed = set()
        for line in status_output.splitlines():
            parts = line.split()
            if len(parts) >= 2 and "ALLOW" in parts:
                allowed.add(parts[0])
        return [
            port for port in self._ports
            if f"{port}/tcp" not in allowed and str(port) not in allowed
        ]

    def _ufw(self, *args: str, mutating: bool = True):
        return self._host.run(["ufw", *args], privileged=True, mutating=mutating, timeout=self._timeout)

    @staticmethod
    def _checked(result, message: str) -> None:
        if not result.ok:
            raise FatalStepError(STEP, message, diagnostics=result.output(tail=20))
