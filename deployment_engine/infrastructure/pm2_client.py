# deployment_engine/infrastructure/pm2_client.py
"""pm2 client for registering and inspecting the application process."""

import getpass
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from deployment_engine.infrastructure.host import Host
from deployment_engine.infrastructure.runner import CommandResult

logger = logging.getLogger(__name__)


@dataclass
class Pm2Process:
    """One entry of ``pm2 jlist``."""
    name: str
    pid: Optional[int]
    status: str
    restarts: int = 0
    memory_bytes: int = 0
    pm_id: Optional[int] = None
    exec_mode: str = "fork_mode"

    @property
    def online(self) -> bool:
        return self.status == "online"

    @property
    def clustered(self) -> bool:
        return self.exec_mode == "cluster_mode"


class Pm2Client:
    """Client for the pm2 command line. pm2 runs as the invoking user."""

    def __init__(self, host: Host, binary: str = "pm2", timeout: float = 60):
        """
        Initialize client.

        Args:
            host: Host used to run commands
            binary: pm2 executable
            timeout: Per-command timeout in seconds
        """
        self._host = host
        self.binary = binary
        self.timeout = timeout

    def processes(self) -> List[Pm2Process]:
        """
        List registered processes.

        Returns:
            Parsed processes, or an empty list if pm2 is unavailable
        """
        result = self._pm2("jlist")
        if not result.ok:
            logger.error(f"[pm2] jlist failed: {result.output(tail=5)}")
            return []
        try:
            raw = json.loads(result.stdout or "[]")
        except json.JSONDecodeError as e:
            logger.error(f"[pm2] unreadable jlist output: {e}")
            return []

        processes = []
        for entry in raw:
            # pm2_env also carries the process environment, which holds secrets
            pm2_env = entry.get("pm2_env", {})
            monit = entry.get("monit", {})
            pid = entry.get("pid")
            processes.append(
                Pm2Process(
                    name=entry.get("name", ""),
                    pid=pid or None,
                    status=pm2_env.get("status", "unknown"),
                    restarts=pm2_env.get("restart_time", 0),
                    memory_bytes=monit.get("memory", 0),
                    pm_id=entry.get("pm_id"),
                    exec_mode=pm2_env.get("exec_mode", "fork_mode"),
                )
            )
        return processes

    def find(self, name: str) -> List[Pm2Process]:
        return [process for process in self.processes() if process.name == name]

    def start(self, config_path: Path) -> CommandResult:
        return self._pm2("start", str(config_path), mutating=True)

    def delete(self, name: str) -> bool:
        """Remove every registration of ``name``. False if there was none."""
        if not self.find(name):
            return False
        result = self._pm2("delete", name, mutating=True)
        if not result.ok:
            logger.error(f"[pm2] delete {name} failed: {result.output(tail=5)}")
            return False
        logger.info(f"[pm2] deleted {name}")
        return True

    def restart(self, name: str) -> CommandResult:
        return self._pm2("restart", name, "--update-env", mutating=True)

    def save(self) -> CommandResult:
        return self._pm2("save", mutating=True)

    def logs(self, name: str, lines: int = 50) -> str:
        result = self._pm2("logs", name, "--lines", str(lines), "--nostream")
        return result.output()

    def startup_registered(self, user: Optional[str] = None) -> bool:
        user = user or getpass.getuser()
        result = self._host.run(["systemctl", "is-enabled", f"pm2-{user}"], timeout=30)
        return result.stdout.strip() == "enabled"

    def register_startup(self, user: Optional[str] = None, home: Optional[Path] = None) -> CommandResult:
        """Install the systemd unit that resurrects the saved process list on boot."""
        user = user or getpass.getuser()
        home = home or Path.home()
        binary = self._host.which(self.binary) or self.binary
        return self._host.run(
            [binary, "startup", "systemd", "-u", user, "--hp", str(home)],
            privileged=True,
            mutating=True,
            timeout=self.timeout,
        )

    def _pm2(self, *args: str, mutating: bool = False) -> CommandResult:
        return self._host.run([self.binary, *args], timeout=self.timeout, mutating=mutating)
