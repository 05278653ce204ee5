# deployment_engine/infrastructure/host.py
"""The single host resource a run owns: commands, files, listeners."""

import getpass
import logging
import os
import re
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from deployment_engine.infrastructure.runner import (
    CommandResult,
    CommandRunner,
    ManagedProcess,
)

logger = logging.getLogger(__name__)


PID_RE = re.compile(r"pid=(\d+)")
PROCESS_NAME_RE = re.compile(r'\("([^"]+)"')
STAGING_IGNORE = (".git", "node_modules")


@dataclass
class Listener:
    """One listening TCP socket as reported by ``ss``."""
    address: str
    port: int
    pids: List[int] = field(default_factory=list)
    processes: List[str] = field(default_factory=list)

    def describe(self) -> str:
        owners = ", ".join(
            f"{name}(pid={pid})" for name, pid in zip(self.processes, self.pids)
        )
        return f"{self.address}:{self.port} {owners or 'unknown owner'}"


def parse_listeners(output: str) -> List[Listener]:
    """
    Parse ``ss -Htlnp`` output.

    Example line:
        LISTEN 0 511 0.0.0.0:80 0.0.0.0:* users:(("nginx",pid=812,fd=6))
    """
    listeners = []
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 4:
            continue
        local = parts[3]
        address, _, port = local.rpartition(":")
        if not port.isdigit():
            continue
        owner = " ".join(parts[5:])
        listeners.append(
            Listener(
                address=address,
                port=int(port),
                pids=[int(pid) for pid in PID_RE.findall(owner)],
                processes=PROCESS_NAME_RE.findall(owner),
            )
        )
    return listeners


class Host:
    """
    Wraps the command runner and the local filesystem.

    Every operation that changes host state is appended to ``mutations``;
    a re-run against an already-converged host leaves it empty.
    """

    def __init__(
        self,
        runner: CommandRunner,
        use_sudo: bool = True,
        command_timeout: float = 120,
        meminfo_path: Path = Path("/proc/meminfo"),
    ):
        self.runner = runner
        self.command_timeout = command_timeout
        self.meminfo_path = Path(meminfo_path)
        self.mutations: List[str] = []
        self._elevate = use_sudo and os.geteuid() != 0

    # ============================================
    # COMMANDS
    # ============================================

    def privileged(self, argv: Sequence[str]) -> List[str]:
        argv = [str(a) for a in argv]
        if self._elevate:
            return ["sudo", "-n", *argv]
        return argv

    def run(
        self,
        argv: Sequence[str],
        *,
        timeout: Optional[float] = None,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[Path] = None,
        input: Optional[str] = None,
        privileged: bool = False,
        mutating: bool = False,
    ) -> CommandResult:
        argv = self.privileged(argv) if privileged else [str(a) for a in argv]
        if mutating:
            self._record(" ".join(argv))
        logger.debug(f"[host] $ {' '.join(argv)}")
        return self.runner.run(
            argv,
            timeout=timeout or self.command_timeout,
            env=env,
            cwd=str(cwd) if cwd else None,
            input=input,
        )

    def spawn(
        self,
        argv: Sequence[str],
        *,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[Path] = None,
    ) -> ManagedProcess:
        logger.debug(f"[host] spawn {' '.join(str(a) for a in argv)}")
        return self.runner.spawn(argv, env=env, cwd=str(cwd) if cwd else None)

    def which(self, binary: str) -> Optional[str]:
        result = self.run(["which", binary], timeout=10)
        if result.ok and result.stdout.strip():
            return result.stdout.strip().splitlines()[0]
        return None

    def _record(self, action: str) -> None:
        self.mutations.append(action)

    # ============================================
    # FILES
    # ============================================

    def read_file(self, path: Path) -> Optional[str]:
        path = Path(path)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except PermissionError:
            if not self._elevate:
                raise
        result = self.run(["cat", path], privileged=True, timeout=10)
        return result.stdout if result.ok else None

    def exists(self, path: Path) -> bool:
        return Path(path).exists()

    def write_file(self, path: Path, content: str, mode: int = 0o644) -> bool:
        """
        Atomically replace ``path`` with ``content``.

        Returns:
            True if the file changed, False if it already had this content
        """
        path = Path(path)
        if self.read_file(path) == content and self._mode_of(path) == mode:
            return False

        self._record(f"write {path}")
        fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=self._temp_dir_for(path))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.chmod(tmp, mode)
            if self._needs_privilege(path.parent):
                self._privileged_replace(Path(tmp), path, mode)
            else:
                os.replace(tmp, path)
        finally:
            if os.path.exists(tmp):
                os.unlink(tmp)
        logger.debug(f"[host] wrote {path}")
        return True

    def remove_file(self, path: Path) -> bool:
        path = Path(path)
        if not path.exists() and not path.is_symlink():
            return False
        self._record(f"remove {path}")
        if self._needs_privilege(path.parent):
            self._check(self.run(["rm", "-f", path], privileged=True))
        else:
            path.unlink()
        return True

    def ensure_directory(self, path: Path, mode: int = 0o755) -> bool:
        path = Path(path)
        if path.is_dir():
            return False
        self._record(f"mkdir {path}")
        if self._needs_privilege(self._existing_parent(path)):
            # Created as root, handed to the invoking user like `sudo mkdir && sudo chown`
            self._check(self.run(["mkdir", "-p", "-m", format(mode, "o"), path], privileged=True))
            self._check(self.run(["chown", f"{getpass.getuser()}:", path], privileged=True))
        else:
            path.mkdir(parents=True, mode=mode)
        return True

    def symlink(self, target: Path, link: Path) -> bool:
        """Point ``link`` at ``target``, replacing whatever was there."""
        target, link = Path(target), Path(link)
        if link.is_symlink() and Path(os.readlink(link)) == target:
            return False

        self._record(f"link {link} -> {target}")
        if self._needs_privilege(link.parent):
            self._check(self.run(["ln", "-sfn", target, link], privileged=True))
            return True

        staged = link.with_name(f".{link.name}.tmp")
        if staged.is_symlink() or staged.exists():
            staged.unlink()
        os.symlink(target, staged)
        os.replace(staged, link)
        return True

    def read_link(self, link: Path) -> Optional[Path]:
        link = Path(link)
        if link.is_symlink():
            return Path(os.readlink(link))
        return None

    def stage_tree(self, source: Path, destination: Path) -> None:
        """Copy an application checkout into place, minus VCS and dependencies."""
        self._record(f"stage {source} -> {destination}")
        if self._needs_privilege(self._existing_parent(Path(destination))):
            argv = ["rsync", "-a"]
            for pattern in STAGING_IGNORE:
                argv += ["--exclude", pattern]
            argv += [f"{source}/", f"{destination}/"]
            self._check(self.run(argv, privileged=True, timeout=600))
            return
        shutil.copytree(
            source,
            destination,
            ignore=shutil.ignore_patterns(*STAGING_IGNORE),
            dirs_exist_ok=True,
            symlinks=True,
        )

    def tail(self, path: Path, lines: int = 40) -> str:
        path = Path(path)
        text = self.read_file(path)
        if text is None:
            return ""
        return "\n".join(text.splitlines()[-lines:])

    def _mode_of(self, path: Path) -> Optional[int]:
        try:
            return path.stat().st_mode & 0o777
        except OSError:
            return None

    def _existing_parent(self, path: Path) -> Path:
        while not path.exists() and path != path.parent:
            path = path.parent
        return path

    def _needs_privilege(self, directory: Path) -> bool:
        return self._elevate and not os.access(self._existing_parent(directory), os.W_OK)

    def _temp_dir_for(self, path: Path) -> Optional[str]:
        if self._needs_privilege(path.parent):
            return None
        return str(path.parent)

    def _privileged_replace(self, tmp: Path, path: Path, mode: int) -> None:
        # Copy next to the destination first so the final mv is a rename
        staged = path.with_name(f".{path.name}.staged")
        self._check(self.run(["cp", tmp, staged], privileged=True))
        self._check(self.run(["chmod", format(mode, "o"), staged], privileged=True))
        self._check(self.run(["mv", "-f", staged, path], privileged=True))

    def _check(self, result: CommandResult) -> None:
        if not result.ok:
            raise OSError(f"{' '.join(result.argv)} failed: {result.output(tail=10)}")

    # ============================================
    # SYSTEM STATE
    # ============================================

    def memory_total_mb(self) -> Optional[int]:
        try:
            text = self.meminfo_path.read_text()
        except OSError:
            return None
        for line in text.splitlines():
            if line.startswith("MemTotal:"):
                return int(line.split()[1]) // 1024
        return None

    def listeners(self) -> List[Listener]:
        result = self.run(["ss", "-Htlnp"], privileged=True, timeout=10)
        if not result.ok:
            logger.warning(f"[host] ss failed: {result.output(tail=5)}")
            return []
        return parse_listeners(result.stdout)

    def listeners_on(self, port: int) -> List[Listener]:
        return [listener for listener in self.listeners() if listener.port == port]
