# deployment_engine/infrastructure/runner.py
"""Command execution against the local host."""

import logging
import os
import signal
import subprocess
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Outcome of one external command."""
    argv: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    def output(self, tail: Optional[int] = None) -> str:
        """Combined stdout/stderr, optionally only the last ``tail`` lines."""
        text = "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)
        if tail is not None:
            text = "\n".join(text.splitlines()[-tail:])
        return text


class ManagedProcess(ABC):
    """A short-lived background process started outside the supervisor."""

    @property
    @abstractmethod
    def pid(self) -> int:
        pass

    @abstractmethod
    def poll(self) -> Optional[int]:
        """Return the exit code, or None while still running."""
        pass

    @abstractmethod
    def terminate(self, grace: float = 5.0) -> None:
        """Stop the process (and its children). Safe to call twice."""
        pass

    @abstractmethod
    def output(self, tail: int = 40) -> str:
        pass


class CommandRunner(ABC):
    """Abstract command runner."""

    @abstractmethod
    def run(
        self,
        argv: Sequence[str],
        *,
        timeout: float,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
        input: Optional[str] = None,
    ) -> CommandResult:
        pass

    @abstractmethod
    def spawn(
        self,
        argv: Sequence[str],
        *,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
    ) -> ManagedProcess:
        pass


# ============================================
# SUBPROCESS IMPLEMENTATION
# ============================================

def _decode(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def _merged_env(env: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
    if env is None:
        return None
    return {**os.environ, **env}


class PopenProcess(ManagedProcess):
    """Background process whose output goes to a temporary file."""

    def __init__(self, argv: Sequence[str], env=None, cwd=None):
        self._argv = list(argv)
        self._log = tempfile.TemporaryFile(mode="w+b")
        self._proc = subprocess.Popen(
            self._argv,
            stdout=self._log,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            env=_merged_env(env),
            cwd=cwd,
            start_new_session=True,
        )

    @property
    def pid(self) -> int:
        return self._proc.pid

    def poll(self) -> Optional[int]:
        return self._proc.poll()

    def terminate(self, grace: float = 5.0) -> None:
        if self._proc.poll() is not None:
            return
        self._signal_group(signal.SIGTERM)
        try:
            self._proc.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            logger.warning(f"[runner] pid {self.pid} ignored SIGTERM, killing")
            self._signal_group(signal.SIGKILL)
            self._proc.wait(timeout=grace)

    def _signal_group(self, sig) -> None:
        try:
            os.killpg(os.getpgid(self._proc.pid), sig)
        except ProcessLookupError:
            pass

    def output(self, tail: int = 40) -> str:
        self._log.flush()
        self._log.seek(0)
        text = _decode(self._log.read())
        return "\n".join(text.splitlines()[-tail:])


class SubprocessRunner(CommandRunner):
    """Runs commands with ``subprocess``; every call is bounded by a timeout."""

    def run(
        self,
        argv: Sequence[str],
        *,
        timeout: float,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
        input: Optional[str] = None,
    ) -> CommandResult:
        argv = [str(a) for a in argv]
        try:
            completed = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=timeout,
                env=_merged_env(env),
                cwd=cwd,
                input=input,
            )
        except subprocess.TimeoutExpired as e:
            logger.warning(f"[runner] timed out after {timeout}s: {argv[0]}")
            return CommandResult(
                argv=argv,
                returncode=-1,
                stdout=_decode(e.stdout),
                stderr=_decode(e.stderr),
                timed_out=True,
            )
        except FileNotFoundError as e:
            return CommandResult(argv=argv, returncode=127, stderr=str(e))

        return CommandResult(
            argv=argv,
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )

    def spawn(
        self,
        argv: Sequence[str],
        *,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
    ) -> ManagedProcess:
        return PopenProcess([str(a) for a in argv], env=env, cwd=cwd)
