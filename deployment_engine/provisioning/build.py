# deployment_engine/provisioning/build.py
"""Build pipeline: dependencies, compile under a memory ceiling, artifact check."""

import logging
from pathlib import Path
from typing import Dict, List, Optional

from deployment_engine.core.errors import FatalStepError
from deployment_engine.infrastructure.host import Host
from deployment_engine.infrastructure.runner import CommandResult

logger = logging.getLogger(__name__)


DEPENDENCIES_STEP = "dependencies"
BUILD_STEP = "build"
MIN_HEAP_MB = 256


class BuildPipeline:
    """
    Installs dependencies and compiles the application bundle.

    The compiler runs with ``NODE_OPTIONS=--max-old-space-size=<ceiling>``
    and a wall-clock timeout. A timeout or failure gets exactly one retry
    with a lower ceiling. The artifact must exist and be non-empty.
    """

    def __init__(
        self,
        host: Host,
        install_dir: Path,
        artifact_path: Path,
        install_command: List[str],
        build_command: List[str],
        memory_mb: int = 4096,
        fallback_memory_mb: int = 2048,
        build_timeout: float = 600,
        fallback_timeout: float = 300,
        install_timeout: float = 900,
        low_memory_threshold_mb: int = 1000,
    ):
        self._host = host
        self._install_dir = Path(install_dir)
        self.artifact_path = Path(artifact_path)
        self._install_command = list(install_command)
        self._build_command = list(build_command)
        self._memory_mb = memory_mb
        self._fallback_memory_mb = fallback_memory_mb
        self._build_timeout = build_timeout
        self._fallback_timeout = fallback_timeout
        self._install_timeout = install_timeout
        self._low_memory_threshold_mb = low_memory_threshold_mb

    # ============================================
    # DEPENDENCIES
    # ============================================

    def install_dependencies(self) -> str:
        logger.info(f"[build] installing dependencies: {' '.join(self._install_command)}")
        result = self._host.run(
            self._install_command,
            cwd=self._install_dir,
            timeout=self._install_timeout,
            mutating=True,
        )
        if not result.ok:
            raise FatalStepError(
                DEPENDENCIES_STEP,
                f"dependency install failed ({self._reason(result)})",
                diagnostics=result.output(tail=40),
            )
        logger.info("[build] ✅ dependencies installed")
        return "dependencies installed"

    # ============================================
    # COMPILE
    # ============================================

    def memory_ceiling(self) -> int:
        """Configured ceiling, lowered on hosts below the low-memory threshold."""
        total = self._host.memory_total_mb()
        if total is None or total >= self._low_memory_threshold_mb:
            return self._memory_mb

        lowered = min(self._memory_mb, max(MIN_HEAP_MB, total * 3 // 4))
        logger.warning(
            f"[build] ⚠️ low memory detected ({total}MB < {self._low_memory_threshold_mb}MB), "
            f"build ceiling lowered to {lowered}MB"
        )
        return lowered

    def fallback_ceiling(self, ceiling: int) -> int:
        return max(MIN_HEAP_MB, min(self._fallback_memory_mb, ceiling // 2))

    def build(self, env: Optional[Dict[str, str]] = None) -> str:
        ceiling = self.memory_ceiling()
        result = self._compile(ceiling, self._build_timeout, env)

        if not result.ok:
            fallback = self.fallback_ceiling(ceiling)
            logger.warning(
                f"[build] build {self._reason(result)} with {ceiling}MB, "
                f"retrying once with {fallback}MB"
            )
            result = self._compile(fallback, self._fallback_timeout, env)
            if not result.ok:
                raise FatalStepError(
                    BUILD_STEP,
                    f"build failed after retry ({self._reason(result)})",
                    diagnostics=result.output(tail=40),
                )
            ceiling = fallback

        self.verify_artifact(result)
        logger.info(f"[build] ✅ built {self.artifact_path} ({ceiling}MB ceiling)")
        return f"built with {ceiling}MB ceiling"

    def artifact_ok(self) -> bool:
        try:
            return self.artifact_path.is_file() and self.artifact_path.stat().st_size > 0
        except OSError:
            return False

    def verify_artifact(self, result: Optional[CommandResult] = None) -> None:
        if self.artifact_ok():
            return
        raise FatalStepError(
            BUILD_STEP,
            f"build artifact missing or empty: {self.artifact_path}",
            diagnostics=result.output(tail=40) if result else "",
        )

    def _compile(self, ceiling: int, timeout: float, env: Optional[Dict[str, str]]) -> CommandResult:
        build_env = dict(env or {})
        build_env["NODE_OPTIONS"] = f"--max-old-space-size={ceiling}"
        logger.info(f"[build] {' '.join(self._build_command)} (ceiling {ceiling}MB, timeout {timeout}s)")
        return self._host.run(
            self._build_command,
            cwd=self._install_dir,
            env=build_env,
            timeout=timeout,
            mutating=True,
        )

    @staticmethod
    def _reason(result: CommandResult) -> str:
        return "timed out" if result.timed_out else f"exit {result.returncode}"
