# deployment_engine/provisioning/backup.py
"""Database dumps with rotation."""

import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, List

from deployment_engine.core.errors import FatalStepError
from deployment_engine.core.models import Credentials
from deployment_engine.infrastructure.host import Host

logger = logging.getLogger(__name__)


STEP = "backup"
RESTORE_STEP = "restore"
BACKUP_PREFIX = "backup_"
BACKUP_SUFFIX = ".sql"


class DatabaseBackup:
    """
    ``pg_dump`` into a timestamped file; keeps the newest ``retention`` dumps.
    ``restore`` replays a dump with ``psql``.
    """

    def __init__(
        self,
        host: Host,
        backup_dir: Path,
        retention: int = 7,
        timeout: float = 900,
        now: Callable[[], datetime] = datetime.now,
    ):
        self._host = host
        self.backup_dir = Path(backup_dir)
        self._retention = retention
        self._timeout = timeout
        self._now = now

    def create(self, credentials: Credentials) -> Path:
        self._host.ensure_directory(self.backup_dir, mode=0o700)
        target = self.backup_dir / f"{BACKUP_PREFIX}{self._now():%Y%m%d_%H%M%S}{BACKUP_SUFFIX}"

        logger.info(f"[backup] dumping {credentials.db_name} to {target}")
        result = self._host.run(
            [
                "pg_dump",
                "-h", credentials.db_host,
                "-p", str(credentials.db_port),
                "-U", credentials.db_user,
                "-f", target,
                credentials.db_name,
            ],
            env={"PGPASSWORD": credentials.db_password},
            timeout=self._timeout,
            mutating=True,
        )
        if not result.ok:
            raise FatalStepError(STEP, "pg_dump failed", diagnostics=result.output(tail=20))

        removed = self.rotate()
        logger.info(f"[backup] ✅ {target.name} (removed {len(removed)} old backup(s))")
        return target

    def restore(self, credentials: Credentials, dump: Path) -> str:
        """Replay ``dump`` into the application database as the application role."""
        dump = Path(dump)
        if not dump.is_file():
            raise FatalStepError(RESTORE_STEP, f"backup file not found: {dump}")

        logger.warning(f"[backup] restoring {credentials.db_name} from {dump}")
        result = self._host.run(
            [
                "psql",
                "-h", credentials.db_host,
                "-p", str(credentials.db_port),
                "-U", credentials.db_user,
                "-d", credentials.db_name,
                "-v", "ON_ERROR_STOP=1",
                "-f", dump,
            ],
            env={"PGPASSWORD": credentials.db_password},
            timeout=self._timeout,
            mutating=True,
        )
        if not result.ok:
            raise FatalStepError(RESTORE_STEP, f"psql could not restore {dump.name}", diagnostics=result.output(tail=20))

        logger.info(f"[backup] ✅ {credentials.db_name} restored from {dump.name}")
        return f"restored {credentials.db_name} from {dump.name}"

    def backups(self) -> List[Path]:
        """Newest first."""
        if not self.backup_dir.is_dir():
            return []
        # Timestamped names sort chronologically
        return sorted(
            self.backup_dir.glob(f"{BACKUP_PREFIX}*{BACKUP_SUFFIX}"),
            key=lambda path: path.name,
            reverse=True,
        )

    def rotate(self) -> List[Path]:
        stale = self.backups()[self._retention:]
        for path in stale:
            self._host.remove_file(path)
        return stale
