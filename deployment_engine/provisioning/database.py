# deployment_engine/provisioning/database.py
"""Database provisioner: role, database, grants, schema."""

import logging
from pathlib import Path
from typing import Callable, Dict, List, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import NullPool

from deployment_engine.core.errors import FatalStepError, RecoverableStepError
from deployment_engine.core.models import Credentials
from deployment_engine.core.validation import validate_database_identifiers
from deployment_engine.infrastructure.host import Host

logger = logging.getLogger(__name__)


STEP = "database"

# Returns None when the connection works, otherwise the error text
ConnectionChecker = Callable[[Credentials], Optional[str]]


def sqlalchemy_connection_checker(connect_timeout: int = 5) -> ConnectionChecker:
    """Trial connection with SQLAlchemy: ``SELECT 1`` over a throwaway engine."""

    def check(credentials: Credentials) -> Optional[str]:
        url = URL.create(
            "postgresql+psycopg2",
            username=credentials.db_user,
            password=credentials.db_password,
            host=credentials.db_host,
            port=credentials.db_port,
            database=credentials.db_name,
        )
        engine = create_engine(
            url,
            poolclass=NullPool,
            connect_args={"connect_timeout": connect_timeout},
        )
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return None
        except SQLAlchemyError as e:
            return str(getattr(e, "orig", None) or e)
        finally:
            engine.dispose()

    return check


def _literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class DatabaseProvisioner:
    """
    Ensures the application database and its owning role exist with the
    given password, then applies the schema.

    Admin statements go through ``psql`` as the postgres superuser; SQL is
    passed on stdin so passwords never show up in a process listing.
    """

    def __init__(
        self,
        host: Host,
        checker: ConnectionChecker,
        admin_command: List[str],
        migrate_command: List[str],
        command_timeout: float = 120,
        migrate_timeout: float = 300,
    ):
        self._host = host
        self._checker = checker
        self._admin_command = list(admin_command)
        self._migrate_command = list(migrate_command)
        self._command_timeout = command_timeout
        self._migrate_timeout = migrate_timeout

    # ============================================
    # PUBLIC
    # ============================================

    def provision(self, credentials: Credentials, reset: bool = False) -> str:
        """
        Ensure role + database, then prove the credentials work.

        A failed trial connection triggers one drop-and-recreate; a second
        failure is fatal.
        """
        validate_database_identifiers(credentials.db_name, credentials.db_user)

        self.ensure(credentials, reset=reset)
        error = self._checker(credentials)
        if error is None:
            logger.info(f"[database] ✅ {credentials.db_user}@{credentials.db_name} reachable")
            return "reset and verified" if reset else "verified"

        logger.warning(f"[database] trial connection failed, resetting: {error}")
        try:
            self._retry_after_reset(credentials)
        except RecoverableStepError as e:
            raise FatalStepError(STEP, "database unreachable after reset", diagnostics=e.diagnostics)

        logger.info(f"[database] ✅ {credentials.db_user}@{credentials.db_name} reachable after reset")
        return "verified after reset"

    def ensure(self, credentials: Credentials, reset: bool = False) -> None:
        name, user = credentials.db_name, credentials.db_user

        if reset:
            logger.warning(f"[database] dropping {name} and role {user}")
            self._psql(f"DROP DATABASE IF EXISTS {name};")
            self._psql(f"DROP ROLE IF EXISTS {user};")

        password = _literal(credentials.db_password)
        if self.role_exists(user):
            self._psql(f"ALTER ROLE {user} WITH LOGIN PASSWORD {password};")
        else:
            logger.info(f"[database] creating role {user}")
            self._psql(f"CREATE ROLE {user} WITH LOGIN PASSWORD {password};")

        if not self.database_exists(name):
            logger.info(f"[database] creating database {name}")
            self._psql(f"CREATE DATABASE {name} OWNER {user};")

        self._psql(f"GRANT ALL PRIVILEGES ON DATABASE {name} TO {user};")
        self._psql(f"GRANT ALL ON SCHEMA public TO {user};", database=name)

    def is_reachable(self, credentials: Credentials) -> bool:
        error = self._checker(credentials)
        if error is not None:
            logger.info(f"[database] not reachable with current credentials: {error}")
        return error is None

    def role_exists(self, user: str) -> bool:
        return self._query(f"SELECT 1 FROM pg_roles WHERE rolname = {_literal(user)};") == "1"

    def database_exists(self, name: str) -> bool:
        return self._query(f"SELECT 1 FROM pg_database WHERE datname = {_literal(name)};") == "1"

    def migrate(self, env: Dict[str, str], cwd: Path) -> str:
        """Run the application's schema tool. Non-zero exit is fatal."""
        logger.info(f"[database] applying schema: {' '.join(self._migrate_command)}")
        result = self._host.run(
            self._migrate_command,
            env=env,
            cwd=cwd,
            timeout=self._migrate_timeout,
            mutating=True,
        )
        if not result.ok:
            reason = "timed out" if result.timed_out else f"exit {result.returncode}"
            raise FatalStepError(
                STEP,
                f"schema migration failed ({reason})",
                diagnostics=result.output(tail=40),
            )
        logger.info("[database] ✅ schema applied")
        return "schema applied"

    # ============================================
    # INTERNAL
    # ============================================

    def _retry_after_reset(self, credentials: Credentials) -> None:
        self.ensure(credentials, reset=True)
        error = self._checker(credentials)
        if error is not None:
            raise RecoverableStepError(STEP, "trial connection failed", diagnostics=error)

    def _psql_argv(self, database: Optional[str]) -> List[str]:
        argv = [*self._admin_command, "-v", "ON_ERROR_STOP=1", "-qtA"]
        if database:
            argv += ["-d", database]
        return argv

    def _psql(self, sql: str, database: Optional[str] = None) -> None:
        result = self._host.run(
            self._psql_argv(database),
            input=sql,
            timeout=self._command_timeout,
            mutating=True,
        )
        if not result.ok:
            # Statement keyword only: the rest may hold a password
            statement = " ".join(sql.split()[:2])
            raise FatalStepError(
                STEP,
                f"{statement} failed",
                diagnostics=result.output(tail=20),
            )

    def _query(self, sql: str) -> str:
        result = self._host.run(
            self._psql_argv(None),
            input=sql,
            timeout=self._command_timeout,
        )
        if not result.ok:
            raise FatalStepError(STEP, "cannot query PostgreSQL", diagnostics=result.output(tail=20))
        return result.stdout.strip()
