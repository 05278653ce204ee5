# deployment_engine/credentials/generator.py
"""Random database passwords and session secrets."""

import logging
import secrets
import string
from dataclasses import replace
from typing import Optional, Tuple

from deployment_engine.core.models import Credentials

logger = logging.getLogger(__name__)


# Letters and digits only: no '=', '+', '/' or anything else that needs
# quoting in a shell, a dotenv file or a connection URL.
PASSWORD_ALPHABET = string.ascii_letters + string.digits


class CredentialGenerator:
    """
    Produces credentials from a random source. No side effects.

    Args:
        password_length: Characters in the database password
        session_secret_bytes: Entropy of the session secret (hex encoded)
        rng: Random source; defaults to the OS CSPRNG
    """

    def __init__(
        self,
        password_length: int = 16,
        session_secret_bytes: int = 32,
        rng: Optional[secrets.SystemRandom] = None,
    ):
        self.password_length = password_length
        self.session_secret_bytes = session_secret_bytes
        self._rng = rng or secrets.SystemRandom()

    def password(self) -> str:
        return "".join(self._rng.choice(PASSWORD_ALPHABET) for _ in range(self.password_length))

    def session_secret(self) -> str:
        bits = self._rng.getrandbits(self.session_secret_bytes * 8)
        return format(bits, f"0{self.session_secret_bytes * 2}x")

    def generate(
        self,
        db_name: str,
        db_user: str,
        db_host: str = "localhost",
        db_port: int = 5432,
    ) -> Credentials:
        return Credentials(
            db_name=db_name,
            db_user=db_user,
            db_password=self.password(),
            session_secret=self.session_secret(),
            db_host=db_host,
            db_port=db_port,
        )

    def resolve(
        self,
        db_name: str,
        db_user: str,
        db_host: str = "localhost",
        db_port: int = 5432,
        existing: Optional[Credentials] = None,
        preserve: bool = False,
    ) -> Tuple[Credentials, bool]:
        """
        Return (credentials, freshly_generated).

        Existing credentials are only reused in preserve mode, and only when
        they belong to the same database and role.
        """
        if preserve and existing is not None:
            if existing.db_name == db_name and existing.db_user == db_user:
                logger.info("[credentials] reusing credentials from environment descriptor")
                return replace(existing, db_host=db_host, db_port=db_port), False
            logger.warning(
                "[credentials] existing credentials belong to "
                f"{existing.db_user}@{existing.db_name}, generating new ones"
            )

        logger.info("[credentials] generating new credentials")
        return self.generate(db_name, db_user, db_host=db_host, db_port=db_port), True

    def rotate_password(self, credentials: Credentials) -> Credentials:
        """New database password, same session secret."""
        return replace(credentials, db_password=self.password())
