# deployment_engine/provisioning/certificates.py
"""TLS certificates via certbot's nginx plugin."""

import logging
from typing import Optional

from deployment_engine.core.errors import FatalStepError
from deployment_engine.infrastructure.host import Host

logger = logging.getLogger(__name__)


STEP = "certificates"
APT_ENV = ["env", "DEBIAN_FRONTEND=noninteractive"]
CERTBOT_PACKAGES = ["certbot", "python3-certbot-nginx"]


class CertificateIssuer:
    """
    Installs certbot if needed and issues (or renews) a certificate for a
    domain whose route is already served by nginx.
    """

    def __init__(self, host: Host, timeout: float = 600):
        self._host = host
        self._timeout = timeout

    def issue(self, domain: str, email: Optional[str] = None) -> str:
        email = email or f"admin@{domain}"
        self.ensure_certbot()

        logger.info(f"[certificates] requesting certificate for {domain}")
        result = self._host.run(
            [
                "certbot", "--nginx",
                "-d", domain,
                "--non-interactive", "--agree-tos",
                "--email", email,
                "--redirect", "--keep-until-expiring",
            ],
            privileged=True,
            mutating=True,
            timeout=self._timeout,
        )
        if not result.ok:
            raise FatalStepError(STEP, f"certbot failed for {domain}", diagnostics=result.output(tail=40))

        self.ensure_renewal()
        logger.info(f"[certificates] ✅ https://{domain}")
        return f"certificate installed for {domain}"

    def ensure_certbot(self) -> None:
        if self._host.which("certbot") is not None:
            return
        logger.info("[certificates] installing certbot")
        for argv in (
            APT_ENV + ["apt-get", "update", "-y"],
            APT_ENV + ["apt-get", "install", "-y", *CERTBOT_PACKAGES],
        ):
            result = self._host.run(argv, privileged=True, mutating=True, timeout=self._timeout)
            if not result.ok:
                raise FatalStepError(STEP, "failed to install certbot", diagnostics=result.output(tail=40))

    def ensure_renewal(self) -> None:
        enabled = self._host.run(["systemctl", "is-enabled", "certbot.timer"], timeout=30)
        if enabled.stdout.strip() == "enabled":
            return
        result = self._host.run(
            ["systemctl", "enable", "--now", "certbot.timer"],
            privileged=True,
            mutating=True,
            timeout=60,
        )
        if not result.ok:
            logger.warning(
                f"[certificates] ⚠️ could not enable certbot.timer, renew manually: "
                f"{result.output(tail=5)}"
            )
