# deployment_engine/provisioning/proxy.py
"""Reverse proxy configurator (nginx) with validate-before-swap."""

import logging
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Set

from deployment_engine.core.errors import FatalStepError
from deployment_engine.core.models import ProxyRoute
from deployment_engine.domain.templates import render_proxy_route, render_validation_harness
from deployment_engine.infrastructure.host import Host

logger = logging.getLogger(__name__)


STEP = "proxy"
LISTEN_RE = re.compile(r"^\s*listen\s+([^;]+);", re.MULTILINE)
SERVER_NAME_RE = re.compile(r"^\s*server_name\s+([^;]+);", re.MULTILINE)
PROXY_PASS_RE = re.compile(r"^\s*proxy_pass\s+http://127\.0\.0\.1:(\d+)\s*;", re.MULTILINE)
CERTBOT_MARKER = "# managed by Certbot"


@dataclass
class EnabledSite:
    """A file or symlink in sites-enabled that we removed and may need to put back."""
    path: Path
    link_target: Optional[Path]
    content: Optional[str]


def listen_ports(config: str) -> Set[int]:
    ports = set()
    for match in LISTEN_RE.finditer(config):
        address = match.group(1).split()[0]
        port = address.rsplit(":", 1)[-1]
        if port.isdigit():
            ports.add(int(port))
    return ports


def server_names(config: str) -> Set[str]:
    names = set()
    for match in SERVER_NAME_RE.finditer(config):
        names.update(match.group(1).split())
    return names


def upstream_ports(config: str) -> Set[int]:
    return {int(port) for port in PROXY_PASS_RE.findall(config)}


def has_default_server(config: str, port: int) -> bool:
    for match in LISTEN_RE.finditer(config):
        parts = match.group(1).split()
        if parts[0].rsplit(":", 1)[-1] == str(port) and "default_server" in parts[1:]:
            return True
    return False


class ProxyConfigurator:
    """
    Writes the application's virtual host and reloads nginx.

    The candidate is syntax-checked in isolation before anything under
    /etc/nginx is touched. After the swap the full configuration is
    checked again; a failure there restores the previous files. A failed
    reload is rolled back and reported, but does not fail the run.

    Once certbot has added TLS to the site the file is left as it is while
    it still serves the route's names and upstream port. Anything else
    needs ``replace_certbot`` (the ``ssl`` command): re-rendering drops the
    certificate directives.
    """

    def __init__(
        self,
        host: Host,
        sites_available: Path,
        sites_enabled: Path,
        mime_types: Path,
        error_log: Path,
        nginx_binary: str = "nginx",
        timeout: float = 60,
    ):
        self._host = host
        self._sites_available = Path(sites_available)
        self._sites_enabled = Path(sites_enabled)
        self._mime_types = Path(mime_types)
        self._error_log = Path(error_log)
        self._nginx = nginx_binary
        self._timeout = timeout
        self.last_warning: Optional[str] = None

    def available_path(self, route: ProxyRoute) -> Path:
        return self._sites_available / route.name

    def enabled_path(self, route: ProxyRoute) -> Path:
        return self._sites_enabled / route.name

    # ============================================
    # APPLY
    # ============================================

    def apply(self, route: ProxyRoute, replace_certbot: bool = False) -> str:
        self.last_warning = None
        available = self.available_path(route)
        enabled = self.enabled_path(route)
        previous_content = self._host.read_file(available)
        previous_link = self._host.read_link(enabled)

        if self._keeps_certbot_route(route, previous_content, replace_certbot):
            content = previous_content
        else:
            content = render_proxy_route(route)
            self.validate_candidate(content)

        changed = self._host.write_file(available, content)
        linked = self._host.symlink(available, enabled)
        disabled = self.disable_conflicts(route)

        if not (changed or linked or disabled):
            logger.info(f"[proxy] route {route.name} unchanged")
            return "route unchanged"

        check = self._nginx_test()
        if not check.ok:
            self._restore(available, enabled, previous_content, previous_link, disabled)
            raise FatalStepError(
                STEP,
                "nginx rejected the configuration; previous route restored",
                diagnostics=check.output(tail=40),
            )

        reload = self._reload()
        if not reload.ok:
            self._restore(available, enabled, previous_content, previous_link, disabled)
            self._reload()
            self.last_warning = "nginx reload failed; previous route restored"
            logger.warning(f"[proxy] ⚠️ {self.last_warning}: {reload.output(tail=10)}")
            return self.last_warning

        logger.info(f"[proxy] ✅ :{route.listen_port} -> 127.0.0.1:{route.upstream_port} ({route.server_name})")
        return f"route {route.name} applied"

    def current_server_name(self, name: str) -> Optional[str]:
        """``server_name`` of the managed site on disk, if there is one."""
        config = self._host.read_file(self._sites_available / name)
        match = SERVER_NAME_RE.search(config or "")
        return match.group(1).strip() if match else None

    def validate_candidate(self, content: str) -> None:
        """``nginx -t`` against a throwaway harness that includes only the candidate."""
        with tempfile.TemporaryDirectory(prefix="deployment-engine-nginx-") as workdir:
            candidate = Path(workdir) / "candidate.conf"
            harness = Path(workdir) / "nginx.conf"
            candidate.write_text(content, encoding="utf-8")
            harness.write_text(
                render_validation_harness(candidate, self._mime_types, Path(workdir) / "nginx.pid"),
                encoding="utf-8",
            )
            result = self._host.run(
                [self._nginx, "-t", "-c", harness],
                privileged=True,
                timeout=self._timeout,
            )

        if not result.ok:
            raise FatalStepError(
                STEP,
                "proxy route failed validation; active configuration untouched",
                diagnostics=result.output(tail=40),
            )

    def disable_conflicts(self, route: ProxyRoute) -> List[EnabledSite]:
        """Remove other enabled sites answering the same (port, server name)."""
        if not self._sites_enabled.is_dir():
            return []

        wanted = set(route.server_name.split())
        disabled = []
        for path in sorted(self._sites_enabled.iterdir()):
            if path.name == route.name or path.name.startswith("."):
                continue
            config = self._host.read_file(path) or ""
            if route.listen_port not in listen_ports(config):
                continue

            overlap = wanted & server_names(config)
            default = path.name == "default" or (
                "_" in wanted and has_default_server(config, route.listen_port)
            )
            if not (overlap or default):
                continue

            logger.info(f"[proxy] disabling conflicting site {path.name}")
            disabled.append(
                EnabledSite(
                    path=path,
                    link_target=self._host.read_link(path),
                    content=None if path.is_symlink() else config,
                )
            )
            self._host.remove_file(path)
        return disabled

    # ============================================
    # STATE
    # ============================================

    def is_enabled(self, route: ProxyRoute) -> bool:
        return self._host.read_link(self.enabled_path(route)) is not None

    def is_valid(self) -> bool:
        return self._nginx_test().ok

    def error_log_tail(self, lines: int = 40) -> str:
        return self._host.tail(self._error_log, lines)

    # ============================================
    # INTERNAL
    # ============================================

    def _keeps_certbot_route(self, route: ProxyRoute, config: Optional[str], replace_certbot: bool) -> bool:
        if not config or CERTBOT_MARKER not in config:
            return False

        names = server_names(config)
        ports = upstream_ports(config)
        if set(route.server_name.split()) <= names and ports == {route.upstream_port}:
            logger.info(f"[proxy] {route.name} carries certbot TLS directives; keeping it")
            return True
        if replace_certbot:
            return False

        raise FatalStepError(
            STEP,
            f"{route.name} was edited by certbot for {' '.join(sorted(names))} -> "
            f"{sorted(ports)}; run ssl again to move it to {route.server_name} -> {route.upstream_port}",
        )

    def _nginx_test(self):
        return self._host.run([self._nginx, "-t"], privileged=True, timeout=self._timeout)

    def _reload(self):
        return self._host.run(
            ["systemctl", "reload", "nginx"],
            privileged=True,
            mutating=True,
            timeout=self._timeout,
        )

    def _restore(
        self,
        available: Path,
        enabled: Path,
        previous_content: Optional[str],
        previous_link: Optional[Path],
        disabled: List[EnabledSite],
    ) -> None:
        logger.warning(f"[proxy] restoring previous configuration for {available.name}")
        if previous_content is None:
            self._host.remove_file(available)
        else:
            self._host.write_file(available, previous_content)

        if previous_link is None:
            self._host.remove_file(enabled)
        else:
            self._host.symlink(previous_link, enabled)

        for site in disabled:
            if site.link_target is not None:
                self._host.symlink(site.link_target, site.path)
            elif site.content is not None:
                self._host.write_file(site.path, site.content)
