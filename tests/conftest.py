#tests\conftest.py

"""Pytest configuration and fixtures.

Nothing here touches the real machine: ``FakeVps`` is a command runner that
answers the handful of commands the engine issues (apt, node, pm2, psql,
nginx, ss, ufw...) from an in-memory model of a small Ubuntu host.
"""

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

import pytest
import requests

from deployment_engine.config import DeploymentSettings
from deployment_engine.container import build_orchestrator
from deployment_engine.core.events import RecordingEventEmitter
from deployment_engine.core.redaction import SecretRegistry
from deployment_engine.infrastructure.host import Host
from deployment_engine.infrastructure.runner import CommandResult, CommandRunner, ManagedProcess


# ============================================
# FAKES
# ============================================

@dataclass
class Call:
    argv: List[str]
    env: Optional[Dict[str, str]] = None
    cwd: Optional[str] = None
    input: Optional[str] = None
    timeout: Optional[float] = None


Handler = Callable[[Call], CommandResult]

_EXPORTS_RE = re.compile(r"module\.exports\s*=\s*(\{.*\})\s*;?\s*$", re.DOTALL)


def load_ecosystem(text: str) -> Dict:
    """Parse an ecosystem file written by render_ecosystem."""
    body = "\n".join(
        line for line in text.splitlines() if not line.lstrip().startswith("//")
    )
    match = _EXPORTS_RE.search(body.strip())
    if not match:
        raise ValueError("not a generated ecosystem file")
    return json.loads(match.group(1))


class FakeProcess(ManagedProcess):
    """Background process that never really runs."""

    def __init__(self, pid: int, exit_code=None, log: str = "", on_terminate=None):
        self._pid = pid
        self.exit_code = exit_code
        self.log = log
        self.terminated = False
        self._on_terminate = on_terminate

    @property
    def pid(self) -> int:
        return self._pid

    def poll(self):
        return self.exit_code

    def terminate(self, grace: float = 5.0) -> None:
        if not self.terminated and self._on_terminate is not None:
            self._on_terminate(self)
        self.terminated = True

    def output(self, tail: int = 40) -> str:
        return self.log


class FakeRunner(CommandRunner):
    """
    Answers commands by argv prefix. The longest matching prefix wins;
    on a tie the handler registered last wins, so tests can override.
    """

    def __init__(self):
        self.calls: List[Call] = []
        self.spawned: List[FakeProcess] = []
        self._handlers: List[Tuple[Tuple[str, ...], Handler]] = []
        self._next_pid = 4000

    def on(self, *prefix, returncode=0, stdout="", stderr="", timed_out=False, handler=None):
        if handler is None:
            def handler(call):
                return CommandResult(
                    argv=call.argv,
                    returncode=returncode,
                    stdout=stdout,
                    stderr=stderr,
                    timed_out=timed_out,
                )
        self._handlers.append((tuple(prefix), handler))

    def run(self, argv, *, timeout, env=None, cwd=None, input=None):
        call = Call([str(a) for a in argv], env=env, cwd=cwd, input=input, timeout=timeout)
        self.calls.append(call)

        best = None
        for prefix, handler in self._handlers:
            if tuple(call.argv[:len(prefix)]) == prefix:
                if best is None or len(prefix) >= len(best[0]):
                    best = (prefix, handler)
        if best is None:
            return CommandResult(argv=call.argv, returncode=127, stderr=f"{call.argv[0]}: command not found")
        return best[1](call)

    def spawn(self, argv, *, env=None, cwd=None):
        process = FakeProcess(self.next_pid())
        self.spawned.append(process)
        return process

    def next_pid(self) -> int:
        self._next_pid += 1
        return self._next_pid

    def commands(self, *prefix) -> List[List[str]]:
        return [call.argv for call in self.calls if tuple(call.argv[:len(prefix)]) == prefix]

    @staticmethod
    def ok(call: Call, stdout: str = "") -> CommandResult:
        return CommandResult(argv=call.argv, returncode=0, stdout=stdout)

    @staticmethod
    def fail(call: Call, stderr: str = "", returncode: int = 1) -> CommandResult:
        return CommandResult(argv=call.argv, returncode=returncode, stderr=stderr)


class FakeClock:
    """Monotonic clock that only moves when someone sleeps."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


UFW_ACTIVE = """Status: active

To                         Action      From
--                         ------      ----
22/tcp                     ALLOW       Anywhere
80/tcp                     ALLOW       Anywhere
443/tcp                    ALLOW       Anywhere
"""


class FakeVps(FakeRunner):
    """A provisioned Ubuntu host: packages present, services up, nginx on :80."""

    def __init__(self, app_port: int = 5000, public_port: int = 80):
        super().__init__()
        self.app_port = app_port
        self.public_port = public_port

        self.binaries = {"node", "npm", "pm2", "ufw", "certbot", "psql", "pg_dump", "nginx"}
        self.packages = {"postgresql", "postgresql-contrib", "nginx", "build-essential", "curl"}
        self.services = {"postgresql", "nginx"}
        self.node_version = "v20.11.1"

        self.listeners: Dict[int, List[Tuple[str, int]]] = {public_port: [("nginx", 812)]}
        self.pm2_apps: List[dict] = []
        self.pm2_start_status = "online"
        self.pm2_log = "server listening"

        self.roles: Dict[str, str] = {}
        self.databases = set()
        self.sql: List[str] = []
        self.restored: List[str] = []
        self.checker_failures = 0

        self.ufw_status = UFW_ACTIVE
        self.nginx_sites: Optional[Path] = None

        self.build_failures = 0
        self.build_writes_artifact = True
        self.build_envs: List[Dict[str, str]] = []
        self.migrate_returncode = 0

        self.manual_start_binds = True
        self.manual_exit_code = None

        self.http_status: Dict[int, int] = {}

        self._register()

    # -------------------------
    # SIMULATED STATE
    # -------------------------

    def bind(self, port: int, name: str, pid: int) -> None:
        self.listeners.setdefault(port, []).append((name, pid))

    def unbind_pid(self, pid: int) -> None:
        for port in list(self.listeners):
            self.listeners[port] = [entry for entry in self.listeners[port] if entry[1] != pid]
            if not self.listeners[port]:
                del self.listeners[port]

    def registrations(self, name: str) -> List[dict]:
        return [app for app in self.pm2_apps if app["name"] == name]

    def crash(self, name: str) -> None:
        for app in self.registrations(name):
            app["status"] = "errored"
            self.unbind_pid(app["pid"])

    def check_connection(self, credentials) -> Optional[str]:
        if self.checker_failures > 0:
            self.checker_failures -= 1
            return "FATAL:  password authentication failed"
        if self.roles.get(credentials.db_user) != credentials.db_password:
            return f'FATAL:  password authentication failed for user "{credentials.db_user}"'
        if credentials.db_name not in self.databases:
            return f'FATAL:  database "{credentials.db_name}" does not exist'
        return None

    def http_get(self, url: str, timeout: float) -> int:
        port = urlsplit(url).port or 80
        if port in self.http_status:
            return self.http_status[port]
        if not self.listeners.get(port):
            raise requests.exceptions.ConnectionError(f"Connection refused: {url}")
        if port == self.public_port:
            return 200 if self.listeners.get(self.app_port) else 502
        return 200

    def spawn(self, argv, *, env=None, cwd=None):
        pid = self.next_pid()
        process = FakeProcess(
            pid,
            exit_code=self.manual_exit_code,
            log="Error: listen EADDRINUSE" if self.manual_exit_code else "server listening",
            on_terminate=lambda p: self.unbind_pid(p.pid),
        )
        if self.manual_start_binds and self.manual_exit_code is None:
            self.bind(int((env or {}).get("PORT", self.app_port)), "node", pid)
        self.spawned.append(process)
        return process

    # -------------------------
    # HANDLERS
    # -------------------------

    def _register(self) -> None:
        apt = ("env", "DEBIAN_FRONTEND=noninteractive", "apt-get")

        self.on("which", handler=self._which)
        self.on("dpkg-query", handler=self._dpkg)
        self.on("node", "--version", handler=lambda c: self.ok(c, self.node_version + "\n"))
        self.on(*apt, "update")
        self.on(*apt, "install", handler=self._apt_install)
        self.on("bash", "-c")
        self.on("npm", "install", "-g", "pm2", handler=self._install_pm2)
        self.on("npm", "install", handler=self._npm_install)
        self.on("npm", "run", "build", handler=self._build)
        self.on("npm", "run", "db:push", handler=self._migrate)

        self.on("systemctl", "is-enabled", handler=self._is_enabled)
        self.on("systemctl", "is-active", handler=self._is_active)
        self.on("systemctl", "enable", "--now", handler=self._enable)
        self.on("systemctl", "reload", "nginx")

        self.on("ss", "-Htlnp", handler=self._ss)
        self.on("psql", handler=self._psql)
        self.on("psql", "-h", handler=self._psql_restore)
        self.on("pg_dump", handler=self._pg_dump)

        self.on("pm2", "jlist", handler=self._pm2_jlist)
        self.on("pm2", "start", handler=self._pm2_start)
        self.on("pm2", "delete", handler=self._pm2_delete)
        self.on("pm2", "restart", handler=self._pm2_restart)
        self.on("pm2", "save")
        self.on("pm2", "logs", handler=lambda c: self.ok(c, self.pm2_log))

        self.on("nginx", "-t", "-c", stderr="nginx: configuration file test is successful")
        self.on("nginx", "-t", stderr="nginx: configuration file /etc/nginx/nginx.conf test is successful")

        self.on("ufw", "status", handler=lambda c: self.ok(c, self.ufw_status))
        self.on("ufw", "allow", handler=self._ufw_allow)
        self.on("ufw", "--force", "enable", handler=self._ufw_enable)

        self.on("certbot", handler=self._certbot)

    def _which(self, call):
        name = call.argv[1]
        if name in self.binaries:
            return self.ok(call, f"/usr/bin/{name}\n")
        return self.fail(call)

    def _dpkg(self, call):
        if call.argv[-1] in self.packages:
            return self.ok(call, "install ok installed")
        return self.fail(call, f"dpkg-query: no packages found matching {call.argv[-1]}")

    def _apt_install(self, call):
        packages = [arg for arg in call.argv[4:] if not arg.startswith("-")]
        self.packages.update(packages)
        if "nodejs" in packages:
            self.binaries.update({"node", "npm"})
            self.node_version = "v20.11.1"
        if "certbot" in packages:
            self.binaries.add("certbot")
        return self.ok(call)

    def _install_pm2(self, call):
        self.binaries.add("pm2")
        return self.ok(call)

    def _npm_install(self, call):
        (Path(call.cwd) / "node_modules").mkdir(parents=True, exist_ok=True)
        return self.ok(call, "added 412 packages")

    def _build(self, call):
        self.build_envs.append(dict(call.env or {}))
        if self.build_failures > 0:
            self.build_failures -= 1
            return self.fail(call, "FATAL ERROR: Reached heap limit Allocation failed", returncode=134)
        if self.build_writes_artifact:
            artifact = Path(call.cwd) / "dist" / "index.js"
            artifact.parent.mkdir(parents=True, exist_ok=True)
            artifact.write_text("console.log('listening');\n")
        return self.ok(call, "vite v5 building for production...")

    def _migrate(self, call):
        if self.migrate_returncode:
            return self.fail(call, 'error: relation "users" already exists', self.migrate_returncode)
        return self.ok(call, "[✓] Changes applied")

    def _is_enabled(self, call):
        unit = call.argv[2]
        if unit in self.services or unit.startswith("pm2-") or unit == "certbot.timer":
            return self.ok(call, "enabled\n")
        return self.fail(call, "", returncode=1)

    def _is_active(self, call):
        if call.argv[2] in self.services:
            return self.ok(call, "active\n")
        return CommandResult(argv=call.argv, returncode=3, stdout="inactive\n")

    def _enable(self, call):
        self.services.add(call.argv[3])
        return self.ok(call)

    def _ss(self, call):
        lines = []
        for port, owners in sorted(self.listeners.items()):
            for name, pid in owners:
                lines.append(
                    f'LISTEN 0      511          0.0.0.0:{port}      0.0.0.0:*    '
                    f'users:(("{name}",pid={pid},fd=6))'
                )
        return self.ok(call, "\n".join(lines) + "\n")

    def _psql(self, call):
        sql = (call.input or "").strip()
        self.sql.append(sql)

        match = re.match(r"SELECT 1 FROM pg_roles WHERE rolname = '(.*)';", sql)
        if match:
            return self.ok(call, "1\n" if match.group(1) in self.roles else "")
        match = re.match(r"SELECT 1 FROM pg_database WHERE datname = '(.*)';", sql)
        if match:
            return self.ok(call, "1\n" if match.group(1) in self.databases else "")
        match = re.match(r"(?:CREATE|ALTER) ROLE (\w+) WITH LOGIN PASSWORD '(.*)';", sql, re.DOTALL)
        if match:
            self.roles[match.group(1)] = match.group(2).replace("''", "'")
            return self.ok(call)
        match = re.match(r"CREATE DATABASE (\w+)", sql)
        if match:
            self.databases.add(match.group(1))
            return self.ok(call)
        match = re.match(r"DROP DATABASE IF EXISTS (\w+)", sql)
        if match:
            self.databases.discard(match.group(1))
            return self.ok(call)
        match = re.match(r"DROP ROLE IF EXISTS (\w+)", sql)
        if match:
            self.roles.pop(match.group(1), None)
            return self.ok(call)
        return self.ok(call)

    def _psql_restore(self, call):
        user = call.argv[call.argv.index("-U") + 1]
        if self.roles.get(user) != (call.env or {}).get("PGPASSWORD"):
            return self.fail(call, f'psql: error: FATAL:  password authentication failed for user "{user}"', returncode=2)
        self.restored.append(Path(call.argv[call.argv.index("-f") + 1]).read_text())
        return self.ok(call)

    def _pg_dump(self, call):
        target = Path(call.argv[call.argv.index("-f") + 1])
        target.write_text("-- PostgreSQL database dump\n")
        return self.ok(call)

    def _pm2_jlist(self, call):
        entries = [
            {
                "name": app["name"],
                "pid": app["pid"] if app["status"] == "online" else 0,
                "pm_id": app["pm_id"],
                "pm2_env": {
                    "status": app["status"],
                    "restart_time": app["restarts"],
                    "exec_mode": app.get("exec_mode", "fork_mode"),
                    "env": app["env"],
                },
                "monit": {"memory": 52428800, "cpu": 0},
            }
            for app in self.pm2_apps
        ]
        return self.ok(call, json.dumps(entries))

    def _pm2_start(self, call):
        config = load_ecosystem(Path(call.argv[2]).read_text())
        for app in config["apps"]:
            port = int(app["env"]["PORT"])
            for _ in range(app["instances"]):
                pid = self.next_pid()
                self.pm2_apps.append({
                    "name": app["name"],
                    "pid": pid,
                    "pm_id": len(self.pm2_apps),
                    "port": port,
                    "status": self.pm2_start_status,
                    "restarts": 0,
                    "env": app["env"],
                    "exec_mode": f"{app['exec_mode']}_mode",
                })
                if self.pm2_start_status == "online":
                    self.bind(port, "node", pid)
        return self.ok(call, "[PM2] App launched")

    def _pm2_delete(self, call):
        name = call.argv[2]
        for app in self.registrations(name):
            self.unbind_pid(app["pid"])
        self.pm2_apps = [app for app in self.pm2_apps if app["name"] != name]
        return self.ok(call, f"[PM2] Applying action deleteProcessId on app [{name}]")

    def _pm2_restart(self, call):
        name = call.argv[2]
        for app in self.registrations(name):
            self.unbind_pid(app["pid"])
            app["pid"] = self.next_pid()
            app["status"] = "online"
            app["restarts"] += 1
            self.bind(app["port"], "node", app["pid"])
        return self.ok(call, f"[PM2] Applying action restartProcessId on app [{name}]")

    def _ufw_allow(self, call):
        self.ufw_status += f"{call.argv[2]:<27}ALLOW       Anywhere\n"
        return self.ok(call, "Rule added")

    def _ufw_enable(self, call):
        self.ufw_status = self.ufw_status.replace("Status: inactive", "Status: active")
        return self.ok(call, "Firewall is active and enabled on system startup")

    def _certbot(self, call):
        """Edit the matching site the way the nginx plugin does."""
        domain = call.argv[call.argv.index("-d") + 1]
        for site in sorted(self.nginx_sites.iterdir()) if self.nginx_sites else []:
            text = site.read_text()
            if f"server_name {domain};" not in text or "managed by Certbot" in text:
                continue
            text = text.replace(
                "    listen 80;\n",
                "    listen 443 ssl; # managed by Certbot\n"
                f"    ssl_certificate /etc/letsencrypt/live/{domain}/fullchain.pem; # managed by Certbot\n"
                f"    ssl_certificate_key /etc/letsencrypt/live/{domain}/privkey.pem; # managed by Certbot\n",
            )
            text += (
                "server {\n"
                f"    if ($host = {domain}) {{\n"
                "        return 301 https://$host$request_uri;\n"
                "    } # managed by Certbot\n"
                "    listen 80;\n"
                f"    server_name {domain};\n"
                "    return 404; # managed by Certbot\n"
                "}\n"
            )
            site.write_text(text)
        return self.ok(call, "Congratulations! You have successfully enabled HTTPS")


# ============================================
# FIXTURES
# ============================================

@pytest.fixture
def vps():
    """Simulated, already provisioned host."""
    return FakeVps()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def meminfo(tmp_path):
    """8 GB of RAM unless a test rewrites it."""
    path = tmp_path / "meminfo"
    path.write_text("MemTotal:        8000000 kB\nMemFree:         6000000 kB\n")
    return path


@pytest.fixture
def host(vps, meminfo):
    return Host(vps, use_sudo=False, command_timeout=30, meminfo_path=meminfo)


@pytest.fixture
def nginx_root(tmp_path, vps):
    """sites-available / sites-enabled with the distribution's default site enabled."""
    root = tmp_path / "nginx"
    (root / "sites-available").mkdir(parents=True)
    vps.nginx_sites = root / "sites-available"
    (root / "sites-enabled").mkdir()
    default = root / "sites-available" / "default"
    default.write_text(
        "server {\n"
        "    listen 80 default_server;\n"
        "    server_name _;\n"
        "    root /var/www/html;\n"
        "}\n"
    )
    (root / "sites-enabled" / "default").symlink_to(default)
    (root / "mime.types").write_text("types { text/html html; }\n")
    return root


@pytest.fixture
def install_dir(tmp_path):
    """Application checkout with a package.json."""
    path = tmp_path / "srv" / "finance-tracker"
    path.mkdir(parents=True)
    (path / "package.json").write_text('{"name": "finance-tracker", "type": "module"}\n')
    return path


@pytest.fixture
def settings(tmp_path, install_dir, nginx_root):
    return DeploymentSettings(
        _env_file=None,
        app_name="finance-tracker",
        install_dir=install_dir,
        db_name="finance_db",
        db_user="finance_user",
        db_admin_command=["psql"],
        nginx_sites_available=nginx_root / "sites-available",
        nginx_sites_enabled=nginx_root / "sites-enabled",
        nginx_error_log=nginx_root / "error.log",
        nginx_mime_types=nginx_root / "mime.types",
        backup_dir=tmp_path / "backups",
        use_sudo=False,
    )


@pytest.fixture
def emitter():
    return RecordingEventEmitter()


@pytest.fixture
def secrets():
    return SecretRegistry()


@pytest.fixture
def orchestrator(settings, vps, host, clock, emitter, secrets):
    """Fully wired orchestrator against the simulated host."""
    return build_orchestrator(
        settings,
        db_checker=vps.check_connection,
        http_get=vps.http_get,
        emitter=emitter,
        secrets=secrets,
        sleep=clock.sleep,
        clock=clock,
        host=host,
    )
