# deployment_engine/verifier/checker.py
"""
Verifier - post-deployment health checks.

Checks run in order and the first failure stops the rest:
1. pm2 reports the process online
2. the internal port is bound by that process
3. HTTP GET on the internal port
4. HTTP GET on the public port (through nginx)
"""

import logging
import time
from typing import Callable, List, Optional, Tuple

import requests

from deployment_engine.core.models import CheckOutcome
from deployment_engine.infrastructure.host import Host
from deployment_engine.infrastructure.pm2_client import Pm2Client
from deployment_engine.provisioning.proxy import ProxyConfigurator
from deployment_engine.verifier.polling import PollPolicy, poll

logger = logging.getLogger(__name__)


PROCESS_ONLINE = "process-online"
PORT_BOUND = "port-bound"
HTTP_INTERNAL = "http-internal"
HTTP_PROXY = "http-proxy"

CHECK_ORDER = (PROCESS_ONLINE, PORT_BOUND, HTTP_INTERNAL, HTTP_PROXY)

# (url, timeout) -> status code; raises requests.RequestException
HttpGetter = Callable[[str, float], int]


def requests_getter(url: str, timeout: float) -> int:
    response = requests.get(url, timeout=timeout, allow_redirects=False)
    return response.status_code


class Verifier:
    """Runs the ordered checks with bounded retries and collects diagnostics."""

    def __init__(
        self,
        host: Host,
        pm2: Pm2Client,
        proxy: ProxyConfigurator,
        policy: PollPolicy,
        http_timeout: float = 5.0,
        http_get: HttpGetter = requests_getter,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._host = host
        self._pm2 = pm2
        self._proxy = proxy
        self.policy = policy
        self._http_timeout = http_timeout
        self._http_get = http_get
        self._sleep = sleep

    def verify(
        self,
        name: str,
        internal_port: int,
        public_port: int,
        policy: Optional[PollPolicy] = None,
        short_circuit: bool = True,
    ) -> List[CheckOutcome]:
        policy = policy or self.policy
        checks = [
            lambda: self.check_process_online(name, policy),
            lambda: self.check_port_owner(name, internal_port, policy),
            lambda: self.check_http(
                HTTP_INTERNAL, f"http://127.0.0.1:{internal_port}/", policy,
                diagnostics=lambda: self._pm2.logs(name, lines=40),
            ),
            lambda: self.check_http(
                HTTP_PROXY, f"http://127.0.0.1:{public_port}/", policy,
                diagnostics=lambda: self._proxy.error_log_tail(40),
            ),
        ]

        outcomes = []
        for check in checks:
            outcome = check()
            outcomes.append(outcome)
            if not outcome.passed and short_circuit:
                logger.error(f"[verify] ❌ {outcome.name}: {outcome.message}")
                break
        return outcomes

    # ============================================
    # CHECKS
    # ============================================

    def check_process_online(self, name: str, policy: PollPolicy) -> CheckOutcome:
        def attempt() -> Tuple[bool, str]:
            processes = self._pm2.find(name)
            if not processes:
                return False, f"{name} is not registered with pm2"
            offline = [p for p in processes if not p.online]
            if offline:
                states = ", ".join(f"{p.pm_id}:{p.status}" for p in offline)
                return False, f"{name} not online ({states})"
            return True, f"{len(processes)} instance(s) online"

        return self._run(PROCESS_ONLINE, attempt, policy, lambda: self._pm2.logs(name, lines=40))

    def check_port_owner(self, name: str, port: int, policy: PollPolicy) -> CheckOutcome:
        """
        Passes only if the listener on ``port`` belongs to our pm2 process.

        A port held by anything else is reported with its owner instead of
        being mistaken for a healthy deployment.
        """
        def attempt() -> Tuple[bool, str]:
            supervised = self._pm2.find(name)
            ours = {p.pid for p in supervised if p.pid}
            clustered = any(p.clustered for p in supervised)
            listeners = self._host.listeners_on(port)
            if not listeners:
                return False, f"nothing listening on port {port}"
            for listener in listeners:
                if ours & set(listener.pids) or (clustered and self._is_pm2_daemon(listener.processes)):
                    return True, f"port {port} bound by {name}"
            owners = "; ".join(listener.describe() for listener in listeners)
            return False, f"port {port} bound by another process: {owners}"

        return self._run(PORT_BOUND, attempt, policy, lambda: self._pm2.logs(name, lines=40))

    def check_http(
        self,
        check_name: str,
        url: str,
        policy: PollPolicy,
        diagnostics: Callable[[], str],
    ) -> CheckOutcome:
        def attempt() -> Tuple[bool, str]:
            try:
                status_code = self._http_get(url, self._http_timeout)
            except requests.exceptions.RequestException as e:
                return False, f"{url}: {e}"
            if 200 <= status_code < 400:
                return True, f"{url} returned {status_code}"
            return False, f"{url} returned {status_code}"

        return self._run(check_name, attempt, policy, diagnostics)

    # ============================================
    # INTERNAL
    # ============================================

    def _run(self, check_name: str, attempt, policy: PollPolicy, diagnostics: Callable[[], str]) -> CheckOutcome:
        result = poll(attempt, policy, label=check_name, sleep=self._sleep)
        outcome = CheckOutcome(
            name=check_name,
            passed=result.passed,
            message=result.message,
            attempts=result.attempts,
        )
        if result.passed:
            logger.info(f"[verify] ✅ {check_name}: {result.message}")
        else:
            outcome.diagnostics = diagnostics()
        return outcome

    @staticmethod
    def _is_pm2_daemon(processes: List[str]) -> bool:
        # Only in cluster mode does the pm2 daemon hold the shared socket
        return any(process.startswith("PM2") for process in processes)
