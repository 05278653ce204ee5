# deployment_engine/orchestrator/fixer.py
"""Fixer - bounded recovery of an existing deployment."""

import logging

from deployment_engine.core.errors import NotDeployedError
from deployment_engine.core.models import DeploymentResult
from deployment_engine.core.validation import validate_settings
from deployment_engine.orchestrator.deployment_orchestrator import DeploymentOrchestrator
from deployment_engine.orchestrator.pipeline import PipelineRun

logger = logging.getLogger(__name__)


FIX_STEPS = (
    "diagnose",
    "stop",
    "credentials",
    "database",
    "build",
    "supervisor",
    "verify",
)


class Fixer:
    """
    Re-runs the smallest subset of the pipeline that can recover a
    partially working deployment.

    Flow:
    1. Capture current process and proxy logs
    2. Stop the managed process
    3. Keep credentials if the database accepts them; otherwise new
       password + database reset
    4. Rebuild only if the artifact is missing
    5. Supervised start, verify

    Prerequisites and the proxy are deliberately left alone.
    """

    def __init__(self, orchestrator: DeploymentOrchestrator):
        self._orc = orchestrator

    def fix(self, reset_credentials: bool = False) -> DeploymentResult:
        orc = self._orc
        validate_settings(orc.settings)
        install_dir = orc.target.install_dir
        if not orc.host.exists(install_dir):
            raise NotDeployedError(f"{install_dir} does not exist; run deploy first")

        def body(run: PipelineRun) -> None:
            run.step("diagnose", lambda: self._diagnose(run))
            run.step("stop", lambda: orc.supervisor.stop(orc.target.app_name))

            state = {}
            run.step("credentials", lambda: self._credentials(run, reset_credentials, state))
            credentials = run.result.credentials

            if state["reset_database"]:
                run.step("database", lambda: orc.provision_database(credentials, reset=True))
            else:
                run.skip("database", "existing credentials still accepted")

            if orc.build.artifact_ok():
                run.skip("build", f"{orc.build.artifact_path} present")
            else:
                run.step("build", self._rebuild)

            run.step("supervisor", lambda: orc.start_supervised(credentials))
            run.step("verify", lambda: orc.verify_deployment(run))

        return PipelineRun("fix", FIX_STEPS, orc.emitter).execute(body)

    def _diagnose(self, run: PipelineRun) -> str:
        orc = self._orc
        # Registers known secrets before anything is captured
        orc.existing_credentials()
        captured = orc.secrets.redact("\n".join([
            orc.supervisor.logs(orc.target.app_name, lines=40),
            orc.proxy.error_log_tail(40),
        ]))
        step = run.result.step("diagnose")
        step.diagnostics = captured
        logger.info(f"[fix] captured {len(captured.splitlines())} log line(s) before recovery")
        return "logs captured"

    def _credentials(self, run: PipelineRun, reset_credentials: bool, state: dict) -> str:
        orc = self._orc
        existing = orc.existing_credentials()

        if existing is not None and not reset_credentials:
            orc.check_identifiers(existing)

        if reset_credentials or existing is None:
            credentials = orc.generator.generate(
                orc.settings.db_name,
                orc.settings.db_user,
                db_host=orc.settings.db_host,
                db_port=orc.settings.db_port,
            )
            reason = "reset requested" if reset_credentials else "no usable environment descriptor"
            orc.adopt_credentials(run, credentials, generated=True)
            state["reset_database"] = True
            return f"regenerated ({reason})"

        if orc.database.is_reachable(existing):
            orc.adopt_credentials(run, existing, generated=False)
            state["reset_database"] = False
            return "preserved (database reachable)"

        # Session secret survives so existing sessions stay valid
        credentials = orc.generator.rotate_password(existing)
        orc.adopt_credentials(run, credentials, generated=True)
        state["reset_database"] = True
        return "password regenerated (database unreachable)"

    def _rebuild(self) -> str:
        orc = self._orc
        if not (orc.target.install_dir / "node_modules").is_dir():
            orc.build.install_dependencies()
        return orc.build.build(env={"NODE_ENV": orc.settings.runtime_mode})
