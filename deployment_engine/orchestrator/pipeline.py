# deployment_engine/orchestrator/pipeline.py
"""Step execution shared by every orchestrator command."""

import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from deployment_engine.core.errors import FatalStepError, StepError
from deployment_engine.core.events import EventEmitter
from deployment_engine.core.events_model import DeploymentEvent
from deployment_engine.core.models import (
    DeploymentResult,
    RunOutcome,
    StepResult,
    StepStatus,
)
from deployment_engine.core.state_machine import StepStateMachine

logger = logging.getLogger(__name__)


class PipelineRun:
    """
    One orchestrator run: a fixed list of steps executed strictly in order.

    Steps not reached stay PENDING in the report.
    """

    def __init__(self, command: str, step_names: Iterable[str], emitter: EventEmitter):
        self.result = DeploymentResult(
            command=command,
            steps=[StepResult(name=name) for name in step_names],
        )
        self._emitter = emitter

    @property
    def run_id(self):
        return self.result.run_id

    # -------------------------
    # LIFECYCLE
    # -------------------------

    def execute(self, body: Callable[["PipelineRun"], None]) -> DeploymentResult:
        """
        Run ``body``; always return the report.

        A StepError ends the run as FAILED, Ctrl+C as ABORTED. Anything
        else is a bug and propagates.
        """
        self._emit(DeploymentEvent.run_started(self.run_id, self.result.command))
        outcome = RunOutcome.FAILED
        try:
            body(self)
            outcome = RunOutcome.SUCCEEDED
        except StepError as e:
            logger.error(f"[orchestrator] {self.result.command} failed at {e.step}: {e.message}")
        except KeyboardInterrupt:
            outcome = RunOutcome.ABORTED
            self._abort_running_step()
            logger.warning(f"[orchestrator] {self.result.command} aborted by operator")
        finally:
            self.result.outcome = outcome
            self.result.finished_at = datetime.now(timezone.utc)
            self._emit(DeploymentEvent.run_finished(self.run_id, outcome))
        return self.result

    # -------------------------
    # STEPS
    # -------------------------

    def step(self, name: str, action: Callable[[], Optional[str]]) -> StepResult:
        step = self._require_step(name)
        StepStateMachine.transition(step, StepStatus.RUNNING)
        self._emit(DeploymentEvent.step_started(self.run_id, step))

        try:
            message = action()
        except StepError as e:
            self._fail(step, e)
            raise
        except OSError as e:
            error = FatalStepError(name, f"host operation failed: {e}")
            self._fail(step, error)
            raise error from e

        step.message = message or "ok"
        StepStateMachine.transition(step, StepStatus.OK)
        self._emit(DeploymentEvent.step_completed(self.run_id, step))
        return step

    def skip(self, name: str, reason: str) -> StepResult:
        step = self._require_step(name)
        step.message = reason
        StepStateMachine.transition(step, StepStatus.SKIPPED)
        self._emit(DeploymentEvent.step_skipped(self.run_id, step))
        logger.info(f"[{name}] skipped: {reason}")
        return step

    def _fail(self, step: StepResult, error: StepError) -> None:
        step.message = error.message
        step.diagnostics = error.diagnostics
        StepStateMachine.transition(step, StepStatus.FAILED)
        self._emit(DeploymentEvent.step_failed(self.run_id, step))

    def _abort_running_step(self) -> None:
        for step in self.result.steps:
            if step.status == StepStatus.RUNNING:
                step.message = "aborted by operator"
                StepStateMachine.transition(step, StepStatus.FAILED)
                self._emit(DeploymentEvent.step_failed(self.run_id, step))

    def _require_step(self, name: str) -> StepResult:
        step = self.result.step(name)
        if step is None:
            raise ValueError(f"Unknown step {name} for {self.result.command}")
        return step

    def _emit(self, event: DeploymentEvent) -> None:
        self._emitter.emit([event])
