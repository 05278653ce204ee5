# deployment_engine/core/state_machine.py

from datetime import datetime, timezone

from deployment_engine.core.models import StepResult, StepStatus


ALLOWED_TRANSITIONS = {
    StepStatus.PENDING: {
        StepStatus.RUNNING,
        StepStatus.SKIPPED,
    },
    StepStatus.RUNNING: {
        StepStatus.OK,
        StepStatus.FAILED,
    },
}


class InvalidStepTransition(Exception):
    pass


class StepStateMachine:
    @staticmethod
    def transition(
        step: StepResult,
        new_state: StepStatus,
        *,
        now: datetime | None = None,
    ) -> StepResult:
        now = now or datetime.now(timezone.utc)

        current = step.status

        if current == new_state:
            return step

        allowed = ALLOWED_TRANSITIONS.get(current, set())
        if new_state not in allowed:
            raise InvalidStepTransition(
                f"Step {step.name}: cannot transition from {current.value} to {new_state.value}"
            )

        if new_state == StepStatus.RUNNING:
            step.started_at = now

        elif new_state in (
            StepStatus.OK,
            StepStatus.SKIPPED,
            StepStatus.FAILED,
        ):
            step.finished_at = now

        step.status = new_state
        return step
