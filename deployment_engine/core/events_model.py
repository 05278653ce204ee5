"""Event models for deployment runs."""

from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import UUID
from typing import Any, Dict


@dataclass
class DeploymentEvent:
    """Base deployment event."""

    event_type: str
    run_id: UUID
    timestamp: datetime
    metadata: Dict[str, Any]

    @staticmethod
    def run_started(run_id: UUID, command: str):
        """Run started event."""
        return DeploymentEvent(
            event_type="run.started",
            run_id=run_id,
            timestamp=datetime.now(timezone.utc),
            metadata={"command": command},
        )

    @staticmethod
    def step_started(run_id: UUID, step):
        """Step started event."""
        return DeploymentEvent(
            event_type="step.started",
            run_id=run_id,
            timestamp=datetime.now(timezone.utc),
            metadata={"step": step.name},
        )

    @staticmethod
    def step_completed(run_id: UUID, step):
        """Step completed event."""
        return DeploymentEvent(
            event_type="step.completed",
            run_id=run_id,
            timestamp=datetime.now(timezone.utc),
            metadata={
                "step": step.name,
                "message": step.message,
            },
        )

    @staticmethod
    def step_skipped(run_id: UUID, step):
        """Step skipped event."""
        return DeploymentEvent(
            event_type="step.skipped",
            run_id=run_id,
            timestamp=datetime.now(timezone.utc),
            metadata={
                "step": step.name,
                "message": step.message,
            },
        )

    @staticmethod
    def step_failed(run_id: UUID, step):
        """Step failed event."""
        return DeploymentEvent(
            event_type="step.failed",
            run_id=run_id,
            timestamp=datetime.now(timezone.utc),
            metadata={
                "step": step.name,
                "error_message": step.message,
            },
        )

    @staticmethod
    def run_finished(run_id: UUID, outcome):
        """Run completed / failed / aborted event."""
        event_type = {
            "SUCCEEDED": "run.completed",
            "FAILED": "run.failed",
            "ABORTED": "run.aborted",
        }[outcome.value]
        return DeploymentEvent(
            event_type=event_type,
            run_id=run_id,
            timestamp=datetime.now(timezone.utc),
            metadata={"outcome": outcome.value},
        )
