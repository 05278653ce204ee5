"""Event emitters for deployment runs."""

import logging
from abc import ABC, abstractmethod
from typing import Iterable

from deployment_engine.core.events_model import DeploymentEvent

logger = logging.getLogger(__name__)


ALLOWED_EVENTS = {
    "run.started",
    "step.started",
    "step.completed",
    "step.skipped",
    "step.failed",
    "run.completed",
    "run.failed",
    "run.aborted",
}


def _validate(event: DeploymentEvent) -> None:
    if event.event_type not in ALLOWED_EVENTS:
        raise ValueError(f"Invalid event type: {event.event_type}")
    if not event.run_id:
        raise ValueError("Event must have run_id")


class EventEmitter(ABC):
    """Abstract event emitter."""

    @abstractmethod
    def emit(self, events: Iterable[DeploymentEvent]) -> None:
        """Emit one or more events."""
        pass


class LoggingEventEmitter(EventEmitter):
    """Writes events to the deployment log."""

    def emit(self, events: Iterable[DeploymentEvent]) -> None:
        for event in events:
            _validate(event)
            step = event.metadata.get("step", "-")
            if event.event_type == "step.failed":
                logger.error(f"[{step}] {event.metadata.get('error_message', '')}")
            elif event.event_type.startswith("step."):
                logger.info(f"[{step}] {event.event_type.split('.', 1)[1]}")
            else:
                logger.info(f"[run {str(event.run_id)[:8]}] {event.event_type}")


class RecordingEventEmitter(EventEmitter):
    """Keeps events in memory (tests, final report)."""

    def __init__(self):
        self.events = []

    def emit(self, events: Iterable[DeploymentEvent]) -> None:
        for event in events:
            _validate(event)
            self.events.append(event)

    def types(self):
        return [event.event_type for event in self.events]


class MultiEventEmitter:
    """Fan-out to multiple emitters."""

    def __init__(self, emitters: Iterable[EventEmitter]):
        self._emitters = list(emitters)

    def emit(self, events: Iterable[DeploymentEvent]):
        """Emit to all emitters."""
        events = list(events)
        for emitter in self._emitters:
            emitter.emit(events)
