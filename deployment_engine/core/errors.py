# deployment_engine/core/errors.py

from typing import Optional


# -----------------------------
# Base Errors
# -----------------------------

class DeploymentError(Exception):
    """Base class for all deployment engine errors."""
    pass


# -----------------------------
# Validation / Configuration Errors
# -----------------------------

class ConfigurationError(DeploymentError):
    """Invalid deployment target or settings."""
    pass


class NotDeployedError(DeploymentError):
    """Command needs an existing deployment on this host."""
    pass


# -----------------------------
# Step Errors
# -----------------------------

class StepError(DeploymentError):
    """A pipeline step failed. Carries the raw output of the responsible subsystem."""

    def __init__(self, step: str, message: str, diagnostics: Optional[str] = None):
        super().__init__(message)
        self.step = step
        self.message = message
        self.diagnostics = diagnostics or ""

    def __str__(self) -> str:
        return f"[{self.step}] {self.message}"


class FatalStepError(StepError):
    """Unrecoverable failure: the run stops here."""
    pass


class RecoverableStepError(StepError):
    """Failure that a bounded retry may clear."""
    pass

