"""Exception types raised by the deployment pipeline."""
from __future__ import annotations

from typing import Optional


class DeploymentError(RuntimeError):
    """Base class for failures that abort a deployment."""

    phase: str = "deployment"

    def __init__(self, message: str, *, phase: Optional[str] = None) -> None:
        super().__init__(message)
        if phase is not None:
            self.phase = phase


class ConfigurationError(DeploymentError):
    """Raised when GitHub is not configured or deployment is disabled."""

    phase = "validating_config"


class NoDataError(DeploymentError):
    """Raised when there are no records to publish."""

    phase = "loading_records"


class DeploymentInProgressError(DeploymentError):
    """Raised when another deployment already holds the staging directory."""


class StagingError(DeploymentError):
    """Raised when the staging directory cannot be prepared."""

    phase = "staging"


class PublishError(DeploymentError):
    """Raised when a git step fails. Messages are already redacted."""

    phase = "publishing"

    def __init__(self, message: str, *, phase: Optional[str] = None, stderr: Optional[str] = None) -> None:
        super().__init__(message, phase=phase)
        self.stderr = stderr


class GenerationError(RuntimeError):
    """Raised for a single record; recorded in the report instead of aborting."""

    def __init__(self, employee_id: str, message: str) -> None:
        super().__init__(message)
        self.employee_id = employee_id


__all__ = [
    "DeploymentError",
    "ConfigurationError",
    "NoDataError",
    "DeploymentInProgressError",
    "StagingError",
    "PublishError",
    "GenerationError",
]
