"""
Exception taxonomy for service-deployer.

Platform failures are classified once, at the orchestration client boundary,
so the coordinator can branch on a typed error instead of inspecting messages.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Classification of a platform call failure."""

    TRANSIENT = "transient"
    FATAL = "fatal"


class ServiceDeployerError(Exception):
    """Base class for all service-deployer errors."""


class OrchestrationError(ServiceDeployerError):
    """A call against the orchestration platform failed."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.FATAL,
        operation: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.operation = operation

    @property
    def is_transient(self) -> bool:
        return self.kind == ErrorKind.TRANSIENT

    def __str__(self) -> str:
        message = super().__str__()
        if self.operation:
            return f"{self.operation}: {message} ({self.kind.value})"
        return f"{message} ({self.kind.value})"


class NoRollbackTargetError(ServiceDeployerError):
    """Rollback requested but no previous revision was captured."""


class InvalidTransitionError(ServiceDeployerError):
    """The state machine was asked to make a transition it does not allow."""


class ConfigurationError(ServiceDeployerError):
    """Configuration file is missing or invalid."""
