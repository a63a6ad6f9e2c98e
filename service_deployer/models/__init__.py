"""
Pydantic models for service-deployer.
"""

from service_deployer.models.deployment import (
    TERMINAL_PHASES,
    DeploymentAttempt,
    DeploymentPhase,
    HealthReport,
    HealthVerdict,
    Outcome,
    RevisionReference,
    ServiceIdentity,
)

__all__ = [
    "TERMINAL_PHASES",
    "DeploymentAttempt",
    "DeploymentPhase",
    "HealthReport",
    "HealthVerdict",
    "Outcome",
    "RevisionReference",
    "ServiceIdentity",
]
