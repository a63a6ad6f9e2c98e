"""
service-deployer - register, swap, verify and roll back service revisions.
"""

from service_deployer.coordinator import TRANSITIONS, DeploymentCoordinator
from service_deployer.errors import (
    ErrorKind,
    InvalidTransitionError,
    NoRollbackTargetError,
    OrchestrationError,
)
from service_deployer.health import HealthProbe, HttpHealthProbe, PlatformHealthProbe
from service_deployer.models import (
    DeploymentAttempt,
    DeploymentPhase,
    HealthReport,
    HealthVerdict,
    Outcome,
    RevisionReference,
    ServiceIdentity,
)
from service_deployer.rollback import RollbackController
from service_deployer.smoke_test import SkippedSmokeTestRunner, SmokeTestRunner

__version__ = "1.0.0"

__all__ = [
    "TRANSITIONS",
    "DeploymentCoordinator",
    "ErrorKind",
    "InvalidTransitionError",
    "NoRollbackTargetError",
    "OrchestrationError",
    "HealthProbe",
    "HttpHealthProbe",
    "PlatformHealthProbe",
    "DeploymentAttempt",
    "DeploymentPhase",
    "HealthReport",
    "HealthVerdict",
    "Outcome",
    "RevisionReference",
    "ServiceIdentity",
    "RollbackController",
    "SkippedSmokeTestRunner",
    "SmokeTestRunner",
]
