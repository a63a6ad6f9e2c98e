"""
Deployment-related data models for service-deployer.

These models describe the service being deployed, the revisions the platform
knows about, the health of running instances and the record of a single
deployment attempt as it moves through the state machine.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class HealthVerdict(str, Enum):
    """Health of a single running instance."""

    HEALTHY = "HEALTHY"
    UNHEALTHY = "UNHEALTHY"
    UNKNOWN = "UNKNOWN"  # Not evaluated yet; does not fail a deployment


class Outcome(str, Enum):
    """Terminal result of a deployment attempt."""

    SUCCEEDED = "SUCCEEDED"
    ROLLED_BACK = "ROLLED_BACK"
    ROLLBACK_FAILED = "ROLLBACK_FAILED"
    ABORTED_BEFORE_MUTATION = "ABORTED_BEFORE_MUTATION"


class DeploymentPhase(str, Enum):
    """States of the deployment state machine."""

    INIT = "INIT"
    VALIDATED = "VALIDATED"
    REGISTERED = "REGISTERED"
    SWAPPING = "SWAPPING"
    STABLE = "STABLE"
    HEALTH_CHECKED = "HEALTH_CHECKED"
    SUCCEEDED = "SUCCEEDED"
    ROLLING_BACK = "ROLLING_BACK"
    ROLLED_BACK = "ROLLED_BACK"
    ROLLBACK_FAILED = "ROLLBACK_FAILED"
    ABORTED_BEFORE_MUTATION = "ABORTED_BEFORE_MUTATION"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PHASES


TERMINAL_PHASES = {
    DeploymentPhase.SUCCEEDED: Outcome.SUCCEEDED,
    DeploymentPhase.ROLLED_BACK: Outcome.ROLLED_BACK,
    DeploymentPhase.ROLLBACK_FAILED: Outcome.ROLLBACK_FAILED,
    DeploymentPhase.ABORTED_BEFORE_MUTATION: Outcome.ABORTED_BEFORE_MUTATION,
}


class ServiceIdentity(BaseModel):
    """Cluster and service name of the deployment target."""

    model_config = ConfigDict(frozen=True)

    cluster: str = Field(..., min_length=1, description="Cluster (stack) name")
    service: str = Field(..., min_length=1, description="Service name within the cluster")

    @property
    def qualified_name(self) -> str:
        """Platform-level service name, following stack naming (<stack>_<service>)."""
        return f"{self.cluster}_{self.service}"

    def __str__(self) -> str:
        return f"{self.cluster}/{self.service}"


class RevisionReference(BaseModel):
    """
    Opaque handle to a registered, deployable revision.

    Revisions are compared by identity only; the reference is never parsed.
    """

    model_config = ConfigDict(frozen=True)

    ref: str = Field(..., min_length=1, description="Platform identifier of the revision")

    def __str__(self) -> str:
        return self.ref


class HealthReport(BaseModel):
    """Health verdict of every running instance, keyed by instance id."""

    verdicts: Dict[str, HealthVerdict] = Field(default_factory=dict)

    def unhealthy(self) -> List[str]:
        return sorted(i for i, v in self.verdicts.items() if v == HealthVerdict.UNHEALTHY)

    def unknown(self) -> List[str]:
        return sorted(i for i, v in self.verdicts.items() if v == HealthVerdict.UNKNOWN)

    @property
    def is_failing(self) -> bool:
        """Only an UNHEALTHY verdict fails the report."""
        return bool(self.unhealthy())


class DeploymentAttempt(BaseModel):
    """
    Record of one deployment invocation.

    Created at the start of a run, mutated only by the coordinator and
    discarded when the process exits.
    """

    deployment_id: str = Field(..., description="Unique identifier of this attempt")
    service: ServiceIdentity
    image_tag: str = Field(..., description="Image tag being deployed")
    previous_revision: Optional[RevisionReference] = Field(
        None, description="Revision live before any mutation; absent on first deployment"
    )
    new_revision: Optional[RevisionReference] = Field(
        None, description="Revision registered by this attempt"
    )
    template: Optional[str] = Field(
        None, description="Raw revision template loaded during validation", exclude=True
    )
    phase: DeploymentPhase = Field(default=DeploymentPhase.INIT)
    outcome: Optional[Outcome] = None
    mutated: bool = Field(
        default=False, description="Whether a mutating platform call has been issued"
    )
    failure_reason: Optional[str] = None
    health_report: Optional[HealthReport] = None
    smoke_test_passed: Optional[bool] = None
    started_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    completed_at: Optional[str] = None
    events: List[Dict[str, Any]] = Field(default_factory=list)
