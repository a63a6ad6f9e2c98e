"""
Orchestration platform contract.

Defines what every platform backend promises to the deployment coordinator.
Failures are raised as OrchestrationError, already classified TRANSIENT or
FATAL; any retry policy belongs to the backend, never to the caller.
"""

from abc import ABC, abstractmethod
from typing import Optional, Set

from service_deployer.models import HealthVerdict, RevisionReference, ServiceIdentity


class OrchestrationClient(ABC):
    """Abstract client for a remote container-orchestration platform."""

    @abstractmethod
    async def ping(self) -> None:
        """
        Verify the platform is reachable.

        Promises:
        - Raises FATAL OrchestrationError if the platform cannot be reached
        - Never mutates anything
        """
        ...

    @abstractmethod
    async def current_revision(self, service: ServiceIdentity) -> Optional[RevisionReference]:
        """
        Get the revision the service currently runs.

        Promises:
        - Returns None if the service has never been deployed
        - Raises FATAL OrchestrationError if the platform is unreachable
        """
        ...

    @abstractmethod
    async def register_revision(self, image_tag: str, template: str) -> RevisionReference:
        """
        Register a new deployable revision.

        Promises:
        - Never mutates the live service
        - Raises FATAL OrchestrationError on a malformed template or rejection
        """
        ...

    @abstractmethod
    async def update_service(self, service: ServiceIdentity, revision: RevisionReference) -> None:
        """
        Point the service at a revision, triggering the swap.

        Promises:
        - Idempotent for repeated calls with the same revision
        - Raises FATAL OrchestrationError if service or revision is invalid
        """
        ...

    @abstractmethod
    async def wait_until_stable(self, service: ServiceIdentity, timeout: float) -> bool:
        """
        Wait until the service has converged on its current revision.

        Promises:
        - Returns True once the desired instance count runs the target revision
          and no instance of the previous revision remains
        - Returns False when the timeout elapses (never raises for a timeout)
        """
        ...

    @abstractmethod
    async def list_running_instances(self, service: ServiceIdentity) -> Set[str]:
        """Return the ids of all running instances of the service."""
        ...

    @abstractmethod
    async def instance_health(self, instance_id: str) -> HealthVerdict:
        """
        Return the platform-reported health of one instance.

        Promises:
        - UNKNOWN when the platform has not evaluated the instance
        """
        ...

    @abstractmethod
    async def instance_address(self, instance_id: str) -> Optional[str]:
        """
        Return a network address at which the instance can be reached.

        Promises:
        - None when the instance has no routable address yet
        - Never mutates anything
        """
        ...

    async def close(self) -> None:
        """Release any connection held by the client."""
        return None
