"""
Rollback to a previously known-good revision.
"""

import logging
from typing import Optional

from service_deployer.errors import NoRollbackTargetError, OrchestrationError
from service_deployer.models import RevisionReference, ServiceIdentity
from service_deployer.orchestration.base import OrchestrationClient

logger = logging.getLogger(__name__)


class RollbackController:
    """Reverts a service to a target revision and waits for it to settle."""

    def __init__(self, client: OrchestrationClient) -> None:
        self.client = client

    async def rollback(
        self,
        service: ServiceIdentity,
        target_revision: Optional[RevisionReference],
        timeout: float,
    ) -> bool:
        """
        Roll the service back to ``target_revision``.

        Args:
            service: Service to revert
            target_revision: Revision observed before the deployment mutated anything
            timeout: Seconds to wait for the rollback to stabilize

        Returns:
            True only if the service stabilized on the target within the timeout

        Raises:
            NoRollbackTargetError: If there is no revision to go back to
        """
        if target_revision is None:
            raise NoRollbackTargetError(f"No previous revision to roll {service} back to")

        logger.warning(f"Rolling back {service} to revision {target_revision}")

        try:
            await self.client.update_service(service, target_revision)
        except OrchestrationError as e:
            logger.error(f"Rollback update of {service} failed: {e}")
            return False

        logger.info("Rollback initiated")

        try:
            stable = await self.client.wait_until_stable(service, timeout)
        except OrchestrationError as e:
            logger.error(f"Rollback of {service} failed while waiting for stability: {e}")
            return False

        if stable:
            logger.info(f"Rollback of {service} to {target_revision} completed successfully")
        else:
            logger.error(f"Rollback of {service} failed to stabilize within {timeout}s")
        return stable
