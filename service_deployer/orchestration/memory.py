"""
In-memory orchestration platform.

A deterministic stand-in for a real platform: revisions are kept in a dict,
stabilization results and failures can be scripted, and every call is
recorded so callers can assert on the exact sequence of platform operations.
Backs the ``memory`` platform backend for dry runs.
"""

import logging
from collections import deque
from typing import Deque, Dict, List, Optional, Set, Tuple

from service_deployer.errors import ErrorKind, OrchestrationError
from service_deployer.models import HealthVerdict, RevisionReference, ServiceIdentity
from service_deployer.orchestration.base import OrchestrationClient
from service_deployer.orchestration.template import RevisionTemplate, render_template

logger = logging.getLogger(__name__)


class InMemoryOrchestrationClient(OrchestrationClient):
    """Platform double holding services and revisions in memory."""

    def __init__(self, registry: str = "local") -> None:
        self.registry = registry
        self.revisions: Dict[str, RevisionTemplate] = {}
        self.services: Dict[str, Optional[RevisionReference]] = {}
        self.instances: Dict[str, Set[str]] = {}
        self.health: Dict[str, HealthVerdict] = {}
        self.addresses: Dict[str, str] = {}
        self.calls: List[Tuple[str, Tuple]] = []

        # Scripted behaviour
        self.unreachable = False
        self.registration_error: Optional[OrchestrationError] = None
        self.update_errors: Deque[Optional[OrchestrationError]] = deque()
        self.stable_results: Deque[bool] = deque()
        self.default_health = HealthVerdict.HEALTHY

        self._family_counters: Dict[str, int] = {}
        self._instance_counter = 0

    # ------------------------------------------------------------------
    # Test/dry-run helpers
    # ------------------------------------------------------------------

    def add_service(
        self, service: ServiceIdentity, revision: Optional[RevisionReference] = None
    ) -> None:
        """Declare a service, optionally already running a revision."""
        self.services[service.qualified_name] = revision
        self.instances[service.qualified_name] = set()
        if revision is not None:
            self.revisions.setdefault(
                revision.ref, RevisionTemplate(family=revision.ref, image=revision.ref)
            )
            self._spawn_instances(service, revision)

    def calls_to(self, operation: str) -> List[Tuple]:
        """Arguments of every recorded call to ``operation``."""
        return [args for op, args in self.calls if op == operation]

    def _spawn_instances(self, service: ServiceIdentity, revision: RevisionReference) -> None:
        replicas = self.revisions[revision.ref].replicas
        count = 1 if replicas is None else replicas
        ids = set()
        for _ in range(count):
            self._instance_counter += 1
            ids.add(f"{service.qualified_name}.{self._instance_counter}")
        self.instances[service.qualified_name] = ids

    def _check_reachable(self, operation: str) -> None:
        if self.unreachable:
            raise OrchestrationError("Platform unreachable", ErrorKind.FATAL, operation)

    # ------------------------------------------------------------------
    # OrchestrationClient
    # ------------------------------------------------------------------

    async def ping(self) -> None:
        self.calls.append(("ping", ()))
        self._check_reachable("ping")

    async def current_revision(self, service: ServiceIdentity) -> Optional[RevisionReference]:
        self.calls.append(("current_revision", (service,)))
        self._check_reachable("current_revision")
        return self.services.get(service.qualified_name)

    async def register_revision(self, image_tag: str, template: str) -> RevisionReference:
        self.calls.append(("register_revision", (image_tag, template)))
        self._check_reachable("register_revision")
        if self.registration_error is not None:
            raise self.registration_error

        rendered = render_template(template, image_tag, self.registry)
        number = self._family_counters.get(rendered.family, 0) + 1
        self._family_counters[rendered.family] = number

        revision = RevisionReference(ref=f"{rendered.family}:{number}")
        self.revisions[revision.ref] = rendered
        logger.info(f"Registered revision {revision} ({rendered.image})")
        return revision

    async def update_service(self, service: ServiceIdentity, revision: RevisionReference) -> None:
        self.calls.append(("update_service", (service, revision)))
        self._check_reachable("update_service")
        if self.update_errors:
            error = self.update_errors.popleft()
            if error is not None:
                raise error
        if service.qualified_name not in self.services:
            raise OrchestrationError(
                f"Service {service} not found", ErrorKind.FATAL, "update_service"
            )
        if revision.ref not in self.revisions:
            raise OrchestrationError(
                f"Revision {revision} not registered", ErrorKind.FATAL, "update_service"
            )

        if self.services[service.qualified_name] == revision:
            logger.debug(f"Service {service} already on {revision}")
        self.services[service.qualified_name] = revision
        self._spawn_instances(service, revision)

    async def wait_until_stable(self, service: ServiceIdentity, timeout: float) -> bool:
        self.calls.append(("wait_until_stable", (service, timeout)))
        if self.stable_results:
            return self.stable_results.popleft()
        return True

    async def list_running_instances(self, service: ServiceIdentity) -> Set[str]:
        self.calls.append(("list_running_instances", (service,)))
        self._check_reachable("list_running_instances")
        return set(self.instances.get(service.qualified_name, set()))

    async def instance_health(self, instance_id: str) -> HealthVerdict:
        self.calls.append(("instance_health", (instance_id,)))
        return self.health.get(instance_id, self.default_health)

    async def instance_address(self, instance_id: str) -> Optional[str]:
        self.calls.append(("instance_address", (instance_id,)))
        if not any(instance_id in ids for ids in self.instances.values()):
            return None
        return self.addresses.get(instance_id, instance_id)
