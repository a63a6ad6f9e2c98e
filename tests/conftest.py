"""
Pytest configuration and fixtures for service-deployer tests.
"""

from typing import Dict, Optional
from unittest.mock import AsyncMock, Mock

import pytest

from service_deployer.coordinator import DeploymentCoordinator
from service_deployer.health import HealthProbe
from service_deployer.models import HealthVerdict, RevisionReference, ServiceIdentity
from service_deployer.orchestration.memory import InMemoryOrchestrationClient

TEMPLATE = """
family: quickserve
image: ${REGISTRY}/quickserve:${IMAGE_TAG}
replicas: 2
env:
  NODE_ENV: production
  PORT: 3000
"""


class StaticHealthProbe(HealthProbe):
    """Probe returning preset verdicts; instances not listed get ``default``."""

    def __init__(
        self,
        verdicts: Optional[Dict[str, HealthVerdict]] = None,
        default: HealthVerdict = HealthVerdict.HEALTHY,
    ) -> None:
        super().__init__(timeout=1.0)
        self.verdicts = verdicts or {}
        self.default = default
        self.checked = []

    async def check(self, instance_id: str) -> HealthVerdict:
        self.checked.append(instance_id)
        return self.verdicts.get(instance_id, self.default)


@pytest.fixture
def service():
    """Service identity used across tests."""
    return ServiceIdentity(cluster="quickserve-cluster", service="quickserve-service")


@pytest.fixture
def template():
    return TEMPLATE


@pytest.fixture
def platform(service):
    """In-memory platform with the service running revision R1."""
    client = InMemoryOrchestrationClient(registry="registry.example.com")
    client.add_service(service, RevisionReference(ref="quickserve:r1"))
    return client


@pytest.fixture
def empty_platform(service):
    """In-memory platform where the service has never been deployed."""
    client = InMemoryOrchestrationClient(registry="registry.example.com")
    client.add_service(service)
    return client


@pytest.fixture
def static_probe():
    """The StaticHealthProbe class, for tests that need custom verdicts."""
    return StaticHealthProbe


@pytest.fixture
def healthy_probe():
    return StaticHealthProbe()


@pytest.fixture
def passing_smoke_test():
    runner = Mock()
    runner.run = AsyncMock(return_value=True)
    return runner


@pytest.fixture
def failing_smoke_test():
    runner = Mock()
    runner.run = AsyncMock(return_value=False)
    return runner


@pytest.fixture
def make_coordinator(service, template, healthy_probe, passing_smoke_test):
    """Factory building a coordinator over a given platform."""

    def _make(client, probe=None, smoke_test=None, **kwargs):
        return DeploymentCoordinator(
            client=client,
            service=service,
            health_probe=probe or healthy_probe,
            smoke_test=smoke_test or passing_smoke_test,
            template=kwargs.pop("template", template),
            stabilize_timeout=kwargs.pop("stabilize_timeout", 30.0),
            rollback_timeout=kwargs.pop("rollback_timeout", 30.0),
            **kwargs,
        )

    return _make
