"""
Orchestration platform backends.
"""

from service_deployer.orchestration.base import OrchestrationClient
from service_deployer.orchestration.docker_swarm import DockerOrchestrationClient
from service_deployer.orchestration.memory import InMemoryOrchestrationClient
from service_deployer.orchestration.template import (
    RevisionTemplate,
    load_template,
    render_template,
)

__all__ = [
    "OrchestrationClient",
    "DockerOrchestrationClient",
    "InMemoryOrchestrationClient",
    "RevisionTemplate",
    "load_template",
    "render_template",
]
