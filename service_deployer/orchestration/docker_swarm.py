"""
Docker Swarm orchestration backend.

Maps the orchestration contract onto Swarm services:

- the platform service is ``<cluster>_<service>`` (stack naming)
- a revision is an immutable Swarm config ``<family>-<n>`` holding the
  rendered template as JSON, so the platform itself is the revision registry
- the live revision is recorded in the service label ``service-deployer.revision``
  and stamped on every task, which is how convergence is judged

Blocking Docker SDK calls run in the default executor. Server-side (5xx) and
connection errors are TRANSIENT and retried with exponential backoff; client
errors (4xx, NotFound) are FATAL.
"""

import asyncio
import base64
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Set

import docker
import requests
from docker.errors import APIError, DockerException, NotFound
from docker.types import ServiceMode

from service_deployer.errors import ErrorKind, OrchestrationError
from service_deployer.models import HealthVerdict, RevisionReference, ServiceIdentity
from service_deployer.orchestration.base import OrchestrationClient
from service_deployer.orchestration.template import RevisionTemplate, render_template

logger = logging.getLogger(__name__)

REVISION_LABEL = "service-deployer.revision"
FAMILY_LABEL = "service-deployer.family"

# Update states in which Swarm has stopped converging on the requested spec
HALTED_UPDATE_STATES = {"paused", "rollback_started", "rollback_paused", "rollback_completed"}


def _strip_digest(image: str) -> str:
    """Swarm pins images as ``repo:tag@sha256:...``; compare on ``repo:tag``."""
    return image.split("@", 1)[0]


def _task_image(task: Dict[str, Any]) -> str:
    return _strip_digest(task.get("Spec", {}).get("ContainerSpec", {}).get("Image", ""))


def _task_revision(task: Dict[str, Any]) -> Optional[str]:
    labels = task.get("Spec", {}).get("ContainerSpec", {}).get("Labels") or {}
    return labels.get(REVISION_LABEL)


class DockerOrchestrationClient(OrchestrationClient):
    """Orchestration client backed by a Docker Swarm manager node."""

    def __init__(
        self,
        docker_host: Optional[str] = None,
        registry: str = "",
        retries: int = 3,
        retry_delay: float = 2.0,
        poll_interval: float = 5.0,
        client: Optional[docker.DockerClient] = None,
    ) -> None:
        """
        Initialize the Docker backend.

        Args:
            docker_host: Docker daemon URL; environment defaults when None
            registry: Registry substituted for ``${REGISTRY}`` in templates
            retries: Retries for TRANSIENT failures
            retry_delay: Base delay in seconds for exponential backoff
            poll_interval: Seconds between stabilization polls
            client: Pre-built Docker client (mainly for tests)
        """
        self.docker_host = docker_host
        self.registry = registry
        self.retries = retries
        self.retry_delay = retry_delay
        self.poll_interval = poll_interval
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                if self.docker_host:
                    self._client = docker.DockerClient(base_url=self.docker_host)
                else:
                    self._client = docker.from_env()
            except DockerException as e:
                raise OrchestrationError(
                    f"Cannot connect to Docker: {e}", ErrorKind.FATAL, "connect"
                ) from e
        return self._client

    # ------------------------------------------------------------------
    # Error classification and retry
    # ------------------------------------------------------------------

    @staticmethod
    def _classify(error: Exception, operation: str) -> OrchestrationError:
        if isinstance(error, NotFound):
            return OrchestrationError(str(error), ErrorKind.FATAL, operation)
        if isinstance(error, APIError):
            kind = ErrorKind.TRANSIENT if error.is_server_error() else ErrorKind.FATAL
            return OrchestrationError(str(error), kind, operation)
        if isinstance(error, (requests.exceptions.ConnectionError, requests.exceptions.Timeout)):
            return OrchestrationError(str(error), ErrorKind.TRANSIENT, operation)
        return OrchestrationError(str(error), ErrorKind.FATAL, operation)

    async def _call(self, operation: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a blocking SDK call with retries for TRANSIENT failures."""
        loop = asyncio.get_event_loop()

        for attempt in range(self.retries + 1):
            try:
                return await loop.run_in_executor(None, lambda: func(*args, **kwargs))
            except OrchestrationError:
                raise
            except (DockerException, requests.exceptions.RequestException) as e:
                error = self._classify(e, operation)

            if not error.is_transient:
                raise error

            if attempt < self.retries:
                delay = self.retry_delay * (2**attempt)
                logger.warning(
                    f"{operation} failed transiently (attempt {attempt + 1}/{self.retries + 1}), "
                    f"retrying in {delay}s: {error}"
                )
                await asyncio.sleep(delay)

        raise OrchestrationError(
            f"gave up after {self.retries + 1} attempts: {error}", ErrorKind.FATAL, operation
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _get_service(self, service: ServiceIdentity) -> Any:
        return await self._call("get_service", self.client.services.get, service.qualified_name)

    async def _load_revision(self, revision: RevisionReference) -> RevisionTemplate:
        config = await self._call("get_revision", self.client.configs.get, revision.ref)
        raw = config.attrs.get("Spec", {}).get("Data", "")
        try:
            data = json.loads(base64.b64decode(raw).decode())
            return RevisionTemplate(**data)
        except (ValueError, TypeError) as e:
            raise OrchestrationError(
                f"Revision {revision} has unreadable content: {e}",
                ErrorKind.FATAL,
                "get_revision",
            ) from e

    @staticmethod
    def _service_image(service_obj: Any) -> str:
        spec = service_obj.attrs.get("Spec", {})
        image = spec.get("TaskTemplate", {}).get("ContainerSpec", {}).get("Image", "")
        return _strip_digest(image)

    @staticmethod
    def _desired_replicas(service_obj: Any) -> Optional[int]:
        mode = service_obj.attrs.get("Spec", {}).get("Mode", {})
        replicated = mode.get("Replicated")
        if replicated is None:
            return None  # Global mode: one task per node
        return int(replicated.get("Replicas", 1))

    # ------------------------------------------------------------------
    # OrchestrationClient
    # ------------------------------------------------------------------

    async def ping(self) -> None:
        await self._call("ping", self.client.ping)

    async def current_revision(self, service: ServiceIdentity) -> Optional[RevisionReference]:
        def find_service(name: str) -> Any:
            try:
                return self.client.services.get(name)
            except NotFound:
                return None

        service_obj = await self._call("current_revision", find_service, service.qualified_name)
        if service_obj is None:
            logger.info(f"Service {service} does not exist yet")
            return None

        labels = service_obj.attrs.get("Spec", {}).get("Labels") or {}
        ref = labels.get(REVISION_LABEL)
        if not ref:
            logger.warning(f"Service {service} has no recorded revision")
            return None
        return RevisionReference(ref=ref)

    async def register_revision(self, image_tag: str, template: str) -> RevisionReference:
        rendered = render_template(template, image_tag, self.registry)

        existing = await self._call(
            "register_revision",
            self.client.configs.list,
            filters={"label": f"{FAMILY_LABEL}={rendered.family}"},
        )
        numbers: List[int] = []
        for config in existing:
            suffix = config.name.rsplit("-", 1)[-1]
            if suffix.isdigit():
                numbers.append(int(suffix))
        name = f"{rendered.family}-{max(numbers, default=0) + 1}"

        await self._call(
            "register_revision",
            self.client.configs.create,
            name=name,
            data=json.dumps(rendered.model_dump()).encode(),
            labels={FAMILY_LABEL: rendered.family},
        )
        logger.info(f"Registered revision {name} for image {rendered.image}")
        return RevisionReference(ref=name)

    async def update_service(self, service: ServiceIdentity, revision: RevisionReference) -> None:
        target = await self._load_revision(revision)
        service_obj = await self._get_service(service)

        labels: Dict[str, str] = dict(service_obj.attrs.get("Spec", {}).get("Labels") or {})
        labels[REVISION_LABEL] = revision.ref

        # Tasks carry the revision too, so convergence can be judged per task
        container_labels = dict(target.labels)
        container_labels[REVISION_LABEL] = revision.ref

        update_args: Dict[str, Any] = {
            "image": target.image,
            "env": [f"{key}={value}" for key, value in target.env.items()],
            "container_labels": container_labels,
            "labels": labels,
            "force_update": True,
        }
        if target.replicas is not None:
            update_args["mode"] = ServiceMode("replicated", replicas=target.replicas)

        await self._call("update_service", service_obj.update, **update_args)
        logger.info(f"Service {service} updated to revision {revision} ({target.image})")

    async def wait_until_stable(self, service: ServiceIdentity, timeout: float) -> bool:
        loop = asyncio.get_event_loop()
        deadline = loop.time() + timeout

        while True:
            try:
                if await self._is_stable(service):
                    logger.info(f"Service {service} is stable")
                    return True
            except OrchestrationError as e:
                if not e.is_transient:
                    raise
                logger.debug(f"Transient error while polling {service}: {e}")

            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning(f"Service {service} did not stabilize within {timeout}s")
                return False
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def _is_stable(self, service: ServiceIdentity) -> bool:
        service_obj = await self._get_service(service)

        update_state = (service_obj.attrs.get("UpdateStatus") or {}).get("State")
        if update_state in HALTED_UPDATE_STATES:
            raise OrchestrationError(
                f"Swarm update halted in state {update_state}", ErrorKind.FATAL, "wait_until_stable"
            )

        target_revision = (service_obj.attrs.get("Spec", {}).get("Labels") or {}).get(
            REVISION_LABEL
        )
        target_image = self._service_image(service_obj)
        tasks = await self._call(
            "wait_until_stable", service_obj.tasks, filters={"desired-state": "running"}
        )

        running = [t for t in tasks if t.get("Status", {}).get("State") == "running"]
        if target_revision:
            on_target = [t for t in running if _task_revision(t) == target_revision]
        else:
            # Service not managed by us yet; the image is all there is to compare
            on_target = [t for t in running if _task_image(t) == target_image]
        desired = self._desired_replicas(service_obj)

        logger.debug(
            f"Service {service}: {len(on_target)}/{len(running)} running tasks on "
            f"{target_revision or target_image}, desired={desired}"
        )
        if len(on_target) != len(running):
            return False
        if desired is None:
            return len(on_target) > 0
        return len(on_target) == desired

    async def list_running_instances(self, service: ServiceIdentity) -> Set[str]:
        service_obj = await self._get_service(service)
        tasks = await self._call(
            "list_running_instances", service_obj.tasks, filters={"desired-state": "running"}
        )
        return {t["ID"] for t in tasks if t.get("Status", {}).get("State") == "running"}

    async def instance_health(self, instance_id: str) -> HealthVerdict:
        task = await self._call("instance_health", self.client.api.inspect_task, instance_id)
        container_id = task.get("Status", {}).get("ContainerStatus", {}).get("ContainerID")
        if not container_id:
            return HealthVerdict.UNKNOWN

        container = await self._call("instance_health", self.client.containers.get, container_id)
        health = container.attrs.get("State", {}).get("Health") or {}
        status = str(health.get("Status", "")).lower()

        if status == "healthy":
            return HealthVerdict.HEALTHY
        elif status == "unhealthy":
            return HealthVerdict.UNHEALTHY
        # "starting", or no HEALTHCHECK defined
        return HealthVerdict.UNKNOWN

    async def instance_address(self, instance_id: str) -> Optional[str]:
        task = await self._call("instance_address", self.client.api.inspect_task, instance_id)

        fallback = None
        for attachment in task.get("NetworksAttachments") or []:
            addresses = attachment.get("Addresses") or []
            if not addresses:
                continue
            # Addresses are CIDR strings, e.g. 10.0.1.5/24
            address = addresses[0].split("/", 1)[0]
            network = attachment.get("Network", {}).get("Spec", {}).get("Name")
            if network == "ingress":
                fallback = fallback or address
                continue
            return address
        return fallback

    async def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
