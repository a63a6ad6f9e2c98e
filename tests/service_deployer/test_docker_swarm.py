"""
Unit tests for the Docker Swarm orchestration backend.

Tests DockerOrchestrationClient with a mocked Docker API.
"""

import base64
import json

import pytest
import requests
from unittest.mock import AsyncMock, Mock, patch
from docker.errors import APIError, NotFound
from docker.types import ServiceMode

from service_deployer.errors import ErrorKind, OrchestrationError
from service_deployer.health import HttpHealthProbe
from service_deployer.models import HealthVerdict, RevisionReference
from service_deployer.orchestration.docker_swarm import REVISION_LABEL, DockerOrchestrationClient

IMAGE = "registry.example.com/quickserve:v2"


def api_error(status_code):
    return APIError("docker said no", response=Mock(status_code=status_code, reason="x", url="u"))


def make_task(task_id, image=IMAGE, state="running", revision="quickserve-1", digest="abc123"):
    return {
        "ID": task_id,
        "Spec": {
            "ContainerSpec": {
                "Image": f"{image}@sha256:{digest}",
                "Labels": {REVISION_LABEL: revision},
            }
        },
        "Status": {"State": state, "ContainerStatus": {"ContainerID": f"c-{task_id}"}},
    }


def make_attached_task(*networks):
    task = make_task("t1")
    task["NetworksAttachments"] = [
        {"Network": {"Spec": {"Name": name}}, "Addresses": [address]}
        for name, address in networks
    ]
    return task


def make_config(name, data=None):
    config = Mock()
    config.name = name
    if data is not None:
        config.attrs = {"Spec": {"Data": base64.b64encode(json.dumps(data).encode()).decode()}}
    return config


class TestDockerOrchestrationClient:
    """Test DockerOrchestrationClient functionality."""

    @pytest.fixture
    def service_obj(self):
        obj = Mock()
        obj.attrs = {
            "Spec": {
                "Labels": {REVISION_LABEL: "quickserve-1", "team": "web"},
                "Mode": {"Replicated": {"Replicas": 2}},
                "TaskTemplate": {"ContainerSpec": {"Image": f"{IMAGE}@sha256:abc123"}},
            }
        }
        obj.tasks = Mock(return_value=[make_task("t1"), make_task("t2")])
        obj.update = Mock()
        return obj

    @pytest.fixture
    def mock_docker_client(self, service_obj):
        client = Mock()
        client.ping = Mock(return_value=True)
        client.services.get = Mock(return_value=service_obj)
        return client

    @pytest.fixture
    def backend(self, mock_docker_client):
        return DockerOrchestrationClient(
            registry="registry.example.com",
            retries=2,
            retry_delay=0,
            poll_interval=0.01,
            client=mock_docker_client,
        )

    @pytest.mark.asyncio
    async def test_current_revision_from_label(self, backend, service, mock_docker_client):
        revision = await backend.current_revision(service)

        assert revision == RevisionReference(ref="quickserve-1")
        mock_docker_client.services.get.assert_called_once_with(
            "quickserve-cluster_quickserve-service"
        )

    @pytest.mark.asyncio
    async def test_current_revision_absent_for_new_service(
        self, backend, service, mock_docker_client
    ):
        mock_docker_client.services.get.side_effect = NotFound("no such service")

        assert await backend.current_revision(service) is None

    @pytest.mark.asyncio
    async def test_current_revision_absent_without_label(self, backend, service, service_obj):
        service_obj.attrs["Spec"]["Labels"] = {}

        assert await backend.current_revision(service) is None

    @pytest.mark.asyncio
    async def test_register_revision_creates_next_config(
        self, backend, template, mock_docker_client
    ):
        mock_docker_client.configs.list.return_value = [
            make_config("quickserve-1"),
            make_config("quickserve-3"),
        ]

        revision = await backend.register_revision("v2", template)

        assert revision == RevisionReference(ref="quickserve-4")
        kwargs = mock_docker_client.configs.create.call_args.kwargs
        assert kwargs["name"] == "quickserve-4"
        assert json.loads(kwargs["data"])["image"] == IMAGE
        # Registration never touches the live service
        mock_docker_client.services.get.assert_not_called()

    @pytest.mark.asyncio
    async def test_register_rejected_is_fatal(self, backend, template, mock_docker_client):
        mock_docker_client.configs.list.return_value = []
        mock_docker_client.configs.create.side_effect = api_error(409)

        with pytest.raises(OrchestrationError) as exc_info:
            await backend.register_revision("v2", template)

        assert exc_info.value.kind == ErrorKind.FATAL
        assert mock_docker_client.configs.create.call_count == 1

    @pytest.mark.asyncio
    async def test_update_service_applies_revision(
        self, backend, service, service_obj, mock_docker_client
    ):
        mock_docker_client.configs.get.return_value = make_config(
            "quickserve-2",
            {"family": "quickserve", "image": IMAGE, "env": {"PORT": "3000"}, "replicas": 3},
        )

        await backend.update_service(service, RevisionReference(ref="quickserve-2"))

        kwargs = service_obj.update.call_args.kwargs
        assert kwargs["image"] == IMAGE
        assert kwargs["env"] == ["PORT=3000"]
        assert kwargs["labels"] == {REVISION_LABEL: "quickserve-2", "team": "web"}
        assert kwargs["container_labels"] == {REVISION_LABEL: "quickserve-2"}
        assert kwargs["force_update"] is True
        assert kwargs["mode"] == ServiceMode("replicated", replicas=3)

    @pytest.mark.asyncio
    async def test_update_with_unknown_revision_is_fatal(
        self, backend, service, service_obj, mock_docker_client
    ):
        mock_docker_client.configs.get.side_effect = NotFound("no such config")

        with pytest.raises(OrchestrationError) as exc_info:
            await backend.update_service(service, RevisionReference(ref="missing-1"))

        assert exc_info.value.kind == ErrorKind.FATAL
        service_obj.update.assert_not_called()

    @pytest.mark.asyncio
    async def test_stable_when_all_replicas_on_target(self, backend, service):
        assert await backend.wait_until_stable(service, timeout=1.0) is True

    @pytest.mark.asyncio
    async def test_old_tasks_keep_service_unstable(self, backend, service, service_obj):
        service_obj.tasks.return_value = [
            make_task("t1"),
            make_task("t2"),
            make_task("t0", image="registry.example.com/quickserve:v1", revision="quickserve-0"),
        ]

        assert await backend.wait_until_stable(service, timeout=0.05) is False

    @pytest.mark.asyncio
    async def test_missing_replicas_keep_service_unstable(self, backend, service, service_obj):
        service_obj.tasks.return_value = [make_task("t1"), make_task("t2", state="starting")]

        assert await backend.wait_until_stable(service, timeout=0.05) is False

    @pytest.mark.asyncio
    async def test_same_tag_new_digest_waits_for_new_tasks(self, backend, service, service_obj):
        latest = "registry.example.com/quickserve:latest"
        service_obj.attrs["Spec"]["Labels"][REVISION_LABEL] = "quickserve-2"
        service_obj.attrs["Spec"]["TaskTemplate"]["ContainerSpec"]["Image"] = (
            f"{latest}@sha256:new"
        )
        service_obj.tasks.return_value = [
            make_task("t1", image=latest, digest="old"),
            make_task("t2", image=latest, digest="old"),
        ]

        assert await backend.wait_until_stable(service, timeout=0.05) is False

        service_obj.tasks.return_value = [
            make_task("t3", image=latest, digest="new", revision="quickserve-2"),
            make_task("t4", image=latest, digest="new", revision="quickserve-2"),
        ]

        assert await backend.wait_until_stable(service, timeout=0.05) is True

    @pytest.mark.asyncio
    async def test_env_only_revision_waits_for_new_tasks(self, backend, service, service_obj):
        # quickserve-2 differs from quickserve-1 only in env; the image is identical
        service_obj.attrs["Spec"]["Labels"][REVISION_LABEL] = "quickserve-2"

        assert await backend.wait_until_stable(service, timeout=0.05) is False

        service_obj.tasks.return_value = [
            make_task("t1", revision="quickserve-2"),
            make_task("t2", revision="quickserve-1"),
        ]

        assert await backend.wait_until_stable(service, timeout=0.05) is False

    @pytest.mark.asyncio
    async def test_unmanaged_service_compares_images(self, backend, service, service_obj):
        service_obj.attrs["Spec"]["Labels"] = {}
        service_obj.tasks.return_value = [
            make_task("t1", revision=None),
            make_task("t2", revision=None),
        ]

        assert await backend.wait_until_stable(service, timeout=0.05) is True

    @pytest.mark.asyncio
    async def test_halted_update_raises(self, backend, service, service_obj):
        service_obj.attrs["UpdateStatus"] = {"State": "paused"}

        with pytest.raises(OrchestrationError):
            await backend.wait_until_stable(service, timeout=1.0)

    @pytest.mark.asyncio
    async def test_list_running_instances(self, backend, service, service_obj):
        service_obj.tasks.return_value = [
            make_task("t1"),
            make_task("t2", state="preparing"),
            make_task("t3"),
        ]

        assert await backend.list_running_instances(service) == {"t1", "t3"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "health,expected",
        [
            ({"Status": "healthy"}, HealthVerdict.HEALTHY),
            ({"Status": "unhealthy"}, HealthVerdict.UNHEALTHY),
            ({"Status": "starting"}, HealthVerdict.UNKNOWN),
            (None, HealthVerdict.UNKNOWN),
        ],
    )
    async def test_instance_health(self, backend, mock_docker_client, health, expected):
        mock_docker_client.api.inspect_task.return_value = make_task("t1")
        container = Mock()
        container.attrs = {"State": {"Health": health} if health else {}}
        mock_docker_client.containers.get.return_value = container

        assert await backend.instance_health("t1") == expected
        mock_docker_client.containers.get.assert_called_once_with("c-t1")

    @pytest.mark.asyncio
    async def test_instance_health_without_container(self, backend, mock_docker_client):
        mock_docker_client.api.inspect_task.return_value = {"Status": {"State": "pending"}}

        assert await backend.instance_health("t1") == HealthVerdict.UNKNOWN
        mock_docker_client.containers.get.assert_not_called()

    @pytest.mark.asyncio
    async def test_instance_address_prefers_service_network(self, backend, mock_docker_client):
        mock_docker_client.api.inspect_task.return_value = make_attached_task(
            ("ingress", "10.0.0.7/24"), ("quickserve_default", "10.0.1.5/24")
        )

        assert await backend.instance_address("t1") == "10.0.1.5"
        mock_docker_client.api.inspect_task.assert_called_once_with("t1")

    @pytest.mark.asyncio
    async def test_instance_address_falls_back_to_ingress(self, backend, mock_docker_client):
        mock_docker_client.api.inspect_task.return_value = make_attached_task(
            ("ingress", "10.0.0.7/24")
        )

        assert await backend.instance_address("t1") == "10.0.0.7"

    @pytest.mark.asyncio
    async def test_instance_address_absent_before_attachment(self, backend, mock_docker_client):
        mock_docker_client.api.inspect_task.return_value = make_task("t1", state="pending")

        assert await backend.instance_address("t1") is None

    @pytest.mark.asyncio
    async def test_http_probe_targets_task_address(self, backend, mock_docker_client):
        mock_docker_client.api.inspect_task.return_value = make_attached_task(
            ("quickserve_default", "10.0.1.5/24")
        )
        probe = HttpHealthProbe("http://{address}:3000/health", client=backend)

        with patch("httpx.AsyncClient") as mock_client:
            response = Mock(status_code=200)
            response.json.return_value = {"status": "DEGRADED"}
            get = AsyncMock(return_value=response)
            mock_client.return_value.__aenter__.return_value.get = get

            verdict = await probe.check("t1")

        get.assert_awaited_once_with("http://10.0.1.5:3000/health")
        assert verdict == HealthVerdict.UNHEALTHY


class TestRetryPolicy:
    """TRANSIENT errors are retried inside the client; FATAL ones are not."""

    @pytest.fixture
    def mock_docker_client(self):
        return Mock()

    @pytest.fixture
    def backend(self, mock_docker_client):
        return DockerOrchestrationClient(retries=2, retry_delay=0, client=mock_docker_client)

    @pytest.mark.asyncio
    async def test_transient_error_is_retried(self, backend, mock_docker_client):
        mock_docker_client.ping.side_effect = [api_error(503), True]

        await backend.ping()

        assert mock_docker_client.ping.call_count == 2

    @pytest.mark.asyncio
    async def test_connection_error_is_retried(self, backend, mock_docker_client):
        mock_docker_client.ping.side_effect = [requests.exceptions.ConnectionError("down"), True]

        await backend.ping()

        assert mock_docker_client.ping.call_count == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries_become_fatal(self, backend, mock_docker_client):
        mock_docker_client.ping.side_effect = api_error(503)

        with pytest.raises(OrchestrationError) as exc_info:
            await backend.ping()

        assert exc_info.value.kind == ErrorKind.FATAL
        assert mock_docker_client.ping.call_count == 3

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self, backend, mock_docker_client):
        mock_docker_client.ping.side_effect = api_error(400)

        with pytest.raises(OrchestrationError) as exc_info:
            await backend.ping()

        assert exc_info.value.kind == ErrorKind.FATAL
        assert mock_docker_client.ping.call_count == 1
