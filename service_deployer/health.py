"""
Health probes for running instances.

A probe answers one question per instance: HEALTHY, UNHEALTHY or UNKNOWN.
Probes never raise; a probe that cannot reach an instance reports UNKNOWN.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Iterable, Optional

import httpx

from service_deployer.errors import OrchestrationError
from service_deployer.models import HealthReport, HealthVerdict
from service_deployer.orchestration.base import OrchestrationClient

logger = logging.getLogger(__name__)


class HealthProbe(ABC):
    """Queries the runtime health of a single instance."""

    def __init__(self, timeout: float = 2.0) -> None:
        self.timeout = timeout

    @abstractmethod
    async def check(self, instance_id: str) -> HealthVerdict:
        """
        Check one instance.

        Promises:
        - Side-effect free
        - Completes within ``timeout`` seconds
        - Never raises; failures yield UNKNOWN
        """
        ...


class HttpHealthProbe(HealthProbe):
    """
    Probe an instance's HTTP health endpoint.

    The endpoint is healthy when it answers 200 with a JSON body whose
    ``status`` field equals ``"OK"``. Any other answer is UNHEALTHY; no answer
    at all (connection refused, timeout) is UNKNOWN.

    ``url_template`` may use ``{instance_id}`` and ``{address}``. With a
    platform client, ``{address}`` is the instance's network address as
    reported by the platform; without one it falls back to the instance id.
    """

    def __init__(
        self,
        url_template: str,
        timeout: float = 2.0,
        client: Optional[OrchestrationClient] = None,
    ) -> None:
        super().__init__(timeout)
        self.url_template = url_template
        self.client = client

    def url_for(self, instance_id: str, address: Optional[str] = None) -> str:
        return self.url_template.format(instance_id=instance_id, address=address or instance_id)

    async def resolve_address(self, instance_id: str) -> Optional[str]:
        if self.client is None or "{address}" not in self.url_template:
            return instance_id
        try:
            return await self.client.instance_address(instance_id)
        except OrchestrationError as e:
            logger.warning(f"Could not resolve address of {instance_id}: {e}")
            return None

    async def check(self, instance_id: str) -> HealthVerdict:
        address = await self.resolve_address(instance_id)
        if address is None:
            logger.warning(f"Instance {instance_id} has no reachable address yet")
            return HealthVerdict.UNKNOWN

        url = self.url_for(instance_id, address)
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(url)
        except httpx.HTTPError as e:
            logger.warning(f"Health probe for {instance_id} failed ({url}): {e}")
            return HealthVerdict.UNKNOWN

        if response.status_code != 200:
            logger.warning(f"Instance {instance_id} health endpoint returned {response.status_code}")
            return HealthVerdict.UNHEALTHY

        try:
            body = response.json()
        except ValueError:
            logger.warning(f"Instance {instance_id} health endpoint returned non-JSON body")
            return HealthVerdict.UNHEALTHY

        if isinstance(body, dict) and body.get("status") == "OK":
            return HealthVerdict.HEALTHY

        logger.warning(f"Instance {instance_id} reports status {body!r}")
        return HealthVerdict.UNHEALTHY


class PlatformHealthProbe(HealthProbe):
    """Ask the orchestration platform for the health it tracks per instance."""

    def __init__(self, client: OrchestrationClient, timeout: float = 2.0) -> None:
        super().__init__(timeout)
        self.client = client

    async def check(self, instance_id: str) -> HealthVerdict:
        try:
            return await self.client.instance_health(instance_id)
        except Exception as e:
            logger.warning(f"Platform health lookup for {instance_id} failed: {e}")
            return HealthVerdict.UNKNOWN


async def probe_all(
    probe: HealthProbe, instance_ids: Iterable[str], timeout: Optional[float] = None
) -> HealthReport:
    """
    Check every instance and collect the verdicts.

    Args:
        probe: Probe to use
        instance_ids: Instances to check
        timeout: Per-instance bound; defaults to the probe's own timeout

    Returns:
        HealthReport with one verdict per instance
    """
    limit = timeout if timeout is not None else probe.timeout
    report = HealthReport()

    for instance_id in sorted(instance_ids):
        try:
            verdict = await asyncio.wait_for(probe.check(instance_id), timeout=limit)
        except asyncio.TimeoutError:
            logger.warning(f"Health probe for {instance_id} timed out after {limit}s")
            verdict = HealthVerdict.UNKNOWN
        except Exception as e:
            logger.warning(f"Health probe for {instance_id} raised: {e}")
            verdict = HealthVerdict.UNKNOWN

        logger.info(f"Instance {instance_id} health: {verdict.value}")
        report.verdicts[instance_id] = verdict

    return report
