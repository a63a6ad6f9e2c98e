"""
Deployment coordinator.

Sequences one deployment attempt as an explicit state machine::

    INIT -> VALIDATED -> REGISTERED -> SWAPPING -> STABLE -> HEALTH_CHECKED -> SUCCEEDED
                                   \\_________ any failure _________/
                                               |
                                         ROLLING_BACK -> ROLLED_BACK | ROLLBACK_FAILED

INIT and VALIDATED are read-only, so failures there end in
ABORTED_BEFORE_MUTATION without cleanup. From REGISTERED on the live service
is (or may be) mutated and every failure funnels into a single ROLLING_BACK
transition, so at most one rollback is attempted per deployment.
"""

import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Optional, Union

from service_deployer.errors import (
    InvalidTransitionError,
    NoRollbackTargetError,
    OrchestrationError,
)
from service_deployer.health import HealthProbe, probe_all
from service_deployer.logging_config import LogContext
from service_deployer.models import (
    TERMINAL_PHASES,
    DeploymentAttempt,
    DeploymentPhase,
    ServiceIdentity,
)
from service_deployer.orchestration.base import OrchestrationClient
from service_deployer.orchestration.template import load_template
from service_deployer.rollback import RollbackController
from service_deployer.smoke_test import SkippedSmokeTestRunner, SmokeTestRunner

logger = logging.getLogger(__name__)
transition_logger = logging.getLogger("service_deployer.transitions")

P = DeploymentPhase

TRANSITIONS: Dict[DeploymentPhase, FrozenSet[DeploymentPhase]] = {
    P.INIT: frozenset({P.VALIDATED, P.ABORTED_BEFORE_MUTATION}),
    P.VALIDATED: frozenset({P.REGISTERED, P.ABORTED_BEFORE_MUTATION}),
    P.REGISTERED: frozenset({P.SWAPPING, P.ROLLING_BACK}),
    P.SWAPPING: frozenset({P.STABLE, P.ROLLING_BACK}),
    P.STABLE: frozenset({P.HEALTH_CHECKED, P.ROLLING_BACK}),
    P.HEALTH_CHECKED: frozenset({P.SUCCEEDED, P.ROLLING_BACK}),
    P.ROLLING_BACK: frozenset({P.ROLLED_BACK, P.ROLLBACK_FAILED}),
    P.SUCCEEDED: frozenset(),
    P.ROLLED_BACK: frozenset(),
    P.ROLLBACK_FAILED: frozenset(),
    P.ABORTED_BEFORE_MUTATION: frozenset(),
}


def add_event(
    attempt: DeploymentAttempt,
    event_type: str,
    message: str,
    details: Optional[dict] = None,
) -> None:
    """
    Add an event to an attempt's timeline.

    Args:
        attempt: The attempt to add the event to
        event_type: Type of event (e.g., "transition", "health_report")
        message: Human-readable event message
        details: Optional additional details dict
    """
    event: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "type": event_type,
        "message": message,
    }
    if details:
        event["details"] = details
    attempt.events.append(event)


class DeploymentCoordinator:
    """Drives a single deployment attempt through the state machine."""

    def __init__(
        self,
        client: OrchestrationClient,
        service: ServiceIdentity,
        health_probe: HealthProbe,
        smoke_test: Union[SmokeTestRunner, SkippedSmokeTestRunner],
        template: Optional[str] = None,
        template_path: Optional[Union[str, Path]] = None,
        stabilize_timeout: float = 600.0,
        rollback_timeout: float = 600.0,
        rollback_controller: Optional[RollbackController] = None,
    ) -> None:
        """
        Initialize the coordinator.

        Args:
            client: Orchestration platform client
            service: Service being deployed
            health_probe: Per-instance health probe
            smoke_test: Smoke-test runner
            template: Raw revision template text
            template_path: File to read the template from when ``template`` is None
            stabilize_timeout: Seconds to wait for the new revision to stabilize
            rollback_timeout: Seconds to wait for a rollback to stabilize
            rollback_controller: Defaults to a controller over ``client``
        """
        if template is None and template_path is None:
            raise ValueError("Either template or template_path is required")

        self.client = client
        self.service = service
        self.health_probe = health_probe
        self.smoke_test = smoke_test
        self.template = template
        self.template_path = template_path
        self.stabilize_timeout = stabilize_timeout
        self.rollback_timeout = rollback_timeout
        self.rollback_controller = rollback_controller or RollbackController(client)

        self._handlers: Dict[
            DeploymentPhase, Callable[[DeploymentAttempt], Awaitable[DeploymentPhase]]
        ] = {
            P.INIT: self._validate,
            P.VALIDATED: self._register,
            P.REGISTERED: self._swap,
            P.SWAPPING: self._await_stability,
            P.STABLE: self._check_health,
            P.HEALTH_CHECKED: self._run_smoke_test,
            P.ROLLING_BACK: self._roll_back,
        }

    def new_attempt(self, image_tag: str) -> DeploymentAttempt:
        return DeploymentAttempt(
            deployment_id=str(uuid.uuid4()),
            service=self.service,
            image_tag=image_tag,
        )

    async def deploy(self, image_tag: str) -> DeploymentAttempt:
        """
        Run one deployment attempt to completion.

        Args:
            image_tag: Image tag to deploy

        Returns:
            The finished attempt; ``attempt.outcome`` holds the result
        """
        attempt = self.new_attempt(image_tag)

        with LogContext(logger, deployment_id=attempt.deployment_id, service=str(self.service)):
            logger.info(
                f"Starting deployment {attempt.deployment_id} of {image_tag} to {self.service}"
            )
            add_event(attempt, "started", f"Deploying {image_tag} to {self.service}")

            while not attempt.phase.is_terminal:
                await self.step(attempt)

        logger.info(f"Deployment {attempt.deployment_id} finished: {attempt.outcome.value}")
        return attempt

    async def step(self, attempt: DeploymentAttempt) -> DeploymentPhase:
        """
        Execute the transition out of the attempt's current phase.

        Returns:
            The phase the attempt moved to
        """
        current = attempt.phase
        handler = self._handlers.get(current)
        if handler is None:
            raise InvalidTransitionError(f"No transition out of terminal phase {current.value}")

        try:
            next_phase = await handler(attempt)
        except (InvalidTransitionError, NoRollbackTargetError):
            raise
        except Exception as e:
            if current == P.ROLLING_BACK:
                logger.error(f"Rollback raised unexpectedly: {e}", exc_info=True)
                self._record_failure(attempt, f"rollback error: {e}")
                next_phase = P.ROLLBACK_FAILED
            elif attempt.mutated:
                logger.error(f"Unexpected error in phase {current.value}: {e}", exc_info=True)
                self._record_failure(attempt, f"unexpected error in {current.value}: {e}")
                next_phase = P.ROLLING_BACK
            else:
                raise

        self._transition(attempt, next_phase)
        return next_phase

    def _transition(self, attempt: DeploymentAttempt, next_phase: DeploymentPhase) -> None:
        allowed = TRANSITIONS[attempt.phase]
        if next_phase not in allowed:
            raise InvalidTransitionError(
                f"Transition {attempt.phase.value} -> {next_phase.value} is not allowed"
            )

        previous = attempt.phase
        attempt.phase = next_phase
        if next_phase.is_terminal:
            attempt.outcome = TERMINAL_PHASES[next_phase]
            attempt.completed_at = datetime.now(timezone.utc).isoformat()

        transition_logger.info(f"{attempt.deployment_id}: {previous.value} -> {next_phase.value}")
        add_event(
            attempt,
            "transition",
            f"{previous.value} -> {next_phase.value}",
            {"from": previous.value, "to": next_phase.value},
        )

    @staticmethod
    def _record_failure(attempt: DeploymentAttempt, reason: str) -> None:
        if attempt.failure_reason:
            attempt.failure_reason = f"{attempt.failure_reason}; {reason}"
        else:
            attempt.failure_reason = reason

    # ------------------------------------------------------------------
    # Read-only phases
    # ------------------------------------------------------------------

    async def _validate(self, attempt: DeploymentAttempt) -> DeploymentPhase:
        try:
            await self.client.ping()
            if self.template is not None:
                attempt.template = self.template
            else:
                attempt.template = await load_template(self.template_path)  # type: ignore[arg-type]
            attempt.previous_revision = await self.client.current_revision(self.service)
        except OrchestrationError as e:
            logger.error(f"Validation failed, nothing was changed: {e}")
            self._record_failure(attempt, f"validation failed: {e}")
            return P.ABORTED_BEFORE_MUTATION

        if attempt.previous_revision is None:
            logger.warning("No existing revision found. This might be a first deployment.")
        else:
            logger.info(f"Current revision: {attempt.previous_revision}")
        return P.VALIDATED

    async def _register(self, attempt: DeploymentAttempt) -> DeploymentPhase:
        try:
            attempt.new_revision = await self.client.register_revision(
                attempt.image_tag, attempt.template or ""
            )
        except OrchestrationError as e:
            logger.error(f"Failed to register new revision, nothing was changed: {e}")
            self._record_failure(attempt, f"registration failed: {e}")
            return P.ABORTED_BEFORE_MUTATION

        logger.info(f"New revision registered: {attempt.new_revision}")
        return P.REGISTERED

    # ------------------------------------------------------------------
    # Mutating phases
    # ------------------------------------------------------------------

    async def _swap(self, attempt: DeploymentAttempt) -> DeploymentPhase:
        if attempt.new_revision is None:
            raise InvalidTransitionError("Cannot swap: no revision was registered")

        attempt.mutated = True
        try:
            await self.client.update_service(self.service, attempt.new_revision)
        except OrchestrationError as e:
            logger.error(f"Service update failed: {e}")
            self._record_failure(attempt, f"swap failed: {e}")
            return P.ROLLING_BACK

        logger.info("Service update initiated")
        return P.SWAPPING

    async def _await_stability(self, attempt: DeploymentAttempt) -> DeploymentPhase:
        logger.info(f"Waiting for service to stabilize (max {self.stabilize_timeout}s)...")
        try:
            stable = await self.client.wait_until_stable(self.service, self.stabilize_timeout)
        except OrchestrationError as e:
            logger.error(f"Error while waiting for stability: {e}")
            self._record_failure(attempt, f"stabilization failed: {e}")
            return P.ROLLING_BACK

        if not stable:
            logger.error(f"Service failed to stabilize within {self.stabilize_timeout} seconds")
            self._record_failure(
                attempt, f"service did not stabilize within {self.stabilize_timeout}s"
            )
            return P.ROLLING_BACK

        logger.info("Service is stable")
        return P.STABLE

    async def _check_health(self, attempt: DeploymentAttempt) -> DeploymentPhase:
        logger.info("Running health checks...")
        try:
            instances = await self.client.list_running_instances(self.service)
        except OrchestrationError as e:
            logger.error(f"Could not list running instances: {e}")
            self._record_failure(attempt, f"health check failed: {e}")
            return P.ROLLING_BACK

        if not instances:
            logger.warning("No running instances found to health check")

        report = await probe_all(self.health_probe, instances)
        attempt.health_report = report
        add_event(
            attempt,
            "health_report",
            f"{len(report.verdicts)} instances checked",
            {k: v.value for k, v in report.verdicts.items()},
        )

        unknown = report.unknown()
        if unknown:
            logger.warning(f"Instances not yet evaluated (UNKNOWN): {', '.join(unknown)}")

        if report.is_failing:
            unhealthy = report.unhealthy()
            logger.error(f"Unhealthy instances: {', '.join(unhealthy)}")
            self._record_failure(attempt, f"unhealthy instances: {', '.join(unhealthy)}")
            return P.ROLLING_BACK

        logger.info("Health checks completed")
        return P.HEALTH_CHECKED

    async def _run_smoke_test(self, attempt: DeploymentAttempt) -> DeploymentPhase:
        attempt.smoke_test_passed = await self.smoke_test.run()
        if not attempt.smoke_test_passed:
            self._record_failure(attempt, "smoke test failed")
            return P.ROLLING_BACK

        logger.info(f"Deployment completed successfully: revision {attempt.new_revision}")
        return P.SUCCEEDED

    async def _roll_back(self, attempt: DeploymentAttempt) -> DeploymentPhase:
        try:
            restored = await self.rollback_controller.rollback(
                self.service, attempt.previous_revision, self.rollback_timeout
            )
        except NoRollbackTargetError as e:
            logger.error(f"{e}. Manual intervention required.")
            self._record_failure(attempt, "rollback failed: no rollback target")
            return P.ROLLBACK_FAILED

        if not restored:
            logger.error(
                f"Rollback to {attempt.previous_revision} failed. Manual intervention required."
            )
            self._record_failure(attempt, "rollback failed to stabilize")
            return P.ROLLBACK_FAILED

        return P.ROLLED_BACK
