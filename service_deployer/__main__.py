"""
service-deployer CLI entry point.
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional, Tuple, Union

from service_deployer.config.settings import ServiceDeployerConfig
from service_deployer.coordinator import DeploymentCoordinator
from service_deployer.errors import ConfigurationError
from service_deployer.health import HealthProbe, HttpHealthProbe, PlatformHealthProbe
from service_deployer.logging_config import setup_logging
from service_deployer.models import DeploymentAttempt, Outcome
from service_deployer.orchestration import (
    DockerOrchestrationClient,
    InMemoryOrchestrationClient,
    OrchestrationClient,
)
from service_deployer.smoke_test import SkippedSmokeTestRunner, SmokeTestRunner

logger = logging.getLogger(__name__)

LATEST_IMAGE_TAG = "latest"
DEFAULT_CONFIG_PATH = "deploy/service-deployer.yml"

EXIT_CODES = {
    Outcome.SUCCEEDED: 0,
    Outcome.ROLLED_BACK: 1,
    Outcome.ABORTED_BEFORE_MUTATION: 2,
    Outcome.ROLLBACK_FAILED: 3,
}
EXIT_CONFIG_ERROR = 2


def build_client(config: ServiceDeployerConfig) -> OrchestrationClient:
    """Create the orchestration client selected by the configuration."""
    platform = config.platform
    if platform.backend == "memory":
        client = InMemoryOrchestrationClient(registry=platform.registry or "local")
        client.add_service(config.service.identity)
        return client

    return DockerOrchestrationClient(
        docker_host=platform.docker_host,
        registry=platform.registry,
        retries=platform.retries,
        retry_delay=platform.retry_delay,
        poll_interval=platform.poll_interval,
    )


def build_coordinator(
    config: ServiceDeployerConfig, client: OrchestrationClient
) -> DeploymentCoordinator:
    """Wire a coordinator and its collaborators from configuration."""
    probe: HealthProbe
    if config.health.mode == "http":
        probe = HttpHealthProbe(
            config.health.url_template, timeout=config.health.timeout, client=client
        )
    else:
        probe = PlatformHealthProbe(client, timeout=config.health.timeout)

    smoke_test: Union[SmokeTestRunner, SkippedSmokeTestRunner]
    if config.smoke_test.command:
        smoke_test = SmokeTestRunner(
            config.smoke_test.command,
            timeout=config.smoke_test.timeout,
            health_endpoint=config.smoke_test.health_endpoint,
        )
    else:
        smoke_test = SkippedSmokeTestRunner()

    return DeploymentCoordinator(
        client=client,
        service=config.service.identity,
        health_probe=probe,
        smoke_test=smoke_test,
        template_path=config.deploy.template_path,
        stabilize_timeout=config.deploy.stabilize_timeout,
        rollback_timeout=config.deploy.rollback_timeout,
    )


async def run_deployment(config: ServiceDeployerConfig, image_tag: str) -> DeploymentAttempt:
    """Run one deployment attempt and release the platform client."""
    client = build_client(config)
    try:
        coordinator = build_coordinator(config, client)
        return await coordinator.deploy(image_tag)
    finally:
        await client.close()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Deploy a service revision with automatic rollback",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Deploy the most recently built image
  service-deployer

  # Deploy a specific tag to another service
  DEPLOY_CLUSTER=prod DEPLOY_SERVICE=api service-deployer v1.4.2

Exit codes: 0 succeeded, 1 rolled back, 2 aborted before any change,
3 rollback failed (manual intervention required).
        """,
    )
    parser.add_argument(
        "image_tag",
        nargs="?",
        default=LATEST_IMAGE_TAG,
        help=f"Image tag to deploy (default: {LATEST_IMAGE_TAG})",
    )
    parser.add_argument(
        "--config",
        "-c",
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--json", action="store_true", help="Print the deployment record as JSON when done"
    )
    parser.add_argument(
        "--generate-config",
        action="store_true",
        help="Generate default configuration file and exit",
    )
    parser.add_argument(
        "--validate-config", action="store_true", help="Validate configuration file and exit"
    )
    return parser.parse_args(argv)


def load_config(args: argparse.Namespace) -> Tuple[Optional[ServiceDeployerConfig], int]:
    """Handle the config-only modes; returns (config, exit code) with config None on exit."""
    if args.generate_config:
        ServiceDeployerConfig().save(args.config)
        print(f"Generated default configuration at: {args.config}")
        return None, 0

    if args.validate_config:
        try:
            ServiceDeployerConfig.from_file(args.config)
            print(f"Configuration valid: {args.config}")
            return None, 0
        except ConfigurationError as e:
            print(f"Configuration invalid: {e}")
            return None, EXIT_CONFIG_ERROR

    try:
        return ServiceDeployerConfig.load(args.config), 0
    except ConfigurationError as e:
        print(f"Configuration invalid: {e}", file=sys.stderr)
        return None, EXIT_CONFIG_ERROR


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    args = parse_args(argv)

    config, exit_code = load_config(args)
    if config is None:
        return exit_code

    setup_logging(
        log_dir=config.logging.log_dir,
        console_level="DEBUG" if args.verbose else "INFO",
        use_json=config.logging.use_json,
    )

    logger.info(f"Cluster: {config.service.cluster}")
    logger.info(f"Service: {config.service.name}")
    logger.info(f"Image Tag: {args.image_tag}")

    try:
        attempt = asyncio.run(run_deployment(config, args.image_tag))
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return 130
    except Exception as e:
        # Only reachable before any mutation; later failures are handled by rollback
        logger.error(f"Fatal error: {e}", exc_info=True)
        print(f"Error running service-deployer: {e}", file=sys.stderr)
        return EXIT_CODES[Outcome.ABORTED_BEFORE_MUTATION]

    if args.json:
        print(json.dumps(attempt.model_dump(mode="json"), indent=2))

    outcome = attempt.outcome or Outcome.ROLLBACK_FAILED
    if outcome == Outcome.SUCCEEDED:
        logger.info(f"Deployment completed successfully! Revision: {attempt.new_revision}")
    elif outcome == Outcome.ROLLBACK_FAILED:
        logger.critical(
            f"Rollback failed, service requires operator attention: {attempt.failure_reason}"
        )
    else:
        logger.error(f"Deployment failed ({outcome.value}): {attempt.failure_reason}")

    return EXIT_CODES[outcome]


if __name__ == "__main__":
    sys.exit(main())
