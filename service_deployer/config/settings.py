"""
Configuration settings for service-deployer.

Settings are read from an optional YAML file; DEPLOY_CLUSTER and
DEPLOY_SERVICE in the environment override the service identity.
"""

import os
from pathlib import Path
from typing import List, Literal, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError

from service_deployer.errors import ConfigurationError
from service_deployer.models import ServiceIdentity


class PlatformConfig(BaseModel):
    """Orchestration platform connection."""

    backend: Literal["docker", "memory"] = Field(
        default="docker", description="docker (Swarm services) or memory (dry run)"
    )
    docker_host: Optional[str] = Field(
        default=None, description="Docker daemon URL; DOCKER_HOST/local socket when unset"
    )
    registry: str = Field(default="", description="Registry substituted for ${REGISTRY}")
    retries: int = Field(default=3, ge=0, description="Retries for transient platform errors")
    retry_delay: float = Field(default=2.0, ge=0, description="Base backoff delay in seconds")
    poll_interval: float = Field(default=5.0, gt=0, description="Stabilization poll interval")


class ServiceConfig(BaseModel):
    """Identity of the service being deployed."""

    cluster: str = Field(default="quickserve-cluster")
    name: str = Field(default="quickserve-service")

    @property
    def identity(self) -> ServiceIdentity:
        return ServiceIdentity(cluster=self.cluster, service=self.name)


class DeployConfig(BaseModel):
    """Deployment behaviour."""

    template_path: str = Field(
        default="deploy/service-template.yml", description="Revision template file"
    )
    stabilize_timeout: float = Field(default=600.0, gt=0, description="Seconds (10 minutes)")
    rollback_timeout: float = Field(default=600.0, gt=0, description="Seconds (10 minutes)")


class HealthConfig(BaseModel):
    """Per-instance health probing."""

    mode: Literal["platform", "http"] = Field(default="platform")
    url_template: str = Field(
        default="http://{address}:3000/health",
        description="Health URL for http mode; {address} and {instance_id} are substituted",
    )
    timeout: float = Field(default=2.0, gt=0, description="Per-instance probe timeout")


class SmokeTestConfig(BaseModel):
    """External smoke-test suite."""

    command: List[str] = Field(
        default_factory=list,
        description="Command to run, e.g. [scripts/smoke-test.sh]; empty skips smoke tests",
    )
    timeout: float = Field(default=300.0, gt=0)
    health_endpoint: Optional[str] = Field(
        default=None, description="Exported to the suite as HEALTH_ENDPOINT"
    )


class LoggingConfig(BaseModel):
    """Log output."""

    log_dir: Optional[str] = Field(default=None, description="Directory for rotating log files")
    use_json: bool = Field(default=False, description="JSON formatting for file logs")


class ServiceDeployerConfig(BaseModel):
    """Top-level configuration."""

    platform: PlatformConfig = Field(default_factory=PlatformConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    deploy: DeployConfig = Field(default_factory=DeployConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    smoke_test: SmokeTestConfig = Field(default_factory=SmokeTestConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "ServiceDeployerConfig":
        """
        Load configuration from a YAML file.

        Raises:
            ConfigurationError: If the file is missing, unparsable or invalid
        """
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_path, "r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration in {config_path} must be a mapping")

        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration in {config_path}: {e}") from e

    @classmethod
    def load(
        cls, path: Optional[Union[str, Path]] = None, environ: Optional[Mapping[str, str]] = None
    ) -> "ServiceDeployerConfig":
        """Load from ``path`` when it exists, else defaults, then apply the environment."""
        if path and Path(path).exists():
            config = cls.from_file(path)
        else:
            config = cls()
        config.apply_env(os.environ if environ is None else environ)
        return config

    def apply_env(self, environ: Mapping[str, str]) -> None:
        """Override settings from environment variables."""
        if environ.get("DEPLOY_CLUSTER"):
            self.service.cluster = environ["DEPLOY_CLUSTER"]
        if environ.get("DEPLOY_SERVICE"):
            self.service.name = environ["DEPLOY_SERVICE"]
        if environ.get("HEALTH_ENDPOINT") and not self.smoke_test.health_endpoint:
            self.smoke_test.health_endpoint = environ["HEALTH_ENDPOINT"]

    def save(self, path: Union[str, Path]) -> None:
        """Write configuration as YAML."""
        config_path = Path(path)
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            yaml.dump(self.model_dump(), f, default_flow_style=False, sort_keys=False)
