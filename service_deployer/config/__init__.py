from service_deployer.config.settings import ServiceDeployerConfig

__all__ = ["ServiceDeployerConfig"]
