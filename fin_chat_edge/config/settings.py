"""Configuration management for the fin-chat edge service.

Settings come from ``FIN_CHAT_EDGE_*`` environment variables, an optional
``.env`` file and the defaults below, which reproduce the production
topology: two zones in ca-central-1, a /24 public tier and a /24 isolated
tier, one 512 MiB task listening on port 3000.
"""

from __future__ import annotations

import logging
from typing import Literal, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class EdgeServiceSettings(BaseSettings):
    """Main configuration class for the edge service topology.

    Args:
        environment_name: Deployment environment, scopes every resource name.
        aws_region: Region the environment lives in.
        aws_profile: Named profile used for lookups outside CDK synthesis.
        availability_zones: Zone names, in declaration order.
        availability_zone_ids: Zone IDs resolved to names when set.
        vpc_cidr: VPC address range.
        public_tier_name: Name of the public subnet tier.
        public_cidr_mask: Prefix length of public subnets.
        isolated_tier_name: Name of the isolated subnet tier.
        isolated_cidr_mask: Prefix length of isolated subnets.
        service_name: ECS service name.
        image: Container image reference; built from ``image_directory`` when unset.
        image_directory: Docker build context used by the CDK stack.
        memory_limit_mib: Task memory limit.
        cpu: Fargate CPU units.
        container_port: Port the container listens on.
        container_environment: Variables passed verbatim to the container.
        desired_count: Steady-state replica count.
        certificate_arn: ACM certificate bound to the HTTPS listener.
        health_check_path: Target health-check path.
        health_check_interval_seconds: Probe interval.
        health_check_timeout_seconds: Probe timeout.
        healthy_threshold: Consecutive successes to become healthy.
        unhealthy_threshold: Consecutive failures to become unhealthy.
        create_timeout_seconds: Bound on each resource-creation call.
        max_attempts: Attempts for transient failures before giving up.
        retry_base_delay_seconds: First backoff delay.
        retry_max_delay_seconds: Backoff ceiling.
        endpoint_workers: Threads creating private endpoints concurrently.
        log_level: Application log level.

    Returns:
        A validated settings object sourced from environment variables and defaults.
    """

    model_config = SettingsConfigDict(
        env_prefix="FIN_CHAT_EDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    environment_name: str = Field(default="production", description="Deployment environment")

    # AWS Configuration
    aws_region: str = Field(default="ca-central-1", description="AWS region for the environment")
    aws_profile: Optional[str] = Field(
        default=None,
        description="AWS profile for lookups (None uses the default credential chain)",
    )

    # Network Configuration
    availability_zones: list[str] = Field(
        default_factory=lambda: ["ca-central-1a", "ca-central-1b"],
        description="Availability zone names",
    )
    availability_zone_ids: Optional[list[str]] = Field(
        default=None,
        description="Availability zone IDs (e.g. cac1-az1); resolved to names when set",
    )
    vpc_cidr: str = Field(default="10.0.0.0/16", description="VPC address range")
    public_tier_name: str = Field(default="Public", description="Public subnet tier name")
    public_cidr_mask: int = Field(default=24, ge=16, le=28, description="Public subnet mask")
    isolated_tier_name: str = Field(default="Private", description="Isolated subnet tier name")
    isolated_cidr_mask: int = Field(default=24, ge=16, le=28, description="Isolated subnet mask")

    # Compute Configuration
    service_name: str = Field(default="fin-chat", description="ECS service name")
    image: Optional[str] = Field(default=None, description="Container image reference")
    image_directory: str = Field(default="./app", description="Docker build context")
    memory_limit_mib: int = Field(default=512, gt=0, description="Task memory limit")
    cpu: int = Field(default=256, gt=0, description="Fargate CPU units")
    container_port: int = Field(default=3000, gt=0, lt=65536, description="Container port")
    container_environment: dict[str, str] = Field(
        default_factory=lambda: {"PORT": "3000", "NODE_ENV": "production"},
        description="Environment passed verbatim to the container",
    )
    desired_count: int = Field(default=1, ge=0, description="Steady-state replica count")

    # Balancer Configuration
    certificate_arn: Optional[str] = Field(
        default=None,
        description="ACM certificate ARN for the internal HTTPS listener",
    )
    health_check_path: str = Field(default="/", description="Target health-check path")
    health_check_interval_seconds: int = Field(default=30, gt=0, description="Probe interval")
    health_check_timeout_seconds: int = Field(default=5, gt=0, description="Probe timeout")
    healthy_threshold: int = Field(default=2, ge=1, description="Successes to become healthy")
    unhealthy_threshold: int = Field(default=3, ge=1, description="Failures to become unhealthy")

    # Provisioning Configuration
    create_timeout_seconds: float = Field(
        default=600.0,
        gt=0,
        description="Bound on each resource-creation call",
    )
    max_attempts: int = Field(default=5, ge=1, description="Attempts for transient failures")
    retry_base_delay_seconds: float = Field(default=1.0, ge=0, description="First backoff delay")
    retry_max_delay_seconds: float = Field(default=30.0, ge=0, description="Backoff ceiling")
    endpoint_workers: int = Field(default=5, ge=1, description="Concurrent endpoint creations")

    # Logging Configuration
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )

    @field_validator("environment_name")
    @classmethod
    def normalize_environment_name(cls, value: str) -> str:
        value = value.strip().lower()
        if not value:
            msg = "environment_name must not be empty"
            raise ValueError(msg)
        return value

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        return value.upper() if isinstance(value, str) else value

    @model_validator(mode="after")
    def check_container_port_matches_environment(self) -> EdgeServiceSettings:
        port = self.container_environment.get("PORT")
        if port is not None and port != str(self.container_port):
            logger.warning(
                "Container environment PORT=%s differs from container_port=%d",
                port,
                self.container_port,
            )
        return self


# Global settings instance
_settings: Optional[EdgeServiceSettings] = None


def get_settings() -> EdgeServiceSettings:
    """Get global settings instance.

    Returns:
        EdgeServiceSettings: Singleton settings instance.
    """
    global _settings
    if _settings is None:
        _settings = EdgeServiceSettings()
    return _settings


def update_settings(**kwargs) -> EdgeServiceSettings:
    """Update global settings with new values.

    Args:
        **kwargs: Fields to override when constructing new settings.

    Returns:
        EdgeServiceSettings: Newly created settings instance.
    """
    global _settings
    _settings = EdgeServiceSettings(**kwargs)
    return _settings


def reset_settings() -> None:
    """Reset settings to default values.

    This clears the cached singleton so the next call to get_settings will
    construct a fresh instance using current environment variables.
    """
    global _settings
    _settings = None
