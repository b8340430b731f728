"""Orchestrator input describing one environment's topology."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from fin_chat_edge.aws.availability_zones import resolve_zone_ids
from fin_chat_edge.config.settings import EdgeServiceSettings
from fin_chat_edge.core.compute import TaskSpec
from fin_chat_edge.core.endpoints import EndpointService
from fin_chat_edge.core.errors import ConfigurationError
from fin_chat_edge.core.fabric import DEFAULT_VPC_CIDR, SubnetTier, Visibility
from fin_chat_edge.core.targets import HealthCheckSettings

ZoneResolver = Callable[[Sequence[str], str], list[str]]


def default_tiers(public_mask: int = 24, isolated_mask: int = 24) -> tuple[SubnetTier, ...]:
    return (
        SubnetTier("Public", public_mask, Visibility.PUBLIC),
        SubnetTier("Private", isolated_mask, Visibility.ISOLATED),
    )


@dataclass(frozen=True)
class TopologySpec:
    """Everything the orchestrator needs to provision an environment.

    Attributes:
        zones: Availability zone names.
        task_spec: Container task definition.
        certificate_ref: Certificate bound to the internal HTTPS listener.
        tiers: Subnet tiers; the first public and the first isolated tier
            are used for placement.
        vpc_cidr: VPC address range.
        replica_count: Steady-state task count.
        service_name: ECS service name.
        health_check: Target health check; defaults to HTTP ``/`` on the
            container port.
        endpoint_services: Control-plane services given a private endpoint.
        endpoint_access_from_compute: Whether the compute group is granted
            the control-plane port on the endpoint group.
    """

    zones: tuple[str, ...]
    task_spec: TaskSpec
    certificate_ref: str
    tiers: tuple[SubnetTier, ...] = field(default_factory=default_tiers)
    vpc_cidr: str = DEFAULT_VPC_CIDR
    replica_count: int = 1
    service_name: str = "fin-chat"
    health_check: HealthCheckSettings | None = None
    endpoint_services: tuple[EndpointService, ...] = tuple(EndpointService)
    endpoint_access_from_compute: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "zones", tuple(self.zones))
        object.__setattr__(self, "tiers", tuple(self.tiers))
        object.__setattr__(self, "endpoint_services", tuple(self.endpoint_services))

    @property
    def public_tier(self) -> str:
        return self._first(Visibility.PUBLIC)

    @property
    def isolated_tier(self) -> str:
        return self._first(Visibility.ISOLATED)

    def _first(self, visibility: Visibility) -> str:
        for tier in self.tiers:
            if tier.visibility is visibility:
                return tier.name
        msg = f"Topology has no {visibility.value} subnet tier"
        raise ConfigurationError(msg)

    @classmethod
    def from_settings(
        cls,
        settings: EdgeServiceSettings,
        image: str | None = None,
        zone_resolver: ZoneResolver = resolve_zone_ids,
    ) -> TopologySpec:
        """Build the topology from settings.

        Args:
            settings: Validated settings.
            image: Image reference overriding ``settings.image``, e.g. the
                URI of an image asset built during synthesis.
            zone_resolver: Resolves zone IDs to names when
                ``settings.availability_zone_ids`` is set.

        Raises:
            ConfigurationError: If no image or certificate is configured.
            DependencyUnavailableError: If zone IDs cannot be resolved.
        """
        image = image or settings.image
        if not image:
            msg = "No container image configured (FIN_CHAT_EDGE_IMAGE)"
            raise ConfigurationError(msg)
        if not settings.certificate_arn:
            msg = "No certificate configured (FIN_CHAT_EDGE_CERTIFICATE_ARN)"
            raise ConfigurationError(msg)

        if settings.availability_zone_ids:
            zones = zone_resolver(settings.availability_zone_ids, settings.aws_region)
        else:
            zones = settings.availability_zones

        return cls(
            zones=tuple(zones),
            task_spec=TaskSpec(
                image=image,
                memory_limit_mib=settings.memory_limit_mib,
                environment=settings.container_environment,
                container_port=settings.container_port,
                cpu=settings.cpu,
            ),
            certificate_ref=settings.certificate_arn,
            tiers=(
                SubnetTier(settings.public_tier_name, settings.public_cidr_mask, Visibility.PUBLIC),
                SubnetTier(
                    settings.isolated_tier_name,
                    settings.isolated_cidr_mask,
                    Visibility.ISOLATED,
                ),
            ),
            vpc_cidr=settings.vpc_cidr,
            replica_count=settings.desired_count,
            service_name=settings.service_name,
            health_check=HealthCheckSettings(
                path=settings.health_check_path,
                port=settings.container_port,
                interval_seconds=settings.health_check_interval_seconds,
                timeout_seconds=settings.health_check_timeout_seconds,
                healthy_threshold=settings.healthy_threshold,
                unhealthy_threshold=settings.unhealthy_threshold,
            ),
        )
