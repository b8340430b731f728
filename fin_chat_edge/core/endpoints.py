"""Private endpoint fabric for the isolated subnet tier.

Interface endpoints place network interfaces in the isolated tier and
enable private DNS, so the standard service hostnames resolve to private
addresses and the container needs no code change to pull images or ship
logs and metrics. The storage gateway endpoint works at the routing layer:
it adds an entry to each route table of the tier and takes no security
group.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from .context import ProvisioningContext
from .errors import ConfigurationError, ReachabilityError
from .fabric import FabricHandle
from .reachability import GroupHandle, Protocol, ReachabilityPolicy
from .resources import ResourceKind, ResourceSpec

logger = logging.getLogger(__name__)

CONTROL_PLANE_PORT = 443


class EndpointService(str, Enum):
    """Control-plane services reached through private endpoints."""

    REGISTRY_API = "registry-api"
    REGISTRY_DATA = "registry-data"
    STORAGE = "storage"
    LOGS = "logs"
    METRICS = "metrics"


class EndpointType(str, Enum):
    INTERFACE = "interface"
    GATEWAY = "gateway"


# AWS service name suffix and standard hostname for each service.
SERVICE_CATALOG: dict[EndpointService, tuple[str, str]] = {
    EndpointService.REGISTRY_API: ("ecr.api", "api.ecr.{region}.amazonaws.com"),
    EndpointService.REGISTRY_DATA: ("ecr.dkr", "dkr.ecr.{region}.amazonaws.com"),
    EndpointService.STORAGE: ("s3", "s3.{region}.amazonaws.com"),
    EndpointService.LOGS: ("logs", "logs.{region}.amazonaws.com"),
    EndpointService.METRICS: ("monitoring", "monitoring.{region}.amazonaws.com"),
}

DEFAULT_ENDPOINT_TYPES: dict[EndpointService, EndpointType] = {
    EndpointService.REGISTRY_API: EndpointType.INTERFACE,
    EndpointService.REGISTRY_DATA: EndpointType.INTERFACE,
    EndpointService.STORAGE: EndpointType.GATEWAY,
    EndpointService.LOGS: EndpointType.INTERFACE,
    EndpointService.METRICS: EndpointType.INTERFACE,
}


def service_name(service: EndpointService, region: str) -> str:
    """AWS PrivateLink service name, e.g. ``com.amazonaws.ca-central-1.ecr.api``."""
    return f"com.amazonaws.{region}.{SERVICE_CATALOG[service][0]}"


def service_hostname(service: EndpointService, region: str) -> str:
    return SERVICE_CATALOG[service][1].format(region=region)


@dataclass(frozen=True)
class EndpointHandle:
    """Read-only view of an attached endpoint."""

    name: str
    service: EndpointService
    endpoint_type: EndpointType
    tier: str
    group: GroupHandle | None
    private_dns_enabled: bool
    route_tables: tuple[str, ...]
    hostname: str


class PrivateEndpointFabric:
    """Attaches endpoints and answers runtime reachability questions."""

    def __init__(
        self,
        context: ProvisioningContext,
        fabric: FabricHandle,
        policy: ReachabilityPolicy,
    ) -> None:
        self._context = context
        self._fabric = fabric
        self._policy = policy
        self._endpoints: dict[EndpointService, EndpointHandle] = {}

    @property
    def endpoints(self) -> tuple[EndpointHandle, ...]:
        return tuple(self._endpoints.values())

    def attach_endpoint(
        self,
        service: EndpointService,
        endpoint_type: EndpointType,
        fabric: FabricHandle,
        tier: str,
        group: GroupHandle | None = None,
    ) -> EndpointHandle:
        """Declare a private endpoint for ``service`` in ``tier``.

        Args:
            service: Control-plane service to reach.
            endpoint_type: Interface (ENI + private DNS) or gateway (route).
            fabric: Fabric the endpoint lives in.
            tier: Isolated tier whose members use the endpoint.
            group: Security group guarding an interface endpoint.

        Returns:
            Handle of the declared endpoint.

        Raises:
            ConfigurationError: On a duplicate service, a public tier, a
                missing group for an interface endpoint, or a group given to
                a gateway endpoint.
        """
        if fabric != self._fabric:
            msg = f"Endpoint fabric is bound to '{self._fabric.name}', not '{fabric.name}'"
            raise ConfigurationError(msg)
        if service in self._endpoints:
            msg = f"An endpoint for '{service.value}' is already attached"
            raise ConfigurationError(msg)
        if not fabric.is_isolated(tier):
            msg = f"Private endpoints belong on an isolated tier, '{tier}' is public"
            raise ConfigurationError(msg)

        name = self._context.resource_name("endpoint", service.value)
        hostname = service_hostname(service, fabric.region)
        if endpoint_type is EndpointType.INTERFACE:
            if group is None:
                msg = f"Interface endpoint '{service.value}' requires a security group"
                raise ConfigurationError(msg)
            handle = EndpointHandle(
                name=name,
                service=service,
                endpoint_type=endpoint_type,
                tier=tier,
                group=group,
                private_dns_enabled=True,
                route_tables=(),
                hostname=hostname,
            )
            properties = {
                "vpc": fabric.name,
                "service_name": service_name(service, fabric.region),
                "endpoint_type": endpoint_type.value,
                "tier": tier,
                "security_groups": [group.name],
                "private_dns_enabled": True,
            }
            depends_on: tuple[str, ...] = (fabric.name, group.name)
        else:
            if group is not None:
                msg = (
                    f"Gateway endpoint '{service.value}' is routed through route "
                    "tables and does not take a security group"
                )
                raise ConfigurationError(msg)
            route_tables = fabric.route_tables(tier)
            handle = EndpointHandle(
                name=name,
                service=service,
                endpoint_type=endpoint_type,
                tier=tier,
                group=None,
                private_dns_enabled=False,
                route_tables=route_tables,
                hostname=hostname,
            )
            properties = {
                "vpc": fabric.name,
                "service_name": service_name(service, fabric.region),
                "endpoint_type": endpoint_type.value,
                "tier": tier,
                "route_tables": list(route_tables),
            }
            depends_on = (fabric.name,)

        self._context.arena.declare(
            ResourceSpec(
                kind=ResourceKind.VPC_ENDPOINT,
                name=name,
                properties=properties,
                depends_on=depends_on,
            ),
        )
        self._endpoints[service] = handle
        logger.info("Declared %s endpoint for %s in tier %s", endpoint_type.value, service.value, tier)
        return handle

    def endpoint(self, service: EndpointService) -> EndpointHandle | None:
        return self._endpoints.get(service)

    def resolve(self, hostname: str) -> EndpointHandle | None:
        """Return the endpoint private DNS maps ``hostname`` to, if any.

        Registry data hostnames are account-prefixed
        (``<account>.dkr.ecr.<region>.amazonaws.com``), so suffix matches count.
        """
        for handle in self._endpoints.values():
            if not handle.private_dns_enabled:
                continue
            if hostname == handle.hostname or hostname.endswith("." + handle.hostname):
                return handle
        return None

    def connect(self, service: EndpointService, source: GroupHandle) -> EndpointHandle:
        """Open a control-plane connection from ``source`` to ``service``.

        Returns:
            The endpoint that carried the connection.

        Raises:
            ReachabilityError: If there is no endpoint for the service, the
                policy refuses the flow, or no gateway route covers the
                source tier. The isolated tier has no internet fallback.
        """
        handle = self._endpoints.get(service)
        if handle is None:
            msg = (
                f"No private endpoint for '{service.value}'; the isolated tier has "
                "no route to the public service"
            )
            raise ReachabilityError(msg, source=source.name, destination=service.value)

        if handle.endpoint_type is EndpointType.GATEWAY:
            if source.tier != handle.tier:
                msg = (
                    f"Tier '{source.tier}' has no route-table entry for the "
                    f"'{service.value}' gateway endpoint"
                )
                raise ReachabilityError(msg, source=source.name, destination=handle.name)
            return handle

        if handle.group is None or not self._policy.permits(
            source,
            handle.group,
            Protocol.TCP,
            CONTROL_PLANE_PORT,
        ):
            guard = handle.group.name if handle.group else handle.name
            msg = (
                f"Connection refused: '{guard}' does not accept "
                f"TCP/{CONTROL_PLANE_PORT} from '{source.name}' ({handle.hostname})"
            )
            raise ReachabilityError(msg, source=source.name, destination=handle.name)
        return handle
