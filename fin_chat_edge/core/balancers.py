"""Layered load-balancing chain.

The internal application balancer terminates TLS and forwards plaintext
HTTP to the service's target group. The internet-facing network balancer
passes TCP/443 through unchanged to the internal balancer's HTTPS
listener, which it knows only through a read-only listener handle.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from .compute import ComputePlatform, ServiceHandle
from .context import ProvisioningContext
from .errors import ConfigurationError
from .fabric import FabricHandle
from .reachability import GroupHandle, Protocol, ReachabilityPolicy
from .resources import ResourceKind, ResourceSpec
from .targets import HealthCheckSettings, TargetGroupHandle, TargetProtocol, TargetType

logger = logging.getLogger(__name__)

HTTP_PORT = 80
HTTPS_PORT = 443


class Scheme(str, Enum):
    INTERNAL = "internal"
    INTERNET_FACING = "internet-facing"


class Layer(str, Enum):
    APPLICATION = "application"
    NETWORK = "network"


class ListenerProtocol(str, Enum):
    HTTP = "HTTP"
    HTTPS = "HTTPS"
    TCP = "TCP"


@dataclass(frozen=True)
class RedirectAction:
    """Unconditional redirect preserving host, path and query."""

    protocol: ListenerProtocol = ListenerProtocol.HTTPS
    port: int = HTTPS_PORT
    permanent: bool = True

    @property
    def status_code(self) -> int:
        return 301 if self.permanent else 302

    def apply(self, host: str, path: str = "/", query: str = "") -> tuple[int, str]:
        """Compute the response to a request hitting the redirecting listener.

        Args:
            host: Request Host header, with or without a port.
            path: Request path.
            query: Raw query string without the leading ``?``.

        Returns:
            Status code and ``Location`` header value.
        """
        hostname = host
        if host.startswith("[") and "]" in host:
            # IPv6 literal, e.g. [2001:db8::1]:80
            hostname = host[: host.index("]") + 1]
        elif host.count(":") == 1:
            hostname = host.split(":", 1)[0]
        location = f"{self.protocol.value.lower()}://{hostname}:{self.port}{path or '/'}"
        if query:
            location = f"{location}?{query}"
        return self.status_code, location

    def as_properties(self) -> dict[str, object]:
        return {
            "type": "redirect",
            "protocol": self.protocol.value,
            "port": self.port,
            "permanent": self.permanent,
        }


@dataclass(frozen=True)
class ForwardAction:
    target_group: TargetGroupHandle

    def as_properties(self) -> dict[str, object]:
        return {"type": "forward", "target_group": self.target_group.name}


@dataclass(frozen=True)
class BalancerHandle:
    name: str
    scheme: Scheme
    layer: Layer
    tier: str
    group: GroupHandle | None = None


@dataclass(frozen=True)
class ListenerHandle:
    """Read-only view of a listener.

    Attributes:
        name: Logical resource name.
        balancer: Owning balancer.
        protocol: Listener protocol.
        port: Listener port.
        action: The single default action.
        certificate: Bound certificate reference, HTTPS listeners only.
    """

    name: str
    balancer: BalancerHandle
    protocol: ListenerProtocol
    port: int
    action: RedirectAction | ForwardAction
    certificate: str | None = None

    @property
    def health_check(self) -> HealthCheckSettings | None:
        if isinstance(self.action, ForwardAction):
            return self.action.target_group.health_check
        return None


class _BalancerBase:
    scheme: Scheme
    layer: Layer

    def __init__(self, context: ProvisioningContext, fabric: FabricHandle) -> None:
        self._context = context
        self._fabric = fabric
        self._balancer: BalancerHandle | None = None
        self._listeners: dict[int, ListenerHandle] = {}
        self._bound_target_groups: set[str] = set()

    @property
    def balancer(self) -> BalancerHandle:
        if self._balancer is None:
            msg = f"The {self.scheme.value} balancer has not been created"
            raise ConfigurationError(msg)
        return self._balancer

    @property
    def listeners(self) -> tuple[ListenerHandle, ...]:
        return tuple(self._listeners.values())

    def _declare_balancer(self, name: str, tier: str, group: GroupHandle | None) -> BalancerHandle:
        if self._balancer is not None:
            msg = f"Balancer '{self._balancer.name}' is already created"
            raise ConfigurationError(msg)
        resource_name = self._context.resource_name(name)
        depends_on = (self._fabric.name, group.name) if group else (self._fabric.name,)
        self._context.arena.declare(
            ResourceSpec(
                kind=ResourceKind.LOAD_BALANCER,
                name=resource_name,
                properties={
                    "vpc": self._fabric.name,
                    "scheme": self.scheme.value,
                    "layer": self.layer.value,
                    "tier": tier,
                    "security_groups": [group.name] if group else [],
                },
                depends_on=depends_on,
            ),
        )
        self._balancer = BalancerHandle(resource_name, self.scheme, self.layer, tier, group)
        logger.info("Declared %s %s balancer %s", self.scheme.value, self.layer.value, resource_name)
        return self._balancer

    def _declare_target_group(
        self,
        name: str,
        protocol: TargetProtocol,
        port: int,
        target_type: TargetType,
        health_check: HealthCheckSettings,
        targets: list[dict[str, object]],
        depends_on: tuple[str, ...],
    ) -> TargetGroupHandle:
        resource_name = self._context.resource_name("tg", name)
        self._context.arena.declare(
            ResourceSpec(
                kind=ResourceKind.TARGET_GROUP,
                name=resource_name,
                properties={
                    "vpc": self._fabric.name,
                    "protocol": protocol.value,
                    "port": port,
                    "target_type": target_type.value,
                    "health_check": health_check.as_properties(),
                    "targets": targets,
                },
                depends_on=(self._fabric.name, *depends_on),
            ),
        )
        return TargetGroupHandle(resource_name, protocol, port, target_type, health_check)

    def _declare_listener(
        self,
        protocol: ListenerProtocol,
        port: int,
        action: RedirectAction | ForwardAction,
        certificate: str | None = None,
    ) -> ListenerHandle:
        balancer = self.balancer
        if port in self._listeners:
            msg = f"Balancer '{balancer.name}' already has a listener on port {port}"
            raise ConfigurationError(msg)
        depends_on: tuple[str, ...] = (balancer.name,)
        if isinstance(action, ForwardAction):
            group_name = action.target_group.name
            if group_name in self._bound_target_groups:
                msg = f"Target group '{group_name}' is already bound to another listener"
                raise ConfigurationError(msg)
            self._bound_target_groups.add(group_name)
            depends_on = (balancer.name, group_name)

        name = f"{balancer.name}-{protocol.value.lower()}{port}"
        properties: dict[str, object] = {
            "balancer": balancer.name,
            "protocol": protocol.value,
            "port": port,
            "action": action.as_properties(),
        }
        if certificate is not None:
            properties["certificate"] = certificate
        self._context.arena.declare(
            ResourceSpec(
                kind=ResourceKind.LISTENER,
                name=name,
                properties=properties,
                depends_on=depends_on,
                # A certificate binding is not safe to re-issue blindly.
                idempotent=certificate is None,
            ),
        )
        handle = ListenerHandle(name, balancer, protocol, port, action, certificate)
        self._listeners[port] = handle
        return handle


class InternalBalancer(_BalancerBase):
    """Internal application balancer terminating TLS in front of the service."""

    scheme = Scheme.INTERNAL
    layer = Layer.APPLICATION

    def __init__(
        self,
        context: ProvisioningContext,
        fabric: FabricHandle,
        policy: ReachabilityPolicy,
        compute: ComputePlatform,
    ) -> None:
        super().__init__(context, fabric)
        self._policy = policy
        self._compute = compute
        self._certificates: dict[str, str] = {}

    def create(self, tier: str, group: GroupHandle, name: str = "alb") -> BalancerHandle:
        """Declare the balancer on an isolated tier, guarded by ``group``."""
        if not self._fabric.is_isolated(tier):
            msg = f"The internal balancer belongs on an isolated tier, '{tier}' is public"
            raise ConfigurationError(msg)
        if group.tier != tier:
            msg = f"Security group '{group.name}' is bound to tier '{group.tier}', not '{tier}'"
            raise ConfigurationError(msg)
        return self._declare_balancer(name, tier, group)

    def add_service_target_group(
        self,
        service: ServiceHandle,
        health_check: HealthCheckSettings | None = None,
        name: str = "app",
    ) -> TargetGroupHandle:
        """Register the service's tasks behind a plaintext HTTP target group.

        The target group port is the task's container port; the balancer's
        group is allowed to reach the service's group on that port.
        """
        balancer = self.balancer
        port = service.task_spec.container_port
        health_check = health_check or HealthCheckSettings(port=port)
        target_group = TargetGroupHandle(
            self._context.resource_name("tg", name),
            TargetProtocol.HTTP,
            port,
            TargetType.IP,
            health_check,
        )
        registration = self._compute.register_targets(service, target_group, port)
        if balancer.group is not None:
            self._policy.allow(
                balancer.group,
                service.group,
                Protocol.TCP,
                port,
                description="Balancer to service tasks",
            )
        return self._declare_target_group(
            name,
            TargetProtocol.HTTP,
            port,
            TargetType.IP,
            health_check,
            targets=[
                {
                    "service": registration.service,
                    "container_name": registration.container_name,
                    "container_port": registration.container_port,
                },
            ],
            depends_on=(service.name,),
        )

    def add_redirect_listener(self, port: int = HTTP_PORT) -> ListenerHandle:
        """HTTP listener whose only action is a permanent redirect to HTTPS:443."""
        self._open_to_fabric(port)
        handle = self._declare_listener(ListenerProtocol.HTTP, port, RedirectAction())
        logger.info("Declared redirect listener %s -> HTTPS:%d", handle.name, HTTPS_PORT)
        return handle

    def add_tls_listener(
        self,
        certificate_ref: str,
        target_group: TargetGroupHandle,
        port: int = HTTPS_PORT,
    ) -> ListenerHandle:
        """Bind a certificate to an HTTPS listener forwarding to ``target_group``.

        Args:
            certificate_ref: Opaque certificate identity, referenced not created.
            target_group: Plaintext target group the listener forwards to.
            port: Listener port.

        Returns:
            Read-only handle of the HTTPS listener.

        Raises:
            DependencyUnavailableError: If the certificate does not exist or is
                not usable.
            ConfigurationError: If the certificate is already bound to another
                listener.
        """
        if certificate_ref in self._certificates:
            msg = (
                f"Certificate '{certificate_ref}' is already bound to listener "
                f"'{self._certificates[certificate_ref]}'"
            )
            raise ConfigurationError(msg)
        certificate = self._context.certificates.resolve(certificate_ref)
        self._open_to_fabric(port)
        handle = self._declare_listener(
            ListenerProtocol.HTTPS,
            port,
            ForwardAction(target_group),
            certificate=certificate,
        )
        self._certificates[certificate_ref] = handle.name
        logger.info("Declared TLS listener %s forwarding to %s", handle.name, target_group.name)
        return handle

    def https_listener(self) -> ListenerHandle:
        for listener in self._listeners.values():
            if listener.protocol is ListenerProtocol.HTTPS:
                return listener
        msg = f"Balancer '{self.balancer.name}' has no HTTPS listener"
        raise ConfigurationError(msg)

    def _open_to_fabric(self, port: int) -> None:
        group = self.balancer.group
        if group is not None:
            self._policy.allow_cidr(
                group,
                self._fabric.cidr,
                Protocol.TCP,
                port,
                description="Traffic from the external balancer nodes",
            )


class ExternalBalancer(_BalancerBase):
    """Internet-facing network balancer passing TCP through to the internal one."""

    scheme = Scheme.INTERNET_FACING
    layer = Layer.NETWORK

    def create(self, tier: str, name: str = "nlb") -> BalancerHandle:
        if self._fabric.is_isolated(tier):
            msg = f"The external balancer belongs on a public tier, '{tier}' is isolated"
            raise ConfigurationError(msg)
        return self._declare_balancer(name, tier, None)

    def add_passthrough_listener(
        self,
        target: ListenerHandle,
        port: int = HTTPS_PORT,
        health_check: HealthCheckSettings | None = None,
    ) -> ListenerHandle:
        """Forward TCP ``port`` to the internal balancer's HTTPS listener.

        Raises:
            ConfigurationError: If a listener already exists, the target is
                not an internal HTTPS listener, or the ports differ.
        """
        if self._listeners:
            msg = f"Balancer '{self.balancer.name}' supports a single TCP listener"
            raise ConfigurationError(msg)
        if target.protocol is not ListenerProtocol.HTTPS or target.balancer.scheme is not Scheme.INTERNAL:
            msg = f"Listener '{target.name}' is not an internal HTTPS listener"
            raise ConfigurationError(msg)
        if target.port != port:
            msg = f"Forwarding port {port} does not match the target listener port {target.port}"
            raise ConfigurationError(msg)

        health_check = health_check or HealthCheckSettings(
            port=port,
            protocol=TargetProtocol.HTTPS,
        )
        target_group = self._declare_target_group(
            "internal-balancer",
            TargetProtocol.TCP,
            port,
            TargetType.ALB,
            health_check,
            targets=[{"listener": target.name, "balancer": target.balancer.name}],
            depends_on=(target.name,),
        )
        handle = self._declare_listener(ListenerProtocol.TCP, port, ForwardAction(target_group))
        logger.info("Declared passthrough listener %s -> %s", handle.name, target.name)
        return handle
