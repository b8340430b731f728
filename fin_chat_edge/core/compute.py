"""Compute platform: an ECS cluster running one Fargate service.

The container port declared by the task and the port used when
registering the service into a target group are independent settings on
the platform. A mismatch is not a provisioning error there: traffic is
accepted at the balancer and dropped at the task. The platform here checks
equality on every registration and on every task definition replacement.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType

from .context import ProvisioningContext
from .endpoints import EndpointService, PrivateEndpointFabric
from .errors import ConfigurationError
from .fabric import FabricHandle
from .reachability import GroupHandle
from .resources import ResourceKind, ResourceSpec
from .targets import TargetGroupHandle, TargetRegistration

logger = logging.getLogger(__name__)

# Order in which an image pull touches the control plane: auth token,
# manifest, then layers from object storage.
IMAGE_PULL_PATH = (
    EndpointService.REGISTRY_API,
    EndpointService.REGISTRY_DATA,
    EndpointService.STORAGE,
)
TELEMETRY_PATH = (EndpointService.LOGS, EndpointService.METRICS)


@dataclass(frozen=True)
class TaskSpec:
    """Immutable container task definition.

    Attributes:
        image: Opaque image reference (digest or tag URI).
        memory_limit_mib: Hard memory limit for the container.
        environment: Variables passed through to the container verbatim.
        container_port: Port the container listens on.
        container_name: Container name inside the task.
        cpu: Fargate CPU units.
    """

    image: str
    memory_limit_mib: int = 512
    environment: Mapping[str, str] = field(default_factory=dict, hash=False)
    container_port: int = 3000
    container_name: str = "appContainer"
    cpu: int = 256

    def __post_init__(self) -> None:
        if not self.image or not self.image.strip():
            msg = "Task image reference must be a non-empty string"
            raise ConfigurationError(msg)
        if self.memory_limit_mib <= 0:
            msg = f"Memory limit must be positive, got {self.memory_limit_mib}"
            raise ConfigurationError(msg)
        if not 0 < self.container_port < 65536:
            msg = f"Container port {self.container_port} is outside 1-65535"
            raise ConfigurationError(msg)
        bad = [k for k, v in self.environment.items() if not isinstance(v, str)]
        if bad:
            msg = f"Environment values must be strings: {bad}"
            raise ConfigurationError(msg)
        object.__setattr__(self, "environment", MappingProxyType(dict(self.environment)))

    def revision(self) -> str:
        """Content hash identifying this task definition revision."""
        payload = json.dumps(
            {
                "image": self.image,
                "memory_limit_mib": self.memory_limit_mib,
                "environment": dict(sorted(self.environment.items())),
                "container_port": self.container_port,
                "container_name": self.container_name,
                "cpu": self.cpu,
            },
            sort_keys=True,
        )
        return hashlib.sha256(payload.encode()).hexdigest()[:12]


@dataclass(frozen=True)
class ClusterHandle:
    name: str


@dataclass(frozen=True)
class ServiceHandle:
    """Read-only view of a launched service."""

    name: str
    service_name: str
    cluster: ClusterHandle
    task_spec: TaskSpec
    task_definition: str
    desired_count: int
    tier: str
    group: GroupHandle


class ComputePlatform:
    """Declares the cluster, task definition and service."""

    def __init__(self, context: ProvisioningContext, fabric: FabricHandle) -> None:
        self._context = context
        self._fabric = fabric
        self._services: dict[str, ServiceHandle] = {}
        self._registrations: dict[str, list[TargetRegistration]] = {}

    def create_cluster(self, name: str = "cluster") -> ClusterHandle:
        resource_name = self._context.resource_name(name)
        self._context.arena.declare(
            ResourceSpec(
                kind=ResourceKind.CLUSTER,
                name=resource_name,
                properties={"vpc": self._fabric.name},
                depends_on=(self._fabric.name,),
            ),
        )
        return ClusterHandle(resource_name)

    def launch_service(
        self,
        cluster: ClusterHandle,
        task_spec: TaskSpec,
        replica_count: int,
        tier: str,
        group: GroupHandle,
        service_name: str = "app",
    ) -> ServiceHandle:
        """Declare a replica-managed service on an isolated tier.

        Args:
            cluster: Cluster to run in.
            task_spec: Immutable task definition.
            replica_count: Desired steady-state task count.
            tier: Isolated tier for task placement.
            group: Security group attached to every task.
            service_name: Service name on the platform.

        Returns:
            Handle of the declared service.

        Raises:
            ConfigurationError: On a public tier, a group bound to another
                tier, or a negative replica count.
        """
        if replica_count < 0:
            msg = f"Replica count must not be negative, got {replica_count}"
            raise ConfigurationError(msg)
        if not self._fabric.is_isolated(tier):
            msg = f"Services run without a public address; tier '{tier}' is public"
            raise ConfigurationError(msg)
        if group.tier != tier:
            msg = f"Security group '{group.name}' is bound to tier '{group.tier}', not '{tier}'"
            raise ConfigurationError(msg)

        name = self._context.resource_name("service", service_name)
        task_definition = self._context.resource_name("task", service_name)
        self._context.arena.declare(self._task_definition_spec(task_definition, task_spec))
        self._context.arena.declare(
            ResourceSpec(
                kind=ResourceKind.SERVICE,
                name=name,
                properties=self._service_properties(
                    service_name,
                    cluster,
                    task_definition,
                    task_spec,
                    replica_count,
                    tier,
                    group,
                ),
                depends_on=(cluster.name, task_definition, group.name),
            ),
        )
        handle = ServiceHandle(
            name=name,
            service_name=service_name,
            cluster=cluster,
            task_spec=task_spec,
            task_definition=task_definition,
            desired_count=replica_count,
            tier=tier,
            group=group,
        )
        self._services[name] = handle
        self._registrations[name] = []
        logger.info("Declared service %s (%d replicas) from %s", name, replica_count, task_spec.image)
        return handle

    def replace_task_definition(self, service: ServiceHandle, task_spec: TaskSpec) -> ServiceHandle:
        """Point the service at a new task definition revision.

        Task definitions are never mutated; the new spec supersedes the old
        declaration and the reconciler replaces the resource.

        Raises:
            ConfigurationError: If the new container port breaks an existing
                target registration.
        """
        current = self._require(service)
        updated = replace(current, task_spec=task_spec)
        self._check_registrations(updated, self._registrations[current.name])

        self._context.arena.supersede(self._task_definition_spec(current.task_definition, task_spec))
        self._context.arena.supersede(
            replace(
                self._context.arena.spec(current.name),
                properties=self._service_properties(
                    current.service_name,
                    current.cluster,
                    current.task_definition,
                    task_spec,
                    current.desired_count,
                    current.tier,
                    current.group,
                ),
            ),
        )
        self._services[current.name] = updated
        logger.info("Replaced task definition of %s with revision %s", current.name, task_spec.revision())
        return updated

    def register_targets(
        self,
        service: ServiceHandle,
        target_group: TargetGroupHandle,
        container_port: int,
    ) -> TargetRegistration:
        """Map the service's container port into a target group.

        Raises:
            ConfigurationError: Unless the task's container port, the
                requested port and the target group port are all equal.
        """
        current = self._require(service)
        registration = TargetRegistration(
            service=current.name,
            target_group=target_group,
            container_name=current.task_spec.container_name,
            container_port=container_port,
        )
        self._check_registrations(current, [registration])
        self._registrations[current.name].append(registration)
        return registration

    def registrations(self, service: ServiceHandle) -> tuple[TargetRegistration, ...]:
        return tuple(self._registrations.get(service.name, ()))

    def verify_port_mapping(self, service: ServiceHandle) -> None:
        """Re-check the end-to-end port invariant for every registration."""
        current = self._require(service)
        self._check_registrations(current, self._registrations[current.name])

    def pull_image(self, service: ServiceHandle, endpoints: PrivateEndpointFabric) -> str:
        """Simulate the task pulling its image through the private endpoints.

        Returns:
            The image reference that was pulled.

        Raises:
            ReachabilityError: If any hop of the pull is refused.
        """
        current = self._require(service)
        for endpoint_service in IMAGE_PULL_PATH:
            endpoints.connect(endpoint_service, current.group)
        return current.task_spec.image

    def verify_control_plane(
        self,
        service: ServiceHandle,
        endpoints: PrivateEndpointFabric,
    ) -> tuple[EndpointService, ...]:
        """Check the image pull path and the log and metric sinks."""
        current = self._require(service)
        self.pull_image(current, endpoints)
        for endpoint_service in TELEMETRY_PATH:
            endpoints.connect(endpoint_service, current.group)
        return IMAGE_PULL_PATH + TELEMETRY_PATH

    def _require(self, service: ServiceHandle) -> ServiceHandle:
        current = self._services.get(service.name)
        if current is None:
            msg = f"Service '{service.name}' was not launched on this platform"
            raise ConfigurationError(msg)
        return current

    @staticmethod
    def _check_registrations(
        service: ServiceHandle,
        registrations: list[TargetRegistration],
    ) -> None:
        declared = service.task_spec.container_port
        for registration in registrations:
            ports = {
                "container": declared,
                "registration": registration.container_port,
                "target group": registration.target_group.port,
            }
            if len(set(ports.values())) != 1:
                detail = ", ".join(f"{k}={v}" for k, v in ports.items())
                msg = (
                    f"Port mapping mismatch for '{service.name}' in target group "
                    f"'{registration.target_group.name}': {detail}"
                )
                raise ConfigurationError(msg)

    @staticmethod
    def _task_definition_spec(name: str, task_spec: TaskSpec) -> ResourceSpec:
        return ResourceSpec(
            kind=ResourceKind.TASK_DEFINITION,
            name=name,
            properties={
                "image": task_spec.image,
                "memory_limit_mib": task_spec.memory_limit_mib,
                "cpu": task_spec.cpu,
                "environment": dict(task_spec.environment),
                "container_name": task_spec.container_name,
                "container_port": task_spec.container_port,
                "revision": task_spec.revision(),
            },
            replace_on_change=True,
        )

    @staticmethod
    def _service_properties(
        service_name: str,
        cluster: ClusterHandle,
        task_definition: str,
        task_spec: TaskSpec,
        replica_count: int,
        tier: str,
        group: GroupHandle,
    ) -> dict[str, object]:
        return {
            "service_name": service_name,
            "cluster": cluster.name,
            "task_definition": task_definition,
            "task_revision": task_spec.revision(),
            "desired_count": replica_count,
            "tier": tier,
            "security_groups": [group.name],
            "assign_public_ip": False,
        }
