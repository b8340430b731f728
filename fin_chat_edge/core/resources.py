"""Desired-state resource declarations and the per-context handle arena.

Components never create cloud resources directly. They validate their input,
declare ResourceSpec records into the arena and hand back frozen handles.
The orchestrator drains the declarations of each step and materializes them
through a resource driver.
"""

from __future__ import annotations

import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from .errors import ConfigurationError

H = TypeVar("H")


class ResourceKind(str, Enum):
    """Kinds of resources the edge topology is made of."""

    VPC = "vpc"
    SECURITY_GROUP = "security_group"
    SECURITY_GROUP_RULE = "security_group_rule"
    VPC_ENDPOINT = "vpc_endpoint"
    CLUSTER = "cluster"
    TASK_DEFINITION = "task_definition"
    SERVICE = "service"
    LOAD_BALANCER = "load_balancer"
    TARGET_GROUP = "target_group"
    LISTENER = "listener"


@dataclass(frozen=True)
class ResourceSpec:
    """Desired state of a single resource.

    Attributes:
        kind: Resource kind, selects the driver renderer.
        name: Logical identifier, unique within an environment.
        properties: Plain-data properties compared during reconciliation.
        depends_on: Logical names that must exist before this resource.
        replace_on_change: Whether a property change forces replacement
            instead of an in-place update (immutable resources).
        idempotent: Whether a failed create may be retried blindly.
    """

    kind: ResourceKind
    name: str
    properties: Mapping[str, Any] = field(default_factory=dict, hash=False)
    depends_on: tuple[str, ...] = ()
    replace_on_change: bool = False
    idempotent: bool = True


@dataclass(frozen=True)
class ResourceRecord:
    """Observed state of a materialized resource.

    Attributes:
        spec: The spec the resource was created or last updated from.
        physical_id: Identifier assigned by the platform.
        attributes: Platform-generated attributes (DNS names, ARNs).
    """

    spec: ResourceSpec
    physical_id: str
    attributes: Mapping[str, Any] = field(default_factory=dict, hash=False)


class ResourceArena:
    """Registry of declared resources and the handles built on top of them.

    One arena lives inside each ProvisioningContext, so independent
    environments never share declarations.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._specs: dict[str, ResourceSpec] = {}
        self._pending: list[str] = []
        self._handles: dict[str, Any] = {}

    def declare(self, spec: ResourceSpec) -> ResourceSpec:
        """Declare a resource, rejecting duplicate or dangling names.

        Args:
            spec: Resource to declare.

        Returns:
            The declared spec.

        Raises:
            ConfigurationError: If the name is already declared with different
                content or a dependency has not been declared yet.
        """
        with self._lock:
            existing = self._specs.get(spec.name)
            if existing is not None:
                if existing == spec:
                    # Re-declaring is how a repeated run asks for reconciliation.
                    if spec.name not in self._pending:
                        self._pending.append(spec.name)
                    return existing
                msg = f"Resource '{spec.name}' is already declared with a different definition"
                raise ConfigurationError(msg)
            missing = [dep for dep in spec.depends_on if dep not in self._specs]
            if missing:
                msg = f"Resource '{spec.name}' depends on undeclared resources: {', '.join(missing)}"
                raise ConfigurationError(msg)
            self._specs[spec.name] = spec
            self._pending.append(spec.name)
            return spec

    def supersede(self, spec: ResourceSpec) -> ResourceSpec:
        """Replace the declaration of an existing resource with a new revision."""
        with self._lock:
            if spec.name not in self._specs:
                msg = f"Cannot supersede undeclared resource '{spec.name}'"
                raise ConfigurationError(msg)
            self._specs[spec.name] = spec
            if spec.name not in self._pending:
                self._pending.append(spec.name)
            return spec

    def drain(self) -> list[ResourceSpec]:
        """Return and clear the declarations made since the last drain."""
        with self._lock:
            drained = [self._specs[name] for name in self._pending]
            self._pending = []
            return drained

    def spec(self, name: str) -> ResourceSpec:
        """Look up a declared resource by logical name."""
        try:
            return self._specs[name]
        except KeyError:
            msg = f"Resource '{name}' has not been declared"
            raise ConfigurationError(msg) from None

    def specs(self) -> list[ResourceSpec]:
        """All declared resources in declaration order."""
        with self._lock:
            return list(self._specs.values())

    def register_handle(self, key: str, handle: H) -> H:
        """Store a handle so later steps can consume it read-only."""
        with self._lock:
            self._handles[key] = handle
        return handle

    def handle(self, key: str, expected_type: type[H]) -> H:
        """Fetch a previously registered handle.

        Raises:
            ConfigurationError: If no handle of the expected type exists; a
                step consumed a handle before the step producing it ran.
        """
        handle = self._handles.get(key)
        if not isinstance(handle, expected_type):
            msg = f"No {expected_type.__name__} registered under '{key}'"
            raise ConfigurationError(msg)
        return handle

    def has_handle(self, key: str) -> bool:
        return key in self._handles
