"""Reachability policy: security groups and the flows they allow.

Groups are default-deny for inbound traffic. A rule may only reference
groups already declared in the same policy, which gives the orchestrator a
natural topological order over groups.
"""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass
from enum import Enum

from .context import ProvisioningContext
from .errors import ConfigurationError
from .fabric import FabricHandle
from .resources import ResourceKind, ResourceSpec

logger = logging.getLogger(__name__)


class Direction(str, Enum):
    INGRESS = "ingress"
    EGRESS = "egress"


class Protocol(str, Enum):
    TCP = "tcp"
    UDP = "udp"


@dataclass(frozen=True)
class GroupHandle:
    """Identity of a declared security group.

    Attributes:
        name: Logical resource name of the group.
        tier: Subnet tier the group is bound to.
        allow_all_outbound: Whether the group permits every outbound flow.
    """

    name: str
    tier: str
    allow_all_outbound: bool = True


@dataclass(frozen=True)
class Rule:
    """A single allowed flow.

    For an ingress rule ``group`` is the receiving group and ``peer`` the
    sender; for an egress rule ``group`` is the sender. ``peer`` is either a
    group name or a CIDR block.
    """

    name: str
    group: str
    peer: str
    peer_is_cidr: bool
    protocol: Protocol
    port: int
    direction: Direction
    description: str = ""


def _validate_port(port: int) -> None:
    if not 0 < port < 65536:
        msg = f"Port {port} is outside 1-65535"
        raise ConfigurationError(msg)


class ReachabilityPolicy:
    """Declares security groups and evaluates who can talk to whom."""

    def __init__(self, context: ProvisioningContext, fabric: FabricHandle) -> None:
        self._context = context
        self._fabric = fabric
        self._groups: dict[str, GroupHandle] = {}
        self._rules: list[Rule] = []

    @property
    def groups(self) -> tuple[GroupHandle, ...]:
        return tuple(self._groups.values())

    @property
    def rules(self) -> tuple[Rule, ...]:
        return tuple(self._rules)

    def declare_group(
        self,
        name: str,
        tier_binding: str,
        description: str = "",
        allow_all_outbound: bool = True,
    ) -> GroupHandle:
        """Declare a security group bound to a subnet tier.

        Args:
            name: Short group name, scoped to the environment.
            tier_binding: Tier the group's members live in.
            description: Human-readable purpose.
            allow_all_outbound: Whether outbound flows are unrestricted.

        Returns:
            Handle of the declared group.
        """
        self._fabric.tier(tier_binding)
        resource_name = self._context.resource_name("sg", name)
        if resource_name in self._groups:
            msg = f"Security group '{name}' is already declared"
            raise ConfigurationError(msg)

        handle = GroupHandle(resource_name, tier_binding, allow_all_outbound)
        self._context.arena.declare(
            ResourceSpec(
                kind=ResourceKind.SECURITY_GROUP,
                name=resource_name,
                properties={
                    "vpc": self._fabric.name,
                    "tier": tier_binding,
                    "description": description or f"Security group for {name}",
                    "allow_all_outbound": allow_all_outbound,
                },
                depends_on=(self._fabric.name,),
            ),
        )
        self._groups[resource_name] = handle
        return handle

    def allow(
        self,
        from_: GroupHandle,
        to: GroupHandle,
        protocol: Protocol,
        port: int,
        direction: Direction = Direction.INGRESS,
        description: str = "",
    ) -> Rule:
        """Allow a flow from one declared group to another.

        An ingress rule is attached to ``to`` with ``from_`` as peer; an egress
        rule is attached to ``from_`` with ``to`` as peer.

        Raises:
            ConfigurationError: If either group is not declared in this policy.
        """
        for group in (from_, to):
            if self._groups.get(group.name) != group:
                msg = f"Security group '{group.name}' must be declared before rules reference it"
                raise ConfigurationError(msg)
        _validate_port(port)

        owner, peer = (to, from_) if direction is Direction.INGRESS else (from_, to)
        return self._add_rule(
            owner.name,
            peer.name,
            peer_is_cidr=False,
            protocol=protocol,
            port=port,
            direction=direction,
            description=description,
        )

    def allow_cidr(
        self,
        group: GroupHandle,
        cidr: str,
        protocol: Protocol,
        port: int,
        description: str = "",
    ) -> Rule:
        """Allow inbound traffic to a group from an address range."""
        if self._groups.get(group.name) != group:
            msg = f"Security group '{group.name}' must be declared before rules reference it"
            raise ConfigurationError(msg)
        try:
            ipaddress.ip_network(cidr)
        except ValueError as e:
            msg = f"Invalid CIDR peer '{cidr}': {e}"
            raise ConfigurationError(msg) from e
        _validate_port(port)
        return self._add_rule(
            group.name,
            cidr,
            peer_is_cidr=True,
            protocol=protocol,
            port=port,
            direction=Direction.INGRESS,
            description=description,
        )

    def _add_rule(
        self,
        owner: str,
        peer: str,
        *,
        peer_is_cidr: bool,
        protocol: Protocol,
        port: int,
        direction: Direction,
        description: str,
    ) -> Rule:
        peer_label = peer.replace("/", "_") if peer_is_cidr else peer
        name = f"{owner}-{direction.value}-{protocol.value}{port}-{peer_label}"
        rule = Rule(name, owner, peer, peer_is_cidr, protocol, port, direction, description)
        if rule in self._rules:
            return rule

        depends_on = (owner,) if peer_is_cidr else (owner, peer)
        self._context.arena.declare(
            ResourceSpec(
                kind=ResourceKind.SECURITY_GROUP_RULE,
                name=name,
                properties={
                    "group": owner,
                    "peer": peer,
                    "peer_is_cidr": peer_is_cidr,
                    "protocol": protocol.value,
                    "port": port,
                    "direction": direction.value,
                    "description": description,
                },
                depends_on=depends_on,
            ),
        )
        self._rules.append(rule)
        logger.debug("Declared %s rule %s", direction.value, name)
        return rule

    def inbound_rules(self, group: GroupHandle) -> tuple[Rule, ...]:
        return tuple(
            r for r in self._rules if r.group == group.name and r.direction is Direction.INGRESS
        )

    def outbound_rules(self, group: GroupHandle) -> tuple[Rule, ...]:
        return tuple(
            r for r in self._rules if r.group == group.name and r.direction is Direction.EGRESS
        )

    def permits(
        self,
        source: GroupHandle,
        target: GroupHandle,
        protocol: Protocol,
        port: int,
    ) -> bool:
        """Whether members of ``source`` can open a flow to ``target``.

        Security groups are stateful, so only the initiating direction is
        evaluated: the target needs a matching ingress rule and the source
        must allow the flow outbound.
        """
        inbound = any(
            not r.peer_is_cidr
            and r.peer == source.name
            and r.protocol is protocol
            and r.port == port
            for r in self.inbound_rules(target)
        )
        if not inbound:
            return False
        if source.allow_all_outbound:
            return True
        return any(
            not r.peer_is_cidr
            and r.peer == target.name
            and r.protocol is protocol
            and r.port == port
            for r in self.outbound_rules(source)
        )

    def permits_address(
        self,
        address: str,
        target: GroupHandle,
        protocol: Protocol,
        port: int,
    ) -> bool:
        """Whether an address outside any group can reach ``target``."""
        ip = ipaddress.ip_address(address)
        return any(
            r.peer_is_cidr
            and ip in ipaddress.ip_network(r.peer)
            and r.protocol is protocol
            and r.port == port
            for r in self.inbound_rules(target)
        )

    def validate_least_privilege(self, group: GroupHandle, only_from: GroupHandle) -> None:
        """Ensure ``group`` accepts inbound traffic from ``only_from`` alone.

        Raises:
            ConfigurationError: If any inbound rule names another peer.
        """
        wider = [r for r in self.inbound_rules(group) if r.peer != only_from.name]
        if wider:
            peers = ", ".join(sorted({r.peer for r in wider}))
            msg = (
                f"Security group '{group.name}' accepts inbound traffic from {peers}; "
                f"only '{only_from.name}' is allowed"
            )
            raise ConfigurationError(msg)
