"""Network fabric: a VPC with public and isolated subnet tiers across zones.

The subnet layout is a pure function of the zone list, the tier list and the
VPC CIDR, so re-applying the same input yields the same declarations and the
reconciler sees no diff.
"""

from __future__ import annotations

import ipaddress
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

from .context import ProvisioningContext
from .errors import ConfigurationError
from .resources import ResourceKind, ResourceSpec

logger = logging.getLogger(__name__)

DEFAULT_VPC_CIDR = "10.0.0.0/16"
MIN_ZONES = 2


class Visibility(str, Enum):
    """Routing class of a subnet tier."""

    PUBLIC = "public"
    ISOLATED = "isolated"


@dataclass(frozen=True)
class SubnetTier:
    """A named, zone-replicated address range.

    Attributes:
        name: Tier name, unique within the fabric.
        cidr_mask: Prefix length of every subnet in the tier.
        visibility: Public (internet-routable) or isolated (no internet route).
        zones: Zones the tier is replicated across; None means every fabric zone.
    """

    name: str
    cidr_mask: int
    visibility: Visibility
    zones: tuple[str, ...] | None = None

    def __post_init__(self) -> None:
        if self.zones is not None:
            object.__setattr__(self, "zones", tuple(self.zones))


@dataclass(frozen=True)
class Subnet:
    """A single subnet of a tier in one zone."""

    name: str
    tier: str
    zone: str
    cidr: str
    route_table: str


@dataclass(frozen=True)
class FabricHandle:
    """Read-only view of a created fabric.

    Attributes:
        name: Logical name of the VPC resource.
        region: Region the fabric lives in.
        cidr: VPC address range.
        zones: Zones in declaration order.
        tiers: Tiers in declaration order, with zones resolved.
        subnets: Subnets in allocation order.
    """

    name: str
    region: str
    cidr: str
    zones: tuple[str, ...]
    tiers: tuple[SubnetTier, ...]
    subnets: tuple[Subnet, ...]

    def tier(self, name: str) -> SubnetTier:
        for tier in self.tiers:
            if tier.name == name:
                return tier
        msg = f"Fabric '{self.name}' has no subnet tier named '{name}'"
        raise ConfigurationError(msg)

    def subnets_in(self, tier_name: str) -> tuple[Subnet, ...]:
        self.tier(tier_name)
        return tuple(s for s in self.subnets if s.tier == tier_name)

    def route_tables(self, tier_name: str) -> tuple[str, ...]:
        return tuple(s.route_table for s in self.subnets_in(tier_name))

    def tiers_with(self, visibility: Visibility) -> tuple[SubnetTier, ...]:
        return tuple(t for t in self.tiers if t.visibility is visibility)

    def is_isolated(self, tier_name: str) -> bool:
        return self.tier(tier_name).visibility is Visibility.ISOLATED


class NetworkFabric:
    """Creates the VPC and its subnet tiers."""

    def __init__(self, context: ProvisioningContext) -> None:
        self._context = context

    def create_fabric(
        self,
        zones: Sequence[str],
        tiers: Sequence[SubnetTier],
        cidr: str = DEFAULT_VPC_CIDR,
    ) -> FabricHandle:
        """Validate the topology input and declare the VPC.

        Args:
            zones: Availability zone names, at least two.
            tiers: Subnet tiers; at least one public and one isolated.
            cidr: VPC address range.

        Returns:
            Handle describing the deterministic subnet layout.

        Raises:
            ConfigurationError: On too few zones, a missing tier class, a tier
                spanning fewer than two zones, or an address-space problem.
        """
        zones = tuple(zones)
        self._validate_zones(zones)
        resolved_tiers = tuple(self._resolve_tier(tier, zones) for tier in tiers)
        self._validate_tiers(resolved_tiers)

        name = self._context.resource_name("vpc")
        subnets = self._allocate_subnets(name, cidr, zones, resolved_tiers)
        handle = FabricHandle(
            name=name,
            region=self._context.region,
            cidr=cidr,
            zones=zones,
            tiers=resolved_tiers,
            subnets=subnets,
        )

        self._context.arena.declare(
            ResourceSpec(
                kind=ResourceKind.VPC,
                name=name,
                properties={
                    "cidr": cidr,
                    "zones": list(zones),
                    "tiers": [
                        {
                            "name": tier.name,
                            "cidr_mask": tier.cidr_mask,
                            "visibility": tier.visibility.value,
                            "zones": list(tier.zones or ()),
                        }
                        for tier in resolved_tiers
                    ],
                    "subnets": [
                        {
                            "name": s.name,
                            "tier": s.tier,
                            "zone": s.zone,
                            "cidr": s.cidr,
                            "route_table": s.route_table,
                        }
                        for s in subnets
                    ],
                },
            ),
        )
        logger.info(
            "Declared fabric %s with %d subnets across zones %s",
            name,
            len(subnets),
            ",".join(zones),
        )
        return handle

    @staticmethod
    def _validate_zones(zones: tuple[str, ...]) -> None:
        if any(not zone for zone in zones):
            msg = "Availability zone names must be non-empty"
            raise ConfigurationError(msg)
        if len(set(zones)) != len(zones):
            msg = f"Duplicate availability zones in {list(zones)}"
            raise ConfigurationError(msg)
        if len(zones) < MIN_ZONES:
            msg = (
                f"At least {MIN_ZONES} availability zones are required for "
                f"cross-zone balancer redundancy, got {len(zones)}"
            )
            raise ConfigurationError(msg)

    @staticmethod
    def _resolve_tier(tier: SubnetTier, zones: tuple[str, ...]) -> SubnetTier:
        if tier.zones is None:
            return SubnetTier(tier.name, tier.cidr_mask, tier.visibility, zones)
        unknown = [zone for zone in tier.zones if zone not in zones]
        if unknown:
            msg = f"Tier '{tier.name}' references zones outside the fabric: {unknown}"
            raise ConfigurationError(msg)
        # Keep fabric zone order so the layout does not depend on tier input order.
        ordered = tuple(zone for zone in zones if zone in tier.zones)
        return SubnetTier(tier.name, tier.cidr_mask, tier.visibility, ordered)

    @staticmethod
    def _validate_tiers(tiers: tuple[SubnetTier, ...]) -> None:
        names = [tier.name for tier in tiers]
        if len(set(names)) != len(names):
            msg = f"Duplicate subnet tier names in {names}"
            raise ConfigurationError(msg)
        if not any(t.visibility is Visibility.ISOLATED for t in tiers):
            msg = "At least one isolated subnet tier is required"
            raise ConfigurationError(msg)
        if not any(t.visibility is Visibility.PUBLIC for t in tiers):
            msg = "At least one public subnet tier is required"
            raise ConfigurationError(msg)
        for tier in tiers:
            if len(tier.zones or ()) < MIN_ZONES:
                msg = (
                    f"Tier '{tier.name}' must be replicated across at least "
                    f"{MIN_ZONES} zones, got {list(tier.zones or ())}"
                )
                raise ConfigurationError(msg)

    @staticmethod
    def _allocate_subnets(
        vpc_name: str,
        cidr: str,
        zones: tuple[str, ...],
        tiers: tuple[SubnetTier, ...],
    ) -> tuple[Subnet, ...]:
        try:
            network = ipaddress.ip_network(cidr)
        except ValueError as e:
            msg = f"Invalid VPC CIDR '{cidr}': {e}"
            raise ConfigurationError(msg) from e

        cursor = int(network.network_address)
        end = int(network.broadcast_address)
        subnets: list[Subnet] = []
        for tier in tiers:
            if not network.prefixlen <= tier.cidr_mask <= network.max_prefixlen:
                msg = f"Tier '{tier.name}' mask /{tier.cidr_mask} does not fit in {cidr}"
                raise ConfigurationError(msg)
            block = 1 << (network.max_prefixlen - tier.cidr_mask)
            for zone in tier.zones or ():
                cursor = -(-cursor // block) * block
                if cursor + block - 1 > end:
                    msg = f"Address space {cidr} exhausted while allocating tier '{tier.name}'"
                    raise ConfigurationError(msg)
                subnet_cidr = ipaddress.ip_network((cursor, tier.cidr_mask))
                subnet_name = f"{vpc_name}-{tier.name.lower()}-{zone}"
                subnets.append(
                    Subnet(
                        name=subnet_name,
                        tier=tier.name,
                        zone=zone,
                        cidr=str(subnet_cidr),
                        route_table=f"{subnet_name}-rt",
                    ),
                )
                cursor += block
        return tuple(subnets)
