"""Diff desired resource declarations against observed platform state."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from .resources import ResourceRecord, ResourceSpec


@dataclass
class Plan:
    """Actions that move the observed state to the desired state.

    Attributes:
        creates: Specs with no observed counterpart.
        updates: Specs whose properties changed and can be updated in place.
        replaces: Specs whose properties changed on an immutable resource.
        deletes: Observed records no longer desired.
        unchanged: Names of resources already in the desired state.
    """

    creates: list[ResourceSpec] = field(default_factory=list)
    updates: list[ResourceSpec] = field(default_factory=list)
    replaces: list[ResourceSpec] = field(default_factory=list)
    deletes: list[ResourceRecord] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.creates or self.updates or self.replaces or self.deletes)

    def summary(self) -> dict[str, int]:
        return {
            "create": len(self.creates),
            "update": len(self.updates),
            "replace": len(self.replaces),
            "delete": len(self.deletes),
            "unchanged": len(self.unchanged),
        }


def _same(desired: ResourceSpec, observed: ResourceSpec) -> bool:
    return (
        desired.kind == observed.kind
        and dict(desired.properties) == dict(observed.properties)
        and desired.depends_on == observed.depends_on
    )


def reconcile(
    desired: Iterable[ResourceSpec],
    observed: Mapping[str, ResourceRecord],
    prune: bool = False,
) -> Plan:
    """Compute the plan for ``desired`` given ``observed``.

    Args:
        desired: Declarations in dependency order.
        observed: Current records keyed by logical name.
        prune: Whether observed records missing from ``desired`` are deleted.
            Steps reconcile only their own declarations, so this is off
            unless the caller passes the full desired state.

    Returns:
        The plan; empty when observed already matches desired.
    """
    plan = Plan()
    wanted: set[str] = set()
    for spec in desired:
        wanted.add(spec.name)
        record = observed.get(spec.name)
        if record is None:
            plan.creates.append(spec)
        elif _same(spec, record.spec):
            plan.unchanged.append(spec.name)
        elif spec.replace_on_change or spec.kind != record.spec.kind:
            plan.replaces.append(spec)
        else:
            plan.updates.append(spec)

    if prune:
        # Dependents go first.
        plan.deletes = [r for name, r in reversed(list(observed.items())) if name not in wanted]
    return plan
