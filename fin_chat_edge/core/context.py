"""Explicit per-environment context threaded through every component."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .resources import ResourceArena

if TYPE_CHECKING:
    from fin_chat_edge.aws.certificates import CertificateResolver


@dataclass
class ProvisioningContext:
    """State of the single environment being provisioned.

    Several contexts can coexist in one process; nothing in the package
    reads ambient globals once a context has been built.

    Attributes:
        environment_name: Deployment environment (e.g. "production").
        region: AWS region the environment lives in.
        certificates: Resolver used to validate certificate references.
        arena: Declarations and handles produced for this environment.
    """

    environment_name: str
    region: str
    certificates: CertificateResolver
    arena: ResourceArena = field(default_factory=ResourceArena)

    def __post_init__(self) -> None:
        self.environment_name = self.environment_name.lower()

    def resource_name(self, *parts: str) -> str:
        """Build an environment-scoped logical resource name."""
        return "-".join((self.environment_name, *parts))
