"""Provisioning run reports."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass
class StepReport:
    """Outcome of one provisioning step."""

    name: str
    status: StepStatus = StepStatus.PENDING
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    replaced: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    partial: list[str] = field(default_factory=list)
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


@dataclass(frozen=True)
class ProvisioningOutputs:
    """Values surfaced to the operator after a successful run.

    Attributes:
        image_reference: Image the service runs.
        external_address: DNS name of the internet-facing balancer.
        external_port: Port the internet-facing balancer listens on.
    """

    image_reference: str
    external_address: str
    external_port: int


@dataclass
class ProvisioningReport:
    """Per-step status, created resources, warnings and outputs of a run.

    Failed and cancelled runs carry the partial report so an operator can
    roll forward, retry or tear down.
    """

    environment_name: str
    steps: list[StepReport] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    outputs: ProvisioningOutputs | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None

    def step(self, name: str) -> StepReport:
        for step in self.steps:
            if step.name == name:
                return step
        msg = f"No step named '{name}' in report"
        raise KeyError(msg)

    @property
    def created_resources(self) -> list[str]:
        return [name for step in self.steps for name in step.created]

    @property
    def partial_resources(self) -> list[str]:
        """Resources a failed or timed-out call may have left behind."""
        return [name for step in self.steps for name in step.partial]

    @property
    def succeeded(self) -> bool:
        return bool(self.steps) and all(s.status is StepStatus.SUCCEEDED for s in self.steps)

    @property
    def degraded(self) -> bool:
        return self.succeeded and bool(self.warnings)

    def to_dict(self) -> dict[str, Any]:
        return {
            "environment_name": self.environment_name,
            "steps": [
                {
                    "name": s.name,
                    "status": s.status.value,
                    "created": list(s.created),
                    "updated": list(s.updated),
                    "replaced": list(s.replaced),
                    "unchanged": len(s.unchanged),
                    "partial": list(s.partial),
                    "error": s.error,
                    "duration_seconds": s.duration_seconds,
                }
                for s in self.steps
            ],
            "warnings": list(self.warnings),
            "outputs": (
                {
                    "image_reference": self.outputs.image_reference,
                    "external_address": self.outputs.external_address,
                    "external_port": self.outputs.external_port,
                }
                if self.outputs
                else None
            ),
        }
