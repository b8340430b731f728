"""Error taxonomy for edge service provisioning.

Provisioning errors are fatal for the step that raised them, except
TransientProvisioningError which the orchestrator retries with backoff.
ReachabilityError is not a provisioning failure: the topology may be
syntactically valid but operationally broken, so it surfaces as a
degraded-state warning.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from fin_chat_edge.provisioning.report import ProvisioningReport


class EdgeServiceError(Exception):
    """Base exception for the fin-chat edge service."""


class ProvisioningError(EdgeServiceError):
    """Raised when a resource cannot be provisioned."""


class ConfigurationError(ProvisioningError):
    """Raised when topology input is malformed (zones, tiers, ports)."""


class DependencyUnavailableError(ProvisioningError):
    """Raised when an external reference does not exist or is inaccessible.

    Attributes:
        reference: The external identity that could not be resolved.
    """

    def __init__(self, message: str, reference: str) -> None:
        super().__init__(message)
        self.reference = reference


class TransientProvisioningError(ProvisioningError):
    """Raised on throttling or eventual-consistency lag; safe to retry."""


class RetriesExhaustedError(ProvisioningError):
    """Raised when a transient failure persists past the attempt budget."""

    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class ProvisioningTimeoutError(ProvisioningError):
    """Raised when a resource-creation call exceeds its time bound."""


class ReachabilityError(EdgeServiceError):
    """Raised when a runtime flow is refused or never turns healthy.

    Attributes:
        source: Identity of the caller (security group or balancer).
        destination: Identity of the unreachable peer.
    """

    def __init__(self, message: str, source: str, destination: str) -> None:
        super().__init__(message)
        self.source = source
        self.destination = destination


class StepFailedError(EdgeServiceError):
    """Raised by the orchestrator when a provisioning step fails.

    Attributes:
        step: Name of the failed step.
        cause: The underlying provisioning error.
        report: Partial report listing what was provisioned before the failure.
    """

    def __init__(
        self,
        step: str,
        cause: BaseException,
        report: ProvisioningReport,
    ) -> None:
        super().__init__(f"Provisioning step '{step}' failed: {cause}")
        self.step = step
        self.cause = cause
        self.report = report


class ProvisioningCancelledError(EdgeServiceError):
    """Raised when an in-flight provisioning run is cancelled and unwound."""

    def __init__(self, report: ProvisioningReport) -> None:
        super().__init__("Provisioning run cancelled; created resources were removed")
        self.report = report
