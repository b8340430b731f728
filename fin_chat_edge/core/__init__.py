"""Topology model of the fin-chat edge service."""

from .context import ProvisioningContext
from .errors import (
    ConfigurationError,
    DependencyUnavailableError,
    EdgeServiceError,
    ProvisioningCancelledError,
    ProvisioningError,
    ProvisioningTimeoutError,
    ReachabilityError,
    RetriesExhaustedError,
    StepFailedError,
    TransientProvisioningError,
)
from .resources import ResourceArena, ResourceKind, ResourceRecord, ResourceSpec

__all__ = [
    "ConfigurationError",
    "DependencyUnavailableError",
    "EdgeServiceError",
    "ProvisioningCancelledError",
    "ProvisioningContext",
    "ProvisioningError",
    "ProvisioningTimeoutError",
    "ReachabilityError",
    "ResourceArena",
    "ResourceKind",
    "ResourceRecord",
    "ResourceSpec",
    "RetriesExhaustedError",
    "StepFailedError",
    "TransientProvisioningError",
]
