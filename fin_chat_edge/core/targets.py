"""Target groups and their health-check parameters.

Shared by the compute platform, which registers service tasks, and by the
balancers, which forward to target groups.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .errors import ConfigurationError


class TargetProtocol(str, Enum):
    HTTP = "HTTP"
    HTTPS = "HTTPS"
    TCP = "TCP"


class TargetType(str, Enum):
    IP = "ip"
    ALB = "alb"


@dataclass(frozen=True)
class HealthCheckSettings:
    """Tunable probe parameters.

    A target flips to unhealthy only after ``unhealthy_threshold``
    consecutive failed probes and back to healthy only after
    ``healthy_threshold`` consecutive successes.

    Attributes:
        path: Probe path for HTTP(S) probes.
        port: Probe port.
        protocol: Probe protocol.
        interval_seconds: Time between probes.
        timeout_seconds: Time a probe may take before counting as failed.
        healthy_threshold: Consecutive successes to become healthy.
        unhealthy_threshold: Consecutive failures to become unhealthy.
    """

    path: str = "/"
    port: int = 3000
    protocol: TargetProtocol = TargetProtocol.HTTP
    interval_seconds: int = 30
    timeout_seconds: int = 5
    healthy_threshold: int = 2
    unhealthy_threshold: int = 3

    def __post_init__(self) -> None:
        if not 0 < self.port < 65536:
            msg = f"Health check port {self.port} is outside 1-65535"
            raise ConfigurationError(msg)
        if self.timeout_seconds <= 0 or self.interval_seconds <= 0:
            msg = "Health check interval and timeout must be positive"
            raise ConfigurationError(msg)
        if self.timeout_seconds >= self.interval_seconds:
            msg = (
                f"Health check timeout ({self.timeout_seconds}s) must be shorter "
                f"than the interval ({self.interval_seconds}s)"
            )
            raise ConfigurationError(msg)
        if self.healthy_threshold < 1 or self.unhealthy_threshold < 1:
            msg = "Health check thresholds must be at least 1"
            raise ConfigurationError(msg)
        if not self.path.startswith("/"):
            msg = f"Health check path '{self.path}' must start with '/'"
            raise ConfigurationError(msg)

    def as_properties(self) -> dict[str, object]:
        return {
            "path": self.path,
            "port": self.port,
            "protocol": self.protocol.value,
            "interval_seconds": self.interval_seconds,
            "timeout_seconds": self.timeout_seconds,
            "healthy_threshold": self.healthy_threshold,
            "unhealthy_threshold": self.unhealthy_threshold,
        }


@dataclass(frozen=True)
class TargetGroupHandle:
    """Read-only view of a target group."""

    name: str
    protocol: TargetProtocol
    port: int
    target_type: TargetType
    health_check: HealthCheckSettings


@dataclass(frozen=True)
class TargetRegistration:
    """A service's tasks registered into a target group on one port."""

    service: str
    target_group: TargetGroupHandle
    container_name: str
    container_port: int
