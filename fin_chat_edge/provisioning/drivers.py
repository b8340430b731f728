"""Resource drivers materialize declared specs on a platform.

The orchestrator talks to drivers only through ``ResourceDriver``. The
simulated driver keeps an in-memory platform with fault injection for dry
runs and tests; the CDK driver in ``fin_chat_edge.stacks`` renders specs
into constructs for synthesis.
"""

from __future__ import annotations

import itertools
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Protocol

from aws_lambda_powertools import Logger

from fin_chat_edge.core.errors import ProvisioningError
from fin_chat_edge.core.resources import ResourceKind, ResourceRecord, ResourceSpec

logger = Logger(service="fin-chat-edge")


class ResourceDriver(Protocol):
    def observe(self) -> dict[str, ResourceRecord]:
        """Current records keyed by logical name, in creation order."""
        ...

    def create(self, spec: ResourceSpec) -> ResourceRecord: ...

    def update(self, spec: ResourceSpec) -> ResourceRecord: ...

    def replace(self, spec: ResourceSpec) -> ResourceRecord: ...

    def delete(self, name: str) -> None: ...

    def exists(self, name: str) -> bool: ...


@dataclass
class _InjectedFailure:
    operation: str
    error: BaseException
    remaining: int
    leave_partial: bool


_ID_PREFIXES = {
    ResourceKind.VPC: "vpc",
    ResourceKind.SECURITY_GROUP: "sg",
    ResourceKind.SECURITY_GROUP_RULE: "sgr",
    ResourceKind.VPC_ENDPOINT: "vpce",
    ResourceKind.CLUSTER: "cluster",
    ResourceKind.TASK_DEFINITION: "taskdef",
    ResourceKind.SERVICE: "svc",
    ResourceKind.LOAD_BALANCER: "lb",
    ResourceKind.TARGET_GROUP: "tg",
    ResourceKind.LISTENER: "listener",
}


class SimulatedDriver:
    """In-memory platform.

    Failures and per-resource latency can be injected to exercise retry,
    timeout and partial-failure paths.
    """

    def __init__(
        self,
        region: str = "ca-central-1",
        delays: Mapping[str, float] | None = None,
    ) -> None:
        self.region = region
        self._delays = dict(delays or {})
        self._lock = threading.Lock()
        self._records: dict[str, ResourceRecord] = {}
        self._failures: dict[str, list[_InjectedFailure]] = {}
        self._ids = itertools.count(1)
        self.calls: list[tuple[str, str]] = []

    def inject_failure(
        self,
        name: str,
        error: BaseException,
        times: int = 1,
        operation: str = "create",
        leave_partial: bool = False,
    ) -> None:
        """Make the next ``times`` calls of ``operation`` on ``name`` raise ``error``.

        With ``leave_partial`` the failed create still leaves the resource
        behind, as a platform that timed out after accepting the request would.
        """
        with self._lock:
            self._failures.setdefault(name, []).append(
                _InjectedFailure(operation, error, times, leave_partial),
            )

    def set_delay(self, name: str, seconds: float) -> None:
        with self._lock:
            self._delays[name] = seconds

    def observe(self) -> dict[str, ResourceRecord]:
        with self._lock:
            return dict(self._records)

    def exists(self, name: str) -> bool:
        with self._lock:
            return name in self._records

    def create(self, spec: ResourceSpec) -> ResourceRecord:
        self._enter("create", spec.name, spec)
        with self._lock:
            existing = self._records.get(spec.name)
            if existing is not None:
                if existing.spec == spec:
                    return existing
                msg = f"Resource '{spec.name}' already exists with a different definition"
                raise ProvisioningError(msg)
            record = self._record(spec)
            self._records[spec.name] = record
        logger.debug("Created resource", extra={"resource": spec.name, "kind": spec.kind.value})
        return record

    def update(self, spec: ResourceSpec) -> ResourceRecord:
        self._enter("update", spec.name, spec)
        with self._lock:
            existing = self._require(spec.name)
            record = ResourceRecord(spec, existing.physical_id, existing.attributes)
            self._records[spec.name] = record
        return record

    def replace(self, spec: ResourceSpec) -> ResourceRecord:
        self._enter("replace", spec.name, spec)
        with self._lock:
            self._require(spec.name)
            record = self._record(spec)
            self._records[spec.name] = record
        return record

    def delete(self, name: str) -> None:
        self._enter("delete", name, None)
        with self._lock:
            self._records.pop(name, None)

    def _enter(self, operation: str, name: str, spec: ResourceSpec | None) -> None:
        with self._lock:
            self.calls.append((operation, name))
            delay = self._delays.get(name, 0.0)
        if delay:
            time.sleep(delay)
        with self._lock:
            failure = self._next_failure(operation, name)
            if failure is None:
                return
            if failure.leave_partial and spec is not None and name not in self._records:
                self._records[name] = self._record(spec)
        raise failure.error

    def _next_failure(self, operation: str, name: str) -> _InjectedFailure | None:
        for failure in self._failures.get(name, []):
            if failure.operation == operation and failure.remaining > 0:
                failure.remaining -= 1
                return failure
        return None

    def _require(self, name: str) -> ResourceRecord:
        record = self._records.get(name)
        if record is None:
            msg = f"Resource '{name}' does not exist"
            raise ProvisioningError(msg)
        return record

    def _record(self, spec: ResourceSpec) -> ResourceRecord:
        physical_id = f"{_ID_PREFIXES[spec.kind]}-{next(self._ids):012x}"
        return ResourceRecord(spec, physical_id, self._attributes(spec, physical_id))

    def _attributes(self, spec: ResourceSpec, physical_id: str) -> dict[str, str]:
        if spec.kind is not ResourceKind.LOAD_BALANCER:
            return {}
        suffix = physical_id.rsplit("-", 1)[-1]
        prefix = "internal-" if spec.properties.get("scheme") == "internal" else ""
        layer = "net" if spec.properties.get("layer") == "network" else "app"
        return {
            "dns_name": f"{prefix}{spec.name}-{suffix}.elb.{self.region}.amazonaws.com",
            "arn": (
                f"arn:aws:elasticloadbalancing:{self.region}:000000000000:"
                f"loadbalancer/{layer}/{spec.name}/{suffix}"
            ),
        }
