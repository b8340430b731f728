"""Provisioning orchestrator.

Runs the six provisioning steps in dependency order as a single logical
transaction against a resource driver:

    network_fabric -> reachability_policy -> private_endpoints
                                          -> compute_platform -> internal_balancer
                                                              -> external_balancer

Each step builds its component from handles produced by earlier steps,
drains the declarations it made and reconciles them against the driver's
observed state. A failed step halts every step that depends on it; steps
that do not depend on it still run.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FuturesTimeoutError
from datetime import UTC, datetime
from typing import TypeVar

from aws_lambda_powertools import Logger

from fin_chat_edge.config.settings import EdgeServiceSettings
from fin_chat_edge.core.balancers import ExternalBalancer, InternalBalancer, ListenerHandle
from fin_chat_edge.core.compute import ComputePlatform, ServiceHandle
from fin_chat_edge.core.context import ProvisioningContext
from fin_chat_edge.core.endpoints import (
    CONTROL_PLANE_PORT,
    DEFAULT_ENDPOINT_TYPES,
    EndpointType,
    PrivateEndpointFabric,
)
from fin_chat_edge.core.errors import (
    ProvisioningCancelledError,
    ProvisioningError,
    ProvisioningTimeoutError,
    ReachabilityError,
    StepFailedError,
)
from fin_chat_edge.core.fabric import FabricHandle, NetworkFabric
from fin_chat_edge.core.health import HealthMonitor, ListenerProbe, Probe
from fin_chat_edge.core.reachability import GroupHandle, Protocol, ReachabilityPolicy
from fin_chat_edge.core.reconcile import reconcile
from fin_chat_edge.core.resources import ResourceRecord, ResourceSpec

from .drivers import ResourceDriver
from .report import ProvisioningOutputs, ProvisioningReport, StepReport, StepStatus
from .retry import RetryPolicy, call_with_retry
from .topology import TopologySpec

logger = Logger(service="fin-chat-edge")

T = TypeVar("T")

STEP_DEPENDENCIES: dict[str, tuple[str, ...]] = {
    "network_fabric": (),
    "reachability_policy": ("network_fabric",),
    "private_endpoints": ("network_fabric", "reachability_policy"),
    "compute_platform": ("network_fabric", "reachability_policy"),
    "internal_balancer": ("network_fabric", "compute_platform"),
    "external_balancer": ("internal_balancer",),
}
STEP_NAMES = tuple(STEP_DEPENDENCIES)

# Handle keys in the context arena.
FABRIC = "fabric"
POLICY = "policy"
ENDPOINT_GROUP = "group:endpoints"
COMPUTE_GROUP = "group:compute"
BALANCER_GROUP = "group:balancer"
ENDPOINTS = "endpoints"
COMPUTE = "compute"
SERVICE = "service"
INTERNAL_BALANCER = "internal_balancer"
HTTPS_LISTENER = "listener:https"
EXTERNAL_LISTENER = "listener:external"
EXTERNAL_BALANCER = "external_balancer"


class _Cancelled(Exception):
    """Internal signal that the run was cancelled mid-step."""


class ProvisioningOrchestrator:
    """Sequences the provisioning steps for one environment.

    Args:
        context: Environment context; handles produced by the run are
            registered in its arena.
        driver: Platform the resources are materialized on.
        retry_policy: Backoff for transient driver failures.
        create_timeout_seconds: Bound on every driver call; None runs calls
            inline on the calling thread.
        endpoint_workers: Threads creating private endpoints concurrently.
        verify: Whether to run post-provisioning reachability checks.
    """

    def __init__(
        self,
        context: ProvisioningContext,
        driver: ResourceDriver,
        retry_policy: RetryPolicy | None = None,
        create_timeout_seconds: float | None = 600.0,
        endpoint_workers: int = 5,
        verify: bool = True,
    ) -> None:
        self.context = context
        self.driver = driver
        self.retry_policy = retry_policy or RetryPolicy()
        self.create_timeout_seconds = create_timeout_seconds
        self.endpoint_workers = endpoint_workers
        self.verify = verify
        self._cancelled = threading.Event()
        self._created_lock = threading.Lock()
        self._created: list[str] = []
        self._partial: set[str] = set()
        self._stragglers: list[Future] = []
        self._calls: ThreadPoolExecutor | None = None

    @classmethod
    def from_settings(
        cls,
        context: ProvisioningContext,
        driver: ResourceDriver,
        settings: EdgeServiceSettings,
        **overrides,
    ) -> ProvisioningOrchestrator:
        """Build an orchestrator from provisioning settings.

        Also applies ``settings.log_level`` to the package loggers.

        Args:
            context: Environment context.
            driver: Platform the resources are materialized on.
            settings: Source of timeouts, retry policy and concurrency.
            **overrides: Constructor arguments that take precedence over settings.
        """
        logger.setLevel(settings.log_level)
        logging.getLogger("fin_chat_edge").setLevel(settings.log_level)
        params = {
            "retry_policy": RetryPolicy.from_settings(settings),
            "create_timeout_seconds": settings.create_timeout_seconds,
            "endpoint_workers": settings.endpoint_workers,
        }
        params.update(overrides)
        return cls(context, driver, **params)

    @property
    def created(self) -> tuple[str, ...]:
        with self._created_lock:
            return tuple(self._created)

    @property
    def partial(self) -> tuple[str, ...]:
        """Resources a failed or timed-out create may have left behind."""
        with self._created_lock:
            return tuple(name for name in self._created if name in self._partial)

    def cancel(self) -> None:
        """Request cancellation; the run unwinds at the next resource boundary."""
        self._cancelled.set()

    def run(self, topology: TopologySpec) -> ProvisioningReport:
        """Provision ``topology``.

        Returns:
            The report of a successful run, possibly carrying degraded-state
            warnings from post-provisioning verification.

        Raises:
            StepFailedError: If a step failed; carries the partial report.
            ProvisioningCancelledError: If the run was cancelled; resources
                this run created have been removed.
        """
        report = ProvisioningReport(self.context.environment_name)
        report.steps = [StepReport(name) for name in STEP_NAMES]
        steps: dict[str, Callable[[TopologySpec], None]] = {
            "network_fabric": self._network_fabric,
            "reachability_policy": self._reachability_policy,
            "private_endpoints": self._private_endpoints,
            "compute_platform": self._compute_platform,
            "internal_balancer": self._internal_balancer,
            "external_balancer": self._external_balancer,
        }
        first_failure: tuple[str, ProvisioningError] | None = None

        logger.info(
            "Starting provisioning run",
            extra={"environment": self.context.environment_name, "region": self.context.region},
        )
        if self.create_timeout_seconds is not None:
            self._calls = ThreadPoolExecutor(
                max_workers=self.endpoint_workers + 1,
                thread_name_prefix="driver",
            )
        try:
            for step in report.steps:
                blocked = [
                    dep
                    for dep in STEP_DEPENDENCIES[step.name]
                    if report.step(dep).status is not StepStatus.SUCCEEDED
                ]
                if blocked:
                    step.status = StepStatus.SKIPPED
                    step.error = f"Blocked by {', '.join(blocked)}"
                    logger.warning("Step skipped", extra={"step": step.name, "blocked_by": blocked})
                    continue
                try:
                    self._run_step(step, steps[step.name], topology)
                except ProvisioningError as e:
                    step.status = StepStatus.FAILED
                    step.error = str(e)
                    step.finished_at = datetime.now(UTC)
                    logger.error(
                        "Step failed",
                        extra={"step": step.name, "error": str(e), "error_type": type(e).__name__},
                    )
                    if first_failure is None:
                        first_failure = (step.name, e)
        except _Cancelled:
            self._unwind(report)
            raise ProvisioningCancelledError(report) from None
        finally:
            if self._calls is not None:
                self._calls.shutdown(wait=False, cancel_futures=True)
                self._calls = None

        report.finished_at = datetime.now(UTC)
        if first_failure is not None:
            step_name, cause = first_failure
            raise StepFailedError(step_name, cause, report) from cause

        self._finish(report, topology)
        logger.info(
            "Provisioning run finished",
            extra={"environment": self.context.environment_name, "warnings": len(report.warnings)},
        )
        return report

    def teardown(self) -> list[str]:
        """Delete every resource this orchestrator created, newest first.

        Driver calls that outlived their time bound are awaited first, so a
        create that completed late is deleted too. Partial resources that
        never materialized are dropped without a delete call.
        """
        with self._created_lock:
            stragglers, self._stragglers = self._stragglers, []
        wait(stragglers)
        deleted: list[str] = []
        for name in reversed(self.created):
            if name in self._partial and not self.driver.exists(name):
                self._forget(name)
                continue
            self._delete(name)
            deleted.append(name)
        logger.info("Teardown finished", extra={"deleted": len(deleted)})
        return deleted

    def build_health_monitor(self, task_probes: Mapping[str, Probe]) -> HealthMonitor:
        """Watch the balancer chain: tasks behind the internal listener, then
        the internal listener behind the external one.

        Args:
            task_probes: One probe per running task, keyed by task identity.
        """
        internal = self.context.arena.handle(HTTPS_LISTENER, ListenerHandle)
        external = self.context.arena.handle(EXTERNAL_LISTENER, ListenerHandle)
        monitor = HealthMonitor()
        internal_health = monitor.watch(internal, task_probes)
        monitor.watch(external, {internal.name: ListenerProbe(internal_health)})
        return monitor

    def _run_step(
        self,
        step: StepReport,
        build: Callable[[TopologySpec], None],
        topology: TopologySpec,
    ) -> None:
        self._check_cancelled(step)
        step.status = StepStatus.RUNNING
        step.started_at = datetime.now(UTC)
        logger.info("Running step", extra={"step": step.name})
        try:
            build(topology)
        finally:
            specs = self.context.arena.drain()
        self._apply(step, specs, concurrent=step.name == "private_endpoints")
        step.status = StepStatus.SUCCEEDED
        step.finished_at = datetime.now(UTC)
        logger.info(
            "Step succeeded",
            extra={
                "step": step.name,
                "created_count": len(step.created),
                "updated_count": len(step.updated),
                "replaced_count": len(step.replaced),
                "unchanged_count": len(step.unchanged),
            },
        )

    def _apply(self, step: StepReport, specs: list[ResourceSpec], concurrent: bool) -> None:
        plan = reconcile(specs, self.driver.observe())
        step.unchanged.extend(plan.unchanged)
        if plan.is_empty:
            return
        logger.debug("Reconciled step", extra={"step": step.name, "plan": plan.summary()})

        action_of = {s.name: "create" for s in plan.creates}
        action_of.update((s.name, "update") for s in plan.updates)
        action_of.update((s.name, "replace") for s in plan.replaces)
        # Declaration order is dependency order.
        actions = [(action_of[s.name], s) for s in specs if s.name in action_of]
        if not concurrent or self.endpoint_workers <= 1:
            for action, spec in actions:
                self._check_cancelled(step)
                self._materialize(step, action, spec)
            return

        with ThreadPoolExecutor(
            max_workers=self.endpoint_workers,
            thread_name_prefix=step.name,
        ) as pool:
            futures = [pool.submit(self._materialize, step, action, spec) for action, spec in actions]
            done, pending = wait(futures, return_when=FIRST_EXCEPTION)
            for future in pending:
                future.cancel()
            wait(pending)
        for future in futures:
            if not future.cancelled() and future.exception() is not None:
                raise future.exception()

    def _materialize(self, step: StepReport, action: str, spec: ResourceSpec) -> ResourceRecord:
        self._check_cancelled(step)
        operation = getattr(self.driver, action)
        should_retry = None
        if not spec.idempotent:
            # Retry a non-idempotent call only when nothing was left behind.
            should_retry = lambda: not self.driver.exists(spec.name)  # noqa: E731
        existed = self.driver.exists(spec.name)
        try:
            record = call_with_retry(
                lambda: self._bounded(operation, spec, f"{action} {spec.name}"),
                self.retry_policy,
                f"{action} {spec.name}",
                should_retry=should_retry,
            )
        except ProvisioningTimeoutError:
            # The call may still complete after its bound.
            self._mark_partial(step, action, spec.name)
            raise
        except ProvisioningError:
            if not existed and self.driver.exists(spec.name):
                self._mark_partial(step, action, spec.name)
            raise
        with self._created_lock:
            if action == "create":
                self._created.append(spec.name)
                step.created.append(spec.name)
            elif action == "update":
                step.updated.append(spec.name)
            else:
                step.replaced.append(spec.name)
        return record

    def _bounded(self, operation: Callable[[ResourceSpec], T], spec: ResourceSpec, description: str) -> T:
        if self._calls is None:
            return operation(spec)
        future = self._calls.submit(operation, spec)
        try:
            return future.result(timeout=self.create_timeout_seconds)
        except FuturesTimeoutError:
            if not future.cancel():
                with self._created_lock:
                    self._stragglers.append(future)
            msg = f"{description} did not complete within {self.create_timeout_seconds}s"
            raise ProvisioningTimeoutError(msg) from None

    def _mark_partial(self, step: StepReport, action: str, name: str) -> None:
        with self._created_lock:
            if name not in step.partial:
                step.partial.append(name)
            # Only creates are owned by this run; updates touch existing resources.
            if action == "create" and name not in self._created:
                self._created.append(name)
                self._partial.add(name)
        logger.warning(
            "Resource may be partially provisioned",
            extra={"step": step.name, "resource": name, "action": action},
        )

    def _delete(self, name: str) -> None:
        call_with_retry(lambda: self.driver.delete(name), self.retry_policy, f"delete {name}")
        self._forget(name)

    def _forget(self, name: str) -> None:
        with self._created_lock:
            if name in self._created:
                self._created.remove(name)
            self._partial.discard(name)

    def _check_cancelled(self, step: StepReport) -> None:
        if self._cancelled.is_set():
            step.status = StepStatus.CANCELLED
            raise _Cancelled

    def _unwind(self, report: ProvisioningReport) -> None:
        logger.warning(
            "Provisioning cancelled, unwinding",
            extra={"environment": self.context.environment_name, "created_resources": len(self.created)},
        )
        for step in report.steps:
            if step.status in (StepStatus.PENDING, StepStatus.RUNNING):
                step.status = StepStatus.CANCELLED
        self.teardown()
        report.finished_at = datetime.now(UTC)

    def _finish(self, report: ProvisioningReport, topology: TopologySpec) -> None:
        arena = self.context.arena
        service = arena.handle(SERVICE, ServiceHandle)
        external = arena.handle(EXTERNAL_LISTENER, ListenerHandle)
        record = self.driver.observe().get(external.balancer.name)
        address = record.attributes.get("dns_name", "") if record else ""
        report.outputs = ProvisioningOutputs(
            image_reference=service.task_spec.image,
            external_address=address,
            external_port=external.port,
        )
        if not self.verify:
            return
        compute = arena.handle(COMPUTE, ComputePlatform)
        endpoints = arena.handle(ENDPOINTS, PrivateEndpointFabric)
        try:
            compute.verify_control_plane(service, endpoints)
        except ReachabilityError as e:
            report.warnings.append(str(e))
            logger.warning(
                "Control plane unreachable, environment is degraded",
                extra={"source": e.source, "destination": e.destination, "error": str(e)},
            )

    # Steps

    def _network_fabric(self, topology: TopologySpec) -> None:
        fabric = NetworkFabric(self.context).create_fabric(
            topology.zones,
            topology.tiers,
            topology.vpc_cidr,
        )
        self.context.arena.register_handle(FABRIC, fabric)

    def _reachability_policy(self, topology: TopologySpec) -> None:
        arena = self.context.arena
        fabric = arena.handle(FABRIC, FabricHandle)
        tier = topology.isolated_tier
        policy = ReachabilityPolicy(self.context, fabric)
        endpoints = policy.declare_group("endpoints", tier, "Private endpoint interfaces")
        compute = policy.declare_group("compute", tier, "Service tasks")
        balancer = policy.declare_group("balancer", tier, "Internal application balancer")
        if topology.endpoint_access_from_compute:
            policy.allow(
                compute,
                endpoints,
                Protocol.TCP,
                CONTROL_PLANE_PORT,
                description="Control plane access from service tasks",
            )
        policy.validate_least_privilege(endpoints, only_from=compute)
        arena.register_handle(POLICY, policy)
        arena.register_handle(ENDPOINT_GROUP, endpoints)
        arena.register_handle(COMPUTE_GROUP, compute)
        arena.register_handle(BALANCER_GROUP, balancer)

    def _private_endpoints(self, topology: TopologySpec) -> None:
        arena = self.context.arena
        fabric = arena.handle(FABRIC, FabricHandle)
        group = arena.handle(ENDPOINT_GROUP, GroupHandle)
        endpoints = PrivateEndpointFabric(self.context, fabric, arena.handle(POLICY, ReachabilityPolicy))
        for service in topology.endpoint_services:
            endpoint_type = DEFAULT_ENDPOINT_TYPES[service]
            endpoints.attach_endpoint(
                service,
                endpoint_type,
                fabric,
                topology.isolated_tier,
                group if endpoint_type is EndpointType.INTERFACE else None,
            )
        arena.register_handle(ENDPOINTS, endpoints)

    def _compute_platform(self, topology: TopologySpec) -> None:
        arena = self.context.arena
        compute = ComputePlatform(self.context, arena.handle(FABRIC, FabricHandle))
        cluster = compute.create_cluster()
        service = compute.launch_service(
            cluster,
            topology.task_spec,
            topology.replica_count,
            topology.isolated_tier,
            arena.handle(COMPUTE_GROUP, GroupHandle),
            service_name=topology.service_name,
        )
        arena.register_handle(COMPUTE, compute)
        arena.register_handle(SERVICE, service)

    def _internal_balancer(self, topology: TopologySpec) -> None:
        arena = self.context.arena
        compute = arena.handle(COMPUTE, ComputePlatform)
        service = arena.handle(SERVICE, ServiceHandle)
        balancer = InternalBalancer(
            self.context,
            arena.handle(FABRIC, FabricHandle),
            arena.handle(POLICY, ReachabilityPolicy),
            compute,
        )
        balancer.create(topology.isolated_tier, arena.handle(BALANCER_GROUP, GroupHandle))
        target_group = balancer.add_service_target_group(service, topology.health_check)
        balancer.add_redirect_listener()
        listener = balancer.add_tls_listener(topology.certificate_ref, target_group)
        compute.verify_port_mapping(service)
        arena.register_handle(INTERNAL_BALANCER, balancer)
        arena.register_handle(HTTPS_LISTENER, listener)

    def _external_balancer(self, topology: TopologySpec) -> None:
        arena = self.context.arena
        balancer = ExternalBalancer(self.context, arena.handle(FABRIC, FabricHandle))
        balancer.create(topology.public_tier)
        listener = balancer.add_passthrough_listener(arena.handle(HTTPS_LISTENER, ListenerHandle))
        arena.register_handle(EXTERNAL_BALANCER, balancer)
        arena.register_handle(EXTERNAL_LISTENER, listener)
