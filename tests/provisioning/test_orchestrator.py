"""End-to-end provisioning runs against the simulated driver."""

import logging
from dataclasses import replace

import pytest

from fin_chat_edge.config.settings import EdgeServiceSettings
from fin_chat_edge.core.balancers import ListenerHandle
from fin_chat_edge.core.context import ProvisioningContext
from fin_chat_edge.core.endpoints import EndpointService
from fin_chat_edge.core.errors import (
    DependencyUnavailableError,
    ProvisioningCancelledError,
    ProvisioningError,
    ProvisioningTimeoutError,
    RetriesExhaustedError,
    StepFailedError,
    TransientProvisioningError,
)
from fin_chat_edge.core.health import ListenerState
from fin_chat_edge.provisioning.drivers import SimulatedDriver
from fin_chat_edge.provisioning.orchestrator import (
    EXTERNAL_LISTENER,
    HTTPS_LISTENER,
    STEP_NAMES,
    ProvisioningOrchestrator,
)
from fin_chat_edge.provisioning.orchestrator import logger as orchestrator_logger
from fin_chat_edge.provisioning.report import StepStatus

ENDPOINT_NAMES = {f"test-endpoint-{service.value}" for service in EndpointService}


@pytest.fixture
def orchestrator(context, driver, fast_retry):
    return ProvisioningOrchestrator(context, driver, retry_policy=fast_retry)


def _statuses(report):
    return {step.name: step.status for step in report.steps}


class TestSuccessfulRun:
    def test_all_steps_succeed(self, orchestrator, topology):
        report = orchestrator.run(topology)

        assert report.succeeded
        assert not report.degraded
        assert [step.name for step in report.steps] == list(STEP_NAMES)
        assert report.warnings == []

    def test_each_step_creates_its_resources(self, orchestrator, topology):
        report = orchestrator.run(topology)

        assert report.step("network_fabric").created == ["test-vpc"]
        assert set(report.step("private_endpoints").created) == ENDPOINT_NAMES
        assert report.step("compute_platform").created == [
            "test-cluster",
            "test-task-fin-chat",
            "test-service-fin-chat",
        ]
        assert {"test-alb", "test-tg-app", "test-alb-http80", "test-alb-https443"} <= set(
            report.step("internal_balancer").created,
        )
        assert report.step("external_balancer").created == [
            "test-nlb",
            "test-tg-internal-balancer",
            "test-nlb-tcp443",
        ]

    def test_outputs_surface_image_and_external_address(self, orchestrator, topology, image):
        outputs = orchestrator.run(topology).outputs

        assert outputs.image_reference == image
        assert outputs.external_port == 443
        assert outputs.external_address.startswith("test-nlb-")
        assert outputs.external_address.endswith(".elb.ca-central-1.amazonaws.com")

    def test_service_has_no_public_address(self, orchestrator, topology, driver):
        orchestrator.run(topology)
        service = driver.observe()["test-service-fin-chat"]
        assert service.spec.properties["assign_public_ip"] is False
        assert service.spec.properties["tier"] == "Private"

    def test_endpoint_group_admits_compute_only(self, orchestrator, topology, driver):
        orchestrator.run(topology)
        rules = [
            record.spec.properties
            for record in driver.observe().values()
            if record.spec.kind.value == "security_group_rule"
            and record.spec.properties["group"] == "test-sg-endpoints"
        ]
        assert len(rules) == 1
        assert rules[0]["peer"] == "test-sg-compute"
        assert rules[0]["port"] == 443

    def test_report_serializes(self, orchestrator, topology):
        data = orchestrator.run(topology).to_dict()
        assert data["environment_name"] == "test"
        assert [step["status"] for step in data["steps"]] == ["succeeded"] * len(STEP_NAMES)
        assert data["outputs"]["external_port"] == 443

    def test_sequential_endpoint_creation(self, context, driver, topology, fast_retry):
        orchestrator = ProvisioningOrchestrator(
            context,
            driver,
            retry_policy=fast_retry,
            create_timeout_seconds=None,
            endpoint_workers=1,
        )
        report = orchestrator.run(topology)
        assert report.succeeded
        assert set(report.step("private_endpoints").created) == ENDPOINT_NAMES


class TestReapply:
    def _rerun(self, certificates, driver, fast_retry, topology):
        context = ProvisioningContext("test", "ca-central-1", certificates)
        return ProvisioningOrchestrator(context, driver, retry_policy=fast_retry).run(topology)

    def test_reapply_changes_nothing(self, orchestrator, certificates, driver, fast_retry, topology):
        first = orchestrator.run(topology)
        calls = len(driver.calls)

        second = self._rerun(certificates, driver, fast_retry, topology)

        assert second.succeeded
        assert second.created_resources == []
        assert sum(len(step.unchanged) for step in second.steps) == len(first.created_resources)
        assert len(driver.calls) == calls

    def test_replica_change_updates_service_in_place(
        self, orchestrator, certificates, driver, fast_retry, topology
    ):
        orchestrator.run(topology)
        report = self._rerun(certificates, driver, fast_retry, replace(topology, replica_count=2))

        assert report.step("compute_platform").updated == ["test-service-fin-chat"]
        assert report.step("compute_platform").replaced == []

    def test_new_image_replaces_task_definition(
        self, orchestrator, certificates, driver, fast_retry, topology, image
    ):
        orchestrator.run(topology)
        before = driver.observe()["test-task-fin-chat"].physical_id
        new_task = replace(topology.task_spec, image=image.replace("1.4.2", "1.5.0"))

        report = self._rerun(certificates, driver, fast_retry, replace(topology, task_spec=new_task))

        assert report.step("compute_platform").replaced == ["test-task-fin-chat"]
        assert report.step("compute_platform").updated == ["test-service-fin-chat"]
        assert driver.observe()["test-task-fin-chat"].physical_id != before
        assert report.outputs.image_reference.endswith(":1.5.0")


class TestDegradedRun:
    def test_missing_endpoint_rule_is_reported_not_fatal(self, orchestrator, topology):
        report = orchestrator.run(replace(topology, endpoint_access_from_compute=False))

        assert report.succeeded
        assert report.degraded
        assert len(report.warnings) == 1
        assert "Connection refused" in report.warnings[0]
        assert "test-sg-endpoints" in report.warnings[0]

    def test_missing_endpoint_is_reported(self, orchestrator, topology):
        partial = (EndpointService.REGISTRY_API, EndpointService.STORAGE)
        report = orchestrator.run(replace(topology, endpoint_services=partial))

        assert report.degraded
        assert "registry-data" in report.warnings[0]

    def test_verification_can_be_disabled(self, context, driver, fast_retry, topology):
        orchestrator = ProvisioningOrchestrator(context, driver, retry_policy=fast_retry, verify=False)
        report = orchestrator.run(replace(topology, endpoint_access_from_compute=False))
        assert report.warnings == []


class TestFailedRun:
    def test_unknown_certificate_halts_dependent_steps(self, orchestrator, topology, driver):
        with pytest.raises(StepFailedError) as exc_info:
            orchestrator.run(replace(topology, certificate_ref="arn:aws:acm:ca-central-1:123456789012:certificate/gone"))

        error = exc_info.value
        assert error.step == "internal_balancer"
        assert isinstance(error.cause, DependencyUnavailableError)
        assert _statuses(error.report) == {
            "network_fabric": StepStatus.SUCCEEDED,
            "reachability_policy": StepStatus.SUCCEEDED,
            "private_endpoints": StepStatus.SUCCEEDED,
            "compute_platform": StepStatus.SUCCEEDED,
            "internal_balancer": StepStatus.FAILED,
            "external_balancer": StepStatus.SKIPPED,
        }
        assert error.report.step("external_balancer").error == "Blocked by internal_balancer"
        assert "test-vpc" in error.report.created_resources
        assert "test-alb" not in driver.observe()

    def test_transient_failures_are_retried(self, orchestrator, topology, driver):
        driver.inject_failure("test-endpoint-logs", TransientProvisioningError("throttled"), times=2)

        report = orchestrator.run(topology)

        assert report.succeeded
        assert driver.calls.count(("create", "test-endpoint-logs")) == 3

    def test_exhausted_retries_fail_only_that_branch(self, orchestrator, topology, driver):
        driver.inject_failure("test-endpoint-logs", TransientProvisioningError("throttled"), times=10)

        with pytest.raises(StepFailedError) as exc_info:
            orchestrator.run(topology)

        error = exc_info.value
        assert error.step == "private_endpoints"
        assert isinstance(error.cause, RetriesExhaustedError)
        assert error.cause.attempts == 3
        statuses = _statuses(error.report)
        assert statuses["compute_platform"] is StepStatus.SUCCEEDED
        assert statuses["internal_balancer"] is StepStatus.SUCCEEDED
        assert statuses["external_balancer"] is StepStatus.SUCCEEDED

    def test_partial_non_idempotent_create_is_not_retried(self, orchestrator, topology, driver):
        driver.inject_failure(
            "test-alb-https443",
            TransientProvisioningError("request timed out"),
            leave_partial=True,
        )

        with pytest.raises(StepFailedError) as exc_info:
            orchestrator.run(topology)

        assert exc_info.value.step == "internal_balancer"
        assert isinstance(exc_info.value.cause, TransientProvisioningError)
        assert driver.calls.count(("create", "test-alb-https443")) == 1
        assert driver.exists("test-alb-https443")

    def test_partial_listener_is_reported_and_torn_down(self, orchestrator, topology, driver):
        driver.inject_failure(
            "test-alb-https443",
            TransientProvisioningError("request timed out"),
            leave_partial=True,
        )

        with pytest.raises(StepFailedError) as exc_info:
            orchestrator.run(topology)

        report = exc_info.value.report
        assert report.step("internal_balancer").partial == ["test-alb-https443"]
        assert report.partial_resources == ["test-alb-https443"]
        assert "test-alb-https443" not in report.created_resources
        assert orchestrator.partial == ("test-alb-https443",)

        deleted = orchestrator.teardown()

        assert deleted[0] == "test-alb-https443"
        assert driver.observe() == {}

    def test_clean_non_idempotent_failure_is_retried(self, orchestrator, topology, driver):
        driver.inject_failure("test-alb-https443", TransientProvisioningError("throttled"))

        assert orchestrator.run(topology).succeeded
        assert driver.calls.count(("create", "test-alb-https443")) == 2

    def test_slow_creation_times_out(self, context, topology, fast_retry):
        driver = SimulatedDriver(delays={"test-cluster": 1.0})
        orchestrator = ProvisioningOrchestrator(
            context,
            driver,
            retry_policy=fast_retry,
            create_timeout_seconds=0.05,
        )

        with pytest.raises(StepFailedError) as exc_info:
            orchestrator.run(topology)

        error = exc_info.value
        assert error.step == "compute_platform"
        assert isinstance(error.cause, ProvisioningTimeoutError)
        assert driver.calls.count(("create", "test-cluster")) == 1
        assert error.report.step("private_endpoints").status is StepStatus.SUCCEEDED
        assert error.report.step("internal_balancer").status is StepStatus.SKIPPED
        assert error.report.step("compute_platform").partial == ["test-cluster"]

    def test_create_completing_after_timeout_is_torn_down(self, context, topology, fast_retry):
        driver = SimulatedDriver(delays={"test-vpc": 0.3})
        orchestrator = ProvisioningOrchestrator(
            context,
            driver,
            retry_policy=fast_retry,
            create_timeout_seconds=0.05,
        )

        with pytest.raises(StepFailedError) as exc_info:
            orchestrator.run(topology)

        report = exc_info.value.report
        assert exc_info.value.step == "network_fabric"
        assert report.created_resources == []
        assert report.partial_resources == ["test-vpc"]

        assert orchestrator.teardown() == ["test-vpc"]
        assert driver.observe() == {}
        assert orchestrator.created == ()

    def test_timed_out_create_that_never_landed_is_dropped(self, context, topology, fast_retry):
        driver = SimulatedDriver(delays={"test-vpc": 0.2})
        driver.inject_failure("test-vpc", ProvisioningError("quota exceeded"))
        orchestrator = ProvisioningOrchestrator(
            context,
            driver,
            retry_policy=fast_retry,
            create_timeout_seconds=0.05,
        )

        with pytest.raises(StepFailedError):
            orchestrator.run(topology)

        assert orchestrator.teardown() == []
        assert ("delete", "test-vpc") not in driver.calls
        assert orchestrator.created == ()


class _CancellingDriver(SimulatedDriver):
    """Cancels the run right after a given resource is created."""

    def __init__(self, trigger):
        super().__init__()
        self.trigger = trigger
        self.orchestrator = None

    def create(self, spec):
        record = super().create(spec)
        if spec.name == self.trigger:
            self.orchestrator.cancel()
        return record


class TestCancellation:
    def test_cancel_unwinds_created_resources(self, context, topology, fast_retry):
        driver = _CancellingDriver("test-cluster")
        orchestrator = ProvisioningOrchestrator(
            context,
            driver,
            retry_policy=fast_retry,
            create_timeout_seconds=None,
            endpoint_workers=1,
        )
        driver.orchestrator = orchestrator

        with pytest.raises(ProvisioningCancelledError) as exc_info:
            orchestrator.run(topology)

        assert driver.observe() == {}
        assert orchestrator.created == ()
        statuses = _statuses(exc_info.value.report)
        assert statuses["private_endpoints"] is StepStatus.SUCCEEDED
        assert statuses["compute_platform"] is StepStatus.CANCELLED
        assert statuses["internal_balancer"] is StepStatus.CANCELLED
        assert statuses["external_balancer"] is StepStatus.CANCELLED
        assert ("delete", "test-vpc") == driver.calls[-1]

    def test_cancel_before_start(self, orchestrator, topology, driver):
        orchestrator.cancel()
        with pytest.raises(ProvisioningCancelledError):
            orchestrator.run(topology)
        assert driver.calls == []


class TestTeardownAndHealth:
    def test_teardown_deletes_newest_first(self, orchestrator, topology, driver):
        report = orchestrator.run(topology)

        deleted = orchestrator.teardown()

        assert deleted == list(reversed(report.created_resources))
        assert deleted[0] == "test-nlb-tcp443"
        assert deleted[-1] == "test-vpc"
        assert driver.observe() == {}

    def test_health_monitor_follows_balancer_chain(self, orchestrator, topology, context):
        orchestrator.run(topology)
        monitor = orchestrator.build_health_monitor({"task-1": lambda: True, "task-2": lambda: True})

        external = context.arena.handle(EXTERNAL_LISTENER, ListenerHandle)
        internal = context.arena.handle(HTTPS_LISTENER, ListenerHandle)
        assert monitor.await_healthy(external, max_rounds=5) == 3
        assert monitor.health(internal).state is ListenerState.HEALTHY

    def test_unhealthy_tasks_propagate_to_external_listener(self, orchestrator, topology, context):
        orchestrator.run(topology)
        monitor = orchestrator.build_health_monitor({"task-1": lambda: False})
        for _ in range(3):
            states = monitor.run_round()
        external = context.arena.handle(EXTERNAL_LISTENER, ListenerHandle)
        assert states[external.name] is ListenerState.UNHEALTHY


class TestFromSettings:
    @pytest.fixture(autouse=True)
    def restore_log_level(self):
        yield
        orchestrator_logger.setLevel("INFO")
        logging.getLogger("fin_chat_edge").setLevel(logging.NOTSET)

    def test_provisioning_settings_are_applied(self, context, driver):
        settings = EdgeServiceSettings(
            create_timeout_seconds=45.0,
            endpoint_workers=2,
            max_attempts=4,
            retry_base_delay_seconds=0.5,
            retry_max_delay_seconds=8.0,
        )

        orchestrator = ProvisioningOrchestrator.from_settings(context, driver, settings)

        assert orchestrator.create_timeout_seconds == 45.0
        assert orchestrator.endpoint_workers == 2
        assert orchestrator.retry_policy.max_attempts == 4
        assert orchestrator.retry_policy.base_delay_seconds == 0.5
        assert orchestrator.retry_policy.max_delay_seconds == 8.0

    def test_overrides_take_precedence(self, context, driver):
        orchestrator = ProvisioningOrchestrator.from_settings(
            context,
            driver,
            EdgeServiceSettings(),
            create_timeout_seconds=None,
            endpoint_workers=1,
        )
        assert orchestrator.create_timeout_seconds is None
        assert orchestrator.endpoint_workers == 1

    def test_log_level_is_applied(self, context, driver, fast_retry, topology):
        orchestrator = ProvisioningOrchestrator.from_settings(
            context,
            driver,
            EdgeServiceSettings(log_level="debug"),
            retry_policy=fast_retry,
        )

        assert orchestrator_logger.getEffectiveLevel() == logging.DEBUG
        assert logging.getLogger("fin_chat_edge").level == logging.DEBUG
        # Every structured log call of a full run is emitted at this level.
        assert orchestrator.run(topology).succeeded
        orchestrator.cancel()
        with pytest.raises(ProvisioningCancelledError):
            orchestrator.run(topology)
