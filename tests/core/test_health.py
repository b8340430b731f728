"""Tests for target thresholds, listener states and transitive balancer health."""

import threading
from unittest.mock import MagicMock

import pytest
import requests

from fin_chat_edge.core.balancers import (
    BalancerHandle,
    ForwardAction,
    Layer,
    ListenerHandle,
    ListenerProtocol,
    RedirectAction,
    Scheme,
)
from fin_chat_edge.core.errors import ConfigurationError, ReachabilityError
from fin_chat_edge.core.health import (
    HealthMonitor,
    HttpProbe,
    ListenerHealth,
    ListenerProbe,
    ListenerState,
    TargetHealth,
    TargetState,
)
from fin_chat_edge.core.targets import HealthCheckSettings, TargetGroupHandle, TargetProtocol, TargetType


def _listener(name, scheme=Scheme.INTERNAL, protocol=ListenerProtocol.HTTPS, settings=None):
    balancer = BalancerHandle(f"{name}-lb", scheme, Layer.APPLICATION, "Private")
    target_group = TargetGroupHandle(
        f"{name}-tg",
        TargetProtocol.HTTP,
        3000,
        TargetType.IP,
        settings or HealthCheckSettings(),
    )
    return ListenerHandle(name, balancer, protocol, 443, ForwardAction(target_group))


def _sequence(*results):
    """Probe returning the given results in order, then repeating the last one."""
    remaining = list(results)

    def probe():
        if len(remaining) > 1:
            return remaining.pop(0)
        return remaining[0]

    return probe


class TestTargetHealth:
    def test_healthy_after_threshold_successes(self):
        target = TargetHealth("task-1", HealthCheckSettings())
        assert target.record(True) is TargetState.INITIAL
        assert target.record(True) is TargetState.HEALTHY

    def test_single_failure_does_not_flip_healthy_target(self):
        target = TargetHealth("task-1", HealthCheckSettings())
        target.record(True)
        target.record(True)
        assert target.record(False) is TargetState.HEALTHY
        assert target.record(False) is TargetState.HEALTHY
        assert target.record(False) is TargetState.UNHEALTHY

    def test_interleaved_success_resets_failure_run(self):
        target = TargetHealth("task-1", HealthCheckSettings())
        for result in (True, True, False, False, True, False, False):
            target.record(result)
        assert target.state is TargetState.HEALTHY

    def test_recovery_needs_healthy_threshold(self):
        target = TargetHealth("task-1", HealthCheckSettings(healthy_threshold=3))
        for _ in range(3):
            target.record(False)
        target.record(True)
        target.record(True)
        assert target.state is TargetState.UNHEALTHY
        assert target.record(True) is TargetState.HEALTHY


class TestHealthCheckSettings:
    @pytest.mark.parametrize(
        ("kwargs", "message"),
        [
            ({"port": 0}, "outside 1-65535"),
            ({"timeout_seconds": 30, "interval_seconds": 30}, "shorter than the interval"),
            ({"healthy_threshold": 0}, "at least 1"),
            ({"path": "health"}, "must start with '/'"),
            ({"interval_seconds": 0}, "must be positive"),
        ],
    )
    def test_invalid_settings_are_rejected(self, kwargs, message):
        with pytest.raises(ConfigurationError, match=message):
            HealthCheckSettings(**kwargs)


class TestListenerHealth:
    def test_lifecycle_until_healthy(self):
        health = ListenerHealth(_listener("internal"))
        health.add_target("task-1")
        assert health.state is ListenerState.CREATED

        health.mark_listening()
        assert health.state is ListenerState.LISTENING

        health.record("task-1", True)
        health.record("task-1", True)
        assert health.state is ListenerState.HEALTHY

    def test_partial_health_is_degraded(self):
        health = ListenerHealth(_listener("internal"))
        health.add_target("task-1")
        health.add_target("task-2")
        health.mark_listening()
        for _ in range(3):
            health.record("task-1", True)
            health.record("task-2", False)
        assert health.target_state("task-2") is TargetState.UNHEALTHY
        assert health.state is ListenerState.DEGRADED

    def test_no_healthy_target_is_unhealthy(self):
        health = ListenerHealth(_listener("internal"))
        health.add_target("task-1")
        health.mark_listening()
        for _ in range(3):
            health.record("task-1", False)
        assert health.state is ListenerState.UNHEALTHY

    def test_unknown_target_is_rejected(self):
        health = ListenerHealth(_listener("internal"))
        with pytest.raises(ConfigurationError, match="not registered"):
            health.record("task-9", True)

    def test_unknown_target_state_is_rejected(self):
        health = ListenerHealth(_listener("internal"))
        health.add_target("task-1")
        with pytest.raises(ConfigurationError, match="not registered"):
            health.target_state("task-9")

    def test_redirect_listener_has_no_health(self):
        balancer = BalancerHandle("lb", Scheme.INTERNAL, Layer.APPLICATION, "Private")
        listener = ListenerHandle("lb-http80", balancer, ListenerProtocol.HTTP, 80, RedirectAction())
        with pytest.raises(ConfigurationError, match="does not forward"):
            ListenerHealth(listener)


class TestTransitiveHealth:
    """The external listener's only target is the internal listener."""

    @pytest.fixture
    def listeners(self):
        internal = _listener("internal")
        external = _listener("external", scheme=Scheme.INTERNET_FACING, protocol=ListenerProtocol.TCP)
        return internal, external

    def _monitor(self, listeners, task_probe):
        internal, external = listeners
        monitor = HealthMonitor()
        internal_health = monitor.watch(internal, {"task-1": task_probe})
        monitor.watch(external, {internal.name: ListenerProbe(internal_health)})
        return monitor

    def test_failing_task_makes_both_listeners_unhealthy(self, listeners):
        internal, external = listeners
        monitor = self._monitor(listeners, lambda: False)

        states = {}
        for _ in range(3):
            states = monitor.run_round()

        assert states == {internal.name: ListenerState.UNHEALTHY, external.name: ListenerState.UNHEALTHY}

    def test_healthy_task_makes_both_listeners_healthy(self, listeners):
        internal, external = listeners
        monitor = self._monitor(listeners, lambda: True)
        assert monitor.await_healthy(external, max_rounds=5) == 3
        assert monitor.health(internal).state is ListenerState.HEALTHY

    def test_external_recovers_after_task_recovers(self, listeners):
        internal, external = listeners
        monitor = self._monitor(listeners, _sequence(False, False, False, True))
        for _ in range(3):
            monitor.run_round()
        assert monitor.health(external).state is ListenerState.UNHEALTHY

        assert monitor.await_healthy(external, max_rounds=5) == 3

    def test_never_healthy_raises_reachability_error(self, listeners):
        _, external = listeners
        monitor = self._monitor(listeners, lambda: False)
        with pytest.raises(ReachabilityError, match="after 4 probe rounds") as exc_info:
            monitor.await_healthy(external, max_rounds=4)
        assert exc_info.value.destination == external.name

    def test_listener_is_watched_once(self, listeners):
        internal, _ = listeners
        monitor = HealthMonitor()
        monitor.watch(internal, {"task-1": lambda: True})
        with pytest.raises(ConfigurationError, match="already watched"):
            monitor.watch(internal, {"task-1": lambda: True})

    def test_unwatched_listener_lookup_fails(self, listeners):
        internal, _ = listeners
        with pytest.raises(ConfigurationError, match="is not watched"):
            HealthMonitor().health(internal)

    def test_background_loops_probe_until_stopped(self, listeners):
        internal, _ = listeners
        probed = threading.Event()

        def probe():
            probed.set()
            return True

        monitor = HealthMonitor()
        monitor.watch(internal, {"task-1": probe})
        monitor.start()
        try:
            assert probed.wait(timeout=5)
            with pytest.raises(ConfigurationError, match="already running"):
                monitor.start()
        finally:
            monitor.stop(timeout=5)

    def test_background_loop_survives_check_error(self):
        internal = _listener("internal", settings=HealthCheckSettings(interval_seconds=2, timeout_seconds=1))
        calls = []
        recovered = threading.Event()

        def check():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("check crashed")
            recovered.set()
            return True

        monitor = HealthMonitor()
        monitor.watch(internal, {"task-1": check})
        monitor.start()
        try:
            assert recovered.wait(timeout=5)
        finally:
            monitor.stop(timeout=5)


class TestHttpProbe:
    def test_success_on_2xx(self):
        session = MagicMock()
        session.get.return_value.status_code = 200
        probe = HttpProbe("http://10.0.2.10:3000/", 5, session=session)

        assert probe() is True
        session.get.assert_called_once_with(
            "http://10.0.2.10:3000/",
            timeout=5,
            allow_redirects=False,
            verify=True,
        )

    def test_failure_on_5xx(self):
        session = MagicMock()
        session.get.return_value.status_code = 503
        assert HttpProbe("http://10.0.2.10:3000/", 5, session=session)() is False

    def test_connection_error_counts_as_failure(self):
        session = MagicMock()
        session.get.side_effect = requests.ConnectionError("connection refused")
        assert HttpProbe("http://10.0.2.10:3000/", 5, session=session)() is False

    def test_url_built_from_health_check(self):
        settings = HealthCheckSettings(path="/healthz", port=3000)
        probe = HttpProbe.for_target("10.0.2.10", settings, session=MagicMock())
        assert probe.url == "http://10.0.2.10:3000/healthz"
        assert probe.timeout_seconds == 5
