"""Listener and target health driven by periodic probes.

Listener lifecycle: ``created -> listening -> (healthy | degraded | unhealthy)``.
A target changes state only after a run of consecutive results reaches
the configured threshold, so a single failed probe never flips it.

Health is inherited transitively along the balancer chain: the external
balancer's single target is the internal balancer's HTTPS listener, and
probing it succeeds only while that listener has healthy targets.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Mapping
from enum import Enum

import requests
from aws_lambda_powertools import Logger

from .balancers import ListenerHandle
from .errors import ConfigurationError, ReachabilityError
from .targets import HealthCheckSettings

logger = Logger(service="fin-chat-edge")

Probe = Callable[[], bool]


class TargetState(str, Enum):
    INITIAL = "initial"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class ListenerState(str, Enum):
    CREATED = "created"
    LISTENING = "listening"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class TargetHealth:
    """Consecutive-result state machine for one target."""

    def __init__(self, target_id: str, settings: HealthCheckSettings) -> None:
        self.target_id = target_id
        self.settings = settings
        self.state = TargetState.INITIAL
        self.consecutive_successes = 0
        self.consecutive_failures = 0

    def record(self, success: bool) -> TargetState:
        if success:
            self.consecutive_successes += 1
            self.consecutive_failures = 0
            if self.consecutive_successes >= self.settings.healthy_threshold:
                self.state = TargetState.HEALTHY
        else:
            self.consecutive_failures += 1
            self.consecutive_successes = 0
            if self.consecutive_failures >= self.settings.unhealthy_threshold:
                self.state = TargetState.UNHEALTHY
        return self.state


class ListenerHealth:
    """Aggregated health of a listener's targets.

    Only the listener's own health loop mutates its targets; other threads
    read the aggregated state.
    """

    def __init__(self, listener: ListenerHandle) -> None:
        settings = listener.health_check
        if settings is None:
            msg = f"Listener '{listener.name}' does not forward to a target group"
            raise ConfigurationError(msg)
        self.listener = listener
        self.settings = settings
        self._lock = threading.Lock()
        self._listening = False
        self._targets: dict[str, TargetHealth] = {}

    def add_target(self, target_id: str) -> TargetHealth:
        with self._lock:
            target = self._targets.setdefault(target_id, TargetHealth(target_id, self.settings))
        return target

    def mark_listening(self) -> None:
        with self._lock:
            self._listening = True

    def record(self, target_id: str, success: bool) -> TargetState:
        with self._lock:
            target = self._targets.get(target_id)
            if target is None:
                msg = f"Target '{target_id}' is not registered with '{self.listener.name}'"
                raise ConfigurationError(msg)
            return target.record(success)

    def target_state(self, target_id: str) -> TargetState:
        with self._lock:
            target = self._targets.get(target_id)
            if target is None:
                msg = f"Target '{target_id}' is not registered with '{self.listener.name}'"
                raise ConfigurationError(msg)
            return target.state

    @property
    def state(self) -> ListenerState:
        with self._lock:
            if not self._listening:
                return ListenerState.CREATED
            states = [t.state for t in self._targets.values()]
        if not states or all(s is TargetState.INITIAL for s in states):
            return ListenerState.LISTENING
        healthy = sum(s is TargetState.HEALTHY for s in states)
        if healthy == len(states):
            return ListenerState.HEALTHY
        if healthy:
            return ListenerState.DEGRADED
        if any(s is TargetState.UNHEALTHY for s in states):
            return ListenerState.UNHEALTHY
        return ListenerState.LISTENING


class HttpProbe:
    """HTTP(S) GET against a target; 2xx and 3xx count as success."""

    def __init__(
        self,
        url: str,
        timeout_seconds: float,
        session: requests.Session | None = None,
        verify_tls: bool = True,
    ) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()
        self.verify_tls = verify_tls

    def __call__(self) -> bool:
        try:
            response = self.session.get(
                self.url,
                timeout=self.timeout_seconds,
                allow_redirects=False,
                verify=self.verify_tls,
            )
        except requests.RequestException as e:
            logger.debug("Probe failed", extra={"url": self.url, "error": str(e)})
            return False
        return 200 <= response.status_code < 400

    @classmethod
    def for_target(cls, address: str, settings: HealthCheckSettings, **kwargs) -> HttpProbe:
        scheme = settings.protocol.value.lower()
        url = f"{scheme}://{address}:{settings.port}{settings.path}"
        return cls(url, settings.timeout_seconds, **kwargs)


class ListenerProbe:
    """Probe that succeeds while another listener is serving traffic."""

    def __init__(self, upstream: ListenerHealth) -> None:
        self.upstream = upstream

    def __call__(self) -> bool:
        return self.upstream.state in (ListenerState.HEALTHY, ListenerState.DEGRADED)


class HealthMonitor:
    """Drives probe rounds for every watched listener.

    Rounds can be stepped synchronously with ``run_round`` or run on one
    background thread per listener with ``start``.
    """

    def __init__(self) -> None:
        self._health: dict[str, ListenerHealth] = {}
        self._probes: dict[str, dict[str, Probe]] = {}
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    def watch(self, listener: ListenerHandle, probes: Mapping[str, Probe]) -> ListenerHealth:
        """Start tracking ``listener`` with one probe per target.

        Listeners are probed in the order they are watched; watch upstream
        listeners first.
        """
        if listener.name in self._health:
            msg = f"Listener '{listener.name}' is already watched"
            raise ConfigurationError(msg)
        health = ListenerHealth(listener)
        for target_id in probes:
            health.add_target(target_id)
        health.mark_listening()
        self._health[listener.name] = health
        self._probes[listener.name] = dict(probes)
        return health

    def health(self, listener: ListenerHandle) -> ListenerHealth:
        try:
            return self._health[listener.name]
        except KeyError:
            msg = f"Listener '{listener.name}' is not watched"
            raise ConfigurationError(msg) from None

    def probe_listener(self, name: str) -> ListenerState:
        health = self._health[name]
        before = health.state
        for target_id, probe in self._probes[name].items():
            health.record(target_id, probe())
        after = health.state
        if after is not before:
            logger.info(
                "Listener state changed",
                extra={"listener": name, "from": before.value, "to": after.value},
            )
        return after

    def run_round(self) -> dict[str, ListenerState]:
        return {name: self.probe_listener(name) for name in self._health}

    def await_healthy(self, listener: ListenerHandle, max_rounds: int) -> int:
        """Step rounds until ``listener`` is healthy.

        Returns:
            The number of rounds it took.

        Raises:
            ReachabilityError: If the listener is not healthy after
                ``max_rounds`` rounds.
        """
        health = self.health(listener)
        for round_number in range(1, max_rounds + 1):
            self.run_round()
            if health.state is ListenerState.HEALTHY:
                return round_number
        msg = (
            f"Listener '{listener.name}' is {health.state.value} after "
            f"{max_rounds} probe rounds"
        )
        raise ReachabilityError(msg, source=listener.balancer.name, destination=listener.name)

    def start(self) -> None:
        """Run each listener's probe loop on its own thread."""
        if self._threads:
            msg = "Health monitor is already running"
            raise ConfigurationError(msg)
        self._stop.clear()
        for name, health in self._health.items():
            thread = threading.Thread(
                target=self._loop,
                args=(name, health.settings.interval_seconds),
                name=f"health-{name}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []

    def _loop(self, name: str, interval: float) -> None:
        while not self._stop.is_set():
            try:
                self.probe_listener(name)
            except Exception:
                logger.exception("Health check round failed", extra={"listener": name})
            self._stop.wait(interval)
