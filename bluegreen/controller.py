"""
Remote blue-green controllers. These run on the target host.

Swap (non-graceful):

    IDLE -> LOCK_ACQUIRED -> STOP_STALE_INACTIVE -> START_INACTIVE -> HEALTH_CHECKING
         -> HEALTHY -> CUTOVER -> STOP_OLD -> COMMIT -> DONE
         -> UNHEALTHY -> ROLLBACK -> FAILED

Graceful drain inserts TRAFFIC_SPLIT -> DRAINING between HEALTHY and CUTOVER.

Nothing durable changes before CUTOVER, so rolling back before that point is
only a matter of stopping the slot we just started. The marker write in
COMMIT is the single commit point.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable

from bluegreen.drain import (
    DEFAULT_DRAIN_TIMEOUT,
    DEFAULT_POLL_INTERVAL,
    DrainOutcome,
    DrainWaiter,
    InstanceClient,
    KeypressWatcher,
)
from bluegreen.errors import DeploymentError, HealthCheckError
from bluegreen.host import ServiceControl
from bluegreen.logging_config import DeployLogAdapter
from bluegreen.proxy import ProxyConfigGenerator
from bluegreen.state import (
    DeployHistory,
    DeployLock,
    HostLayout,
    Slot,
    SlotInfo,
    read_active,
    write_active,
)

logger = logging.getLogger(__name__)

HEALTH_ATTEMPTS = 30
HEALTH_INTERVAL = 2.0


class DeployState(str, Enum):
    IDLE = "IDLE"
    LOCK_ACQUIRED = "LOCK_ACQUIRED"
    STOP_STALE_INACTIVE = "STOP_STALE_INACTIVE"
    START_INACTIVE = "START_INACTIVE"
    HEALTH_CHECKING = "HEALTH_CHECKING"
    HEALTHY = "HEALTHY"
    UNHEALTHY = "UNHEALTHY"
    TRAFFIC_SPLIT = "TRAFFIC_SPLIT"
    DRAINING = "DRAINING"
    CUTOVER = "CUTOVER"
    STOP_OLD = "STOP_OLD"
    COMMIT = "COMMIT"
    DONE = "DONE"
    ROLLBACK = "ROLLBACK"
    FAILED = "FAILED"


@dataclass
class DeployResult:
    active: Slot
    previous: Slot
    port: int
    duration_seconds: float
    drain_outcome: DrainOutcome | None = None


class SwapController:
    mode = "swap"

    def __init__(
        self,
        layout: HostLayout,
        services: ServiceControl,
        proxy: ProxyConfigGenerator,
        http=None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        health_attempts: int = HEALTH_ATTEMPTS,
        health_interval: float = HEALTH_INTERVAL,
        on_transition: Callable[[DeployState], None] | None = None,
    ):
        self.layout = layout
        self.services = services
        self.proxy = proxy
        self.http = http
        self.sleep = sleep
        self.clock = clock
        self.health_attempts = health_attempts
        self.health_interval = health_interval
        self.on_transition = on_transition
        self.history = DeployHistory(layout.history_file)
        self.state = DeployState.IDLE
        self.log = DeployLogAdapter(logger, {"deploy_state": self.state.value, "mode": self.mode})

    def _transition(self, state: DeployState) -> None:
        self.state = state
        self.log.extra["deploy_state"] = state.value
        self.log.debug(f"State -> {state.value}")
        if self.on_transition is not None:
            self.on_transition(state)

    # ── Main sequence ─────────────────────────────────────────────

    def run(self) -> DeployResult:
        with DeployLock(self.layout.lock_dir):
            self._transition(DeployState.LOCK_ACQUIRED)
            start = self.clock()
            active = self.layout.slot(read_active(self.layout.marker_file))
            target = self.layout.slot(active.slot.other)
            self.log.extra["target_slot"] = target.name

            self.log.info("=" * 60)
            self.log.info(
                f"DEPLOYMENT START ({self.mode}): {active.name} -> {target.name} "
                f"(port {target.port})"
            )
            self.log.info("=" * 60)

            try:
                self._start_target(target)
                self._health_check(target)
            except DeploymentError as e:
                self._rollback(target, e, start)
                raise

            # ── POINT OF NO RETURN for the new instance's health ──
            try:
                drain_outcome = self._before_cutover(active, target, start)
            except OSError as e:
                error = DeploymentError(f"Host error before cutover: {e}")
                self._restore_routing(active)
                self._rollback(target, error, start)
                raise error from e
            try:
                self._cutover(active, target, start)
            except DeploymentError as e:
                if self.state is not DeployState.FAILED:
                    self.log.critical(
                        f"CUTOVER INCOMPLETE at {self.state.value}: {e}. Traffic is routed to "
                        f"{target.name} but the marker still names {active.name}."
                    )
                    self._record(active, target, start, success=False, error=str(e))
                raise

            elapsed = round(self.clock() - start, 1)
            self._record(active, target, start, success=True, drain_outcome=drain_outcome)
            self._transition(DeployState.DONE)
            self.log.info("=" * 60)
            self.log.info(f"DEPLOYMENT COMPLETE: {target.name} is now active ({elapsed}s)")
            self.log.info("=" * 60)
            return DeployResult(
                active=target.slot,
                previous=active.slot,
                port=target.port,
                duration_seconds=elapsed,
                drain_outcome=drain_outcome,
            )

    def _start_target(self, target: SlotInfo) -> None:
        self._transition(DeployState.STOP_STALE_INACTIVE)
        # A previous failed attempt may have left it running.
        self.services.stop(target.service)

        self._transition(DeployState.START_INACTIVE)
        self.log.info(f"Starting {target.service}...")
        self.services.start(target.service)

    def _health_check(self, target: SlotInfo) -> None:
        self._transition(DeployState.HEALTH_CHECKING)
        budget = round(self.health_attempts * self.health_interval)
        self.log.info(f"Health check on port {target.port} (up to {budget}s)...")
        client = InstanceClient(target.port, http=self.http)

        for attempt in range(1, self.health_attempts + 1):
            if not self.services.is_active(target.service):
                self._transition(DeployState.UNHEALTHY)
                raise HealthCheckError(
                    f"{target.service} is no longer running (died before attempt {attempt})"
                )
            if client.probe():
                self.log.info(f"  App responded on attempt {attempt}")
                self._transition(DeployState.HEALTHY)
                return
            self.log.debug(f"  Poll {attempt}/{self.health_attempts}: no response")
            if attempt < self.health_attempts:
                self.sleep(self.health_interval)

        self._transition(DeployState.UNHEALTHY)
        raise HealthCheckError(
            f"Health check failed after {budget}s ({self.health_attempts} attempts)"
        )

    def _before_cutover(
        self, active: SlotInfo, target: SlotInfo, start: float
    ) -> DrainOutcome | None:
        return None

    def _cutover(self, active: SlotInfo, target: SlotInfo, start: float) -> None:
        self._transition(DeployState.CUTOVER)
        self.log.info(f"Routing all traffic to {target.name} (port {target.port})...")
        try:
            self.proxy.route_all(target)
        except DeploymentError as e:
            # The generator restored the previous config; the old slot still serves.
            self._restore_routing(active)
            self._rollback(target, e, start)
            raise

        self._transition(DeployState.STOP_OLD)
        self.log.info(f"Stopping {active.service}...")
        self.services.stop(active.service)
        self.services.enable(target.service)
        self.services.disable(active.service)

        self._transition(DeployState.COMMIT)
        try:
            write_active(self.layout.marker_file, target.slot)
        except OSError as e:
            raise DeploymentError(f"Could not write {self.layout.marker_file}: {e}") from e
        self.log.info(f"  Active marker now names {target.name}")

    def _restore_routing(self, active: SlotInfo) -> None:
        pass

    def _rollback(self, target: SlotInfo, error: DeploymentError, start: float) -> None:
        self.log.error(f"DEPLOYMENT FAILED: {error}")
        self._transition(DeployState.ROLLBACK)
        self.log.info(f"Stopping failed {target.service}...")
        try:
            self.services.stop(target.service)
        except DeploymentError as stop_err:
            self.log.warning(f"Could not stop {target.service}: {stop_err}")
        active = self.layout.slot(target.slot.other)
        self._record(active, target, start, success=False, error=str(error))
        self._transition(DeployState.FAILED)

    def _record(self, active: SlotInfo, target: SlotInfo, start: float, **fields) -> None:
        drain_outcome = fields.pop("drain_outcome", None)
        if drain_outcome is not None:
            fields["drain"] = drain_outcome.value
        try:
            self.history.append(
                from_slot=active.name,
                to_slot=target.name,
                mode=self.mode,
                duration_seconds=round(self.clock() - start, 1),
                **fields,
            )
        except OSError as e:
            self.log.warning(f"Could not record deploy history: {e}")


class DrainController(SwapController):
    """Swap with a traffic split and a bounded wait for pinned sessions to leave."""

    mode = "graceful"

    def __init__(
        self,
        *args,
        drain_timeout: float = DEFAULT_DRAIN_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        watcher: KeypressWatcher | None = None,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        self.drain_timeout = drain_timeout
        self.poll_interval = poll_interval
        self.watcher = watcher

    def _before_cutover(self, active: SlotInfo, target: SlotInfo, start: float) -> DrainOutcome:
        self._transition(DeployState.TRAFFIC_SPLIT)
        self.log.info(
            f"Splitting traffic: sessions pinned to {active.name} stay, "
            f"everyone else goes to {target.name}..."
        )
        try:
            self.proxy.route_split(pinned=active, default=target)
        except DeploymentError as e:
            self._rollback(target, e, start)
            raise

        deadline = datetime.now(timezone.utc) + timedelta(seconds=self.drain_timeout)
        client = InstanceClient(active.mgmt_port, http=self.http)
        client.notify_new_version(deadline)

        self._transition(DeployState.DRAINING)
        self.log.info(
            f"Waiting up to {self.drain_timeout}s for pinned sessions on {active.name} "
            f"(polling every {self.poll_interval}s)..."
        )
        waiter = DrainWaiter(client, poll_interval=self.poll_interval, clock=self.clock)
        watcher = self.watcher or KeypressWatcher()
        with watcher:
            forced = watcher.start()
            outcome = waiter.wait(self.drain_timeout, forced=forced)
        self.log.info(f"Drain finished: {outcome.value}")
        return outcome

    def _restore_routing(self, active: SlotInfo) -> None:
        # The restored config is the split one, which would send unpinned
        # traffic to the slot we are about to stop.
        try:
            self.proxy.route_all(active)
        except DeploymentError as e:
            self.log.critical(f"Could not route traffic back to {active.name}: {e}")
