# Copyright 2025 nurion team
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Shared subscription point for fleet state.

FleetSync owns the single transport, the reconciler and the recheck timers,
and fans every change out to all subscribers. It handles:
- Lazy start on first subscription, teardown on last unsubscribe
- One FleetView per change, shared by every subscriber
- 1s heartbeat-staleness recheck and 2s stall probe
- Loud failure when state is read outside an active subscription
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional, Set

from fleetsync.core.settings import Settings, get_settings
from fleetsync.errors import SubscriptionError
from fleetsync.state import metrics
from fleetsync.state.messages import FleetMessage
from fleetsync.state.models import (
    AgentBudget,
    AgentEvent,
    AgentInfo,
    AgentRole,
    AgentTask,
    AgentTemplate,
    Deployment,
    FleetData,
    HardwareMetrics,
    ManagedSearch,
    Notification,
    ProjectSummary,
    RecordSummary,
    SearchJob,
    Status,
    WorkerStatus,
)
from fleetsync.state.reconciler import StateReconciler
from fleetsync.state.snapshot import FleetSnapshot
from fleetsync.transport.base import ConnectionState, MessageHandler, StateHandler, Transport
from fleetsync.transport.selector import create_transport
from fleetsync.utils.logging import configure_logging, create_logger

TransportFactory = Callable[[Settings, MessageHandler, Optional[StateHandler]], Transport]
ViewCallback = Callable[["FleetView"], None]


class FleetView:
    """Read API handed to consumers.

    Raw state is read straight from the snapshot, so unchanged kinds are the
    same objects across views. Derived values are recomputed on every call,
    against the live per-worker arrival times.
    """

    def __init__(
        self,
        snapshot: FleetSnapshot,
        connection_state: ConnectionState,
        send: Callable[[Any], None],
        worker_received_at: Mapping[str, float],
        stall_tracker: metrics.StallTracker,
        clock: Callable[[], float],
    ):
        self.snapshot = snapshot
        self.connection_state = connection_state
        self._send = send
        self._worker_received_at = worker_received_at
        self._stall_tracker = stall_tracker
        self._clock = clock

    @property
    def connected(self) -> bool:
        return self.connection_state == ConnectionState.CONNECTED

    @property
    def version(self) -> int:
        return self.snapshot.version

    @property
    def status(self) -> Optional[Status]:
        return self.snapshot.status

    @property
    def fleet(self) -> Optional[FleetData]:
        return self.snapshot.fleet

    @property
    def workers(self) -> tuple[WorkerStatus, ...]:
        return self.snapshot.fleet.workers if self.snapshot.fleet else ()

    @property
    def coordinator(self) -> Optional[HardwareMetrics]:
        return self.snapshot.coordinator

    @property
    def searches(self) -> tuple[ManagedSearch, ...]:
        return self.snapshot.searches

    @property
    def search_jobs(self) -> tuple[SearchJob, ...]:
        return self.snapshot.search_jobs

    @property
    def deployments(self) -> tuple[Deployment, ...]:
        return self.snapshot.deployments

    @property
    def notifications(self) -> tuple[Notification, ...]:
        return self.snapshot.notifications

    @property
    def agent_tasks(self) -> tuple[AgentTask, ...]:
        return self.snapshot.agent_tasks

    @property
    def agent_events(self) -> tuple[AgentEvent, ...]:
        return self.snapshot.agent_events

    @property
    def agent_budgets(self) -> tuple[AgentBudget, ...]:
        return self.snapshot.agent_budgets

    @property
    def running_agents(self) -> tuple[AgentInfo, ...]:
        return self.snapshot.running_agents

    @property
    def agent_roles(self) -> tuple[AgentRole, ...]:
        return self.snapshot.agent_roles

    @property
    def agent_templates(self) -> tuple[AgentTemplate, ...]:
        return self.snapshot.agent_templates

    @property
    def projects(self) -> tuple[ProjectSummary, ...]:
        return self.snapshot.projects

    @property
    def records(self) -> tuple[RecordSummary, ...]:
        return self.snapshot.records

    def send_message(self, payload: Any) -> None:
        """Best-effort message to the coordinator; results show up in later updates."""
        self._send(payload)

    # =========================================================================
    # Derived
    # =========================================================================

    def elapsed(self) -> Dict[str, float]:
        """Seconds since each worker's record last arrived."""
        return metrics.elapsed_by_worker(self._worker_received_at, self._clock())

    def elapsed_for(self, worker_id: str) -> float:
        """Seconds since one worker's record last arrived (0 if it never did)."""
        return metrics.elapsed_for(self.elapsed(), worker_id)

    def health(self) -> Dict[str, metrics.WorkerHealth]:
        return metrics.health_by_worker(self.workers, self.elapsed())

    def health_counts(self) -> Dict[metrics.WorkerHealth, int]:
        return metrics.health_counts(self.workers, self.elapsed())

    def summary_counts(self) -> Dict[str, int]:
        return metrics.fleet_summary_counts(self.fleet, self.elapsed())

    def hosts(self) -> List[metrics.HostNode]:
        return metrics.group_by_host(self.fleet, self.coordinator, self.searches, self.deployments)

    def servers(self) -> List[Any]:
        return metrics.servers_for_fleet(self.fleet)

    def server_statuses(self) -> Dict[str, metrics.ServerStatus]:
        elapsed = self.elapsed()
        return {
            server.hostname: metrics.server_status(server, self.workers, elapsed)
            for server in self.servers()
        }

    def fleet_throughput(self) -> float:
        return metrics.fleet_throughput(self.workers)

    def progress(self) -> Optional[float]:
        """Percent complete of the coordinator's checkpointed search."""
        return metrics.checkpoint_progress(self.status.checkpoint if self.status else None)

    def search_diagnostics(self) -> List[Dict[str, Any]]:
        """Diagnose every running managed search against its worker."""
        now = self._clock()
        elapsed = self.elapsed()
        workers = {w.worker_id: w for w in self.workers}
        diagnostics = []
        for search in self.searches:
            if search.status != "running":
                continue
            worker = workers.get(search.worker_id)
            stalled = self._stall_tracker.stalled_secs(search.worker_id, now) if worker else None
            diagnostics.append(
                {
                    "search": search,
                    "worker": worker,
                    "stalled_secs": stalled,
                    "diagnosis": metrics.diagnose_search(
                        search, worker, stalled, self._stall_tracker.threshold_s, elapsed
                    ),
                }
            )
        return diagnostics

    def search_rows(self) -> List[metrics.SearchRow]:
        return metrics.search_rows(self.searches, self.search_jobs)

    def task_tree(self) -> List[metrics.TaskTreeNode]:
        return metrics.build_task_tree(self.agent_tasks)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-compatible dictionary for API responses."""
        result = self.snapshot.to_dict()
        result["connected"] = self.connected
        result["connection_state"] = self.connection_state.value
        result["fleet_throughput"] = self.fleet_throughput()
        result["progress"] = self.progress()
        result["health"] = {wid: h.value for wid, h in self.health().items()}
        result["hosts"] = [
            {
                "hostname": node.hostname,
                "is_coordinator": node.is_coordinator,
                "total_cores": node.total_cores,
                "total_tested": node.total_tested,
                "total_found": node.total_found,
                "worker_ids": [w.worker_id for w in node.workers],
            }
            for node in self.hosts()
        ]
        return result


class Subscription:
    """A consumer's handle on a FleetSync context.

    Reads through an unsubscribed handle raise SubscriptionError.
    """

    def __init__(self, owner: "FleetSync", callback: Optional[ViewCallback] = None):
        self._owner = owner
        self._callback = callback
        self._active = True
        self._latest: Optional[FleetView] = None
        self._changed = asyncio.Event()

    @property
    def active(self) -> bool:
        return self._active

    @property
    def view(self) -> FleetView:
        if not self._active:
            raise SubscriptionError(
                "Fleet state read through a subscription that was already closed; "
                "subscribe again before reading"
            )
        return self._owner._current_view()

    def unsubscribe(self) -> None:
        """Detach; tears the context down if this was the last subscriber."""
        if not self._active:
            return
        self._deactivate()
        self._owner._remove(self)

    async def updates(self) -> AsyncIterator[FleetView]:
        """Yield views as they change until unsubscribed.

        Slow consumers skip intermediate views and always get the latest.
        """
        while self._active:
            await self._changed.wait()
            self._changed.clear()
            if not self._active or self._latest is None:
                return
            yield self._latest

    def _deliver(self, view: FleetView) -> None:
        self._latest = view
        self._changed.set()
        if self._callback is not None:
            self._callback(view)

    def _deactivate(self) -> None:
        self._active = False
        self._changed.set()


class FleetSync:
    """Owns the one live channel to the coordinator and shares its state.

    Constructed once per process and passed to every consumer.

    Usage:
        fleet_sync = FleetSync(settings)
        subscription = await fleet_sync.subscribe(on_change)

        view = subscription.view
        print(view.connected, len(view.workers))

        subscription.unsubscribe()   # last one out stops the transport
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport_factory: Optional[TransportFactory] = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the context (nothing starts until init or subscribe).

        Args:
            settings: Sync settings; defaults to environment configuration
            transport_factory: Builds the transport; defaults to the
                configuration-driven selector
            clock: Time source for staleness and stall tracking
        """
        self.settings = settings or get_settings()
        self._transport_factory = transport_factory or create_transport
        self._clock = clock

        configure_logging(self.settings.log_level, self.settings.log_format)
        self.logger = create_logger("FleetSync")

        self.reconciler = StateReconciler(
            event_buffer_size=self.settings.event_buffer_size,
            notification_buffer_size=self.settings.notification_buffer_size,
            clock=clock,
        )
        self.stall_tracker = metrics.StallTracker()

        self._transport: Optional[Transport] = None
        self._timers: List[asyncio.Task] = []
        self._subscriptions: List[Subscription] = []
        self._view: Optional[FleetView] = None

        # Last published derived state, to publish only on change
        self._health: Dict[str, metrics.WorkerHealth] = {}
        self._stalled: Set[str] = set()

    @property
    def started(self) -> bool:
        return self._transport is not None

    @property
    def transport(self) -> Optional[Transport]:
        return self._transport

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def init(self) -> None:
        """Start the transport and timers. No-op if already started."""
        if self.started:
            return

        self.reconciler.reset()
        self.stall_tracker.clear()
        self._health = {}
        self._stalled = set()

        self._transport = self._transport_factory(
            self.settings, self._on_messages, self._on_state_change
        )
        self._view = self._build_view()
        await self._transport.start()

        self._timers = [
            asyncio.create_task(
                self._every(self.settings.health_recheck_interval_s, self._recheck_health)
            ),
            asyncio.create_task(
                self._every(self.settings.stall_probe_interval_s, self._probe_stalls)
            ),
        ]
        self.logger.info(f"FleetSync started with {type(self._transport).__name__}")

    async def shutdown(self) -> None:
        """Close every subscription, stop timers and the transport."""
        for subscription in list(self._subscriptions):
            subscription._deactivate()
        self._subscriptions.clear()

        transport = self._teardown()
        if transport is not None:
            await transport.stop()

    def _teardown(self) -> Optional[Transport]:
        """Cancel timers and the transport synchronously."""
        for timer in self._timers:
            timer.cancel()
        self._timers = []

        transport = self._transport
        self._transport = None
        self._view = None
        if transport is not None:
            transport.cancel()
            self.logger.info("FleetSync stopped")
        return transport

    # =========================================================================
    # Subscriptions
    # =========================================================================

    async def subscribe(self, callback: Optional[ViewCallback] = None) -> Subscription:
        """Attach a consumer, starting the context on first use.

        Args:
            callback: Called with the new FleetView on every change
        """
        subscription = Subscription(self, callback)
        self._subscriptions.append(subscription)
        try:
            await self.init()
        except BaseException:
            subscription._deactivate()
            self._remove(subscription)
            raise
        return subscription

    def view(self) -> FleetView:
        """Current view; only valid while at least one subscription is active."""
        if not self._subscriptions:
            raise SubscriptionError(
                "Fleet state read without an active subscription; "
                "call FleetSync.subscribe() first"
            )
        return self._current_view()

    def _current_view(self) -> FleetView:
        if self._view is None:
            raise SubscriptionError("FleetSync is not running; call FleetSync.init() first")
        return self._view

    def _remove(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
        if not self._subscriptions:
            self._teardown()

    # =========================================================================
    # Transport callbacks and timers
    # =========================================================================

    def _on_messages(self, messages: List[FleetMessage]) -> None:
        if self.reconciler.apply_all(messages):
            self._health = metrics.health_by_worker(self._workers(), self._elapsed())
            self._publish()

    def _on_state_change(self, state: ConnectionState) -> None:
        self.logger.info(f"Connection {state.value}")
        if self._transport is not None:
            self._publish()

    def _recheck_health(self) -> None:
        health = metrics.health_by_worker(self._workers(), self._elapsed())
        if health != self._health:
            self._health = health
            self._publish()

    def _probe_stalls(self) -> None:
        now = self._clock()
        workers = self._workers()
        self.stall_tracker.observe(workers, now)
        stalled = {w.worker_id for w in workers if self.stall_tracker.is_stalled(w.worker_id, now)}
        if stalled != self._stalled:
            self._stalled = stalled
            self._publish()

    async def _every(self, interval_s: float, fn: Callable[[], None]) -> None:
        while True:
            await asyncio.sleep(interval_s)
            try:
                fn()
            except Exception as e:
                self.logger.error(f"Error in {fn.__name__}: {e}")

    # =========================================================================
    # Publishing
    # =========================================================================

    def _workers(self) -> tuple[WorkerStatus, ...]:
        fleet = self.reconciler.snapshot.fleet
        return fleet.workers if fleet else ()

    def _elapsed(self) -> Dict[str, float]:
        return metrics.elapsed_by_worker(self.reconciler.worker_received_at, self._clock())

    def _build_view(self) -> FleetView:
        transport = self._transport
        return FleetView(
            snapshot=self.reconciler.snapshot,
            connection_state=transport.state if transport else ConnectionState.DISCONNECTED,
            send=transport.send_message if transport else self._drop_message,
            worker_received_at=self.reconciler.worker_received_at,
            stall_tracker=self.stall_tracker,
            clock=self._clock,
        )

    def _drop_message(self, payload: Any) -> None:
        self.logger.debug("No transport, dropping outbound message")

    def _publish(self) -> None:
        view = self._build_view()
        self._view = view
        for subscription in list(self._subscriptions):
            try:
                subscription._deliver(view)
            except Exception as e:
                self.logger.error(f"Subscriber callback failed: {e}")
