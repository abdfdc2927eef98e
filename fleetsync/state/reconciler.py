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

"""State reconciler for merging fleet messages into one snapshot.

StateReconciler is the only writer of the canonical FleetSnapshot. It
handles:
- Replace-whole-list kinds (fleet, searches, deployments, agent tasks, ...)
- Per-worker heartbeat upserts into the current fleet
- Bounded, deduplicated logs (agent events, notifications)
- Structural sharing so unchanged records keep their object identity

Merging is idempotent: applying the same message twice leaves the snapshot
untouched the second time and ``apply`` returns False.
"""

from __future__ import annotations

import dataclasses
import time
from typing import Any, Callable, Dict, Hashable, Iterable, Optional, Tuple

from fleetsync.state.messages import FleetMessage, FleetMessageType
from fleetsync.state.models import FleetData, WorkerStatus
from fleetsync.state.snapshot import FleetSnapshot
from fleetsync.utils.logging import create_logger

KeyFn = Callable[[Any], Hashable]

# Replace-whole-list kinds: message type -> (snapshot field, identity key)
_LIST_KINDS: Dict[FleetMessageType, Tuple[str, KeyFn]] = {
    FleetMessageType.SEARCH_UPDATE: ("searches", lambda s: s.id),
    FleetMessageType.SEARCH_JOB_UPDATE: ("search_jobs", lambda j: j.id),
    FleetMessageType.DEPLOYMENT_UPDATE: ("deployments", lambda d: d.id),
    FleetMessageType.AGENT_TASK_UPDATE: ("agent_tasks", lambda t: t.id),
    FleetMessageType.AGENT_BUDGET_UPDATE: ("agent_budgets", lambda b: b.id),
    FleetMessageType.RUNNING_AGENTS_UPDATE: ("running_agents", lambda a: a.task_id),
    FleetMessageType.AGENT_ROLES_UPDATE: ("agent_roles", lambda r: r.name),
    FleetMessageType.AGENT_TEMPLATES_UPDATE: ("agent_templates", lambda t: t.name),
    FleetMessageType.PROJECT_UPDATE: ("projects", lambda p: p.slug),
    FleetMessageType.RECORD_UPDATE: ("records", lambda r: (r.form, r.expression)),
}

# Single-value kinds: message type -> snapshot field
_VALUE_KINDS: Dict[FleetMessageType, str] = {
    FleetMessageType.STATUS_UPDATE: "status",
    FleetMessageType.COORDINATOR_METRICS: "coordinator",
}


def share_records(current: Tuple[Any, ...], incoming: Iterable[Any], key: KeyFn) -> Tuple[Any, ...]:
    """Return ``incoming`` as a tuple, reusing records from ``current``.

    A record equal to the current record with the same key is replaced by
    the current object. If the result is element-wise identical to
    ``current``, ``current`` itself is returned.
    """
    previous = {key(item): item for item in current}
    merged = []
    for item in incoming:
        old = previous.get(key(item))
        merged.append(old if old is not None and old == item else item)

    if len(merged) == len(current) and all(a is b for a, b in zip(merged, current)):
        return current
    return tuple(merged)


class StateReconciler:
    """Merges FleetMessages into the canonical FleetSnapshot.

    Usage:
        reconciler = StateReconciler()
        for message in decode_frame(raw):
            changed = reconciler.apply(message)

        snapshot = reconciler.snapshot
    """

    def __init__(
        self,
        event_buffer_size: int = 200,
        notification_buffer_size: int = 50,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize reconciler.

        Args:
            event_buffer_size: Maximum agent events kept (oldest evicted)
            notification_buffer_size: Maximum notifications kept (oldest evicted)
            clock: Time source used to stamp worker record arrivals
        """
        self.event_buffer_size = event_buffer_size
        self.notification_buffer_size = notification_buffer_size
        self._clock = clock

        self.logger = create_logger("StateReconciler")

        self._snapshot = FleetSnapshot()

        # When each worker's record last arrived, changed or not. A fleet
        # summary stamps every worker it lists; a heartbeat only its sender.
        self.worker_received_at: Dict[str, float] = {}

    @property
    def snapshot(self) -> FleetSnapshot:
        return self._snapshot

    def reset(self) -> None:
        """Drop all state (used when a context is torn down and reused)."""
        self._snapshot = FleetSnapshot()
        self.worker_received_at.clear()

    def apply_all(self, messages: Iterable[FleetMessage]) -> bool:
        """Apply messages in order. Returns True if any of them changed state."""
        changed = False
        for message in messages:
            changed = self.apply(message) or changed
        return changed

    def apply(self, message: FleetMessage) -> bool:
        """Merge one message. Returns True if the snapshot changed."""
        snapshot = self._snapshot
        changes: Dict[str, Any] = {}
        message_type = message.message_type

        if message_type in _LIST_KINDS:
            field_name, key = _LIST_KINDS[message_type]
            current = getattr(snapshot, field_name)
            merged = share_records(current, message.payload, key)
            if merged is not current:
                changes[field_name] = merged

        elif message_type in _VALUE_KINDS:
            field_name = _VALUE_KINDS[message_type]
            if getattr(snapshot, field_name) != message.payload:
                changes[field_name] = message.payload

        elif message_type == FleetMessageType.FLEET_SUMMARY:
            now = self._clock()
            self.worker_received_at.clear()
            self.worker_received_at.update((w.worker_id, now) for w in message.payload.workers)
            fleet = self._share_fleet(snapshot.fleet, message.payload)
            if fleet is not snapshot.fleet:
                changes["fleet"] = fleet

        elif message_type == FleetMessageType.WORKER_HEARTBEAT:
            self.worker_received_at[message.payload.worker_id] = self._clock()
            fleet = self._upsert_worker(snapshot.fleet, message.payload)
            if fleet is not snapshot.fleet:
                changes["fleet"] = fleet

        elif message_type == FleetMessageType.AGENT_EVENT:
            events = self._merge_log(
                snapshot.agent_events,
                message.payload,
                order=lambda e: e.id,
                newest_first=False,
                cap=self.event_buffer_size,
            )
            if events is not snapshot.agent_events:
                changes["agent_events"] = events

        elif message_type == FleetMessageType.NOTIFICATION:
            notifications = self._merge_log(
                snapshot.notifications,
                message.payload,
                order=lambda n: (n.timestamp_ms, n.id),
                newest_first=True,
                cap=self.notification_buffer_size,
            )
            if notifications is not snapshot.notifications:
                changes["notifications"] = notifications

        if not changes:
            return False

        self._snapshot = dataclasses.replace(snapshot, version=snapshot.version + 1, **changes)
        return True

    # =========================================================================
    # Merge policies
    # =========================================================================

    def _share_fleet(self, current: Optional[FleetData], incoming: FleetData) -> FleetData:
        if current is None:
            return incoming
        if current == incoming:
            return current

        workers = share_records(current.workers, incoming.workers, lambda w: w.worker_id)
        servers = incoming.servers
        if servers is not None and current.servers is not None:
            servers = share_records(current.servers, servers, lambda s: s.hostname)

        return incoming.model_copy(update={"workers": workers, "servers": servers})

    def _upsert_worker(self, current: Optional[FleetData], worker: WorkerStatus) -> Optional[FleetData]:
        workers = current.workers if current is not None else ()

        for index, existing in enumerate(workers):
            if existing.worker_id == worker.worker_id:
                if existing == worker:
                    return current
                updated = workers[:index] + (worker,) + workers[index + 1 :]
                break
        else:
            self.logger.debug(f"New worker {worker.worker_id} on {worker.hostname}")
            updated = workers + (worker,)

        servers = current.servers if current is not None else None
        return FleetData.from_workers(updated, servers=servers)

    @staticmethod
    def _merge_log(
        current: Tuple[Any, ...],
        incoming: Iterable[Any],
        order: KeyFn,
        newest_first: bool,
        cap: int,
    ) -> Tuple[Any, ...]:
        by_id = {item.id: item for item in current}
        for item in incoming:
            existing = by_id.get(item.id)
            if existing is None or existing != item:
                by_id[item.id] = item

        ordered = sorted(by_id.values(), key=order, reverse=newest_first)
        if len(ordered) > cap:
            ordered = ordered[:cap] if newest_first else ordered[len(ordered) - cap :]

        if len(ordered) == len(current) and all(a is b for a, b in zip(ordered, current)):
            return current
        return tuple(ordered)
