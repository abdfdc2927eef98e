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

"""Derived fleet metrics.

Everything here is computed from a snapshot on read and never stored back
into it: worker health from heartbeat staleness, host grouping, server
status, throughput, checkpoint progress and stall diagnosis.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from fleetsync.state.models import (
    AgentBudget,
    AgentTask,
    Checkpoint,
    Deployment,
    FleetData,
    HardwareMetrics,
    ManagedSearch,
    SearchJob,
    ServerInfo,
    WorkerStatus,
)

logger = logging.getLogger(__name__)

HEALTHY_THRESHOLD_S = 30
OFFLINE_THRESHOLD_S = 60
STALL_THRESHOLD_S = 120

COORDINATOR_HOSTNAME = "coordinator"


class WorkerHealth(str, Enum):
    HEALTHY = "healthy"
    STALE = "stale"
    OFFLINE = "offline"


class ServerStatus(str, Enum):
    ONLINE = "online"
    DEGRADED = "degraded"
    OFFLINE = "offline"


class SearchDiagnosis(str, Enum):
    HEALTHY = "healthy"
    NO_HEARTBEAT = "no_heartbeat"
    HEARTBEAT_STALE = "heartbeat_stale"
    NO_PROGRESS = "no_progress"


# =============================================================================
# Health
# =============================================================================

# Seconds since each worker's record was received, by worker id. A bare
# float applies to every worker.
Elapsed = Union[float, Mapping[str, float]]


def elapsed_for(elapsed_s: Elapsed, worker_id: str) -> float:
    if isinstance(elapsed_s, (int, float)):
        return elapsed_s
    return elapsed_s.get(worker_id, 0.0)


def elapsed_by_worker(received_at: Mapping[str, float], now: float) -> Dict[str, float]:
    """Seconds since each worker's record arrived, never negative."""
    return {worker_id: max(now - at, 0.0) for worker_id, at in received_at.items()}


def worker_health(worker: WorkerStatus, elapsed_s: Elapsed = 0.0) -> WorkerHealth:
    """Classify a worker by heartbeat staleness.

    Args:
        worker: Worker record
        elapsed_s: Seconds since the record was received, added to the
            staleness reported by the coordinator
    """
    staleness = worker.last_heartbeat_secs_ago + max(elapsed_for(elapsed_s, worker.worker_id), 0.0)
    if staleness < HEALTHY_THRESHOLD_S:
        return WorkerHealth.HEALTHY
    if staleness < OFFLINE_THRESHOLD_S:
        return WorkerHealth.STALE
    return WorkerHealth.OFFLINE


def health_by_worker(workers: Iterable[WorkerStatus], elapsed_s: Elapsed = 0.0) -> Dict[str, WorkerHealth]:
    return {w.worker_id: worker_health(w, elapsed_s) for w in workers}


def health_counts(workers: Iterable[WorkerStatus], elapsed_s: Elapsed = 0.0) -> Dict[WorkerHealth, int]:
    """Count workers per health class (every class present, possibly 0)."""
    counts = Counter(worker_health(w, elapsed_s) for w in workers)
    return {health: counts.get(health, 0) for health in WorkerHealth}


def fleet_summary_counts(fleet: Optional[FleetData], elapsed_s: Elapsed = 0.0) -> Dict[str, int]:
    """Headline counts for a fleet: workers, cores and workers per health class."""
    workers = fleet.workers if fleet else ()
    counts: Dict[str, int] = {
        "workers": len(workers),
        "cores": fleet.total_cores if fleet else 0,
    }
    counts.update({health.value: n for health, n in health_counts(workers, elapsed_s).items()})
    return counts


def server_status(
    server: ServerInfo, workers: Sequence[WorkerStatus], elapsed_s: Elapsed = 0.0
) -> ServerStatus:
    """Derive a host's status.

    A service host is online when we have its metrics. A compute host is
    online if all its workers are healthy, degraded if some are, and offline
    if none are.
    """
    if server.role == "service":
        return ServerStatus.ONLINE if server.metrics is not None else ServerStatus.DEGRADED

    ids = set(server.worker_ids)
    host_workers = [w for w in workers if w.worker_id in ids]
    if not host_workers:
        return ServerStatus.OFFLINE

    healthy = [w for w in host_workers if worker_health(w, elapsed_s) == WorkerHealth.HEALTHY]
    if len(healthy) == len(host_workers):
        return ServerStatus.ONLINE
    return ServerStatus.DEGRADED if healthy else ServerStatus.OFFLINE


# =============================================================================
# Grouping
# =============================================================================


@dataclass(frozen=True)
class HostNode:
    """A machine with the workers, searches and deployments running on it."""

    hostname: str
    is_coordinator: bool
    metrics: Optional[HardwareMetrics]
    workers: Tuple[WorkerStatus, ...] = ()
    searches: Tuple[ManagedSearch, ...] = ()
    deployments: Tuple[Deployment, ...] = ()
    total_cores: int = 0
    total_tested: int = 0
    total_found: int = 0


def _group_workers(workers: Iterable[WorkerStatus]) -> Dict[str, List[WorkerStatus]]:
    hosts: Dict[str, List[WorkerStatus]] = {}
    for worker in workers:
        hosts.setdefault(worker.hostname or worker.worker_id, []).append(worker)
    return hosts


def group_by_host(
    fleet: Optional[FleetData],
    coordinator: Optional[HardwareMetrics],
    searches: Sequence[ManagedSearch] = (),
    deployments: Sequence[Deployment] = (),
) -> List[HostNode]:
    """Group workers into host nodes.

    With a single distinct hostname and coordinator metrics present, the
    coordinator and that host are the same machine and are merged into one
    node. Otherwise the coordinator becomes its own node, holding the
    deployments that target no known worker host. Nodes are sorted
    coordinator first, then by descending core count.
    """
    hosts = _group_workers(fleet.workers if fleet else ())
    merge_coordinator = coordinator is not None and len(hosts) <= 1

    nodes: List[HostNode] = []
    for hostname, host_workers in hosts.items():
        worker_metrics = next((w.metrics for w in host_workers if w.metrics), None)
        worker_ids = {w.worker_id for w in host_workers}
        nodes.append(
            HostNode(
                hostname=hostname,
                is_coordinator=merge_coordinator,
                metrics=worker_metrics or (coordinator if merge_coordinator else None),
                workers=tuple(host_workers),
                searches=tuple(s for s in searches if s.worker_id in worker_ids),
                deployments=tuple(d for d in deployments if d.hostname == hostname),
                # Co-located workers share the machine's cores.
                total_cores=max((w.cores for w in host_workers), default=0),
                total_tested=sum(w.tested for w in host_workers),
                total_found=sum(w.found for w in host_workers),
            )
        )

    if coordinator is not None and not (merge_coordinator and nodes):
        nodes.append(
            HostNode(
                hostname=COORDINATOR_HOSTNAME,
                is_coordinator=True,
                metrics=coordinator,
                deployments=tuple(d for d in deployments if d.hostname not in hosts),
            )
        )

    nodes.sort(key=lambda n: (not n.is_coordinator, -n.total_cores))
    return nodes


def servers_for_fleet(fleet: Optional[FleetData]) -> List[ServerInfo]:
    """Return the fleet's servers.

    Coordinator-provided servers are authoritative. Workers missing from
    every server are logged and left out. Without coordinator grouping,
    workers are grouped client-side into compute servers.
    """
    if fleet is None:
        return []

    if fleet.servers:
        listed = {wid for server in fleet.servers for wid in server.worker_ids}
        orphaned = [w.worker_id for w in fleet.workers if w.worker_id not in listed]
        if orphaned:
            logger.warning("Workers not listed in any server: %s", ", ".join(orphaned))
        return list(fleet.servers)

    servers = []
    for hostname, host_workers in _group_workers(fleet.workers).items():
        servers.append(
            ServerInfo(
                hostname=hostname,
                role="compute",
                metrics=next((w.metrics for w in host_workers if w.metrics), None),
                worker_count=len(host_workers),
                cores=sum(w.cores for w in host_workers),
                worker_ids=tuple(w.worker_id for w in host_workers),
                total_tested=sum(w.tested for w in host_workers),
                total_found=sum(w.found for w in host_workers),
                uptime_secs=max((w.uptime_secs for w in host_workers), default=0),
            )
        )
    return servers


# =============================================================================
# Rates and progress
# =============================================================================


def worker_throughput(worker: WorkerStatus) -> float:
    """Candidates tested per second since the worker started."""
    if worker.uptime_secs <= 0:
        return 0.0
    return worker.tested / worker.uptime_secs


def fleet_throughput(workers: Iterable[WorkerStatus]) -> float:
    return sum(worker_throughput(w) for w in workers)


# Search form -> (range start field, range end field, position field)
_PROGRESS_FIELDS: Dict[str, Tuple[str, str, str]] = {
    "factorial": ("start", "end", "last_n"),
    "kbn": ("min_n", "max_n", "last_n"),
    "palindromic": ("min_digits", "max_digits", "digit_count"),
}


def checkpoint_progress(checkpoint: Optional[Checkpoint]) -> Optional[float]:
    """Percent complete of a checkpointed search, clamped to [0, 100].

    Returns None for unknown forms, missing fields or an empty range.
    """
    if checkpoint is None:
        return None

    fields = _PROGRESS_FIELDS.get(checkpoint.type)
    if fields is None:
        return None

    start, end, position = (getattr(checkpoint, name) for name in fields)
    if start is None or end is None or position is None or end == start:
        return None

    percent = (position - start) / (end - start) * 100
    return min(max(percent, 0.0), 100.0)


# =============================================================================
# Stall detection
# =============================================================================


@dataclass
class _Probe:
    last_tested: int
    last_moved_at: float


@dataclass
class StallTracker:
    """Tracks when each worker's ``tested`` counter last increased.

    Usage:
        tracker = StallTracker()
        tracker.observe(fleet.workers, now)
        if tracker.is_stalled(worker_id, now):
            ...
    """

    threshold_s: float = STALL_THRESHOLD_S
    _probes: Dict[str, _Probe] = field(default_factory=dict)

    def observe(self, workers: Iterable[WorkerStatus], now: float) -> None:
        seen = set()
        for worker in workers:
            seen.add(worker.worker_id)
            probe = self._probes.get(worker.worker_id)
            if probe is None or worker.tested > probe.last_tested:
                self._probes[worker.worker_id] = _Probe(worker.tested, now)
            else:
                probe.last_tested = worker.tested

        for worker_id in list(self._probes):
            if worker_id not in seen:
                del self._probes[worker_id]

    def stalled_secs(self, worker_id: str, now: float) -> Optional[float]:
        """Seconds since the worker last made progress, None if never observed."""
        probe = self._probes.get(worker_id)
        if probe is None:
            return None
        return max(now - probe.last_moved_at, 0.0)

    def is_stalled(self, worker_id: str, now: float) -> bool:
        stalled = self.stalled_secs(worker_id, now)
        return stalled is not None and stalled >= self.threshold_s

    def clear(self) -> None:
        self._probes.clear()


def diagnose_search(
    search: ManagedSearch,
    worker: Optional[WorkerStatus],
    stalled_secs: Optional[float],
    stall_threshold_s: float = STALL_THRESHOLD_S,
    elapsed_s: Elapsed = 0.0,
) -> SearchDiagnosis:
    """Explain why a running search may not be advancing.

    Searches that are not running are always ``healthy``. A stalled worker
    that still heartbeats is reported as ``no_progress``, distinct from a
    worker whose heartbeat went stale. ``elapsed_s`` ages the worker's
    heartbeat the same way ``worker_health`` does.
    """
    if search.status != "running":
        return SearchDiagnosis.HEALTHY
    if worker is None:
        return SearchDiagnosis.NO_HEARTBEAT
    if worker_health(worker, elapsed_s) == WorkerHealth.OFFLINE:
        return SearchDiagnosis.HEARTBEAT_STALE
    if stalled_secs is not None and stalled_secs >= stall_threshold_s:
        return SearchDiagnosis.NO_PROGRESS
    return SearchDiagnosis.HEALTHY


# =============================================================================
# Display helpers
# =============================================================================


@dataclass(frozen=True)
class SearchRow:
    """One search for display, tagged with the representation it came from."""

    origin: str  # "managed" or "job"
    id: int
    search_type: str
    status: str
    started_at: str
    tested: int
    found: int
    worker_id: Optional[str] = None

    @property
    def key(self) -> Tuple[str, int]:
        return (self.origin, self.id)


def search_rows(searches: Iterable[ManagedSearch], search_jobs: Iterable[SearchJob]) -> List[SearchRow]:
    """Merge managed searches and search jobs for display.

    Ids are only unique within one representation, so rows are keyed by
    ``(origin, id)``. Running rows come first, then newest first.
    """
    rows = [
        SearchRow(
            origin="managed",
            id=s.id,
            search_type=s.search_type,
            status=s.status,
            started_at=s.started_at,
            tested=s.tested,
            found=s.found,
            worker_id=s.worker_id or None,
        )
        for s in searches
    ]
    rows.extend(
        SearchRow(
            origin="job",
            id=j.id,
            search_type=j.search_type,
            status=j.status,
            started_at=j.started_at or j.created_at,
            tested=j.total_tested,
            found=j.total_found,
        )
        for j in search_jobs
    )
    # ISO-8601 timestamps sort lexicographically.
    rows.sort(key=lambda r: r.started_at, reverse=True)
    rows.sort(key=lambda r: r.status != "running")
    return rows


@dataclass(frozen=True)
class TaskTreeNode:
    task: AgentTask
    children: Tuple[AgentTask, ...] = ()


def build_task_tree(tasks: Sequence[AgentTask]) -> List[TaskTreeNode]:
    """Group child tasks under their parents, children in creation order.

    Children whose parent is not in ``tasks`` are omitted.
    """
    children: Dict[int, List[AgentTask]] = {}
    for task in tasks:
        if task.parent_task_id is not None:
            children.setdefault(task.parent_task_id, []).append(task)

    return [
        TaskTreeNode(task=task, children=tuple(sorted(children.get(task.id, []), key=lambda t: t.id)))
        for task in tasks
        if task.parent_task_id is None
    ]


def budget_utilization(budget: AgentBudget) -> float:
    """Percent of the period's budget spent (0 when no budget is set)."""
    if budget.budget_usd <= 0:
        return 0.0
    return budget.spent_usd / budget.budget_usd * 100
