"""Tests for derived fleet metrics"""

import logging

import pytest

from fleetsync.state import metrics
from fleetsync.state.messages import FleetMessageType, build_message
from fleetsync.state.metrics import SearchDiagnosis, ServerStatus, WorkerHealth
from fleetsync.state.models import (
    AgentBudget,
    AgentTask,
    Checkpoint,
    Deployment,
    FleetData,
    HardwareMetrics,
    ManagedSearch,
    ServerInfo,
    WorkerStatus,
)
from fleetsync.state.reconciler import StateReconciler

from conftest import FakeClock, fleet_message, fleet_payload, search_payload, worker_payload


def worker(worker_id="w1", **overrides) -> WorkerStatus:
    return WorkerStatus.model_validate(worker_payload(worker_id, **overrides))


def fleet(*workers, servers=None) -> FleetData:
    return FleetData.from_workers(tuple(workers), servers=servers)


class TestWorkerHealth:
    """Tests for heartbeat staleness classification"""

    @pytest.mark.parametrize(
        "secs_ago,expected",
        [
            (0, WorkerHealth.HEALTHY),
            (29, WorkerHealth.HEALTHY),
            (30, WorkerHealth.STALE),
            (59, WorkerHealth.STALE),
            (60, WorkerHealth.OFFLINE),
            (600, WorkerHealth.OFFLINE),
        ],
    )
    def test_boundaries(self, secs_ago, expected):
        assert metrics.worker_health(worker(last_heartbeat_secs_ago=secs_ago)) == expected

    def test_elapsed_time_added(self):
        w = worker(last_heartbeat_secs_ago=25)

        assert metrics.worker_health(w, elapsed_s=4) == WorkerHealth.HEALTHY
        assert metrics.worker_health(w, elapsed_s=5) == WorkerHealth.STALE

    def test_elapsed_per_worker(self):
        a = worker("a", last_heartbeat_secs_ago=25)
        b = worker("b", last_heartbeat_secs_ago=25)

        health = metrics.health_by_worker([a, b], {"a": 20.0, "b": 0.0})

        assert health == {"a": WorkerHealth.STALE, "b": WorkerHealth.HEALTHY}
        assert metrics.worker_health(worker("c"), {"a": 90.0}) == WorkerHealth.HEALTHY

    def test_heartbeat_does_not_refresh_other_workers(self):
        clock = FakeClock(100.0)
        reconciler = StateReconciler(clock=clock)
        reconciler.apply(
            fleet_message(
                worker_payload("a", last_heartbeat_secs_ago=25),
                worker_payload("b", last_heartbeat_secs_ago=0),
            )
        )
        clock.advance(20)
        reconciler.apply(build_message(FleetMessageType.WORKER_HEARTBEAT, worker_payload("b")))

        elapsed = metrics.elapsed_by_worker(reconciler.worker_received_at, clock())
        health = metrics.health_by_worker(reconciler.snapshot.fleet.workers, elapsed)

        assert elapsed == {"a": 20.0, "b": 0.0}
        assert health == {"a": WorkerHealth.STALE, "b": WorkerHealth.HEALTHY}

    def test_health_counts(self):
        workers = [
            worker("w1", last_heartbeat_secs_ago=1),
            worker("w2", last_heartbeat_secs_ago=45),
            worker("w3", last_heartbeat_secs_ago=90),
            worker("w4", last_heartbeat_secs_ago=2),
        ]

        counts = metrics.health_counts(workers)

        assert counts == {WorkerHealth.HEALTHY: 2, WorkerHealth.STALE: 1, WorkerHealth.OFFLINE: 1}

    def test_fleet_summary_counts(self):
        data = fleet(worker("w1", cores=8), worker("w2", cores=4, last_heartbeat_secs_ago=45))

        counts = metrics.fleet_summary_counts(data)

        assert counts == {"workers": 2, "cores": 12, "healthy": 1, "stale": 1, "offline": 0}
        assert metrics.fleet_summary_counts(None)["workers"] == 0


class TestServerStatus:
    """Tests for per-host status"""

    def test_service_host(self):
        online = ServerInfo(hostname="coord", role="service", metrics=HardwareMetrics())
        degraded = ServerInfo(hostname="coord", role="service")

        assert metrics.server_status(online, []) == ServerStatus.ONLINE
        assert metrics.server_status(degraded, []) == ServerStatus.DEGRADED

    def test_compute_host(self):
        server = ServerInfo(hostname="host-a", worker_ids=("w1", "w2"))
        healthy = worker("w1")
        stale = worker("w2", last_heartbeat_secs_ago=40)

        assert metrics.server_status(server, [healthy, worker("w2")]) == ServerStatus.ONLINE
        assert metrics.server_status(server, [healthy, stale]) == ServerStatus.DEGRADED
        assert metrics.server_status(server, [stale]) == ServerStatus.OFFLINE
        assert metrics.server_status(server, []) == ServerStatus.OFFLINE

    def test_compute_host_ages_workers(self):
        server = ServerInfo(hostname="host-a", worker_ids=("w1", "w2"))
        workers = [worker("w1", last_heartbeat_secs_ago=10), worker("w2")]

        assert metrics.server_status(server, workers, {"w1": 5.0}) == ServerStatus.ONLINE
        assert metrics.server_status(server, workers, {"w1": 25.0}) == ServerStatus.DEGRADED
        assert metrics.server_status(server, workers, 60.0) == ServerStatus.OFFLINE


class TestGroupByHost:
    """Tests for grouping workers into host nodes"""

    def test_groups_by_hostname(self):
        nodes = metrics.group_by_host(
            fleet(
                worker("w1", hostname="a", cores=8, tested=10),
                worker("w2", hostname="a", cores=8, tested=5),
                worker("w3", hostname="b", cores=32),
            ),
            coordinator=None,
        )

        assert [n.hostname for n in nodes] == ["b", "a"]
        host_a = nodes[1]
        assert host_a.total_cores == 8
        assert host_a.total_tested == 15
        assert not host_a.is_coordinator

    def test_empty_hostname_falls_back_to_worker_id(self):
        nodes = metrics.group_by_host(fleet(worker("w1", hostname="")), coordinator=None)
        assert nodes[0].hostname == "w1"

    def test_single_host_merges_coordinator(self):
        coordinator = HardwareMetrics(cpu_usage_percent=12.0)

        nodes = metrics.group_by_host(fleet(worker("w1"), worker("w2")), coordinator)

        assert len(nodes) == 1
        assert nodes[0].is_coordinator
        assert nodes[0].metrics == coordinator

    def test_worker_metrics_win_on_merge(self):
        own = {"cpu_usage_percent": 90.0}
        nodes = metrics.group_by_host(
            fleet(worker("w1", metrics=own)), HardwareMetrics(cpu_usage_percent=1.0)
        )
        assert nodes[0].metrics.cpu_usage_percent == 90.0

    def test_multi_host_adds_coordinator_node_first(self):
        deployments = [
            Deployment(id=1, hostname="a"),
            Deployment(id=2, hostname="remote-new"),
        ]
        nodes = metrics.group_by_host(
            fleet(worker("w1", hostname="a", cores=4), worker("w2", hostname="b", cores=64)),
            HardwareMetrics(),
            deployments=deployments,
        )

        assert [n.hostname for n in nodes] == ["coordinator", "b", "a"]
        assert nodes[0].is_coordinator
        assert [d.id for d in nodes[0].deployments] == [2]
        assert [d.id for d in nodes[2].deployments] == [1]

    def test_searches_attached_to_worker_host(self):
        search = build_message(
            FleetMessageType.SEARCH_UPDATE, [search_payload(1, worker_id="w2")]
        ).payload
        nodes = metrics.group_by_host(
            fleet(worker("w1", hostname="a"), worker("w2", hostname="b")),
            coordinator=None,
            searches=search,
        )

        by_host = {n.hostname: n for n in nodes}
        assert [s.id for s in by_host["b"].searches] == [1]
        assert by_host["a"].searches == ()

    def test_no_fleet(self):
        assert metrics.group_by_host(None, None) == []
        nodes = metrics.group_by_host(None, HardwareMetrics())
        assert [n.hostname for n in nodes] == ["coordinator"]


class TestServersForFleet:
    """Tests for coordinator-provided vs client-side server grouping"""

    def test_backend_servers_authoritative(self, caplog):
        servers = (ServerInfo(hostname="a", worker_ids=("w1",)),)
        data = fleet(worker("w1"), worker("w2"), servers=servers)

        # The fleetsync logger does not propagate to the root logger
        package_logger = logging.getLogger("fleetsync")
        package_logger.addHandler(caplog.handler)
        try:
            with caplog.at_level("WARNING", logger="fleetsync.state.metrics"):
                result = metrics.servers_for_fleet(data)
        finally:
            package_logger.removeHandler(caplog.handler)

        assert [s.hostname for s in result] == ["a"]
        assert "w2" in caplog.text

    def test_client_side_grouping(self):
        data = fleet(
            worker("w1", hostname="a", cores=4, tested=1),
            worker("w2", hostname="a", cores=4, tested=2),
        )

        result = metrics.servers_for_fleet(data)

        assert len(result) == 1
        assert result[0].worker_ids == ("w1", "w2")
        assert result[0].total_tested == 3
        assert result[0].role == "compute"


class TestThroughput:
    """Tests for rate calculations"""

    def test_worker_throughput(self):
        assert metrics.worker_throughput(worker(tested=1200, uptime_secs=600)) == 2.0

    def test_zero_uptime(self):
        assert metrics.worker_throughput(worker(tested=1200, uptime_secs=0)) == 0.0

    def test_fleet_throughput(self):
        workers = [worker("w1", tested=1200, uptime_secs=600), worker("w2", tested=300, uptime_secs=100)]
        assert metrics.fleet_throughput(workers) == 5.0


class TestCheckpointProgress:
    """Tests for search progress from checkpoints"""

    def test_kbn(self):
        checkpoint = Checkpoint(type="kbn", min_n=0, max_n=1000, last_n=500)
        assert metrics.checkpoint_progress(checkpoint) == 50.0

    def test_factorial(self):
        checkpoint = Checkpoint(type="Factorial", start=100, end=200, last_n=125)
        assert metrics.checkpoint_progress(checkpoint) == 25.0

    def test_palindromic(self):
        checkpoint = Checkpoint(type="palindromic", min_digits=1, max_digits=11, digit_count=6)
        assert metrics.checkpoint_progress(checkpoint) == 50.0

    def test_clamped(self):
        checkpoint = Checkpoint(type="kbn", min_n=0, max_n=100, last_n=250)
        assert metrics.checkpoint_progress(checkpoint) == 100.0

    @pytest.mark.parametrize(
        "checkpoint",
        [
            None,
            Checkpoint(type="kbn", min_n=0, max_n=100),
            Checkpoint(type="unknown", min_n=0, max_n=100, last_n=1),
            Checkpoint(type="kbn", min_n=5, max_n=5, last_n=5),
        ],
    )
    def test_unavailable(self, checkpoint):
        assert metrics.checkpoint_progress(checkpoint) is None


class TestStallTracker:
    """Tests for stall detection of the tested counter"""

    def test_stall_after_threshold(self):
        tracker = metrics.StallTracker(threshold_s=120)
        tracker.observe([worker("w1", tested=10)], now=0)
        tracker.observe([worker("w1", tested=10)], now=119)

        assert not tracker.is_stalled("w1", now=119)
        assert tracker.is_stalled("w1", now=120)
        assert tracker.stalled_secs("w1", now=130) == 130

    def test_progress_resets(self):
        tracker = metrics.StallTracker(threshold_s=120)
        tracker.observe([worker("w1", tested=10)], now=0)
        tracker.observe([worker("w1", tested=11)], now=100)

        assert tracker.stalled_secs("w1", now=200) == 100
        assert not tracker.is_stalled("w1", now=200)

    def test_missing_workers_pruned(self):
        tracker = metrics.StallTracker()
        tracker.observe([worker("w1")], now=0)
        tracker.observe([], now=1)

        assert tracker.stalled_secs("w1", now=1) is None


class TestDiagnoseSearch:
    """Tests for explaining a non-advancing search"""

    def setup_method(self):
        self.search = ManagedSearch.model_validate(search_payload(1))

    def test_no_worker(self):
        assert metrics.diagnose_search(self.search, None, None) == SearchDiagnosis.NO_HEARTBEAT

    def test_stale_heartbeat(self):
        w = worker(last_heartbeat_secs_ago=61)
        assert metrics.diagnose_search(self.search, w, 500) == SearchDiagnosis.HEARTBEAT_STALE

    def test_heartbeat_aged_since_arrival(self):
        w = worker(last_heartbeat_secs_ago=45)

        fresh = metrics.diagnose_search(self.search, w, 0, elapsed_s={"w1": 10.0})
        aged = metrics.diagnose_search(self.search, w, 0, elapsed_s={"w1": 15.0})

        assert fresh == SearchDiagnosis.HEALTHY
        assert aged == SearchDiagnosis.HEARTBEAT_STALE

    def test_no_progress(self):
        assert metrics.diagnose_search(self.search, worker(), 120) == SearchDiagnosis.NO_PROGRESS

    def test_healthy(self):
        assert metrics.diagnose_search(self.search, worker(), 5) == SearchDiagnosis.HEALTHY

    def test_paused_search_not_diagnosed(self):
        paused = ManagedSearch.model_validate(search_payload(2, status="paused"))
        assert metrics.diagnose_search(paused, None, None) == SearchDiagnosis.HEALTHY


class TestDisplayHelpers:
    """Tests for search rows, task trees and budgets"""

    def test_search_rows_keyed_by_origin(self):
        managed = build_message(
            FleetMessageType.SEARCH_UPDATE,
            [search_payload(1, status="completed", started_at="2025-01-01T00:00:00Z")],
        ).payload
        jobs = build_message(
            FleetMessageType.SEARCH_JOB_UPDATE,
            [
                {"id": 1, "status": "running", "created_at": "2025-01-02T00:00:00Z"},
                {"id": 2, "status": "completed", "created_at": "2025-01-03T00:00:00Z"},
            ],
        ).payload

        rows = metrics.search_rows(managed, jobs)

        assert [r.key for r in rows] == [("job", 1), ("job", 2), ("managed", 1)]

    def test_task_tree(self):
        tasks = [
            AgentTask(id=1, title="root"),
            AgentTask(id=3, title="child b", parent_task_id=1),
            AgentTask(id=2, title="child a", parent_task_id=1),
            AgentTask(id=4, title="orphan", parent_task_id=99),
        ]

        tree = metrics.build_task_tree(tasks)

        assert len(tree) == 1
        assert [c.id for c in tree[0].children] == [2, 3]

    def test_budget_utilization(self):
        assert metrics.budget_utilization(AgentBudget(id=1, budget_usd=10, spent_usd=2.5)) == 25.0
        assert metrics.budget_utilization(AgentBudget(id=2, budget_usd=0, spent_usd=1)) == 0.0
