"""Unit tests for the state reconciler (no transports)"""

from fleetsync.state.messages import FleetMessageType, build_message, decode_object
from fleetsync.state.reconciler import StateReconciler, share_records

from conftest import (
    FakeClock,
    fleet_message,
    fleet_payload,
    notification_payload,
    search_payload,
    worker_payload,
)


def searches(*payloads):
    return build_message(FleetMessageType.SEARCH_UPDATE, list(payloads))


def notifications(*payloads):
    return build_message(FleetMessageType.NOTIFICATION, list(payloads))


def events(*ids):
    return build_message(
        FleetMessageType.AGENT_EVENT,
        [{"id": i, "event_type": "tool_call", "summary": f"event {i}"} for i in ids],
    )


class TestReplacePolicy:
    """Tests for replace-whole-list kinds"""

    def setup_method(self):
        self.reconciler = StateReconciler()

    def test_first_message_changes_state(self):
        assert self.reconciler.apply(searches(search_payload(1))) is True
        assert self.reconciler.snapshot.version == 1
        assert [s.id for s in self.reconciler.snapshot.searches] == [1]

    def test_duplicate_message_is_noop(self):
        self.reconciler.apply(searches(search_payload(1)))
        before = self.reconciler.snapshot

        assert self.reconciler.apply(searches(search_payload(1))) is False
        assert self.reconciler.snapshot is before

    def test_list_replaced_not_merged(self):
        self.reconciler.apply(searches(search_payload(1), search_payload(2)))
        self.reconciler.apply(searches(search_payload(2)))

        assert [s.id for s in self.reconciler.snapshot.searches] == [2]

    def test_unchanged_records_keep_identity(self):
        self.reconciler.apply(searches(search_payload(1), search_payload(2, tested=5)))
        first = self.reconciler.snapshot.searches

        self.reconciler.apply(searches(search_payload(1), search_payload(2, tested=6)))
        second = self.reconciler.snapshot.searches

        assert second is not first
        assert second[0] is first[0]
        assert second[1] is not first[1]
        assert second[1].tested == 6

    def test_other_kinds_keep_identity(self):
        self.reconciler.apply(fleet_message(worker_payload("w1")))
        fleet = self.reconciler.snapshot.fleet

        self.reconciler.apply(searches(search_payload(1)))

        assert self.reconciler.snapshot.fleet is fleet

    def test_empty_list_clears(self):
        self.reconciler.apply(searches(search_payload(1)))
        assert self.reconciler.apply(searches()) is True
        assert self.reconciler.snapshot.searches == ()


class TestSingleValuePolicy:
    """Tests for status and coordinator metrics"""

    def test_status_replaced(self):
        reconciler = StateReconciler()
        reconciler.apply(build_message(FleetMessageType.STATUS_UPDATE, {"active": True}))

        assert reconciler.snapshot.status.active is True
        assert reconciler.apply(build_message(FleetMessageType.STATUS_UPDATE, {"active": True})) is False

        reconciler.apply(build_message(FleetMessageType.STATUS_UPDATE, None))
        assert reconciler.snapshot.status is None

    def test_coordinator_metrics(self):
        reconciler = StateReconciler()
        message = build_message(FleetMessageType.COORDINATOR_METRICS, {"cpu_usage_percent": 42.5})

        assert reconciler.apply(message) is True
        assert reconciler.snapshot.coordinator.cpu_usage_percent == 42.5


class TestFleetPolicy:
    """Tests for fleet summaries and worker heartbeats"""

    def test_summary_shares_unchanged_workers(self):
        reconciler = StateReconciler()
        reconciler.apply(fleet_message(worker_payload("w1"), worker_payload("w2", tested=10)))
        first = reconciler.snapshot.fleet

        reconciler.apply(fleet_message(worker_payload("w1"), worker_payload("w2", tested=20)))
        second = reconciler.snapshot.fleet

        assert second.workers[0] is first.workers[0]
        assert second.workers[1].tested == 20

    def test_identical_summary_refreshes_arrival_time(self):
        clock = FakeClock(100.0)
        reconciler = StateReconciler(clock=clock)
        reconciler.apply(fleet_message(worker_payload("w1")))
        clock.advance(4)

        assert reconciler.apply(fleet_message(worker_payload("w1"))) is False
        assert reconciler.worker_received_at == {"w1": 104.0}

    def test_heartbeat_stamps_only_its_sender(self):
        clock = FakeClock(100.0)
        reconciler = StateReconciler(clock=clock)
        reconciler.apply(fleet_message(worker_payload("a"), worker_payload("b")))
        clock.advance(20)

        reconciler.apply(build_message(FleetMessageType.WORKER_HEARTBEAT, worker_payload("b")))

        assert reconciler.worker_received_at == {"a": 100.0, "b": 120.0}

    def test_summary_restamps_and_drops_departed_workers(self):
        clock = FakeClock(100.0)
        reconciler = StateReconciler(clock=clock)
        reconciler.apply(fleet_message(worker_payload("a"), worker_payload("b")))
        clock.advance(5)

        reconciler.apply(fleet_message(worker_payload("b")))

        assert reconciler.worker_received_at == {"b": 105.0}

    def test_heartbeat_upserts_worker(self):
        reconciler = StateReconciler()
        reconciler.apply(fleet_message(worker_payload("w1", cores=4)))

        heartbeat = build_message(
            FleetMessageType.WORKER_HEARTBEAT, worker_payload("w2", cores=16, tested=0)
        )
        assert reconciler.apply(heartbeat) is True

        fleet = reconciler.snapshot.fleet
        assert [w.worker_id for w in fleet.workers] == ["w1", "w2"]
        assert fleet.total_workers == 2
        assert fleet.total_cores == 20

    def test_heartbeat_replaces_existing_worker(self):
        reconciler = StateReconciler()
        reconciler.apply(fleet_message(worker_payload("w1", tested=1), worker_payload("w2")))
        untouched = reconciler.snapshot.fleet.workers[1]

        reconciler.apply(
            build_message(FleetMessageType.WORKER_HEARTBEAT, worker_payload("w1", tested=99))
        )

        workers = reconciler.snapshot.fleet.workers
        assert workers[0].tested == 99
        assert workers[1] is untouched

    def test_heartbeat_before_any_summary(self):
        reconciler = StateReconciler()
        reconciler.apply(build_message(FleetMessageType.WORKER_HEARTBEAT, worker_payload("w1")))

        assert reconciler.snapshot.fleet.total_workers == 1

    def test_servers_kept_on_heartbeat(self):
        servers = [{"hostname": "host-a", "role": "compute", "worker_ids": ["w1"]}]
        reconciler = StateReconciler()
        reconciler.apply(fleet_message(worker_payload("w1"), servers=servers))

        reconciler.apply(
            build_message(FleetMessageType.WORKER_HEARTBEAT, worker_payload("w1", tested=2))
        )

        assert reconciler.snapshot.fleet.servers[0].hostname == "host-a"


class TestLogPolicy:
    """Tests for deduplicated, bounded logs"""

    def test_notifications_deduplicated(self):
        reconciler = StateReconciler()
        reconciler.apply(notifications(notification_payload(1, 100)))

        assert reconciler.apply(notifications(notification_payload(1, 100))) is False
        assert len(reconciler.snapshot.notifications) == 1

    def test_notifications_newest_first(self):
        reconciler = StateReconciler()
        reconciler.apply(notifications(notification_payload(1, 100)))
        reconciler.apply(notifications(notification_payload(2, 300), notification_payload(3, 200)))

        assert [n.id for n in reconciler.snapshot.notifications] == [2, 3, 1]

    def test_notification_buffer_evicts_oldest(self):
        reconciler = StateReconciler(notification_buffer_size=2)
        reconciler.apply(
            notifications(
                notification_payload(1, 100),
                notification_payload(2, 200),
                notification_payload(3, 300),
            )
        )

        assert [n.id for n in reconciler.snapshot.notifications] == [3, 2]

    def test_replaying_evicted_notification_is_noop(self):
        reconciler = StateReconciler(notification_buffer_size=2)
        batch = notifications(
            notification_payload(1, 100),
            notification_payload(2, 200),
            notification_payload(3, 300),
        )
        reconciler.apply(batch)

        assert reconciler.apply(notifications(notification_payload(1, 100))) is False

    def test_updated_notification_replaced(self):
        reconciler = StateReconciler()
        reconciler.apply(notifications(notification_payload(1, 100, count=1)))
        reconciler.apply(notifications(notification_payload(1, 100, count=3)))

        assert reconciler.snapshot.notifications[0].count == 3

    def test_events_bounded_and_ordered(self):
        reconciler = StateReconciler(event_buffer_size=3)
        reconciler.apply(events(1, 2))
        reconciler.apply(events(4, 3))

        assert [e.id for e in reconciler.snapshot.agent_events] == [2, 3, 4]


class TestIdempotence:
    """Tests that applying a frame twice equals applying it once"""

    def test_composite_frame_twice(self):
        frame = {
            "type": "update",
            "status": {"active": True},
            "fleet": fleet_payload(worker_payload("w1"), worker_payload("w2", hostname="host-b")),
            "coordinator": {"cpu_usage_percent": 10},
            "searches": [search_payload(1)],
            "notifications": [notification_payload(5, 50)],
            "agent_tasks": [{"id": 1, "title": "triage"}],
            "running_agents": [{"task_id": 1, "model": "small"}],
            "projects": [{"slug": "kbn-3", "name": "KBN k=3"}],
            "records": [{"form": "kbn", "expression": "3*2^n+1", "digits": 100}],
        }
        reconciler = StateReconciler()

        assert reconciler.apply_all(decode_object(frame)) is True
        once = reconciler.snapshot

        assert reconciler.apply_all(decode_object(frame)) is False
        assert reconciler.snapshot is once

    def test_reset(self):
        reconciler = StateReconciler()
        reconciler.apply(fleet_message(worker_payload("w1")))

        reconciler.reset()

        assert reconciler.snapshot.fleet is None
        assert reconciler.snapshot.version == 0
        assert reconciler.worker_received_at == {}


class TestShareRecords:
    """Tests for the structural sharing helper"""

    def test_returns_current_when_identical(self):
        current = tuple(searches(search_payload(1), search_payload(2)).payload)
        incoming = searches(search_payload(1), search_payload(2)).payload

        assert share_records(current, incoming, lambda s: s.id) is current

    def test_reorder_is_a_change(self):
        current = tuple(searches(search_payload(1), search_payload(2)).payload)
        incoming = searches(search_payload(2), search_payload(1)).payload

        merged = share_records(current, incoming, lambda s: s.id)

        assert merged is not current
        assert merged[0] is current[1]
        assert merged[1] is current[0]
