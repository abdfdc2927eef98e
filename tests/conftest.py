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

"""Shared test fixtures for fleetsync tests.

Provides:
- Record builders for coordinator payloads
- FakeTransport: an in-process transport driven by the test
- FakeConnection: a scripted WebSocket connection for PushTransport
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional

import pytest

from fleetsync.core.settings import Settings
from fleetsync.state.messages import FleetMessage, FleetMessageType, build_message
from fleetsync.transport.base import ConnectionState, Transport


# ============================================================================
# Payload builders
# ============================================================================


def worker_payload(worker_id: str = "w1", **overrides: Any) -> Dict[str, Any]:
    payload = {
        "worker_id": worker_id,
        "hostname": "host-a",
        "cores": 8,
        "search_type": "kbn",
        "search_params": '{"k": 3, "base": 2}',
        "tested": 1200,
        "found": 1,
        "current": "3*2^1000+1",
        "uptime_secs": 600,
        "last_heartbeat_secs_ago": 0,
    }
    payload.update(overrides)
    return payload


def fleet_payload(*workers: Dict[str, Any], servers: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "workers": list(workers),
        "total_workers": len(workers),
        "total_cores": sum(w["cores"] for w in workers),
        "total_tested": sum(w["tested"] for w in workers),
        "total_found": sum(w["found"] for w in workers),
    }
    if servers is not None:
        payload["servers"] = servers
    return payload


def search_payload(search_id: int = 1, **overrides: Any) -> Dict[str, Any]:
    payload = {
        "id": search_id,
        "search_type": "kbn",
        "params": {"k": 3},
        "status": "running",
        "started_at": "2025-01-01T00:00:00Z",
        "pid": 4242,
        "worker_id": "w1",
        "tested": 100,
        "found": 0,
    }
    payload.update(overrides)
    return payload


def notification_payload(notification_id: int, timestamp_ms: int, **overrides: Any) -> Dict[str, Any]:
    payload = {
        "id": notification_id,
        "kind": "prime",
        "title": f"Prime #{notification_id}",
        "details": ["3*2^1000+1"],
        "count": 1,
        "timestamp_ms": timestamp_ms,
    }
    payload.update(overrides)
    return payload


def fleet_message(*workers: Dict[str, Any], **kwargs: Any) -> FleetMessage:
    return build_message(FleetMessageType.FLEET_SUMMARY, fleet_payload(*workers, **kwargs))


# ============================================================================
# Fakes
# ============================================================================


class FakeTransport(Transport):
    """Transport that connects immediately and emits what the test pushes."""

    def __init__(self, settings, on_message, on_state_change=None, initial=None):
        super().__init__(settings, on_message, on_state_change)
        self.initial: List[FleetMessage] = list(initial or [])
        self.sent: List[Any] = []

    async def _run(self) -> None:
        self._set_state(ConnectionState.CONNECTED)
        self._emit(self.initial)
        await asyncio.Event().wait()

    def push(self, *messages: FleetMessage) -> None:
        self._emit(list(messages))

    def send_message(self, payload: Any) -> None:
        self.sent.append(payload)


class FakeConnection:
    """Scripted WebSocket connection.

    Yields ``frames`` and then closes, unless ``hold`` is set, in which case
    it stays open until cancelled.
    """

    def __init__(self, frames=(), hold: bool = False):
        self.frames = list(frames)
        self.hold = hold
        self.sent: List[str] = []
        self.opened = False

    async def __aenter__(self):
        self.opened = True
        return self

    async def __aexit__(self, *exc_info):
        return False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for frame in self.frames:
            yield frame
        if self.hold:
            await asyncio.Event().wait()

    async def send(self, data: str) -> None:
        self.sent.append(data)


def scripted_connect(*outcomes: Any) -> Callable[[str], Any]:
    """Connect factory returning each outcome in turn; exceptions are raised.

    The last outcome is repeated once the script runs out.
    """
    remaining = list(outcomes)

    def connect(url: str):
        outcome = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    return connect


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` on the event loop until it holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def settings() -> Settings:
    """Settings with fast timers and no jitter."""
    return Settings(
        base_url="http://coordinator:7001",
        reconnect_initial_delay_s=0.01,
        reconnect_max_delay_s=0.04,
        reconnect_jitter_s=0.0,
        poll_interval_s=0.01,
        health_recheck_interval_s=3600,
        stall_probe_interval_s=3600,
    )


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
