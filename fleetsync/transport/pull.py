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

"""HTTP polling transport.

Used where WebSockets cannot be proxied. By default every poll round reads
the coordinator's composite snapshot; alternatively it issues one GET per
entity kind. Either way the responses become the same FleetMessages the
push transport produces, so consumers cannot tell the two apart.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import httpx

from fleetsync.core.settings import Settings
from fleetsync.errors import MessageDecodeError, TransportError
from fleetsync.state.messages import (
    FleetMessage,
    FleetMessageType,
    build_message,
    decode_object,
    payload_key,
)
from fleetsync.state.models import FleetData
from fleetsync.transport.base import ConnectionState, MessageHandler, StateHandler, Transport

SNAPSHOT_ENDPOINT = "/api/ws-snapshot"

# One read endpoint per entity kind, polled in this order. Running agents
# have no read endpoint of their own; they only arrive through the snapshot.
ENDPOINTS: Dict[FleetMessageType, str] = {
    FleetMessageType.STATUS_UPDATE: "/api/status",
    FleetMessageType.FLEET_SUMMARY: "/api/fleet",
    FleetMessageType.SEARCH_UPDATE: "/api/searches",
    FleetMessageType.SEARCH_JOB_UPDATE: "/api/search_jobs",
    FleetMessageType.DEPLOYMENT_UPDATE: "/api/fleet/deployments",
    FleetMessageType.AGENT_TASK_UPDATE: "/api/agents/tasks",
    FleetMessageType.AGENT_BUDGET_UPDATE: "/api/agents/budgets",
    FleetMessageType.AGENT_ROLES_UPDATE: "/api/agents/roles",
    FleetMessageType.AGENT_TEMPLATES_UPDATE: "/api/agents/templates",
    FleetMessageType.PROJECT_UPDATE: "/api/projects",
    FleetMessageType.RECORD_UPDATE: "/api/records",
    FleetMessageType.NOTIFICATION: "/api/notifications",
    FleetMessageType.AGENT_EVENT: "/api/agents/events",
}

# Object key each list endpoint wraps its items under. The REST names differ
# from the snapshot field names for the agent endpoints.
WRAPPER_KEYS: Dict[FleetMessageType, str] = {
    FleetMessageType.SEARCH_UPDATE: "searches",
    FleetMessageType.SEARCH_JOB_UPDATE: "search_jobs",
    FleetMessageType.DEPLOYMENT_UPDATE: "deployments",
    FleetMessageType.AGENT_TASK_UPDATE: "tasks",
    FleetMessageType.AGENT_BUDGET_UPDATE: "budgets",
    FleetMessageType.NOTIFICATION: "notifications",
    FleetMessageType.AGENT_EVENT: "events",
}

# A round fails when this kind cannot be fetched.
REQUIRED_KIND = FleetMessageType.FLEET_SUMMARY


class PullTransport(Transport):
    """Fixed-interval polling transport.

    ``connected`` turns true after the first successful round and only
    turns false after ``poll_failure_threshold`` consecutive failed rounds,
    so a single transient error does not flap the connection indicator.
    Requests are idempotent reads; the interval is constant.
    """

    def __init__(
        self,
        settings: Settings,
        on_message: MessageHandler,
        on_state_change: Optional[StateHandler] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize pull transport.

        Args:
            settings: Sync settings (base URL, interval, failure threshold)
            on_message: Receives each successful round's messages
            on_state_change: Receives connection state transitions
            client: Optional preconfigured client; one is created per run
                (and closed on stop) when omitted
        """
        super().__init__(settings, on_message, on_state_change)
        self._client = client
        self.consecutive_failures = 0

    async def _run(self) -> None:
        owns_client = self._client is None
        client = self._client or httpx.AsyncClient(
            base_url=self.settings.base_url,
            timeout=self.settings.request_timeout_s,
        )
        try:
            while True:
                await self.poll_once(client)
                await asyncio.sleep(self.settings.poll_interval_s)
        finally:
            if owns_client:
                await client.aclose()

    async def poll_once(self, client: httpx.AsyncClient) -> bool:
        """Run one poll round. Returns True if the round succeeded."""
        try:
            if self.settings.poll_snapshot_endpoint:
                messages = await self._fetch_snapshot(client)
            else:
                messages = await self._fetch_round(client)
        except TransportError as e:
            self.consecutive_failures += 1
            self.logger.warning(
                f"Poll round failed ({self.consecutive_failures}/"
                f"{self.settings.poll_failure_threshold}): {e}"
            )
            if self.consecutive_failures >= self.settings.poll_failure_threshold:
                self._set_state(ConnectionState.RECONNECTING)
            return False

        self.consecutive_failures = 0
        self._set_state(ConnectionState.CONNECTED)
        self._emit(messages)
        return True

    def send_message(self, payload: Any) -> None:
        self.logger.debug("Polling transport is read-only, dropping outbound message")

    # =========================================================================
    # Requests
    # =========================================================================

    async def _fetch_snapshot(self, client: httpx.AsyncClient) -> List[FleetMessage]:
        data = await self._get_json(client, SNAPSHOT_ENDPOINT)
        try:
            return decode_object(data)
        except MessageDecodeError as e:
            raise TransportError(f"Invalid snapshot response: {e}") from e

    async def _fetch_round(self, client: httpx.AsyncClient) -> List[FleetMessage]:
        kinds = list(ENDPOINTS)
        results = await asyncio.gather(
            *(self._fetch_kind(client, kind) for kind in kinds),
            return_exceptions=True,
        )

        messages: List[FleetMessage] = []
        for kind, result in zip(kinds, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                if kind == REQUIRED_KIND:
                    raise TransportError(f"{ENDPOINTS[kind]}: {result}")
                self.logger.warning(f"Skipping {kind.value}: {result}")
                continue

            messages.append(result)
            if kind == REQUIRED_KIND:
                messages.extend(self._coordinator_from_fleet(result.payload))

        return messages

    async def _fetch_kind(self, client: httpx.AsyncClient, kind: FleetMessageType) -> FleetMessage:
        data = await self._get_json(client, ENDPOINTS[kind])
        if isinstance(data, dict) and kind in WRAPPER_KEYS:
            for key in (WRAPPER_KEYS[kind], payload_key(kind)):
                if key in data:
                    return build_message(kind, data[key])
            raise TransportError(
                f"{ENDPOINTS[kind]}: expected a list or an object with '{WRAPPER_KEYS[kind]}'"
            )
        return build_message(kind, data)

    async def _get_json(self, client: httpx.AsyncClient, path: str) -> Any:
        try:
            response = await client.get(path)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TransportError(f"GET {path} failed: {e}") from e

    @staticmethod
    def _coordinator_from_fleet(fleet: FleetData) -> List[FleetMessage]:
        """Derive coordinator metrics from the fleet's service server, if grouped."""
        if fleet.servers is None:
            return []
        service = next((s for s in fleet.servers if s.role == "service"), None)
        metrics = service.metrics if service is not None else None
        return [FleetMessage(FleetMessageType.COORDINATOR_METRICS, metrics)]
