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

"""WebSocket push transport.

PushTransport keeps one WebSocket open to the coordinator's ``/ws``
endpoint. It handles:
- Decoding every text frame into FleetMessages
- Reconnecting with capped exponential backoff plus jitter, forever
- Fire-and-forget client-to-server messages

On every (re)connect the coordinator sends a full update frame first, so
the reconciler is re-seeded without any resync request from our side.
"""

from __future__ import annotations

import asyncio
import json
import random
from typing import Any, Callable, Optional, Set

from websockets.asyncio.client import connect as ws_connect

from fleetsync.core.settings import Settings
from fleetsync.transport.base import ConnectionState, MessageHandler, StateHandler, Transport


class PushTransport(Transport):
    """Persistent WebSocket transport with automatic reconnect.

    Features:
    - Backoff starts at ``reconnect_initial_delay_s``, doubles per failed
      attempt and is capped at ``reconnect_max_delay_s``
    - Backoff resets once a connection opens
    - Remote close or error schedules a reconnect; local stop cancels the
      pending backoff sleep immediately
    - The last delivered state stays with the consumer while reconnecting
    """

    def __init__(
        self,
        settings: Settings,
        on_message: MessageHandler,
        on_state_change: Optional[StateHandler] = None,
        connect: Optional[Callable[[str], Any]] = None,
        jitter: Callable[[], float] = random.random,
    ):
        """Initialize push transport.

        Args:
            settings: Sync settings (URL and backoff bounds)
            on_message: Receives each decoded frame's messages
            on_state_change: Receives connection state transitions
            connect: Factory returning an async context manager that yields
                an open connection; defaults to ``websockets`` connect
            jitter: Returns a value in [0, 1) scaled by ``reconnect_jitter_s``
        """
        super().__init__(settings, on_message, on_state_change)
        self.url = settings.websocket_url()
        self._connect = connect or ws_connect
        self._jitter = jitter

        self._connection: Any = None
        self._delay = settings.reconnect_initial_delay_s
        self._pending_sends: Set[asyncio.Task] = set()

        # Number of connection attempts made so far
        self.attempts = 0

    def next_delay(self) -> float:
        """Return the next backoff sleep and advance the backoff."""
        delay = self._delay
        self._delay = min(self._delay * 2, self.settings.reconnect_max_delay_s)
        return delay + self._jitter() * self.settings.reconnect_jitter_s

    async def _run(self) -> None:
        while True:
            self.attempts += 1
            try:
                async with self._connect(self.url) as connection:
                    self._connection = connection
                    self._delay = self.settings.reconnect_initial_delay_s
                    self._set_state(ConnectionState.CONNECTED)
                    self.logger.info(f"Connected to {self.url}")

                    async for frame in connection:
                        self._handle_frame(frame)

                self.logger.info(f"Connection to {self.url} closed by server")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.warning(f"Connection to {self.url} failed: {e}")
            finally:
                self._connection = None

            self._set_state(ConnectionState.RECONNECTING)
            delay = self.next_delay()
            self.logger.info(f"Reconnecting in {delay:.1f}s (attempt {self.attempts + 1})")
            await asyncio.sleep(delay)

    def send_message(self, payload: Any) -> None:
        """Send a JSON message if connected; failures are logged and dropped."""
        connection = self._connection
        if connection is None or not self.connected:
            self.logger.debug("Not connected, dropping outbound message")
            return

        try:
            data = json.dumps(payload)
        except (TypeError, ValueError) as e:
            self.logger.debug(f"Dropping unserializable outbound message: {e}")
            return

        task = asyncio.create_task(self._send(connection, data))
        self._pending_sends.add(task)
        task.add_done_callback(self._pending_sends.discard)

    async def _send(self, connection: Any, data: str) -> None:
        try:
            await connection.send(data)
        except Exception as e:
            self.logger.debug(f"Failed to send message: {e}")

    def cancel(self) -> None:
        for task in list(self._pending_sends):
            task.cancel()
        self._pending_sends.clear()
        super().cancel()
