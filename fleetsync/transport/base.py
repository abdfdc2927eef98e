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

"""Transport contract shared by the push and pull implementations."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, List, Optional

from fleetsync.core.settings import Settings
from fleetsync.errors import MessageDecodeError
from fleetsync.state.messages import FleetMessage, decode_frame
from fleetsync.utils.logging import create_logger


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


MessageHandler = Callable[[List[FleetMessage]], None]
StateHandler = Callable[[ConnectionState], None]


class Transport(ABC):
    """One live data channel to the coordinator.

    A transport delivers batches of decoded FleetMessages to ``on_message``
    (one batch per frame or poll round) and reports connectivity changes to
    ``on_state_change``. Both callbacks run on the event loop.

    Lifecycle:
        transport = PushTransport(settings, on_message)
        await transport.start()
        ...
        await transport.stop()   # or transport.cancel() from sync code
    """

    def __init__(
        self,
        settings: Settings,
        on_message: MessageHandler,
        on_state_change: Optional[StateHandler] = None,
    ):
        self.settings = settings
        self._on_message = on_message
        self._on_state_change = on_state_change
        self._state = ConnectionState.DISCONNECTED
        self._task: Optional[asyncio.Task] = None
        self.logger = create_logger(type(self).__name__)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background loop."""
        if self.running:
            return

        self._set_state(ConnectionState.CONNECTING)
        self._task = asyncio.create_task(self._run())
        self.logger.info(f"{type(self).__name__} started")

    async def stop(self) -> None:
        """Stop the background loop and wait for it to release its resources."""
        task = self._task
        self.cancel()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.logger.info(f"{type(self).__name__} stopped")

    def cancel(self) -> None:
        """Stop without waiting.

        The loop is cancelled immediately so no further frame, poll or
        backoff timer runs; the socket or HTTP client is released when the
        cancelled task unwinds.
        """
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self._set_state(ConnectionState.DISCONNECTED)

    @abstractmethod
    def send_message(self, payload: Any) -> None:
        """Best-effort client-to-server message. Never raises."""

    @abstractmethod
    async def _run(self) -> None:
        """Background loop; runs until cancelled."""

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        self._state = state
        if self._on_state_change is not None:
            self._on_state_change(state)

    def _emit(self, messages: List[FleetMessage]) -> None:
        if messages:
            self._on_message(messages)

    def _handle_frame(self, data: Any) -> None:
        """Decode a raw frame and emit it; bad frames are dropped and logged."""
        try:
            messages = decode_frame(data)
        except MessageDecodeError as e:
            self.logger.warning(f"Dropping frame: {e}")
            return
        self._emit(messages)
