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

"""Real-time fleet stream over Server-Sent Events."""

import json
from typing import AsyncGenerator

from fastapi import APIRouter, Request
from sse_starlette.sse import EventSourceResponse

router = APIRouter(tags=["realtime"])


@router.get("/sse/fleet")
async def stream_fleet(request: Request) -> EventSourceResponse:
    """Stream fleet views via Server-Sent Events.

    Sends the current view immediately, then one ``snapshot`` event per
    change. Each client holds its own subscription.

    Returns:
        SSE event stream
    """
    fleet_sync = request.app.state.fleet_sync

    async def event_generator() -> AsyncGenerator[dict, None]:
        """Generate SSE events."""
        subscription = await fleet_sync.subscribe()
        try:
            yield {"event": "snapshot", "data": json.dumps(subscription.view.to_dict())}
            async for view in subscription.updates():
                if await request.is_disconnected():
                    break
                yield {"event": "snapshot", "data": json.dumps(view.to_dict())}
        finally:
            subscription.unsubscribe()

    return EventSourceResponse(event_generator())
