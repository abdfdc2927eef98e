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

"""FastAPI application factory for the fleet SSE relay.

The relay holds one FleetSync for the process and re-exposes its view to
browsers that cannot reach the coordinator directly.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from fleetsync.broadcaster import FleetSync
from fleetsync.core.settings import Settings, get_settings
from fleetsync.utils.logging import create_logger
from fleetsync.webui.api import register_routes


def create_app(
    settings: Optional[Settings] = None,
    fleet_sync: Optional[FleetSync] = None,
) -> FastAPI:
    """Create the relay application.

    Args:
        settings: Sync settings. If None, uses environment settings.
        fleet_sync: Prebuilt context, mainly for tests. One is built from
            ``settings`` when omitted.

    Returns:
        FastAPI application with all routes configured
    """
    logger = create_logger("FleetSyncRelay")
    settings = settings or get_settings()
    fleet_sync = fleet_sync or FleetSync(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Keeps the context alive between SSE clients
        app.state.subscription = await fleet_sync.subscribe()
        logger.info(f"Relaying fleet state from {settings.base_url}")
        try:
            yield
        finally:
            await fleet_sync.shutdown()

    app = FastAPI(title="FleetSync Relay", version="0.1.0", lifespan=lifespan)

    app.state.settings = settings
    app.state.fleet_sync = fleet_sync
    app.state.logger = logger

    register_routes(app)

    return app
