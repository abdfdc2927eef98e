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

"""API route registration for the relay."""

from fastapi import APIRouter, FastAPI

from fleetsync.webui.api import health, realtime, snapshot


def register_routes(app: FastAPI) -> None:
    """Attach all route groups to the FastAPI application."""

    api_router = APIRouter(prefix="/api")
    api_router.include_router(health.router, tags=["health"])
    api_router.include_router(snapshot.router)

    app.include_router(api_router)
    app.include_router(realtime.router)


__all__ = ["register_routes"]
