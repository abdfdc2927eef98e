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

"""Health endpoint."""

from typing import Any, Dict

from fastapi import APIRouter, Request, status

router = APIRouter()


@router.get("/health", status_code=status.HTTP_200_OK)
async def healthcheck(request: Request) -> Dict[str, Any]:
    """Return relay liveness and upstream connectivity."""

    fleet_sync = request.app.state.fleet_sync
    transport = fleet_sync.transport
    return {
        "status": "ok",
        "upstream_connected": bool(transport and transport.connected),
        "subscribers": fleet_sync.subscriber_count,
    }
