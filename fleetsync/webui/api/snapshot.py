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

"""Point-in-time fleet state."""

from typing import Any, Dict

from fastapi import APIRouter, HTTPException, Request

from fleetsync.errors import SubscriptionError

router = APIRouter(tags=["snapshot"])


@router.get("/snapshot")
async def get_snapshot(request: Request) -> Dict[str, Any]:
    """Return the current fleet view as JSON."""
    try:
        view = request.app.state.fleet_sync.view()
    except SubscriptionError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    return view.to_dict()
