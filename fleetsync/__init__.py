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

"""FleetSync - live fleet state for coordinator dashboards.

Keeps one transport to the coordinator per process, reconciles every
message into an immutable snapshot and shares it with all consumers.

Example:
    from fleetsync import FleetSync

    fleet_sync = FleetSync()
    subscription = await fleet_sync.subscribe(lambda view: print(view.version))
    ...
    subscription.unsubscribe()
"""

from fleetsync.broadcaster import FleetSync, FleetView, Subscription
from fleetsync.core.settings import Settings, get_settings
from fleetsync.errors import (
    FleetSyncError,
    MessageDecodeError,
    SubscriptionError,
    TransportError,
)

__version__ = "0.1.0"
__all__ = [
    "FleetSync",
    "FleetSyncError",
    "FleetView",
    "MessageDecodeError",
    "Settings",
    "Subscription",
    "SubscriptionError",
    "TransportError",
    "get_settings",
]
