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

"""Fleet state: message schema, reconciliation and derived metrics.

Key components:
- FleetMessage: Decoded, typed message for one entity kind
- StateReconciler: Merges messages into the canonical FleetSnapshot
- metrics: Pure functions deriving health, grouping and progress
"""

from fleetsync.state.messages import (
    FleetMessage,
    FleetMessageType,
    decode_frame,
)
from fleetsync.state.reconciler import StateReconciler
from fleetsync.state.snapshot import FleetSnapshot

__all__ = [
    "FleetMessage",
    "FleetMessageType",
    "FleetSnapshot",
    "StateReconciler",
    "decode_frame",
]
