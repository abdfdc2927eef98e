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

"""Exceptions raised by the sync layer."""


class FleetSyncError(Exception):
    """Base class for all fleetsync errors."""


class MessageDecodeError(FleetSyncError):
    """An inbound frame could not be decoded into a known message."""


class TransportError(FleetSyncError):
    """A transport-level request or connection failed."""


class SubscriptionError(FleetSyncError):
    """Fleet state was read outside of an active subscription."""
