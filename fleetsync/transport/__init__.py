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

"""Transports delivering coordinator messages.

- PushTransport: WebSocket with reconnect/backoff
- PullTransport: fixed-interval HTTP polling
- create_transport: picks one from static configuration
"""

from fleetsync.transport.base import ConnectionState, Transport
from fleetsync.transport.pull import PullTransport
from fleetsync.transport.push import PushTransport
from fleetsync.transport.selector import create_transport

__all__ = [
    "ConnectionState",
    "Transport",
    "PullTransport",
    "PushTransport",
    "create_transport",
]
