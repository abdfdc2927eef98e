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

"""Transport selection from static configuration."""

from __future__ import annotations

from typing import Optional

from fleetsync.core.settings import Settings
from fleetsync.transport.base import MessageHandler, StateHandler, Transport
from fleetsync.transport.pull import PullTransport
from fleetsync.transport.push import PushTransport


def create_transport(
    settings: Settings,
    on_message: MessageHandler,
    on_state_change: Optional[StateHandler] = None,
) -> Transport:
    """Construct the one transport this process will use.

    ``settings.use_polling`` is a deploy-time choice: polling where the
    coordinator sits behind a proxy that cannot carry WebSockets, push
    everywhere else. There is no failover between the two kinds.
    """
    if settings.use_polling:
        return PullTransport(settings, on_message, on_state_change)
    return PushTransport(settings, on_message, on_state_change)
