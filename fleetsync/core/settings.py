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

"""Application settings management."""

from functools import lru_cache
from urllib.parse import urlsplit, urlunsplit

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Static configuration for the sync layer.

    ``use_polling`` is read once when the transport is created; changing it
    afterwards has no effect on a running context.
    """

    model_config = SettingsConfigDict(
        env_prefix="FLEETSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    base_url: str = Field(default="http://localhost:7001", description="Coordinator base URL")
    ws_url: str | None = Field(
        default=None,
        description="Explicit WebSocket URL; derived from base_url when unset",
    )
    use_polling: bool = Field(default=False, description="Use REST polling instead of WebSocket")

    # Pull transport
    poll_interval_s: float = 4.0
    poll_failure_threshold: int = 3
    # Per-kind endpoints carry no running agents; only the snapshot does.
    poll_snapshot_endpoint: bool = True
    request_timeout_s: float = 10.0

    # Push transport
    reconnect_initial_delay_s: float = 1.0
    reconnect_max_delay_s: float = 30.0
    reconnect_jitter_s: float = 0.5

    # Reconciler buffers
    event_buffer_size: int = 200
    notification_buffer_size: int = 50

    # Broadcaster timers
    health_recheck_interval_s: float = 1.0
    stall_probe_interval_s: float = 2.0

    # Logging
    log_level: str = Field(default="INFO", description="Level for every fleetsync logger")
    log_format: str | None = Field(default=None, description="logging.Formatter format string")

    def websocket_url(self) -> str:
        """Return the WebSocket endpoint, mapping http(s) to ws(s)."""
        if self.ws_url:
            return self.ws_url

        parts = urlsplit(self.base_url.rstrip("/"))
        scheme = "wss" if parts.scheme == "https" else "ws"
        return urlunsplit((scheme, parts.netloc, f"{parts.path}/ws", "", ""))


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()
