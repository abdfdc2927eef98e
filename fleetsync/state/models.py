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

"""Pydantic models for every entity the coordinator channel can deliver.

Records are frozen so that a snapshot can hand the same object to many
consumers without any of them mutating shared state. Unknown fields are
ignored so that a newer coordinator does not break an older client.
"""

from __future__ import annotations

import json
import math
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class RecordModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")


# ============================================================================
# Fleet
# ============================================================================


class HardwareMetrics(RecordModel):
    """Host hardware utilization sampled by a worker or the coordinator."""

    cpu_usage_percent: float = 0.0
    memory_used_gb: float = 0.0
    memory_total_gb: float = 0.0
    memory_usage_percent: float = 0.0
    disk_used_gb: float = 0.0
    disk_total_gb: float = 0.0
    disk_usage_percent: float = 0.0
    load_avg_1m: float = 0.0
    load_avg_5m: float = 0.0
    load_avg_15m: float = 0.0


class WorkerStatus(RecordModel):
    """Latest heartbeat of a single worker process."""

    worker_id: str
    hostname: str = ""
    cores: int = 0
    search_type: str = ""
    search_params: Any = Field(default="", description="Opaque params, JSON string or object")
    tested: int = 0
    found: int = 0
    current: str = ""
    uptime_secs: float = 0
    last_heartbeat_secs_ago: float = 0
    checkpoint: str | None = None
    metrics: HardwareMetrics | None = None

    def parsed_params(self) -> dict[str, Any] | None:
        """Return ``search_params`` as a dict, or None if it is not a JSON object."""
        if isinstance(self.search_params, dict):
            return self.search_params
        if not isinstance(self.search_params, str) or not self.search_params:
            return None
        try:
            parsed = json.loads(self.search_params)
        except ValueError:
            return None
        return parsed if isinstance(parsed, dict) else None


class ServerInfo(RecordModel):
    """A host machine as grouped by the coordinator."""

    hostname: str
    role: Literal["service", "compute"] = "compute"
    metrics: HardwareMetrics | None = None
    worker_count: int = 0
    cores: int = 0
    worker_ids: tuple[str, ...] = ()
    total_tested: int = 0
    total_found: int = 0
    uptime_secs: float = 0


class FleetData(RecordModel):
    """All known workers plus fleet-wide totals."""

    workers: tuple[WorkerStatus, ...] = ()
    servers: tuple[ServerInfo, ...] | None = None
    total_workers: int = 0
    total_cores: int = 0
    total_tested: int = 0
    total_found: int = 0

    @classmethod
    def from_workers(
        cls,
        workers: tuple[WorkerStatus, ...],
        servers: tuple[ServerInfo, ...] | None = None,
    ) -> FleetData:
        """Build fleet data with totals recomputed from the worker list."""
        return cls(
            workers=workers,
            servers=servers,
            total_workers=len(workers),
            total_cores=sum(w.cores for w in workers),
            total_tested=sum(w.tested for w in workers),
            total_found=sum(w.found for w in workers),
        )


# ============================================================================
# Coordinator status
# ============================================================================


class Checkpoint(RecordModel):
    """Progress marker of the coordinator's active search.

    Which fields are populated depends on ``type``.
    """

    type: str = ""
    last_n: int | None = None
    digit_count: int | None = None
    half_value: str | None = None
    start: int | None = None
    end: int | None = None
    min_digits: int | None = None
    max_digits: int | None = None
    min_n: int | None = None
    max_n: int | None = None

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> str:
        return str(value or "").lower()


class Status(RecordModel):
    active: bool = False
    checkpoint: Checkpoint | None = None


# ============================================================================
# Searches and deployments
# ============================================================================

SearchStatus = Literal["running", "paused", "pending", "completed", "cancelled", "failed"]


class ManagedSearch(RecordModel):
    """Ephemeral search run as a coordinator-managed subprocess."""

    id: int
    search_type: str = ""
    params: dict[str, Any] = Field(default_factory=dict)
    status: SearchStatus = "pending"
    failure_reason: str | None = None
    started_at: str = ""
    stopped_at: str | None = None
    pid: int | None = None
    worker_id: str = ""
    tested: int = 0
    found: int = 0

    @model_validator(mode="before")
    @classmethod
    def _unwrap_failed_status(cls, data: Any) -> Any:
        # The coordinator encodes failures as {"failed": {"reason": "..."}}.
        if isinstance(data, dict) and isinstance(data.get("status"), dict):
            status = data["status"]
            failed = status.get("failed") or {}
            data = {
                **data,
                "status": "failed",
                "failure_reason": failed.get("reason") if isinstance(failed, dict) else None,
            }
        return data


class SearchJob(RecordModel):
    """Persisted search job whose range is split into claimable blocks."""

    id: int
    search_type: str = ""
    params: dict[str, Any] = Field(default_factory=dict)
    status: SearchStatus = "pending"
    error: str | None = None
    created_at: str = ""
    started_at: str | None = None
    stopped_at: str | None = None
    range_start: int = 0
    range_end: int = 0
    block_size: int = 1
    total_tested: int = 0
    total_found: int = 0

    @property
    def total_blocks(self) -> int:
        return math.ceil((self.range_end - self.range_start) / max(self.block_size, 1))


class Deployment(RecordModel):
    """Remote worker launched over SSH."""

    id: int
    hostname: str = ""
    ssh_user: str = ""
    search_type: str = ""
    search_params: str = ""
    worker_id: str = ""
    status: Literal["deploying", "running", "paused", "failed", "stopped"] = "deploying"
    error: str | None = None
    remote_pid: int | None = None
    started_at: str = ""


# ============================================================================
# Agents
# ============================================================================


class AgentTask(RecordModel):
    id: int
    title: str = ""
    description: str = ""
    status: str = "pending"
    priority: str = "normal"
    agent_model: str | None = None
    assigned_agent: str | None = None
    source: str = ""
    tokens_used: int = 0
    cost_usd: float = 0.0
    created_at: str = ""
    started_at: str | None = None
    completed_at: str | None = None
    parent_task_id: int | None = None
    max_cost_usd: float | None = None
    permission_level: int = 0
    template_name: str | None = None
    on_child_failure: str = "fail"
    role_name: str | None = None


class AgentEvent(RecordModel):
    id: int
    task_id: int | None = None
    event_type: str = ""
    agent: str | None = None
    summary: str = ""
    detail: dict[str, Any] | None = None
    created_at: str = ""
    tool_name: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    duration_ms: int | None = None


class AgentBudget(RecordModel):
    id: int
    period: Literal["daily", "weekly", "monthly"] = "daily"
    budget_usd: float = 0.0
    spent_usd: float = 0.0
    tokens_used: int = 0
    period_start: str = ""
    updated_at: str = ""


class AgentInfo(RecordModel):
    """An agent subprocess currently running on the coordinator."""

    task_id: int
    title: str = ""
    model: str = ""
    status: str = ""
    started_at: str = ""
    pid: int | None = None


class AgentRole(RecordModel):
    id: int
    name: str
    description: str = ""
    domains: tuple[str, ...] = ()
    default_permission_level: int = 0
    default_model: str = ""
    system_prompt: str | None = None
    default_max_cost_usd: float | None = None


class TemplateStep(RecordModel):
    title: str
    description: str = ""
    permission_level: int = 0
    depends_on_step: int | None = None


class AgentTemplate(RecordModel):
    id: int
    name: str
    description: str = ""
    steps: tuple[TemplateStep, ...] = ()
    role_name: str | None = None


# ============================================================================
# Projects, records, notifications
# ============================================================================


class ProjectSummary(RecordModel):
    slug: str
    name: str = ""
    form: str = ""
    objective: str = ""
    status: str = ""
    total_tested: int = 0
    total_found: int = 0
    best_digits: int = 0
    total_cost_usd: float = 0.0


class RecordSummary(RecordModel):
    form: str
    expression: str = ""
    digits: int = 0
    holder: str | None = None
    our_best_digits: int = 0


class Notification(RecordModel):
    """Display-once signal such as a new discovery."""

    id: int
    kind: str = ""
    title: str = ""
    details: tuple[str, ...] = ()
    count: int = 1
    timestamp_ms: int = 0
