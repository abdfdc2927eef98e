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

"""Canonical fleet snapshot."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from fleetsync.state.models import (
    AgentBudget,
    AgentEvent,
    AgentInfo,
    AgentRole,
    AgentTask,
    AgentTemplate,
    Deployment,
    FleetData,
    HardwareMetrics,
    ManagedSearch,
    Notification,
    ProjectSummary,
    RecordSummary,
    SearchJob,
    Status,
)


@dataclass(frozen=True)
class FleetSnapshot:
    """Reconciled state at a point in time.

    Snapshots are immutable. The reconciler produces a new snapshot per
    change and reuses the previous field objects for every kind that did
    not change, so ``old.searches is new.searches`` holds whenever only the
    fleet changed.

    Attributes:
        version: Incremented on every change
    """

    version: int = 0
    status: Optional[Status] = None
    fleet: Optional[FleetData] = None
    coordinator: Optional[HardwareMetrics] = None
    searches: Tuple[ManagedSearch, ...] = ()
    search_jobs: Tuple[SearchJob, ...] = ()
    deployments: Tuple[Deployment, ...] = ()
    agent_tasks: Tuple[AgentTask, ...] = ()
    agent_budgets: Tuple[AgentBudget, ...] = ()
    running_agents: Tuple[AgentInfo, ...] = ()
    agent_roles: Tuple[AgentRole, ...] = ()
    agent_templates: Tuple[AgentTemplate, ...] = ()
    projects: Tuple[ProjectSummary, ...] = ()
    records: Tuple[RecordSummary, ...] = ()
    agent_events: Tuple[AgentEvent, ...] = ()
    notifications: Tuple[Notification, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-compatible dictionary for API responses."""

        def dump(value: Any) -> Any:
            if value is None:
                return None
            if isinstance(value, tuple):
                return [item.model_dump(mode="json") for item in value]
            return value.model_dump(mode="json")

        return {
            "version": self.version,
            "status": dump(self.status),
            "fleet": dump(self.fleet),
            "coordinator": dump(self.coordinator),
            "searches": dump(self.searches),
            "search_jobs": dump(self.search_jobs),
            "deployments": dump(self.deployments),
            "agent_tasks": dump(self.agent_tasks),
            "agent_budgets": dump(self.agent_budgets),
            "running_agents": dump(self.running_agents),
            "agent_roles": dump(self.agent_roles),
            "agent_templates": dump(self.agent_templates),
            "projects": dump(self.projects),
            "records": dump(self.records),
            "agent_events": dump(self.agent_events),
            "notifications": dump(self.notifications),
        }
