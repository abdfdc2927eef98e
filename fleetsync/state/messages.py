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

"""Fleet message definitions and frame decoding.

Every frame received from the coordinator carries a ``type`` discriminator.
Per-kind frames map to exactly one FleetMessage; the coordinator's composite
``update`` frame carries every kind at once and is expanded into one
FleetMessage per kind present, in a fixed order.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import TypeAdapter, ValidationError

from fleetsync.errors import MessageDecodeError
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
    WorkerStatus,
)


class FleetMessageType(str, Enum):
    """Types of fleet messages.

    Messages are categorized into:
    - Full lists: the latest message replaces the previous list
    - Single values: status and coordinator metrics
    - Records: a single worker heartbeat, upserted into the fleet
    - Logs: agent events and notifications, appended and deduplicated
    """

    WORKER_HEARTBEAT = "worker_heartbeat"
    FLEET_SUMMARY = "fleet_summary"
    SEARCH_UPDATE = "search_update"
    SEARCH_JOB_UPDATE = "search_job_update"
    DEPLOYMENT_UPDATE = "deployment_update"
    AGENT_TASK_UPDATE = "agent_task_update"
    AGENT_EVENT = "agent_event"
    AGENT_BUDGET_UPDATE = "agent_budget_update"
    RUNNING_AGENTS_UPDATE = "running_agents_update"
    AGENT_ROLES_UPDATE = "agent_roles_update"
    AGENT_TEMPLATES_UPDATE = "agent_templates_update"
    PROJECT_UPDATE = "project_update"
    RECORD_UPDATE = "record_update"
    NOTIFICATION = "notification"
    COORDINATOR_METRICS = "coordinator_metrics"
    STATUS_UPDATE = "status_update"


# Discriminator of the coordinator's all-in-one frame.
COMPOSITE_UPDATE = "update"


@dataclass(frozen=True)
class _Kind:
    key: str
    adapter: TypeAdapter
    nullable: bool = False


def _many(model: type) -> TypeAdapter:
    return TypeAdapter(tuple[model, ...])


# Message type -> payload key and validator. Dict order is the order in which
# a composite frame is expanded.
_KINDS: Dict[FleetMessageType, _Kind] = {
    FleetMessageType.STATUS_UPDATE: _Kind("status", TypeAdapter(Optional[Status]), nullable=True),
    FleetMessageType.FLEET_SUMMARY: _Kind("fleet", TypeAdapter(FleetData)),
    FleetMessageType.WORKER_HEARTBEAT: _Kind("worker", TypeAdapter(WorkerStatus)),
    FleetMessageType.COORDINATOR_METRICS: _Kind(
        "coordinator", TypeAdapter(Optional[HardwareMetrics]), nullable=True
    ),
    FleetMessageType.SEARCH_UPDATE: _Kind("searches", _many(ManagedSearch)),
    FleetMessageType.SEARCH_JOB_UPDATE: _Kind("search_jobs", _many(SearchJob)),
    FleetMessageType.DEPLOYMENT_UPDATE: _Kind("deployments", _many(Deployment)),
    FleetMessageType.AGENT_TASK_UPDATE: _Kind("agent_tasks", _many(AgentTask)),
    FleetMessageType.AGENT_BUDGET_UPDATE: _Kind("agent_budgets", _many(AgentBudget)),
    FleetMessageType.RUNNING_AGENTS_UPDATE: _Kind("running_agents", _many(AgentInfo)),
    FleetMessageType.AGENT_ROLES_UPDATE: _Kind("agent_roles", _many(AgentRole)),
    FleetMessageType.AGENT_TEMPLATES_UPDATE: _Kind("agent_templates", _many(AgentTemplate)),
    FleetMessageType.PROJECT_UPDATE: _Kind("projects", _many(ProjectSummary)),
    FleetMessageType.RECORD_UPDATE: _Kind("records", _many(RecordSummary)),
    FleetMessageType.NOTIFICATION: _Kind("notifications", _many(Notification)),
    FleetMessageType.AGENT_EVENT: _Kind("agent_events", _many(AgentEvent)),
}

# Kinds whose payload is a log of items; a single object is accepted and
# wrapped into a one-item tuple.
_LOG_KINDS = {FleetMessageType.NOTIFICATION, FleetMessageType.AGENT_EVENT}

# Singular payload keys accepted on per-kind frames for log kinds.
_SINGULAR_KEYS = {
    FleetMessageType.NOTIFICATION: "notification",
    FleetMessageType.AGENT_EVENT: "event",
}


@dataclass
class FleetMessage:
    """A decoded, typed message ready for the reconciler.

    Attributes:
        message_type: Kind of entity this message carries
        payload: Validated model, tuple of models, or None for nullable kinds
        received_at: When the frame was decoded (Unix timestamp)
    """

    message_type: FleetMessageType
    payload: Any
    received_at: float = field(default_factory=time.time)


def payload_key(message_type: FleetMessageType) -> str:
    """Return the field name under which a kind's payload is carried."""
    return _KINDS[message_type].key


def build_message(message_type: FleetMessageType, raw: Any) -> FleetMessage:
    """Validate a raw JSON payload into a FleetMessage.

    Raises:
        MessageDecodeError: If the payload does not match the kind's schema.
    """
    kind = _KINDS[message_type]
    if raw is None and not kind.nullable:
        raise MessageDecodeError(f"{message_type.value} payload is missing")
    if message_type in _LOG_KINDS and isinstance(raw, dict):
        raw = [raw]

    try:
        payload = kind.adapter.validate_python(raw)
    except ValidationError as e:
        raise MessageDecodeError(
            f"Invalid {message_type.value} payload: {e.error_count()} validation error(s)"
        ) from e

    return FleetMessage(message_type=message_type, payload=payload)


def decode_frame(data: Union[str, bytes]) -> List[FleetMessage]:
    """Decode one raw frame into zero or more FleetMessages.

    Raises:
        MessageDecodeError: If the frame is not JSON, has an unknown ``type``,
            or its payload does not validate.
    """
    try:
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        frame = json.loads(data)
    except (UnicodeDecodeError, ValueError) as e:
        raise MessageDecodeError(f"Frame is not valid JSON: {e}") from e

    return decode_object(frame)


def decode_object(frame: Any) -> List[FleetMessage]:
    """Decode an already-parsed JSON object into FleetMessages."""
    if not isinstance(frame, dict):
        raise MessageDecodeError(f"Frame must be a JSON object, got {type(frame).__name__}")

    frame_type = frame.get("type")
    if frame_type == COMPOSITE_UPDATE:
        return _expand_composite(frame)

    try:
        message_type = FleetMessageType(frame_type)
    except ValueError:
        raise MessageDecodeError(f"Unknown message type: {frame_type!r}") from None

    kind = _KINDS[message_type]
    singular = _SINGULAR_KEYS.get(message_type)
    if kind.key in frame:
        raw = frame[kind.key]
    elif singular and singular in frame:
        raw = frame[singular]
    else:
        raw = frame.get("payload")

    return [build_message(message_type, raw)]


def _expand_composite(frame: Dict[str, Any]) -> List[FleetMessage]:
    messages = []
    for message_type, kind in _KINDS.items():
        if kind.key not in frame:
            continue
        raw = frame[kind.key]
        # Absent lists mean "no data for this kind in this frame", not "empty".
        if raw is None and not kind.nullable:
            continue
        messages.append(build_message(message_type, raw))
    return messages
