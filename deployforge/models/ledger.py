"""Audit ledger record model (append-only, hash-chained per execution).

The Audit Ledger is the source of truth for what happened:
- Append-only (no UPDATE, no DELETE)
- Hash-chained (each record links to the previous one of its execution)
- Monotonic ``sequence`` per execution
- One record per transition or decision
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class AuditEvent(str, Enum):
    EXECUTION_CREATED = "execution_created"
    EXECUTION_STATUS = "execution_status"
    STAGE_STATUS = "stage_status"
    STAGE_RESUMED = "stage_resumed"
    SERVER_GROUP_REGISTERED = "server_group_registered"
    SERVER_GROUP_ROLES = "server_group_roles"
    SERVER_GROUP_DESTROYED = "server_group_destroyed"
    TRAFFIC_WEIGHTS = "traffic_weights"
    CANARY_RESULT = "canary_result"
    JUDGMENT_REQUESTED = "judgment_requested"
    JUDGMENT_DECIDED = "judgment_decided"
    CANCEL_REQUESTED = "cancel_requested"
    ROLLBACK_STARTED = "rollback_started"
    ROLLBACK_COMPLETED = "rollback_completed"
    ROLLBACK_FAILED = "rollback_failed"


class AuditRecord(BaseModel):
    """A single immutable entry in the Audit Ledger."""

    model_config = ConfigDict(frozen=True)

    execution_id: str
    sequence: int = 0  # assigned on append
    stage_id: str = ""
    event: AuditEvent
    actor: str = "system"
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    payload: dict[str, Any] = {}
    service: str = ""
    artifact_id: str = ""
    previous_record_hash: str = ""
    record_hash: str = ""  # computed on append, seals this record
