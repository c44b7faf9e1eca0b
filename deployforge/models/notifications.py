"""Human-readable notifications emitted on terminal states and gates."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class NotificationSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class Notification(BaseModel):
    """A message for operators.

    Every notification names the execution, service and artifact, plus an
    ``audit_ref`` pointing at the execution's ledger entries.  ``urgent``
    notifications bypass channel routing and reach every sink.
    """

    model_config = ConfigDict(frozen=True)

    notification_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event: str  # e.g. "execution_succeeded", "judgment_requested"
    severity: NotificationSeverity = NotificationSeverity.INFO
    execution_id: str
    service: str
    artifact_id: str
    status: str = ""
    message: str
    audit_ref: str = ""  # "audit://<execution_id>#<first>-<last>"
    urgent: bool = False
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
