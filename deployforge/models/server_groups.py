"""Deployable populations and the infrastructure-facing value types."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ServerGroupRole(str, Enum):
    """Role of a server group within its service.

    At most one group per service holds ACTIVE at any instant.
    """

    ACTIVE = "active"
    CANDIDATE = "candidate"
    CANARY = "canary"
    DISABLED = "disabled"


class DeploySpec(BaseModel):
    """What the infrastructure controller is asked to create or update."""

    model_config = ConfigDict(frozen=True)

    service: str
    name: str  # unique server group name, stable per (execution, stage)
    artifact_id: str
    environment: str
    replicas: int = 1
    labels: dict[str, str] = {}


class ServerGroupHandle(BaseModel):
    """Opaque reference returned by ``InfraController.apply``."""

    model_config = ConfigDict(frozen=True)

    name: str
    endpoint: str = ""
    replicas: int = 1


class ServerGroup(BaseModel):
    """A concrete running instance set of one artifact under one service."""

    model_config = ConfigDict(frozen=True)

    service: str
    group_id: str
    artifact_id: str
    role: ServerGroupRole
    handle: ServerGroupHandle
    created_by: str = ""  # execution id that deployed the group
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class HealthReport(BaseModel):
    """Result of ``InfraController.health``."""

    model_config = ConfigDict(frozen=True)

    ready: bool
    ready_instances: int = 0
    total_instances: int = 0
    detail: dict[str, Any] = {}

    @property
    def ready_ratio(self) -> float:
        if self.total_instances <= 0:
            return 1.0 if self.ready else 0.0
        return self.ready_instances / self.total_instances
