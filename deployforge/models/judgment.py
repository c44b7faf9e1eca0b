"""Human judgment gate models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class JudgmentDecision(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class GateKind(str, Enum):
    """Why the execution is waiting on a human."""

    MANUAL = "manual"
    CANARY_MARGINAL = "canary_marginal"


class JudgmentRequest(BaseModel):
    """A persisted request for an authorized human decision."""

    model_config = ConfigDict(frozen=True)

    execution_id: str
    stage_id: str
    service: str
    artifact_id: str
    prompt: str
    allowed_decisions: list[str] = ["approve", "reject"]
    authorized_actors: list[str]
    gate: GateKind = GateKind.MANUAL
    decision: JudgmentDecision = JudgmentDecision.PENDING
    decided_by: str = ""
    decided_at: datetime | None = None
    requested_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    expires_at: datetime | None = None
    resumed: bool = False  # True once the executor has acted on the decision

    @property
    def is_pending(self) -> bool:
        return self.decision == JudgmentDecision.PENDING

    def is_authorized(self, actor: str) -> bool:
        return actor in self.authorized_actors
