"""Manual-judgment stage — a persisted suspension awaiting a human decision."""

from __future__ import annotations

from datetime import timedelta

from deployforge.models.judgment import GateKind, JudgmentRequest
from deployforge.models.pipeline import ManualJudgmentStageSpec, StageType
from deployforge.stages.base import BaseStage, StageResult, StageRun


class ManualJudgmentStage(BaseStage):
    """Create a ``JudgmentRequest``; the executor parks the execution.

    The stage never blocks.  The decision arrives through the judgment API
    and the executor resumes (approve) or terminates (reject, timeout).
    """

    stage_type = StageType.MANUAL_JUDGMENT

    def execute(self, spec: ManualJudgmentStageSpec, run: StageRun) -> StageResult:
        ctx = run.context
        expires_at = (
            run.started_at + timedelta(seconds=spec.timeout_seconds)
            if spec.timeout_seconds
            else None
        )
        return StageResult.suspend(
            JudgmentRequest(
                execution_id=ctx.execution_id,
                stage_id=spec.id,
                service=ctx.service,
                artifact_id=ctx.artifact.artifact_id,
                prompt=spec.prompt,
                allowed_decisions=list(spec.allowed_decisions),
                authorized_actors=list(spec.authorized_actors),
                gate=GateKind.MANUAL,
                requested_at=run.now(),
                expires_at=expires_at,
            )
        )
