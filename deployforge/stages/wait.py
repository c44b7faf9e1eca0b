"""Wait stage — suspends for a fixed duration."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from deployforge.models.pipeline import StageType, WaitStageSpec
from deployforge.stages.base import BaseStage, StageRun


class WaitStage(BaseStage):
    """Sleep until a persisted resume instant; a restart keeps the instant."""

    stage_type = StageType.WAIT

    def execute(self, spec: WaitStageSpec, run: StageRun) -> dict[str, Any]:
        resume_at = run.checkpoint.get("resume_at")
        if resume_at is None:
            resume_at = (run.now() + timedelta(seconds=spec.duration_seconds)).isoformat()
            run.save_checkpoint(resume_at=resume_at)
        remaining = (datetime.fromisoformat(resume_at) - run.now()).total_seconds()
        if remaining > 0:
            run.sleep(remaining)
        return {"resumed_at": run.now().isoformat(), "duration_seconds": spec.duration_seconds}
