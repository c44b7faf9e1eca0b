"""Verification-job stage — runs a test suite against a server group."""

from __future__ import annotations

from typing import Any

from deployforge.core.errors import StageCancelled, VerificationFailure, VerificationTimeout
from deployforge.models.pipeline import StageType, VerificationJobStageSpec
from deployforge.stages.base import BaseStage, StageRun


class VerificationJobStage(BaseStage):
    """Start a job (once; its id is checkpointed) and poll for the result."""

    stage_type = StageType.VERIFICATION_JOB

    def execute(self, spec: VerificationJobStageSpec, run: StageRun) -> dict[str, Any]:
        runner = self.services.runner
        group = self.group(run, spec.group)
        job_id = run.checkpoint.get("job_id")
        if not job_id:
            job_id = runner.start(spec.test_spec, group.handle.endpoint)
            run.save_checkpoint(job_id=job_id)

        while True:
            result = runner.poll(job_id)
            if result is not None:
                if result.succeeded:
                    return {"job_id": job_id, "group_id": group.group_id, **result.detail}
                raise VerificationFailure(
                    f"verification job {job_id} against {group.group_id} failed: {result.detail}"
                )
            remaining = run.remaining()
            if remaining is not None and remaining < spec.poll_interval_seconds:
                runner.cancel(job_id)
                raise VerificationTimeout(
                    f"verification job {job_id} exceeded {spec.timeout_seconds:g}s"
                )
            try:
                run.sleep(spec.poll_interval_seconds)
            except StageCancelled:
                runner.cancel(job_id)
                raise
