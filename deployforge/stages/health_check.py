"""Health-check stage — polls a server group until it reports ready."""

from __future__ import annotations

import logging
from typing import Any

from deployforge.core.errors import HealthTimeout, InfraError
from deployforge.models.pipeline import HealthCheckStageSpec, StageType
from deployforge.stages.base import BaseStage, StageRun

logger = logging.getLogger(__name__)


class HealthCheckStage(BaseStage):
    """Succeeds once ``ready`` and the ready ratio meets the threshold."""

    stage_type = StageType.HEALTH_CHECK

    def execute(self, spec: HealthCheckStageSpec, run: StageRun) -> dict[str, Any]:
        group = self.group(run, spec.group)
        polls = int(run.checkpoint.get("polls", 0))
        while True:
            polls += 1
            try:
                report = self.services.infra.health(group.handle)
            except InfraError as exc:
                logger.warning("Health query for %s failed: %s", group.group_id, exc)
                report = None
            run.save_checkpoint(polls=polls)
            if report is not None and report.ready and report.ready_ratio >= spec.min_ready_ratio:
                return {
                    "group_id": group.group_id,
                    "ready_instances": report.ready_instances,
                    "total_instances": report.total_instances,
                    "polls": polls,
                }
            remaining = run.remaining()
            if remaining is not None and remaining < spec.interval_seconds:
                raise HealthTimeout(
                    f"{group.group_id} not ready after {polls} polls "
                    f"({spec.timeout_seconds:g}s timeout)"
                )
            run.sleep(spec.interval_seconds)
