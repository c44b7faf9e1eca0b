"""Deployforge stage implementations, one per stage type.

``build_stage_registry`` maps every ``StageType`` to its implementation;
the executor looks stages up there and never instantiates them directly.
"""

from __future__ import annotations

from deployforge.models.pipeline import StageType
from deployforge.stages.base import BaseStage, StageOutcome, StageResult, StageRun, StageServices
from deployforge.stages.canary_analysis import CanaryAnalysisStage
from deployforge.stages.cleanup import CleanupStage
from deployforge.stages.cutover import CutoverStage
from deployforge.stages.deploy import DeployStage
from deployforge.stages.health_check import HealthCheckStage
from deployforge.stages.manual_judgment import ManualJudgmentStage
from deployforge.stages.verification_job import VerificationJobStage
from deployforge.stages.wait import WaitStage

STAGE_CLASSES: tuple[type[BaseStage], ...] = (
    DeployStage,
    WaitStage,
    HealthCheckStage,
    VerificationJobStage,
    CanaryAnalysisStage,
    ManualJudgmentStage,
    CutoverStage,
    CleanupStage,
)


def build_stage_registry(services: StageServices) -> dict[StageType, BaseStage]:
    return {cls.stage_type: cls(services) for cls in STAGE_CLASSES}


__all__ = [
    "BaseStage",
    "StageOutcome",
    "StageResult",
    "StageRun",
    "StageServices",
    "build_stage_registry",
]
