"""Strongly-typed pipeline definitions.

A pipeline definition is data, never script.  It is validated once at load
time and rejected on any unknown or ill-typed field.  Stage specs form a
discriminated union on ``type``; a ``parallel`` branch groups stages with
no ordering dependency that are joined before the next sequential stage.

Server groups are referenced by the id of the deploy stage that produced
them, or by ``@active`` for the group that held ACTIVE when the execution
began.
"""

from __future__ import annotations

import json
import tomllib
from collections.abc import Iterator, Mapping
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from deployforge.core.errors import PipelineDefinitionError
from deployforge.models.canary import CanaryConfig
from deployforge.models.server_groups import ServerGroupRole

ACTIVE_REF = "@active"

_STAGE_ID_PATTERN = r"^[A-Za-z0-9_.-]+$"


class StageType(str, Enum):
    DEPLOY = "deploy"
    WAIT = "wait"
    HEALTH_CHECK = "health_check"
    VERIFICATION_JOB = "verification_job"
    CANARY_ANALYSIS = "canary_analysis"
    MANUAL_JUDGMENT = "manual_judgment"
    CUTOVER = "cutover"
    CLEANUP = "cleanup"


class OnFailure(str, Enum):
    """What a stage failure does to the rest of the execution."""

    ABORT = "abort"
    CONTINUE = "continue"


class CutoverStrategy(str, Enum):
    BLUE_GREEN = "blue_green"
    CANARY_RAMP = "canary_ramp"


class _StageSpecBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(pattern=_STAGE_ID_PATTERN)
    on_failure: OnFailure = OnFailure.ABORT
    timeout_seconds: float | None = Field(default=None, gt=0)

    @property
    def stage_type(self) -> StageType:
        return StageType(self.type)  # type: ignore[attr-defined]

    def group_refs(self) -> list[str]:
        """Server group references this stage reads."""
        return []


class DeployStageSpec(_StageSpecBase):
    type: Literal["deploy"] = "deploy"
    environment: str = "production"
    role: ServerGroupRole = ServerGroupRole.CANDIDATE
    replicas: int = Field(default=1, ge=1)
    retries: int = Field(default=3, ge=0)
    backoff_seconds: float = Field(default=5.0, ge=0)
    labels: dict[str, str] = {}

    @model_validator(mode="after")
    def _check_role(self) -> DeployStageSpec:
        if self.role not in (ServerGroupRole.CANDIDATE, ServerGroupRole.CANARY):
            raise ValueError(
                f"deploy stage {self.id!r}: role must be candidate or canary, "
                f"got {self.role.value}"
            )
        return self


class WaitStageSpec(_StageSpecBase):
    type: Literal["wait"] = "wait"
    duration_seconds: float = Field(ge=0)


class HealthCheckStageSpec(_StageSpecBase):
    type: Literal["health_check"] = "health_check"
    group: str
    interval_seconds: float = Field(default=10.0, gt=0)
    min_ready_ratio: float = Field(default=1.0, gt=0, le=1)
    timeout_seconds: float | None = Field(default=300.0, gt=0)

    def group_refs(self) -> list[str]:
        return [self.group]


class VerificationJobStageSpec(_StageSpecBase):
    type: Literal["verification_job"] = "verification_job"
    group: str
    test_spec: dict[str, Any] = {}
    poll_interval_seconds: float = Field(default=10.0, gt=0)
    timeout_seconds: float | None = Field(default=1800.0, gt=0)

    def group_refs(self) -> list[str]:
        return [self.group]


class CanaryAnalysisStageSpec(_StageSpecBase):
    type: Literal["canary_analysis"] = "canary_analysis"
    baseline: str = ACTIVE_REF
    canary: str
    config: CanaryConfig
    on_marginal: Literal["fail", "judgment"] = "fail"
    judgment_prompt: str = ""
    authorized_actors: list[str] = []
    judgment_timeout_seconds: float | None = Field(default=None, gt=0)

    def group_refs(self) -> list[str]:
        return [self.baseline, self.canary]

    @model_validator(mode="after")
    def _check_fallback(self) -> CanaryAnalysisStageSpec:
        if self.on_marginal == "judgment" and not self.authorized_actors:
            raise ValueError(
                f"canary stage {self.id!r}: judgment fallback needs authorized_actors"
            )
        return self


class ManualJudgmentStageSpec(_StageSpecBase):
    type: Literal["manual_judgment"] = "manual_judgment"
    prompt: str
    authorized_actors: list[str] = Field(min_length=1)
    allowed_decisions: list[Literal["approve", "reject"]] = ["approve", "reject"]


class CutoverStageSpec(_StageSpecBase):
    type: Literal["cutover"] = "cutover"
    candidate: str
    strategy: CutoverStrategy = CutoverStrategy.BLUE_GREEN
    steps: list[int] = [5, 25, 100]
    analysis: CanaryConfig | None = None

    def group_refs(self) -> list[str]:
        return [self.candidate]

    @model_validator(mode="after")
    def _check_ramp(self) -> CutoverStageSpec:
        if self.strategy == CutoverStrategy.CANARY_RAMP:
            if self.analysis is None:
                raise ValueError(f"cutover {self.id!r}: canary_ramp needs analysis")
            if not self.steps or self.steps[-1] != 100:
                raise ValueError(f"cutover {self.id!r}: ramp steps must end at 100")
            if any(s <= 0 or s > 100 for s in self.steps):
                raise ValueError(f"cutover {self.id!r}: ramp steps must be in (0, 100]")
            if any(b <= a for a, b in zip(self.steps, self.steps[1:])):
                raise ValueError(f"cutover {self.id!r}: ramp steps must increase")
        return self


class CleanupStageSpec(_StageSpecBase):
    type: Literal["cleanup"] = "cleanup"
    group: str
    grace_seconds: float = Field(default=0.0, ge=0)

    def group_refs(self) -> list[str]:
        return [self.group]


StageSpec = Annotated[
    Union[
        DeployStageSpec,
        WaitStageSpec,
        HealthCheckStageSpec,
        VerificationJobStageSpec,
        CanaryAnalysisStageSpec,
        ManualJudgmentStageSpec,
        CutoverStageSpec,
        CleanupStageSpec,
    ],
    Field(discriminator="type"),
]

# Stages that must never run with CONTINUE: a failure leaves traffic split.
ALWAYS_ABORT_TYPES: frozenset[StageType] = frozenset(
    {StageType.CANARY_ANALYSIS, StageType.CUTOVER}
)


class ParallelBranch(BaseModel):
    """Stages with no ordering dependency, joined before the next stage."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["parallel"] = "parallel"
    id: str = Field(pattern=_STAGE_ID_PATTERN)
    stages: list[StageSpec] = Field(min_length=1)


PipelineNode = Annotated[
    Union[
        DeployStageSpec,
        WaitStageSpec,
        HealthCheckStageSpec,
        VerificationJobStageSpec,
        CanaryAnalysisStageSpec,
        ManualJudgmentStageSpec,
        CutoverStageSpec,
        CleanupStageSpec,
        ParallelBranch,
    ],
    Field(discriminator="type"),
]


class FinalizerSpec(BaseModel):
    """A hook guaranteed to run on every terminal transition."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["notify"] = "notify"
    channel: str = "default"


class PipelineDefinition(BaseModel):
    """Ordered, optionally branching list of stages for one service."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    service: str = Field(min_length=1)
    version: str = "1"
    notify_channel: str = "default"
    stages: list[PipelineNode] = Field(min_length=1)
    finalizers: list[FinalizerSpec] = []

    @model_validator(mode="after")
    def _check_structure(self) -> PipelineDefinition:
        seen: set[str] = set()
        deployed: set[str] = set()

        def _claim(stage_id: str) -> None:
            if stage_id in seen:
                raise ValueError(f"duplicate stage id {stage_id!r}")
            seen.add(stage_id)

        def _check_refs(spec: Any, available: set[str]) -> None:
            for ref in spec.group_refs():
                if ref != ACTIVE_REF and ref not in available:
                    raise ValueError(
                        f"stage {spec.id!r} references {ref!r}, which is not "
                        f"an earlier deploy stage or {ACTIVE_REF!r}"
                    )

        def _check_policy(spec: Any) -> None:
            if spec.stage_type in ALWAYS_ABORT_TYPES and spec.on_failure == OnFailure.CONTINUE:
                raise ValueError(
                    f"stage {spec.id!r}: {spec.stage_type.value} cannot use on_failure=continue"
                )

        for node in self.stages:
            _claim(node.id)
            if isinstance(node, ParallelBranch):
                branch_deploys: set[str] = set()
                for member in node.stages:
                    _claim(member.id)
                    _check_policy(member)
                    _check_refs(member, deployed)
                    if member.stage_type in (StageType.MANUAL_JUDGMENT, StageType.CUTOVER):
                        raise ValueError(
                            f"parallel branch {node.id!r} cannot contain "
                            f"{member.stage_type.value} stage {member.id!r}"
                        )
                    if (
                        isinstance(member, CanaryAnalysisStageSpec)
                        and member.on_marginal == "judgment"
                    ):
                        raise ValueError(
                            f"parallel branch {node.id!r}: canary stage "
                            f"{member.id!r} cannot fall back to judgment"
                        )
                    if isinstance(member, DeployStageSpec):
                        branch_deploys.add(member.id)
                deployed |= branch_deploys
            else:
                _check_policy(node)
                _check_refs(node, deployed)
                if isinstance(node, DeployStageSpec):
                    deployed.add(node.id)
        return self

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def iter_stages(self) -> Iterator[Any]:
        """Yield every stage spec, flattening parallel branches in order."""
        for node in self.stages:
            if isinstance(node, ParallelBranch):
                yield from node.stages
            else:
                yield node

    def get_stage(self, stage_id: str) -> Any:
        for spec in self.iter_stages():
            if spec.id == stage_id:
                return spec
        raise KeyError(stage_id)

    @property
    def effective_finalizers(self) -> list[FinalizerSpec]:
        """Declared finalizers, or a single notify on ``notify_channel``."""
        return list(self.finalizers) or [FinalizerSpec(channel=self.notify_channel)]


def load_pipeline_definition(source: Path | str | Mapping[str, Any]) -> PipelineDefinition:
    """Load and validate a pipeline definition.

    ``source`` is a mapping, or a path to a ``.toml`` or ``.json`` file.
    Raises ``PipelineDefinitionError`` on any schema violation.
    """
    if isinstance(source, Mapping):
        raw: Any = dict(source)
        origin = "<mapping>"
    else:
        path = Path(source)
        origin = str(path)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise PipelineDefinitionError(f"cannot read {origin}: {exc}") from exc
        try:
            if path.suffix == ".toml":
                raw = tomllib.loads(text)
            elif path.suffix == ".json":
                raw = json.loads(text)
            else:
                raise PipelineDefinitionError(
                    f"{origin}: unsupported pipeline format {path.suffix!r}"
                )
        except (tomllib.TOMLDecodeError, json.JSONDecodeError) as exc:
            raise PipelineDefinitionError(f"{origin}: {exc}") from exc

    try:
        return PipelineDefinition.model_validate(raw)
    except ValidationError as exc:
        raise PipelineDefinitionError(f"{origin}: {exc}") from exc
