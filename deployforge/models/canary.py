"""Canary analysis configuration and result models."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class MetricDirection(str, Enum):
    """Which way a metric moves when the canary gets worse."""

    LOWER_IS_BETTER = "lower_is_better"
    HIGHER_IS_BETTER = "higher_is_better"


class CanaryVerdict(str, Enum):
    PASS = "pass"
    MARGINAL = "marginal"
    FAIL = "fail"


INSUFFICIENT_DATA = "insufficient-data"


class CanaryMetricSpec(BaseModel):
    """One metric compared between baseline and canary.

    ``query`` is a template understood by the metrics provider; the
    ``{population}`` placeholder is filled with the server group id.
    Deviations inside ``tolerance`` score 100, deviations at or past
    ``critical_deviation`` score 0, linear in between.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    query: str
    direction: MetricDirection = MetricDirection.LOWER_IS_BETTER
    weight: float = Field(default=1.0, gt=0)
    tolerance: float = Field(default=0.10, ge=0)
    critical_deviation: float = Field(default=0.50, gt=0)
    required: bool = True

    @model_validator(mode="after")
    def _check_band(self) -> CanaryMetricSpec:
        if self.critical_deviation <= self.tolerance:
            raise ValueError(
                f"metric {self.name!r}: critical_deviation must exceed tolerance"
            )
        return self


class CanaryConfig(BaseModel):
    """Sampling window, metrics, and verdict thresholds for one analysis."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    metrics: list[CanaryMetricSpec] = Field(min_length=1)
    interval_seconds: float = Field(default=60.0, gt=0)
    duration_seconds: float = Field(default=600.0, gt=0)
    pass_threshold: float = Field(default=90.0, ge=0, le=100)
    marginal_threshold: float = Field(default=75.0, ge=0, le=100)
    max_missing_fraction: float = Field(default=0.25, ge=0, le=1)

    @model_validator(mode="after")
    def _check_thresholds(self) -> CanaryConfig:
        if self.marginal_threshold > self.pass_threshold:
            raise ValueError("marginal_threshold must not exceed pass_threshold")
        names = [m.name for m in self.metrics]
        if len(names) != len(set(names)):
            raise ValueError("canary metric names must be unique")
        return self


class MetricScore(BaseModel):
    """Per-metric comparison outcome."""

    model_config = ConfigDict(frozen=True)

    name: str
    weight: float
    required: bool = True
    score: float | None = None  # None when the metric had insufficient data
    baseline_mean: float | None = None
    canary_mean: float | None = None
    deviation: float | None = None  # relative, positive means worse
    samples: int = 0
    missing: int = 0
    insufficient_data: bool = False


class CanaryResult(BaseModel):
    """Outcome of one canary analysis."""

    model_config = ConfigDict(frozen=True)

    baseline_group: str
    canary_group: str
    scores: list[MetricScore]
    aggregate_score: float
    verdict: CanaryVerdict
    reason: str = ""
    ticks: int = 0
