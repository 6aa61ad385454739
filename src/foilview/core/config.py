"""
Configuration models for the stage control core.

Everything tunable (axis list, step bounds, retry policy, timer bounds) is supplied at
construction through these models instead of being hard-coded in the services.  A bad
configuration is a programmer error and fails loudly when the model is built.

Files are YAML, e.g.:

    stage:
      axes: [X, Y, Z]
      min_step_um: 0.01
      max_step_um: 1000
    retry:
      max_attempts: 3
      base_delay_s: 1.0
"""

import logging
from pathlib import Path
from typing import List, Optional, Union

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)


class StageConfig(BaseModel):
    """Axis list, relative move bounds and settle tolerance, all in micrometers."""

    axes: List[str] = Field(default_factory=lambda: ["X", "Y", "Z"], description="Axis identifiers")
    min_step_um: float = Field(0.01, gt=0, description="Smallest accepted relative move")
    max_step_um: float = Field(1000.0, gt=0, description="Largest accepted relative move")
    position_tolerance_um: float = Field(0.01, ge=0, description="Max deviation still considered settled")
    step_sizes_um: List[float] = Field(
        default_factory=lambda: [0.1, 0.5, 1.0, 5.0, 10.0, 50.0], description="Step size presets offered to the UI"
    )
    default_step_size_um: float = Field(1.0, gt=0)

    model_config = {"extra": "forbid", "frozen": True}

    @field_validator("axes")
    @classmethod
    def _normalize_axes(cls, axes: List[str]) -> List[str]:
        normalized = [a.strip().upper() for a in axes]
        if not normalized:
            raise ValueError("at least one axis is required")
        if any(not a for a in normalized):
            raise ValueError("axis identifiers must be non-empty")
        if len(set(normalized)) != len(normalized):
            raise ValueError(f"duplicate axis identifiers in {axes}")
        if "ALL" in normalized:
            raise ValueError("'ALL' is reserved and cannot be used as an axis name")
        return normalized

    @model_validator(mode="after")
    def _check_bounds(self) -> "StageConfig":
        if self.min_step_um > self.max_step_um:
            raise ValueError(f"min_step_um ({self.min_step_um}) must not exceed max_step_um ({self.max_step_um})")
        return self


class RetryPolicy(BaseModel):
    """Exponential backoff for connection attempts.

    Attempt n (0-based) waits min(base_delay_s * multiplier**n, max_delay_s) before the next
    attempt.  max_attempts counts every attempt including the first.
    """

    max_attempts: int = Field(3, ge=1)
    base_delay_s: float = Field(1.0, ge=0)
    multiplier: float = Field(2.0, ge=1.0)
    max_delay_s: float = Field(30.0, ge=0)
    non_retryable_patterns: List[str] = Field(
        default_factory=lambda: ["not found", "does not exist", "invalid", "permission"],
        description="Failure messages containing any of these stop retrying early",
    )

    model_config = {"extra": "forbid", "frozen": True}

    @model_validator(mode="after")
    def _check_delays(self) -> "RetryPolicy":
        if self.max_delay_s < self.base_delay_s:
            raise ValueError(f"max_delay_s ({self.max_delay_s}) must be >= base_delay_s ({self.base_delay_s})")
        return self

    def delay_for_attempt(self, attempt: int) -> float:
        if attempt < 0:
            raise ValueError(f"attempt must be >= 0, got {attempt}")
        # Saturate before exponentiating so large attempt numbers can't overflow.
        delay = self.base_delay_s
        for _ in range(attempt):
            delay *= self.multiplier
            if delay >= self.max_delay_s:
                return self.max_delay_s
        return min(delay, self.max_delay_s)

    def is_retryable(self, message: str) -> bool:
        text = (message or "").lower()
        return not any(pattern.lower() in text for pattern in self.non_retryable_patterns)


class AutoStepLimits(BaseModel):
    """Bounds applied when an auto-step run is requested."""

    min_step_um: float = Field(0.01, gt=0)
    max_step_um: float = Field(1000.0, gt=0)
    min_steps: int = Field(1, ge=1)
    max_steps: int = Field(1000, ge=1)
    min_delay_s: float = Field(0.1, gt=0)
    max_delay_s: float = Field(10.0, gt=0)

    model_config = {"extra": "forbid", "frozen": True}

    @model_validator(mode="after")
    def _check_ranges(self) -> "AutoStepLimits":
        if self.min_step_um > self.max_step_um:
            raise ValueError("min_step_um must not exceed max_step_um")
        if self.min_steps > self.max_steps:
            raise ValueError("min_steps must not exceed max_steps")
        if self.min_delay_s > self.max_delay_s:
            raise ValueError("min_delay_s must not exceed max_delay_s")
        return self


class HealthCheckConfig(BaseModel):
    enabled: bool = True
    interval_s: float = Field(2.0, gt=0)

    model_config = {"extra": "forbid", "frozen": True}


class FoilviewConfig(BaseModel):
    stage: StageConfig = Field(default_factory=StageConfig)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    auto_step: AutoStepLimits = Field(default_factory=AutoStepLimits)
    health_check: HealthCheckConfig = Field(default_factory=HealthCheckConfig)

    model_config = {"extra": "forbid", "frozen": True}


def load_config(path: Union[str, Path]) -> FoilviewConfig:
    """Load a FoilviewConfig from YAML.  A missing file yields the defaults."""
    path = Path(path)
    if not path.exists():
        logger.info(f"Config file not found, using defaults: {path}")
        return FoilviewConfig()

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        logger.error(f"Failed to parse YAML file {path}: {e}")
        raise

    return FoilviewConfig(**(data or {}))


def save_config(path: Union[str, Path], config: Optional[FoilviewConfig] = None) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = (config or FoilviewConfig()).model_dump(mode="json")
    with open(path, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
    logger.debug(f"Saved config to {path}")
