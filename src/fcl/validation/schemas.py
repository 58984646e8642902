from __future__ import annotations

import re
from typing import Any, List, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_TIME_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")
WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


class PreferencesModel(BaseModel):
    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    # Phase-weighted bolus shaping
    bolus_perc_rising: float = Field(default=100.0, ge=10.0, le=200.0)
    bolus_perc_plateau: float = Field(default=60.0, ge=10.0, le=200.0)
    bolus_perc_day: float = Field(default=100.0, ge=10.0, le=200.0)
    bolus_perc_night: float = Field(default=20.0, ge=5.0, le=100.0)
    hybrid_basal_perc: float = Field(default=0.0, ge=0.0, le=100.0)
    enhanced_early_boost_perc: float = Field(default=40.0, ge=0.0, le=100.0)

    # Trend classification
    phase_rising_slope: float = Field(default=1.0, ge=0.3, le=2.5)
    phase_plateau_slope: float = Field(default=0.4, ge=0.1, le=1.0)
    phase_min_consistency: float = Field(default=0.6, ge=0.3, le=0.9)
    data_smoothing_alpha: float = Field(default=0.4, ge=0.1, le=0.8)

    # Meal handling
    min_minutes_between_bolus: int = Field(default=8, ge=5, le=15)
    carb_percentage: float = Field(default=100.0, ge=10.0, le=200.0)
    tau_absorption_minutes: int = Field(default=40, ge=20, le=60)
    meal_detection_sensitivity: float = Field(default=0.35, ge=0.1, le=0.5)

    # Correction damping
    peak_damping_percentage: float = Field(default=50.0, ge=10.0, le=100.0)
    hypo_risk_percentage: float = Field(default=25.0, ge=10.0, le=50.0)
    iob_corr_perc: float = Field(default=100.0, ge=50.0, le=150.0)

    # Therapy settings
    max_bolus_day: float = Field(default=2.5, ge=0.1, le=8.0)
    max_bolus_night: float = Field(default=1.0, ge=0.1, le=8.0)
    max_iob: float = Field(default=3.0, ge=0.5, le=20.0)
    target_bg: float = Field(default=5.2, ge=4.0, le=9.0)
    isf: float = Field(default=8.0, ge=0.5, le=20.0)
    carb_ratio: float = Field(default=7.0, ge=2.0, le=40.0)
    basal_rate: float = Field(default=0.8, ge=0.0, le=5.0)

    # Persistent high
    persistent_enabled: bool = True
    persistent_threshold_day: float = Field(default=10.0, ge=7.0, le=20.0)
    persistent_threshold_night: float = Field(default=11.0, ge=7.0, le=20.0)
    persistent_max_bolus_day: float = Field(default=0.5, ge=0.05, le=3.0)
    persistent_max_bolus_night: float = Field(default=0.3, ge=0.05, le=3.0)
    persistent_cooldown_minutes: int = Field(default=30, ge=5, le=240)

    # Learning
    manual_dwell_hours: float = Field(default=24.0, ge=1.0, le=168.0)
    auto_apply_advice: bool = True

    # Day / night schedule
    day_start: str = "06:30"
    day_start_weekend: str = "08:00"
    night_start: str = "23:00"
    weekend_days: str = "sat,sun"

    @field_validator("day_start", "day_start_weekend", "night_start")
    @classmethod
    def _check_time(cls, value: str) -> str:
        if not _TIME_RE.match(value.strip()):
            raise ValueError(f"expected HH:MM, got '{value}'")
        return value.strip()

    @field_validator("weekend_days", mode="before")
    @classmethod
    def _normalize_weekend(cls, value: Any) -> str:
        if isinstance(value, (list, tuple)):
            value = ",".join(str(v) for v in value)
        days = [d.strip().lower()[:3] for d in str(value).split(",") if d.strip()]
        unknown = [d for d in days if d not in WEEKDAYS]
        if unknown:
            raise ValueError(f"unknown weekday(s): {', '.join(unknown)}")
        return ",".join(days)

    @model_validator(mode="after")
    def _check_slopes(self) -> "PreferencesModel":
        if self.phase_plateau_slope >= self.phase_rising_slope:
            raise ValueError("phase_plateau_slope must be below phase_rising_slope")
        return self


def parse_time(value: str) -> Tuple[int, int]:
    hours, minutes = value.split(":")
    return int(hours), int(minutes)


class EngineConfigModel(BaseModel):
    """Validated overrides for EngineConfig; unset fields keep their defaults."""
    model_config = ConfigDict(extra="forbid")

    recency_half_life_hours: float = Field(default=60.0, gt=0)
    symmetry_window_hours: float = Field(default=72.0, gt=0)
    symmetry_factor: float = Field(default=0.8, gt=0.0, le=1.0)
    consolidation_min_confidence: float = Field(default=0.25, ge=0.0, le=1.0)
    direction_churn_limit: int = Field(default=2, ge=0)
    direction_churn_penalty: float = Field(default=0.7, gt=0.0, le=1.0)
    coherence_day_confidence_cap: float = Field(default=0.6, ge=0.0, le=1.0)
    advice_history_limit: int = Field(default=20, ge=1)
    advice_retention_days: int = Field(default=30, ge=1)
    manual_dwell_hours: float = Field(default=24.0, ge=0.0)
    reserved_decay_per_hour: float = Field(default=2.0, gt=0.0)
    reserved_max_age_minutes: int = Field(default=90, ge=10)
    optimizer_step_sizes: List[float] = Field(default_factory=lambda: [0.02, 0.04, 0.06, 0.08, 0.10, 0.12])
    optimizer_max_inner_iterations: int = Field(default=6, ge=1)
    peak_reference_bg: float = Field(default=10.0, ge=5.0, le=20.0)
    worker_cooldown_minutes: int = Field(default=60, ge=0)
    worker_batch_size: int = Field(default=3, ge=1)
    stale_task_minutes: int = Field(default=120, ge=1)

    @field_validator("optimizer_step_sizes")
    @classmethod
    def _check_steps(cls, value: List[float]) -> List[float]:
        if not value or any(step <= 0 for step in value):
            raise ValueError("optimizer_step_sizes must be positive")
        return sorted(value)
