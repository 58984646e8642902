from __future__ import annotations

from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Tuple


@dataclass
class EngineConfig:
    """
    Engine constants that are not user tunables.

    User-facing values (percentages, thresholds, max bolus) live in the
    preference store instead.
    """
    # Trend window
    trend_window_size: int = 6
    trend_min_samples: int = 5
    trend_min_valid_samples: int = 4
    valid_bg_min: float = 3.0
    valid_bg_max: float = 20.0
    declining_threshold: float = -1.0
    sustained_rise_min_slopes: int = 3
    sustained_rise_ratio: float = 0.8

    # Consistency blend
    direction_weight: float = 0.5
    magnitude_weight: float = 0.3
    pattern_weight: float = 0.2

    # Meal session lifecycle
    meal_restart_cooldown_minutes: int = 60
    meal_timeout_minutes: int = 240
    meal_decline_min_minutes: int = 120
    meal_baseline_return_minutes: int = 90
    meal_quiet_minutes: int = 150
    meal_min_carbs: float = 10.0
    meal_min_confidence: float = 0.4

    # Reserved ledger
    reserved_decay_per_hour: float = 2.0
    reserved_max_age_minutes: int = 90
    reserved_floor: float = 0.1
    reserved_min_minutes_since_bolus: int = 10
    extreme_bg_threshold: float = 14.0

    # Hybrid basal split
    hybrid_duration_minutes: int = 10
    hybrid_max_multiplier: float = 4.0
    hybrid_extreme_multiplier: float = 6.0
    hybrid_extreme_iob_ratio: float = 0.3
    hybrid_headroom_fraction: float = 0.5

    # Parameter store
    manual_dwell_hours: float = 24.0

    # Consolidation
    recency_half_life_hours: float = 60.0
    symmetry_window_hours: float = 72.0
    symmetry_factor: float = 0.8
    consolidation_min_confidence: float = 0.25
    direction_churn_limit: int = 2
    direction_churn_window_days: int = 7
    direction_churn_penalty: float = 0.7
    coherence_day_confidence_cap: float = 0.6
    advice_history_limit: int = 20
    advice_retention_days: int = 30

    # Optimizer
    optimizer_step_sizes: Tuple[float, ...] = (0.02, 0.04, 0.06, 0.08, 0.10, 0.12)
    optimizer_max_inner_iterations: int = 6
    optimizer_min_gain: float = 0.01
    optimizer_min_relative_gain: float = 0.02
    optimizer_min_advice_confidence: float = 0.3
    tir_low: float = 3.9
    tir_high: float = 10.0
    peak_reference_bg: float = 10.0
    score_tir_weight: float = 100.0
    score_peak_weight: float = 8.0
    score_hypo_weight: float = 200.0
    score_iob_weight: float = 6.0
    score_iob_allowance: float = 1.5

    # Background worker
    worker_cooldown_minutes: int = 60
    worker_batch_size: int = 3
    stale_task_minutes: int = 120

    def with_overrides(self, overrides: Dict[str, Any]) -> "EngineConfig":
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise KeyError(f"Unknown engine config keys: {sorted(unknown)}")
        values = dict(overrides)
        if "optimizer_step_sizes" in values:
            values["optimizer_step_sizes"] = tuple(values["optimizer_step_sizes"])
        return replace(self, **values)


DEFAULT_ENGINE_CONFIG = EngineConfig()
