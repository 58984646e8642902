from __future__ import annotations

from dataclasses import dataclass


@dataclass
class SafetyConfig:
    """
    Thresholds for the pre/post dose safety gate. Glucose in mmol/L,
    slopes in mmol/L per hour, time in minutes.
    """
    # Hypo recovery
    hypo_threshold_day: float = 4.3
    hypo_threshold_night: float = 4.6
    hypo_recovery_bg_range: float = 2.2
    hypo_recovery_window_minutes: int = 70
    hypo_recovery_min_minutes: int = 15
    hypo_recovery_min_rise: float = 2.0
    hypo_recovery_rising_fraction: float = 0.6

    # Conservative block, day
    day_max_iob_ratio: float = 0.9
    day_max_consecutive_boluses: int = 5
    day_min_bolus_interval_minutes: int = 5
    day_decline_slope: float = -1.5

    # Conservative block, night
    night_max_iob_ratio: float = 0.6
    night_max_consecutive_boluses: int = 2
    night_min_bolus_interval_minutes: int = 15
    night_decline_slope: float = -0.5

    # Short-term decline
    short_term_hard_decline: float = -3.0
    short_term_consistent_decline: float = -2.0
    short_term_iob_decline: float = -1.0
    short_term_iob_ratio: float = 0.5
    short_term_mild_decline: float = -0.5

    # Trend reversal
    reversal_acceleration: float = -0.3
    reversal_iob_ratio: float = 0.8
    reversal_iob_ratio_falling: float = 0.7
    reversal_iob_ratio_steep: float = 0.6

    # Hard stop
    meal_max_cumulative_insulin: float = 8.0
    meal_max_consecutive_boluses: int = 6
    normal_max_cumulative_insulin: float = 3.0
    normal_max_consecutive_boluses: int = 3
    cumulative_window_minutes: int = 60
    hypo_floor: float = 4.0
    night_floor_margin: float = 0.3
    lookahead_minutes: tuple = (60, 120)
    insulin_effect_tau_hours: float = 1.5
    trend_effect_weight: float = 0.3

    # Relaxation
    relax_min_transition_factor: float = 0.9
    relax_dose_fraction: float = 0.5
