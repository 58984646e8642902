"""
Closed set of learnable dosing parameters.

Each parameter resolves to bounds and a behaviour class. The class decides how
quickly the parameter may move when automated advice is applied.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict


class ParameterClass(Enum):
    PERCENTAGE = "percentage"
    SLOPE = "slope"


class ParameterId(str, Enum):
    BOLUS_PERC_RISING = "bolus_perc_rising"
    BOLUS_PERC_PLATEAU = "bolus_perc_plateau"
    BOLUS_PERC_DAY = "bolus_perc_day"
    BOLUS_PERC_NIGHT = "bolus_perc_night"
    PHASE_RISING_SLOPE = "phase_rising_slope"
    PHASE_PLATEAU_SLOPE = "phase_plateau_slope"
    MEAL_DETECTION_SENSITIVITY = "meal_detection_sensitivity"
    CARB_PERCENTAGE = "carb_percentage"
    IOB_CORR_PERC = "iob_corr_perc"
    HYPO_RISK_PERCENTAGE = "hypo_risk_percentage"


@dataclass(frozen=True)
class ClassPolicy:
    smoothing_alpha: float
    deadband_percent: float
    max_daily_change_percent: float
    min_events: int
    min_cumulative_confidence: float
    max_change_per_advice: float  # relative, per advice event


CLASS_POLICIES: Dict[ParameterClass, ClassPolicy] = {
    # Slopes react faster, with a small per-step bound.
    ParameterClass.SLOPE: ClassPolicy(
        smoothing_alpha=0.3,
        deadband_percent=1.5,
        max_daily_change_percent=8.0,
        min_events=2,
        min_cumulative_confidence=1.2,
        max_change_per_advice=0.25,
    ),
    ParameterClass.PERCENTAGE: ClassPolicy(
        smoothing_alpha=0.15,
        deadband_percent=2.0,
        max_daily_change_percent=5.0,
        min_events=3,
        min_cumulative_confidence=1.5,
        max_change_per_advice=0.15,
    ),
}


@dataclass(frozen=True)
class ParameterDefinition:
    id: ParameterId
    parameter_class: ParameterClass
    minimum: float
    maximum: float
    default: float

    @property
    def policy(self) -> ClassPolicy:
        return CLASS_POLICIES[self.parameter_class]

    @property
    def span(self) -> float:
        return self.maximum - self.minimum

    def clamp(self, value: float) -> float:
        return max(self.minimum, min(self.maximum, value))


_P = ParameterClass.PERCENTAGE
_S = ParameterClass.SLOPE

PARAMETER_DEFINITIONS: Dict[ParameterId, ParameterDefinition] = {
    d.id: d
    for d in (
        ParameterDefinition(ParameterId.BOLUS_PERC_RISING, _P, 10.0, 200.0, 100.0),
        ParameterDefinition(ParameterId.BOLUS_PERC_PLATEAU, _P, 10.0, 200.0, 60.0),
        ParameterDefinition(ParameterId.BOLUS_PERC_DAY, _P, 10.0, 200.0, 100.0),
        ParameterDefinition(ParameterId.BOLUS_PERC_NIGHT, _P, 5.0, 100.0, 20.0),
        ParameterDefinition(ParameterId.PHASE_RISING_SLOPE, _S, 0.3, 2.5, 1.0),
        ParameterDefinition(ParameterId.PHASE_PLATEAU_SLOPE, _S, 0.1, 1.0, 0.4),
        ParameterDefinition(ParameterId.MEAL_DETECTION_SENSITIVITY, _S, 0.1, 0.5, 0.35),
        ParameterDefinition(ParameterId.CARB_PERCENTAGE, _P, 10.0, 200.0, 100.0),
        ParameterDefinition(ParameterId.IOB_CORR_PERC, _P, 50.0, 150.0, 100.0),
        ParameterDefinition(ParameterId.HYPO_RISK_PERCENTAGE, _P, 10.0, 50.0, 25.0),
    )
}


def get_definition(parameter: "ParameterId | str") -> ParameterDefinition:
    return PARAMETER_DEFINITIONS[ParameterId(parameter)]


def is_learnable(name: str) -> bool:
    try:
        ParameterId(name)
    except ValueError:
        return False
    return True
