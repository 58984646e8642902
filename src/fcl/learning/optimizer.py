"""
Meal outcome scoring and parameter search.

The search never touches the live patient: candidates are scored against a
closed-form proxy that predicts how the meal would have gone with different
rising/plateau settings.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Mapping, Optional

from fcl.api.models import AdviceDirection, MealSession, ParameterAdvice
from fcl.core.config import DEFAULT_ENGINE_CONFIG, EngineConfig
from fcl.core.parameters import ParameterClass, ParameterId, get_definition
from fcl.learning.meal_metrics import MealMetrics, extract_metrics

logger = logging.getLogger("fcl")

SEARCH_PARAMETERS = (
    ParameterId.BOLUS_PERC_RISING,
    ParameterId.BOLUS_PERC_PLATEAU,
    ParameterId.PHASE_RISING_SLOPE,
    ParameterId.PHASE_PLATEAU_SLOPE,
)


@dataclass(frozen=True)
class Outcome:
    peak_bg: float
    time_in_range: float
    hypo: bool
    max_iob: float

    @classmethod
    def from_metrics(cls, metrics: MealMetrics) -> "Outcome":
        return cls(metrics.peak_bg, metrics.time_in_range, metrics.post_meal_hypo, metrics.max_iob)


def score_outcome(outcome: Outcome, config: EngineConfig = DEFAULT_ENGINE_CONFIG) -> float:
    peak_above = max(0.0, outcome.peak_bg - config.peak_reference_bg)
    excess_iob = max(0.0, outcome.max_iob - config.score_iob_allowance)
    return (
        config.score_tir_weight * outcome.time_in_range
        - config.score_peak_weight * peak_above
        - (config.score_hypo_weight if outcome.hypo else 0.0)
        - config.score_iob_weight * excess_iob
    )


def proxy_outcome(baseline: Outcome, original: Mapping[str, float], candidate: Mapping[str, float]) -> Outcome:
    """Predicted meal outcome for `candidate` given what happened with `original`."""
    def fraction_delta(pid: ParameterId) -> float:
        base = original[pid.value]
        return (candidate[pid.value] - base) / base if base else 0.0

    def slope_delta(pid: ParameterId) -> float:
        return candidate[pid.value] - original[pid.value]

    rising = fraction_delta(ParameterId.BOLUS_PERC_RISING)
    plateau = fraction_delta(ParameterId.BOLUS_PERC_PLATEAU)
    rising_slope = slope_delta(ParameterId.PHASE_RISING_SLOPE)
    plateau_slope = slope_delta(ParameterId.PHASE_PLATEAU_SLOPE)

    peak = baseline.peak_bg - 2.5 * rising + 6.0 * rising_slope - 1.8 * plateau - 1.0 * plateau_slope
    tir = baseline.time_in_range + 0.06 * rising - 0.04 * rising_slope + 0.03 * plateau + 0.02 * plateau_slope
    rising_fraction = candidate[ParameterId.BOLUS_PERC_RISING.value] / 100.0
    hypo = baseline.hypo or (rising_fraction > 0.6 and rising_slope < -0.1)
    return Outcome(
        peak_bg=max(3.0, peak),
        time_in_range=max(0.0, min(1.0, tir)),
        hypo=hypo,
        max_iob=max(0.0, baseline.max_iob + rising * 0.6),
    )


def advice_confidence(original: float, change: float) -> float:
    return min(0.95, 0.25 + min(0.7, abs(change) / (max(original, 1.0) * 0.15)))


class MealOptimizer:
    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or DEFAULT_ENGINE_CONFIG

    def score(self, outcome: Outcome) -> float:
        return score_outcome(outcome, self.config)

    def _step(self, pid: ParameterId, value: float, step: float, sign: int) -> float:
        definition = get_definition(pid)
        if definition.parameter_class is ParameterClass.PERCENTAGE:
            moved = value * (1.0 + sign * step)
        else:
            moved = value + sign * step * definition.span
        return definition.clamp(moved)

    def search(self, baseline: Outcome, original: Mapping[str, float]) -> Dict[str, float]:
        """Deterministic coordinate descent over the four phase parameters."""
        cfg = self.config
        current = {pid.value: float(original[pid.value]) for pid in SEARCH_PARAMETERS}
        best = self.score(proxy_outcome(baseline, original, current))

        for step in cfg.optimizer_step_sizes:
            for _ in range(cfg.optimizer_max_inner_iterations):
                improved = False
                for pid in SEARCH_PARAMETERS:
                    for sign in (1, -1):
                        candidate = dict(current)
                        candidate[pid.value] = self._step(pid, current[pid.value], step, sign)
                        if candidate[pid.value] == current[pid.value]:
                            continue
                        candidate_score = self.score(proxy_outcome(baseline, original, candidate))
                        threshold = max(cfg.optimizer_min_gain, cfg.optimizer_min_relative_gain * abs(best))
                        if candidate_score - best > threshold:
                            current, best = candidate, candidate_score
                            improved = True
                if not improved:
                    break
        return current

    def search_advice(
        self, metrics: MealMetrics, original: Mapping[str, float], now: datetime
    ) -> List[ParameterAdvice]:
        baseline = Outcome.from_metrics(metrics)
        found = self.search(baseline, original)
        advice: List[ParameterAdvice] = []
        for pid in SEARCH_PARAMETERS:
            definition = get_definition(pid)
            before = float(original[pid.value])
            cap = abs(before) * definition.policy.max_change_per_advice
            change = max(-cap, min(cap, found[pid.value] - before))
            if definition.parameter_class is ParameterClass.PERCENTAGE:
                significant = abs(change) > max(0.5, 0.01 * abs(before))
            else:
                significant = abs(change) > 0.01
            if not significant:
                continue
            advice.append(
                ParameterAdvice(
                    parameter_name=pid.value,
                    current_value=before,
                    recommended_value=definition.clamp(before + change),
                    direction=AdviceDirection.INCREASE if change > 0 else AdviceDirection.DECREASE,
                    confidence=advice_confidence(before, change),
                    reason=f"Proxy search: score {self.score(baseline):.1f} baseline, peak {metrics.peak_bg:.1f}",
                    timestamp=now,
                )
            )
        return advice

    def rule_advice(
        self, metrics: MealMetrics, original: Mapping[str, float], now: datetime
    ) -> List[ParameterAdvice]:
        advice: List[ParameterAdvice] = []

        def add(pid: ParameterId, change: float, confidence: float, reason: str) -> None:
            if pid.value not in original:
                return
            definition = get_definition(pid)
            before = float(original[pid.value])
            advice.append(
                ParameterAdvice(
                    parameter_name=pid.value,
                    current_value=before,
                    recommended_value=definition.clamp(before * (1.0 + change)),
                    direction=AdviceDirection.INCREASE if change > 0 else AdviceDirection.DECREASE,
                    confidence=confidence,
                    reason=reason,
                    timestamp=now,
                )
            )

        if metrics.peak_bg > 9.5:
            severity = min(1.0, (metrics.peak_bg - 9.5) / 3.0)
            add(
                ParameterId.BOLUS_PERC_RISING,
                0.05 + 0.10 * severity,
                min(0.9, 0.4 + 0.5 * severity),
                f"Peak {metrics.peak_bg:.1f} above 9.5",
            )
        if metrics.time_to_first_bolus is not None and metrics.time_to_first_bolus > 20:
            severity = min(1.0, (metrics.time_to_first_bolus - 20) / 40.0)
            add(
                ParameterId.PHASE_RISING_SLOPE,
                -(0.08 + 0.07 * severity),
                min(0.8, 0.3 + 0.5 * severity),
                f"First bolus after {metrics.time_to_first_bolus:.0f} min",
            )
        if metrics.rapid_decline:
            severity = min(1.0, abs(metrics.decline_rate) / 4.0)
            add(
                ParameterId.PHASE_PLATEAU_SLOPE,
                0.05 + 0.10 * severity,
                min(0.8, 0.35 + 0.4 * severity),
                f"Rapid decline {metrics.decline_rate:.1f} mmol/L/h",
            )
        if 0 < metrics.detection_score < 0.7:
            add(
                ParameterId.MEAL_DETECTION_SENSITIVITY,
                -0.1,
                0.4,
                f"Weak meal detection ({metrics.detection_score:.2f})",
            )
        if metrics.post_meal_hypo or metrics.virtual_hypo_score > 2.0:
            severity = 1.0 if metrics.post_meal_hypo else min(1.0, metrics.virtual_hypo_score / 8.0)
            add(
                ParameterId.IOB_CORR_PERC,
                -(0.05 + 0.05 * severity),
                min(0.9, 0.4 + 0.4 * severity),
                "Post-meal hypo" if metrics.post_meal_hypo else f"Virtual hypo score {metrics.virtual_hypo_score:.1f}",
            )
        return advice

    def optimize_metrics(
        self, metrics: MealMetrics, original: Mapping[str, float], now: datetime
    ) -> List[ParameterAdvice]:
        missing = [pid.value for pid in SEARCH_PARAMETERS if pid.value not in original]
        if missing:
            raise KeyError(f"Parameter snapshot missing {missing}")
        advice = self.search_advice(metrics, original, now) + self.rule_advice(metrics, original, now)
        kept = [a for a in advice if a.confidence >= self.config.optimizer_min_advice_confidence]
        logger.info("Meal optimization produced %d advice(s)", len(kept))
        return kept

    def optimize(
        self, session: MealSession, current_values: Mapping[str, float], now: datetime
    ) -> List[ParameterAdvice]:
        """Advice for a closed meal. Values in effect during the meal take precedence."""
        metrics = extract_metrics(session, self.config)
        if metrics is None:
            logger.info("Meal %s has too few readings to optimize", session.id)
            return []
        original = {**dict(current_values), **session.parameter_snapshot}
        return self.optimize_metrics(metrics, original, now)
