"""
Per-tick dose decision.

The decision is built by an ordered rule chain:

1. pre-dose safety gate
2. persistent-high override
3. carb detection and phase-weighted meal bolus
4. correction for non-meal highs
5. reserved dose release
6. early boost for a predicted peak above 10
7. bolus cadence
8. post-dose safety gate, with the documented rising-phase relaxation

Safety vetoes and the persistent-high override lock the decision. The
remaining steps accumulate into a draft which is capped, split and rounded.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from fcl.analysis.trend import TrendAnalyzer
from fcl.api.models import BGSample, DoseDecision, MealSession, TrendPhase
from fcl.core.config import DEFAULT_ENGINE_CONFIG, EngineConfig
from fcl.core.dosing import bolus_math
from fcl.core.dosing.carbs import CarbDetector
from fcl.core.dosing.context import DosingContext, Observation
from fcl.core.dosing.hybrid import HybridBasalTracker
from fcl.core.dosing.meal import MealTracker
from fcl.core.dosing.persistent import PersistentHighRule
from fcl.core.dosing.phased import PhasedBolusManager
from fcl.core.dosing.reserved import ReservedDoseLedger
from fcl.core.dosing.rules import CONTINUE, DecisionDraft, Locked, Rule, RuleOutcome, run_chain
from fcl.core.errors import InputError
from fcl.core.safety.config import SafetyConfig
from fcl.core.safety.gate import POST, PRE, GateResult, SafetyGate

logger = logging.getLogger("fcl")

MAX_SAMPLE_AGE_MINUTES = 15
MIN_VALID_BG = 1.0
MAX_VALID_BG = 35.0


@dataclass(frozen=True)
class TickOutcome:
    decision: DoseDecision
    closed_session: Optional[MealSession] = None


def validate_samples(samples: Sequence[BGSample], now) -> List[BGSample]:
    if not samples:
        raise InputError("No glucose history available")
    ordered = list(samples)
    for earlier, later in zip(ordered, ordered[1:]):
        if later.timestamp <= earlier.timestamp:
            raise InputError(f"Glucose history not ordered at {later.timestamp.isoformat()}")
    latest = ordered[-1]
    if not MIN_VALID_BG <= latest.bg <= MAX_VALID_BG:
        raise InputError(f"Implausible glucose reading {latest.bg}")
    if latest.iob < 0:
        raise InputError(f"Negative IOB {latest.iob}")
    age = (now - latest.timestamp).total_seconds() / 60.0
    if age > MAX_SAMPLE_AGE_MINUTES:
        raise InputError(f"Latest glucose reading is {age:.0f} min old")
    return ordered


class DoseEngine:
    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        safety_config: Optional[SafetyConfig] = None,
        ledger: Optional[ReservedDoseLedger] = None,
    ):
        self.config = config or DEFAULT_ENGINE_CONFIG
        self.safety_config = safety_config or SafetyConfig()
        self.analyzer = TrendAnalyzer(self.config)
        self.gate = SafetyGate(self.safety_config)
        self.detector = CarbDetector()
        self.ledger = ledger or ReservedDoseLedger(self.config)
        self.phased = PhasedBolusManager()
        self.hybrid = HybridBasalTracker(self.config)
        self.meals = MealTracker(self.config)
        self.persistent = PersistentHighRule()
        self.rules: List[Rule] = [
            self._rule_pre_safety,
            self._rule_persistent_high,
            self._rule_meal_bolus,
            self._rule_correction,
            self._rule_reserved_release,
            self._rule_early_boost,
            self._rule_cadence,
            self._rule_post_safety,
        ]

    def reset(self) -> None:
        self.ledger.clear()
        self.phased = PhasedBolusManager()
        self.hybrid = HybridBasalTracker(self.config)
        self.meals = MealTracker(self.config)
        self.persistent = PersistentHighRule()

    def get_state(self) -> Dict[str, object]:
        now = self.meals.last_start
        return {
            "active_meal": self.meals.active.id if self.meals.active else None,
            "last_meal_start": now.isoformat() if now else None,
            "hybrid_basal_active": self.hybrid.active is not None,
            "bolus_events": len(self.phased.events),
        }

    # Tick

    def evaluate(
        self,
        ctx: DosingContext,
        samples: Sequence[BGSample],
        parameter_snapshot: Optional[Dict[str, float]] = None,
    ) -> TickOutcome:
        history = validate_samples(samples, ctx.now)
        obs = Observation.build(history, ctx, self.analyzer)
        estimate = self.detector.detect(ctx, obs)

        closed = self.meals.update(ctx, obs, estimate, parameter_snapshot or {})
        if closed is not None:
            self.phased.end_session()
        elif self.meals.active is not None and self.meals.active.start_time == ctx.now:
            self.phased.start_session()

        active = self.meals.active
        draft = DecisionDraft(
            ctx=ctx,
            obs=obs,
            bolus=self.phased.snapshot(ctx.now, self.safety_config.cumulative_window_minutes),
            estimate=estimate,
            cob=self.meals.carbs_on_board(ctx),
            meal_active=active is not None,
            meal_id=active.id if active else None,
            session_insulin=active.total_insulin if active else 0.0,
            confidence=obs.trend.consistency,
        )

        locked = run_chain(self.rules, draft)
        decision = self._finalize(draft, locked)
        return TickOutcome(decision=decision, closed_session=closed)

    # Rules

    def _veto_decision(self, draft: DecisionDraft, veto: GateResult) -> DoseDecision:
        if veto.critical:
            self.hybrid.stop(veto.reason)
        return draft.base_decision(reason=veto.reason, phase=veto.phase, dose=0.0, deliver=False)

    def _rule_pre_safety(self, draft: DecisionDraft) -> RuleOutcome:
        veto = self.gate.evaluate(
            PRE, draft.ctx, draft.obs, 0.0, draft.bolus, draft.meal_active, draft.cob
        )
        if veto.allowed:
            return CONTINUE
        return Locked(self._veto_decision(draft, veto), "pre_safety")

    def _rule_persistent_high(self, draft: DecisionDraft) -> RuleOutcome:
        if draft.meal_active:
            return CONTINUE
        proposal = self.persistent.propose(draft.ctx, draft.obs)
        if proposal is None:
            return CONTINUE
        dose = min(proposal.dose, draft.ctx.max_bolus)
        veto = self.gate.evaluate(
            POST, draft.ctx, draft.obs, dose, draft.bolus, draft.meal_active, draft.cob
        )
        if not veto.allowed:
            return Locked(self._veto_decision(draft, veto), "persistent_high")
        self.persistent.mark_fired(draft.ctx.now)
        decision = draft.base_decision(
            dose=dose, deliver=True, reason=proposal.reason, phase="persistent_high", confidence=0.8
        )
        return Locked(decision, "persistent_high")

    def _rule_meal_bolus(self, draft: DecisionDraft) -> RuleOutcome:
        ctx, obs, estimate = draft.ctx, draft.obs, draft.estimate
        advice = bolus_math.mathematical_bolus_advice(ctx, obs, draft.meal_active)
        draft.immediate_percentage = advice.immediate_percentage
        draft.phase = obs.trend.phase.value
        if estimate.carbs <= 0 or not (estimate.meal_detected or draft.meal_active):
            return CONTINUE
        if obs.trend.consistency <= ctx.min_consistency or advice.immediate_percentage <= 0:
            draft.note(advice.reason)
            return CONTINUE

        carb_bolus = max(0.0, estimate.carbs / ctx.carb_ratio - draft.session_insulin)
        draft.dose = carb_bolus * advice.immediate_percentage
        reserved = carb_bolus * advice.reserved_percentage
        if reserved > self.config.reserved_floor:
            origin = draft.meal_id or f"meal-{ctx.now:%Y%m%d%H%M}"
            self.ledger.reserve(origin, reserved, estimate.carbs, obs.trend.phase.value, ctx.now)
            draft.reserved = reserved
        draft.confidence = min(1.0, obs.trend.consistency * estimate.confidence / 0.8)
        draft.note(f"Meal {estimate.carbs:.0f}g: {advice.reason}")
        return CONTINUE

    def _rule_correction(self, draft: DecisionDraft) -> RuleOutcome:
        if draft.dose > 0 or draft.estimate.meal_detected:
            return CONTINUE
        percentage = draft.immediate_percentage
        if percentage <= 0:
            return CONTINUE
        result = bolus_math.correction_dose(draft.ctx, draft.obs, percentage)
        if result.deliver:
            draft.dose = result.dose
            draft.phase = "correction"
        draft.note(result.reason)
        return CONTINUE

    def _rule_reserved_release(self, draft: DecisionDraft) -> RuleOutcome:
        since = draft.bolus.minutes_since_last(draft.ctx.now)
        headroom = max(0.0, draft.ctx.max_bolus - draft.dose)
        if headroom <= 0:
            return CONTINUE
        release = self.ledger.release(draft.ctx, draft.obs, since, headroom)
        if release is not None:
            draft.dose += release.amount
            draft.note(release.reason)
        draft.reserved = self.ledger.remaining(draft.ctx.now)
        return CONTINUE

    def _rule_early_boost(self, draft: DecisionDraft) -> RuleOutcome:
        if draft.obs.trend.phase != TrendPhase.RISING:
            return CONTINUE
        boost = bolus_math.early_boost(draft.ctx, draft.obs, draft.dose)
        if boost > 0:
            draft.dose += boost
            draft.note(f"Early boost +{boost:.2f}U")
        return CONTINUE

    def _rule_cadence(self, draft: DecisionDraft) -> RuleOutcome:
        if draft.dose <= 0:
            return CONTINUE
        allowed, reason = self.phased.can_bolus(
            draft.ctx.now, draft.estimate.carbs, draft.ctx.night, draft.ctx.min_minutes_between_bolus
        )
        if allowed:
            return CONTINUE
        draft.note(reason)
        return Locked(draft.base_decision(dose=0.0, deliver=False, phase="bolus_cadence"), "cadence")

    def _rule_post_safety(self, draft: DecisionDraft) -> RuleOutcome:
        if draft.dose <= 0:
            return CONTINUE
        candidate = min(draft.dose, draft.ctx.max_bolus)
        veto = self.gate.evaluate(
            POST, draft.ctx, draft.obs, candidate, draft.bolus, draft.meal_active, draft.cob
        )
        if veto.allowed:
            return CONTINUE
        relaxed = self.gate.relax(veto, draft.obs, candidate)
        if relaxed is not None:
            critical = self.gate.evaluate_critical(draft.ctx, draft.obs, relaxed, draft.cob)
            if critical.allowed:
                logger.warning("Post-safety relaxed to %.2fU: %s", relaxed, veto.reason)
                decision = draft.base_decision(
                    dose=relaxed,
                    deliver=True,
                    reason=f"{veto.reason}; relaxed to {relaxed:.2f}U in rising phase",
                    phase="rising_safety_relaxed",
                )
                return Locked(decision, "post_safety")
            veto = critical
        return Locked(self._veto_decision(draft, veto), "post_safety")

    # Finalization

    def _finalize(self, draft: DecisionDraft, locked: Optional[Locked]) -> DoseDecision:
        ctx = draft.ctx
        if locked is not None:
            decision = locked.decision
        else:
            dose = draft.dose
            reason = draft.reason or f"{draft.obs.trend.phase.value.capitalize()} phase: no dose needed"
            decision = draft.base_decision(dose=dose, deliver=dose > 0, reason=reason)

        dose = min(max(0.0, decision.dose), ctx.max_bolus)
        if not decision.deliver:
            dose = 0.0

        split = self.hybrid.split(ctx, draft.obs, dose)
        decision.bolus_amount = bolus_math.round_dose(split.bolus, ceiling=ctx.max_bolus)
        decision.dose = decision.bolus_amount
        decision.hybrid_percentage = split.percentage
        active = self.hybrid.current(ctx.now)
        decision.basal_rate = active.rate if active is not None else 0.0
        decision.deliver = decision.dose > 0 or split.basal_units > 0
        decision.reserved_dose = max(0.0, self.ledger.remaining(ctx.now))
        decision.confidence = max(0.0, min(1.0, decision.confidence))

        # a split sent wholly to basal is still insulin for cadence and the gate
        delivered = decision.dose + split.basal_units
        if delivered > 0:
            self.phased.record(ctx.now, delivered)
            self.meals.record_insulin(delivered)
        return decision
