"""
Ordered decision rules.

Each rule inspects the working draft and either locks a final decision or
lets the chain continue. Once a rule locks, later rules never run.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Union

from fcl.api.models import DoseDecision
from fcl.core.dosing.carbs import CarbEstimate
from fcl.core.dosing.context import DosingContext, Observation
from fcl.core.dosing.phased import BolusSnapshot


@dataclass(frozen=True)
class Locked:
    decision: DoseDecision
    rule: str = ""


class Continue:
    def __repr__(self) -> str:
        return "Continue"


CONTINUE = Continue()
RuleOutcome = Union[Locked, Continue]


@dataclass
class DecisionDraft:
    """Mutable working state threaded through the rule chain for one tick."""
    ctx: DosingContext
    obs: Observation
    bolus: BolusSnapshot
    estimate: CarbEstimate
    cob: float
    meal_active: bool
    meal_id: Optional[str] = None
    session_insulin: float = 0.0
    dose: float = 0.0
    reserved: float = 0.0
    reason_parts: List[str] = field(default_factory=list)
    phase: str = ""
    confidence: float = 0.0
    immediate_percentage: float = 0.0

    @property
    def reason(self) -> str:
        return "; ".join(p for p in self.reason_parts if p)

    def note(self, text: str) -> None:
        if text:
            self.reason_parts.append(text)

    def base_decision(self, **overrides) -> DoseDecision:
        values = dict(
            dose=0.0,
            reserved_dose=self.reserved,
            deliver=False,
            reason=self.reason,
            phase=self.phase or self.obs.trend.phase.value,
            confidence=self.confidence,
            meal_detected=self.estimate.meal_detected,
            detected_carbs=self.estimate.carbs,
            carbs_on_board=self.cob,
            timestamp=self.ctx.now,
        )
        values.update(overrides)
        return DoseDecision(**values)


Rule = Callable[[DecisionDraft], RuleOutcome]


def run_chain(rules: Sequence[Rule], draft: DecisionDraft) -> Optional[Locked]:
    for rule in rules:
        outcome = rule(draft)
        if isinstance(outcome, Locked):
            return outcome
    return None
