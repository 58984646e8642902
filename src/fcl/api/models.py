from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


class TrendPhase(str, Enum):
    RISING = "rising"
    PLATEAU = "plateau"
    DECLINING = "declining"
    UNCERTAIN = "uncertain"


class AdviceDirection(str, Enum):
    INCREASE = "increase"
    DECREASE = "decrease"


@dataclass(frozen=True)
class BGSample:
    """A single glucose reading with the insulin on board at that moment."""
    timestamp: datetime
    bg: float  # mmol/L
    iob: float = 0.0  # U

    def to_dict(self) -> Dict[str, Any]:
        return {"timestamp": self.timestamp.isoformat(), "bg": self.bg, "iob": self.iob}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BGSample":
        return cls(
            timestamp=parse_timestamp(data["timestamp"]),  # type: ignore[arg-type]
            bg=float(data["bg"]),
            iob=float(data.get("iob", 0.0)),
        )


@dataclass(frozen=True)
class TrendState:
    """Trend summary of a glucose window. Derivatives are in mmol/L per hour."""
    first_derivative: float = 0.0
    second_derivative: float = 0.0
    consistency: float = 0.0
    phase: TrendPhase = TrendPhase.UNCERTAIN
    transition_factor: float = 0.7
    data_points: int = 0

    @classmethod
    def uncertain(cls, data_points: int = 0) -> "TrendState":
        return cls(data_points=data_points)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "first_derivative": self.first_derivative,
            "second_derivative": self.second_derivative,
            "consistency": self.consistency,
            "phase": self.phase.value,
            "transition_factor": self.transition_factor,
            "data_points": self.data_points,
        }


@dataclass
class DoseDecision:
    """Outcome of one engine tick. `dose` is the bolus part actually requested."""
    dose: float = 0.0
    reserved_dose: float = 0.0
    deliver: bool = False
    basal_rate: float = 0.0
    bolus_amount: float = 0.0
    hybrid_percentage: float = 0.0
    reason: str = ""
    phase: str = TrendPhase.UNCERTAIN.value
    confidence: float = 0.0
    meal_detected: bool = False
    detected_carbs: float = 0.0
    carbs_on_board: float = 0.0
    timestamp: Optional[datetime] = None

    @classmethod
    def safe(cls, reason: str, phase: str = "safety", timestamp: Optional[datetime] = None) -> "DoseDecision":
        return cls(dose=0.0, deliver=False, reason=reason, phase=phase, timestamp=timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dose": self.dose,
            "reserved_dose": self.reserved_dose,
            "deliver": self.deliver,
            "basal_rate": self.basal_rate,
            "bolus_amount": self.bolus_amount,
            "hybrid_percentage": self.hybrid_percentage,
            "reason": self.reason,
            "phase": self.phase,
            "confidence": self.confidence,
            "meal_detected": self.meal_detected,
            "detected_carbs": self.detected_carbs,
            "carbs_on_board": self.carbs_on_board,
            "timestamp": _ts(self.timestamp),
        }


@dataclass
class ReservedBolus:
    amount: float
    carbs: float
    timestamp: datetime
    phase: str
    origin: str = "meal"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amount": self.amount,
            "carbs": self.carbs,
            "timestamp": self.timestamp.isoformat(),
            "phase": self.phase,
            "origin": self.origin,
        }


@dataclass
class MealDataPoint:
    timestamp: datetime
    bg: float
    iob: float
    insulin_delivered: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "bg": self.bg,
            "iob": self.iob,
            "insulin_delivered": self.insulin_delivered,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MealDataPoint":
        return cls(
            timestamp=parse_timestamp(data["timestamp"]),  # type: ignore[arg-type]
            bg=float(data["bg"]),
            iob=float(data.get("iob", 0.0)),
            insulin_delivered=float(data.get("insulin_delivered", 0.0)),
        )


@dataclass
class MealSession:
    """One meal from detection to completion."""
    id: str
    start_time: datetime
    start_bg: float
    detected_carbs: float = 0.0
    parameter_snapshot: Dict[str, float] = field(default_factory=dict)
    data_points: List[MealDataPoint] = field(default_factory=list)
    optimization_scheduled: bool = False
    end_time: Optional[datetime] = None
    end_reason: str = ""
    peak_bg: float = 0.0
    peak_time: Optional[datetime] = None
    total_insulin: float = 0.0
    bolus_count: int = 0
    detection_confidence: float = 0.0

    @property
    def closed(self) -> bool:
        return self.end_time is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "start_time": self.start_time.isoformat(),
            "start_bg": self.start_bg,
            "detected_carbs": self.detected_carbs,
            "parameter_snapshot": dict(self.parameter_snapshot),
            "data_points": [p.to_dict() for p in self.data_points],
            "optimization_scheduled": self.optimization_scheduled,
            "end_time": _ts(self.end_time),
            "end_reason": self.end_reason,
            "peak_bg": self.peak_bg,
            "peak_time": _ts(self.peak_time),
            "total_insulin": self.total_insulin,
            "bolus_count": self.bolus_count,
            "detection_confidence": self.detection_confidence,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MealSession":
        return cls(
            id=str(data["id"]),
            start_time=parse_timestamp(data["start_time"]),  # type: ignore[arg-type]
            start_bg=float(data["start_bg"]),
            detected_carbs=float(data.get("detected_carbs", 0.0)),
            parameter_snapshot={k: float(v) for k, v in data.get("parameter_snapshot", {}).items()},
            data_points=[MealDataPoint.from_dict(p) for p in data.get("data_points", [])],
            optimization_scheduled=bool(data.get("optimization_scheduled", False)),
            end_time=parse_timestamp(data.get("end_time")),
            end_reason=data.get("end_reason", ""),
            peak_bg=float(data.get("peak_bg", 0.0)),
            peak_time=parse_timestamp(data.get("peak_time")),
            total_insulin=float(data.get("total_insulin", 0.0)),
            bolus_count=int(data.get("bolus_count", 0)),
            detection_confidence=float(data.get("detection_confidence", 0.0)),
        )


@dataclass
class ParameterAdvice:
    parameter_name: str
    current_value: float
    recommended_value: float
    direction: AdviceDirection
    confidence: float
    reason: str
    timestamp: datetime

    @property
    def relative_change(self) -> float:
        if self.current_value == 0:
            return 0.0
        return (self.recommended_value - self.current_value) / abs(self.current_value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "parameter_name": self.parameter_name,
            "current_value": self.current_value,
            "recommended_value": self.recommended_value,
            "direction": self.direction.value,
            "confidence": self.confidence,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ParameterAdvice":
        return cls(
            parameter_name=str(data["parameter_name"]),
            current_value=float(data["current_value"]),
            recommended_value=float(data["recommended_value"]),
            direction=AdviceDirection(data["direction"]),
            confidence=float(data["confidence"]),
            reason=str(data.get("reason", "")),
            timestamp=parse_timestamp(data["timestamp"]),  # type: ignore[arg-type]
        )


@dataclass
class ConsolidatedEntry:
    parameter_name: str
    weighted_value: float
    confidence: float
    trend: str  # "increasing", "decreasing" or "stable"
    advice_count: int
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "parameter_name": self.parameter_name,
            "weighted_value": self.weighted_value,
            "confidence": self.confidence,
            "trend": self.trend,
            "advice_count": self.advice_count,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConsolidatedEntry":
        return cls(
            parameter_name=str(data["parameter_name"]),
            weighted_value=float(data["weighted_value"]),
            confidence=float(data["confidence"]),
            trend=str(data["trend"]),
            advice_count=int(data["advice_count"]),
            updated_at=parse_timestamp(data["updated_at"]),  # type: ignore[arg-type]
        )


@dataclass
class ConsolidatedAdvice:
    entries: Dict[str, ConsolidatedEntry] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "created_at": _ts(self.created_at),
            "entries": {name: entry.to_dict() for name, entry in self.entries.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConsolidatedAdvice":
        return cls(
            entries={name: ConsolidatedEntry.from_dict(e) for name, e in data.get("entries", {}).items()},
            created_at=parse_timestamp(data.get("created_at")),
        )
