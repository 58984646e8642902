from .models import (
    AdviceDirection,
    BGSample,
    ConsolidatedAdvice,
    ConsolidatedEntry,
    DoseDecision,
    MealDataPoint,
    MealSession,
    ParameterAdvice,
    ReservedBolus,
    TrendPhase,
    TrendState,
)
from .interfaces import Clock, FixedClock, GlucoseHistoryProvider, InMemoryHistoryProvider, SystemClock

__all__ = [
    "AdviceDirection",
    "BGSample",
    "Clock",
    "ConsolidatedAdvice",
    "ConsolidatedEntry",
    "DoseDecision",
    "FixedClock",
    "GlucoseHistoryProvider",
    "InMemoryHistoryProvider",
    "MealDataPoint",
    "MealSession",
    "ParameterAdvice",
    "ReservedBolus",
    "SystemClock",
    "TrendPhase",
    "TrendState",
]
