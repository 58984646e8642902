from .consolidator import AdviceConsolidator, apply_symmetry_correction
from .meal_metrics import MealMetrics, extract_metrics
from .optimizer import MealOptimizer, Outcome, score_outcome
from .parameter_store import ParameterState, ParameterStateStore
from .worker import OptimizationWorker

__all__ = [
    "AdviceConsolidator",
    "MealMetrics",
    "MealOptimizer",
    "OptimizationWorker",
    "Outcome",
    "ParameterState",
    "ParameterStateStore",
    "apply_symmetry_correction",
    "extract_metrics",
    "score_outcome",
]
