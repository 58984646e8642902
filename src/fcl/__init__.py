# src/fcl/__init__.py

__version__ = "0.1.0"

from .api.interfaces import Clock, FixedClock, GlucoseHistoryProvider, InMemoryHistoryProvider, SystemClock
from .api.models import (
    AdviceDirection,
    BGSample,
    ConsolidatedAdvice,
    DoseDecision,
    MealSession,
    ParameterAdvice,
    TrendPhase,
    TrendState,
)
from .core.config import EngineConfig
from .core.errors import ComputationFault, ConfigError, ErrorKind, FCLError, InputError
from .core.parameters import ParameterId
from .core.preferences import PreferenceStore
from .core.safety import SafetyConfig
from .engine import FCLEngine
from .highlevel import decide, replay
from .utils.persistence import InMemoryStore, JsonFileStore
from .utils.telemetry import TelemetryLog

__all__ = [
    "AdviceDirection",
    "BGSample",
    "Clock",
    "ComputationFault",
    "ConfigError",
    "ConsolidatedAdvice",
    "DoseDecision",
    "EngineConfig",
    "ErrorKind",
    "FCLEngine",
    "FCLError",
    "FixedClock",
    "GlucoseHistoryProvider",
    "InMemoryHistoryProvider",
    "InMemoryStore",
    "InputError",
    "JsonFileStore",
    "MealSession",
    "ParameterAdvice",
    "ParameterId",
    "PreferenceStore",
    "SafetyConfig",
    "SystemClock",
    "TelemetryLog",
    "TrendPhase",
    "TrendState",
    "__version__",
    "decide",
    "replay",
]
