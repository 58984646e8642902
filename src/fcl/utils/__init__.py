from .persistence import InMemoryStore, JsonFileStore, PersistentKeyValueStore
from .telemetry import TelemetryLog, TelemetryRecord, read_glucose_csv, read_telemetry

__all__ = [
    "InMemoryStore",
    "JsonFileStore",
    "PersistentKeyValueStore",
    "TelemetryLog",
    "TelemetryRecord",
    "read_glucose_csv",
    "read_telemetry",
]
