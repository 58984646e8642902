from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import ValidationError

from fcl.core.errors import ConfigError
from fcl.validation.schemas import WEEKDAYS, PreferencesModel, parse_time

logger = logging.getLogger("fcl")


class PreferenceStore:
    """
    Typed get/set over the bounded user tunables.

    Every write is validated against the same schema used for YAML files, so
    an out-of-range value never reaches the dose engine.
    """

    def __init__(self, model: Optional[PreferencesModel] = None, **overrides: Any):
        base = model or PreferencesModel()
        if overrides:
            try:
                base = PreferencesModel.model_validate({**base.model_dump(), **overrides})
            except ValidationError as exc:
                raise ConfigError(str(exc)) from exc
        self._model = base
        self._lock = threading.Lock()

    @property
    def model(self) -> PreferencesModel:
        return self._model

    def get(self, name: str) -> Any:
        if name not in PreferencesModel.model_fields:
            raise ConfigError(f"Unknown preference '{name}'")
        return getattr(self._model, name)

    def get_float(self, name: str) -> float:
        return float(self.get(name))

    def set(self, name: str, value: Any) -> None:
        if name not in PreferencesModel.model_fields:
            raise ConfigError(f"Unknown preference '{name}'")
        with self._lock:
            candidate = self._model.model_copy()
            try:
                setattr(candidate, name, value)
            except ValidationError as exc:
                raise ConfigError(f"Invalid value for {name}: {value!r}") from exc
            self._model = candidate
        logger.info("Preference %s set to %s", name, value)

    def snapshot(self) -> Dict[str, Any]:
        return self._model.model_dump()

    # Day / night schedule

    def is_weekend(self, when: datetime) -> bool:
        return WEEKDAYS[when.weekday()] in self._model.weekend_days.split(",")

    def is_night(self, when: datetime) -> bool:
        day_start = self._model.day_start_weekend if self.is_weekend(when) else self._model.day_start
        start_h, start_m = parse_time(self._model.night_start)
        end_h, end_m = parse_time(day_start)
        start = start_h * 60 + start_m
        end = end_h * 60 + end_m
        current = when.hour * 60 + when.minute
        if end < start:
            return current >= start or current < end
        return start <= current < end

    def max_bolus(self, when: datetime) -> float:
        return self._model.max_bolus_night if self.is_night(when) else self._model.max_bolus_day
