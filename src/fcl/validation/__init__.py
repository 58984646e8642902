from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Union

import yaml
from pydantic import ValidationError

from fcl.core.config import EngineConfig
from fcl.core.errors import ConfigError
from fcl.validation.schemas import EngineConfigModel, PreferencesModel


def _read_yaml(path: Union[str, Path]) -> Dict[str, Any]:
    config_path = Path(path)
    if not config_path.is_file():
        raise ConfigError(f"Config file not found: {config_path}")
    data = yaml.safe_load(config_path.read_text()) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path}: expected a mapping at the top level")
    return data


def load_preferences(path: Union[str, Path]) -> PreferencesModel:
    return PreferencesModel.model_validate(_read_yaml(path))


def validate_preferences_dict(data: Dict[str, Any]) -> PreferencesModel:
    return PreferencesModel.model_validate(data)


def load_engine_config(path: Union[str, Path]) -> EngineConfig:
    model = EngineConfigModel.model_validate(_read_yaml(path))
    return EngineConfig().with_overrides(model.model_dump(exclude_unset=True))


def format_validation_error(error: ValidationError) -> List[str]:
    lines: List[str] = []
    for err in error.errors():
        loc = ".".join(str(part) for part in err.get("loc", [])) or "<root>"
        lines.append(f"{loc}: {err.get('msg')}")
    return lines


__all__ = [
    "EngineConfigModel",
    "PreferencesModel",
    "format_validation_error",
    "load_engine_config",
    "load_preferences",
    "validate_preferences_dict",
]
