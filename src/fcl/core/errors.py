from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(Enum):
    INPUT = "input_error"
    CONFIG = "config_error"
    SAFETY_VETO = "safety_veto"
    COMPUTATION = "error"


class FCLError(RuntimeError):
    kind = ErrorKind.COMPUTATION


class InputError(FCLError):
    """Insufficient or invalid glucose history."""
    kind = ErrorKind.INPUT


class ConfigError(FCLError):
    """Missing or out-of-range tunable."""
    kind = ErrorKind.CONFIG


class ComputationFault(FCLError):
    """Unexpected internal failure, wrapped at the engine boundary."""
    kind = ErrorKind.COMPUTATION


@dataclass
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    kind: Optional[ErrorKind] = None
    message: str = ""

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str) -> "Result[Any]":
        return cls(ok=False, kind=kind, message=message)

    @classmethod
    def from_exception(cls, exc: BaseException) -> "Result[Any]":
        kind = exc.kind if isinstance(exc, FCLError) else ErrorKind.COMPUTATION
        return cls(ok=False, kind=kind, message=str(exc) or exc.__class__.__name__)
