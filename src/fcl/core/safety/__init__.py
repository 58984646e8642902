from .config import SafetyConfig

__all__ = ["SafetyConfig", "SafetyGate", "GateResult", "project_bg"]


def __getattr__(name: str):
    if name in {"SafetyGate", "GateResult", "project_bg"}:
        from . import gate

        return getattr(gate, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
