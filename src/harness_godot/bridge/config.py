import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Optional

DEFAULT_OPERATIONS_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "godot_operations.gd"


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class BridgeConfig:
    """Runtime settings for the bridge.

    ``strict_path_validation`` defaults to False so that deployments relying on
    the guessed fallback executable keep starting. Strict mode will become the
    default in a future release.
    """

    godot_path: Optional[str] = None
    strict_path_validation: bool = False
    debug: bool = False
    engine_debug: bool = True
    operations_script: str = str(DEFAULT_OPERATIONS_SCRIPT)
    operation_timeout_seconds: float = 300.0
    probe_timeout_seconds: float = 10.0
    stop_grace_seconds: float = 5.0
    output_max_lines: int = 10000

    @classmethod
    def from_env(cls) -> "BridgeConfig":
        return cls(
            godot_path=os.getenv("HARNESS_GODOT_BIN") or None,
            strict_path_validation=_env_flag("HARNESS_GODOT_STRICT_PATH", False),
            debug=_env_flag("HARNESS_GODOT_DEBUG", False) or os.getenv("DEBUG") == "true",
            engine_debug=_env_flag("HARNESS_GODOT_ENGINE_DEBUG", True),
            operations_script=os.getenv("HARNESS_GODOT_OPERATIONS_SCRIPT") or str(DEFAULT_OPERATIONS_SCRIPT),
            operation_timeout_seconds=_env_float("HARNESS_GODOT_OPERATION_TIMEOUT", 300.0),
            probe_timeout_seconds=_env_float("HARNESS_GODOT_PROBE_TIMEOUT", 10.0),
            stop_grace_seconds=_env_float("HARNESS_GODOT_STOP_GRACE", 5.0),
            output_max_lines=max(1, _env_int("HARNESS_GODOT_OUTPUT_MAX_LINES", 10000)),
        )

    def with_overrides(self, **overrides: Any) -> "BridgeConfig":
        values = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **values)
