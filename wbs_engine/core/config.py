from __future__ import annotations

from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Literal, Optional

import yaml

from wbs_engine.core.errors import ConfigError


UnscheduledPolicy = Literal["exclude", "fail"]
ProgressWeighting = Literal["equal", "duration"]

UNSCHEDULED_POLICIES: tuple[str, ...] = ("exclude", "fail")
PROGRESS_WEIGHTINGS: tuple[str, ...] = ("equal", "duration")


@dataclass(frozen=True)
class EngineConfig:
    # Nodes with no derivable duration: drop them from the pass, or fail it.
    unscheduled_policy: UnscheduledPolicy = "exclude"
    progress_weighting: ProgressWeighting = "equal"
    lock_timeout_s: float = 5.0
    # Larger projects recompute on the background queue.
    sync_recompute_max_nodes: int = 500
    recompute_workers: int = 2
    max_critical_paths: int = 64


DEFAULT_CONFIG = EngineConfig()


def load_config_file(path: str | Path) -> dict[str, Any]:
    """Load engine overrides from a YAML file.

    Format:
      unscheduled_policy: exclude|fail
      progress_weighting: equal|duration
      lock_timeout_s: 2.5
      ...

    Returns the validated mapping of overrides (possibly empty).
    """
    p = Path(path)
    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(code="E_CONFIG_INVALID", message=f"config file is not valid YAML: {e}", file=str(p)) from e
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(
            code="E_CONFIG_INVALID",
            message="config file must be a mapping of key -> value",
            file=str(p),
        )

    known = {f.name for f in fields(EngineConfig)}
    out: dict[str, Any] = {}
    for k, v in raw.items():
        if k not in known:
            raise ConfigError(
                code="E_CONFIG_UNKNOWN_KEY",
                message=f"unknown config key: {k} (choose from: {', '.join(sorted(known))})",
                file=str(p),
                path=str(k),
            )
        out[k] = _check_value(k, v, file=str(p))
    return out


def merged_config(overrides: Optional[dict[str, Any]] = None) -> EngineConfig:
    """Return DEFAULT_CONFIG with optional overrides applied."""
    if not overrides:
        return DEFAULT_CONFIG
    checked = {k: _check_value(k, v) for k, v in overrides.items()}
    return replace(DEFAULT_CONFIG, **checked)


def load_and_merge(config_file: Optional[str]) -> EngineConfig:
    if not config_file:
        return merged_config()
    return merged_config(load_config_file(config_file))


def _check_value(key: str, value: Any, file: Optional[str] = None) -> Any:
    def bad(msg: str) -> ConfigError:
        return ConfigError(code="E_CONFIG_INVALID", message=msg, file=file, path=key)

    if key == "unscheduled_policy":
        if value not in UNSCHEDULED_POLICIES:
            raise bad(f"unscheduled_policy must be one of {list(UNSCHEDULED_POLICIES)}")
        return value
    if key == "progress_weighting":
        if value not in PROGRESS_WEIGHTINGS:
            raise bad(f"progress_weighting must be one of {list(PROGRESS_WEIGHTINGS)}")
        return value
    if key == "lock_timeout_s":
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            raise bad("lock_timeout_s must be a positive number")
        return float(value)
    if key == "sync_recompute_max_nodes":
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise bad("sync_recompute_max_nodes must be a non-negative integer")
        return value
    if key in ("recompute_workers", "max_critical_paths"):
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise bad(f"{key} must be a positive integer")
        return value
    raise bad(f"unknown config key: {key}")
