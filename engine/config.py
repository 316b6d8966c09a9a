"""Configuration loader for the replay runtime."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict

from .errors import ValidationError

ENV_PREFIX = "REPLAY_"

DEFAULTS: Dict[str, Any] = {
    "action_timeout_ms": 10000,
    "navigation_timeout_ms": 30000,
    "wait_timeout_ms": 10000,
    "poll_interval_ms": 250,
    "max_attempts": 3,
    "retry_backoff_base_ms": 500,
    "retry_backoff_max_ms": 5000,
    "fingerprint_threshold": 0.75,
    "verify_fingerprint": False,
    "max_loop_iterations": 1000,
    "max_subflow_depth": 8,
    "log_root": "runs",
    "headless": True,
}


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"true", "1", "yes", "on"}


@dataclass(slots=True)
class RunConfig:
    action_timeout_ms: int = DEFAULTS["action_timeout_ms"]
    navigation_timeout_ms: int = DEFAULTS["navigation_timeout_ms"]
    wait_timeout_ms: int = DEFAULTS["wait_timeout_ms"]
    poll_interval_ms: int = DEFAULTS["poll_interval_ms"]
    max_attempts: int = DEFAULTS["max_attempts"]
    retry_backoff_base_ms: int = DEFAULTS["retry_backoff_base_ms"]
    retry_backoff_max_ms: int = DEFAULTS["retry_backoff_max_ms"]
    fingerprint_threshold: float = DEFAULTS["fingerprint_threshold"]
    verify_fingerprint: bool = DEFAULTS["verify_fingerprint"]
    max_loop_iterations: int = DEFAULTS["max_loop_iterations"]
    max_subflow_depth: int = DEFAULTS["max_subflow_depth"]
    log_root: Path = field(default_factory=lambda: Path(DEFAULTS["log_root"]))
    headless: bool = DEFAULTS["headless"]

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any]) -> "RunConfig":
        data = dict(DEFAULTS)
        data.update({k: v for k, v in mapping.items() if k in DEFAULTS})
        return cls(
            action_timeout_ms=int(data["action_timeout_ms"]),
            navigation_timeout_ms=int(data["navigation_timeout_ms"]),
            wait_timeout_ms=int(data["wait_timeout_ms"]),
            poll_interval_ms=int(data["poll_interval_ms"]),
            max_attempts=max(1, int(data["max_attempts"])),
            retry_backoff_base_ms=int(data["retry_backoff_base_ms"]),
            retry_backoff_max_ms=int(data["retry_backoff_max_ms"]),
            fingerprint_threshold=float(data["fingerprint_threshold"]),
            verify_fingerprint=_as_bool(data["verify_fingerprint"]),
            max_loop_iterations=max(1, int(data["max_loop_iterations"])),
            max_subflow_depth=max(1, int(data["max_subflow_depth"])),
            log_root=Path(data["log_root"]),
            headless=_as_bool(data["headless"]),
        )


def _load_toml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("rb") as fh:
        return tomllib.load(fh)


def load_config(config_path: Path | None = None) -> RunConfig:
    """Load configuration from environment, optional TOML file, and defaults."""

    env_map: Dict[str, Any] = {}
    for key, value in os.environ.items():
        if key.startswith(ENV_PREFIX):
            env_map[key[len(ENV_PREFIX):].lower()] = value

    file_map: Dict[str, Any] = {}
    path = config_path or Path("config.toml")
    if path.exists():
        file_map = _load_toml(path).get("replay", {})

    merged = {**file_map, **env_map}
    return RunConfig.from_mapping(merged)


def ensure_run_directories(run_id: str, config: RunConfig) -> Dict[str, Path]:
    base = config.log_root / run_id
    if not base.resolve().is_relative_to(config.log_root.resolve()):
        raise ValidationError(f"Run directory for '{run_id}' escapes the log root", code="INVALID_RUN_ID")
    shots = base / "shots"
    base.mkdir(parents=True, exist_ok=True)
    shots.mkdir(parents=True, exist_ok=True)
    return {"base": base, "shots": shots}
