"""Configuration loader for Culinary Lens."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict
import os
import yaml

from culinarylens.fusion import FusionParams
from culinarylens.resilience import RetryPolicy

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "default.yaml"
USER_CONFIG_PATH = Path.home() / ".config" / "culinarylens" / "config.yaml"


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _truthy(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes")


def load_config(path: Path | None = None) -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    if DEFAULT_CONFIG_PATH.exists():
        data = yaml.safe_load(DEFAULT_CONFIG_PATH.read_text()) or {}
    user_path = path or USER_CONFIG_PATH
    if user_path.exists():
        override = yaml.safe_load(user_path.read_text()) or {}
        data = _deep_merge(data, override)

    # Environment overrides - Server
    host = os.getenv("CULINARYLENS_HOST")
    port = os.getenv("CULINARYLENS_PORT")
    if host:
        data.setdefault("server", {})["host"] = host
    if port:
        try:
            data.setdefault("server", {})["port"] = int(port)
        except ValueError:
            pass

    # Environment overrides - Data directory
    data_dir = os.getenv("CULINARYLENS_DATA_DIR")
    if data_dir:
        data["data_dir"] = data_dir

    # Environment overrides - Health
    offline = os.getenv("CULINARYLENS_OFFLINE")
    if offline is not None:
        data.setdefault("health", {})["force_offline"] = _truthy(offline)
    probe_url = os.getenv("CULINARYLENS_PROBE_URL")
    if probe_url:
        data.setdefault("health", {})["probe_url"] = probe_url
    probe_ttl = os.getenv("CULINARYLENS_PROBE_TTL")
    if probe_ttl:
        try:
            data.setdefault("health", {})["probe_ttl_seconds"] = float(probe_ttl)
        except ValueError:
            pass

    return data


def _policy(raw: Dict[str, Any], default: RetryPolicy) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=int(raw.get("max_attempts", default.max_attempts)),
        initial_delay=float(raw.get("initial_delay", default.initial_delay)),
        backoff_multiplier=float(raw.get("backoff_multiplier", default.backoff_multiplier)),
    )


@dataclass
class Config:
    raw: Dict[str, Any]

    @property
    def server(self) -> Dict[str, Any]:
        return self.raw.get("server", {})

    @property
    def data_dir(self) -> Path:
        default = str(Path.home() / ".culinarylens")
        return Path(self.raw.get("data_dir", default)).expanduser()

    @property
    def gemini(self) -> Dict[str, Any]:
        return self.raw.get("gemini", {})

    @property
    def health(self) -> Dict[str, Any]:
        return self.raw.get("health", {})

    @property
    def resilience(self) -> Dict[str, Any]:
        return self.raw.get("resilience", {})

    @property
    def fusion(self) -> Dict[str, Any]:
        return self.raw.get("fusion", {})

    @property
    def perception(self) -> Dict[str, Any]:
        return self.raw.get("perception", {})

    @property
    def synthesis(self) -> Dict[str, Any]:
        return self.raw.get("synthesis", {})

    @property
    def force_offline(self) -> bool:
        return bool(self.health.get("force_offline", False))

    def critical_policy(self) -> RetryPolicy:
        """Retry budget for calls allowed to trip the session failover latch."""
        return _policy(self.resilience.get("critical", {}) or {}, RetryPolicy.critical())

    def asset_policy(self) -> RetryPolicy:
        return _policy(self.resilience.get("asset", {}) or {}, RetryPolicy.asset())

    def fusion_params(self) -> FusionParams:
        cfg = self.fusion
        defaults = FusionParams()
        weights = cfg.get("weights", {}) or {}
        return FusionParams(
            confirmed_floor=float(cfg.get("confirmed_floor", defaults.confirmed_floor)),
            memory_bias_per_confirmation=float(cfg.get("memory_bias_per_confirmation", defaults.memory_bias_per_confirmation)),
            memory_bias_cap=float(cfg.get("memory_bias_cap", defaults.memory_bias_cap)),
            coherence_min_steps=int(cfg.get("coherence_min_steps", defaults.coherence_min_steps)),
            coherence_high=float(cfg.get("coherence_high", defaults.coherence_high)),
            coherence_low=float(cfg.get("coherence_low", defaults.coherence_low)),
            perception_weight=float(weights.get("perception", defaults.perception_weight)),
            coherence_weight=float(weights.get("coherence", defaults.coherence_weight)),
            constraint_weight=float(weights.get("constraint", defaults.constraint_weight)),
        )


def get_config() -> Config:
    return Config(load_config())
