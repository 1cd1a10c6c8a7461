"""Configuration loader for the cacheable fetch layer."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

DEFAULT_STORAGE_PATH = os.path.expanduser("~/.cache/cacheable-fetch/responses.db")
STORAGE_PATH_ENV = "CACHEABLE_STORAGE_PATH"
DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[2] / "config" / "cacheable.defaults.yml"

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class FetchConfig:
    storage_path: Path
    shared: bool
    cache_heuristic: float
    immutable_min_ttl_sec: int
    timeout_sec: float
    compression: bool

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FetchConfig":
        storage = data.get("storage", {})
        policy = data.get("policy", {})
        transport = data.get("transport", {})
        return cls(
            storage_path=Path(os.path.expanduser(str(storage.get("path") or DEFAULT_STORAGE_PATH))),
            shared=bool(policy.get("shared", True)),
            cache_heuristic=float(policy.get("cache_heuristic", 0.1)),
            immutable_min_ttl_sec=int(policy.get("immutable_min_ttl_sec", 86400)),
            timeout_sec=float(transport.get("timeout_sec", 30)),
            compression=bool(storage.get("compression", True)),
        )


ENV_MAP = {
    "storage.path": STORAGE_PATH_ENV,
    "storage.compression": "CACHEABLE_COMPRESSION",
    "policy.shared": "CACHEABLE_SHARED",
    "policy.cache_heuristic": "CACHEABLE_CACHE_HEURISTIC",
    "policy.immutable_min_ttl_sec": "CACHEABLE_IMMUTABLE_MIN_TTL_SEC",
    "transport.timeout_sec": "CACHEABLE_TIMEOUT_SEC",
}


def load_yaml(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def merge_env_overrides(config_data: Dict[str, Any]) -> Dict[str, Any]:
    merged = json.loads(json.dumps(config_data))  # deep copy via json

    for dotted_key, env_name in ENV_MAP.items():
        if env_name not in os.environ:
            continue
        value: Any = os.environ[env_name]
        target = merged
        parts = dotted_key.split(".")
        for part in parts[:-1]:
            target = target.setdefault(part, {})
        last = parts[-1]
        if last in {"shared", "compression"}:
            value = value.strip().lower() in _TRUE_VALUES
        elif last == "immutable_min_ttl_sec":
            value = int(value)
        elif last in {"cache_heuristic", "timeout_sec"}:
            value = float(value)
        target[last] = value

    return merged


def load_config(config_path: Optional[str | Path] = None) -> FetchConfig:
    """
    Built-in defaults, then the YAML file, then environment overrides.

    Without an explicit path the shipped defaults file is read when present.
    """
    data: Dict[str, Any] = {}
    if config_path is not None:
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        data = load_yaml(path)
    elif DEFAULT_CONFIG_PATH.exists():
        data = load_yaml(DEFAULT_CONFIG_PATH)

    data = merge_env_overrides(data)
    return FetchConfig.from_dict(data)
