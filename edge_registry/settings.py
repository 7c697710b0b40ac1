from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml

from edge_sandbox import SandboxConfig


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    s = str(raw).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return bool(default)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        return int(str(raw).strip())
    except Exception:
        return int(default)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        return float(str(raw).strip())
    except Exception:
        return float(default)


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None:
        return str(default)
    s = str(raw).strip()
    return s if s else str(default)


# Settings field -> environment variable. A YAML overlay only fills fields whose variable is unset.
ENV_VARS: dict[str, str] = {
    "db_path": "EDGE_REGISTRY_DB_PATH",
    "api_token": "EDGE_REGISTRY_API_TOKEN",
    "max_code_bytes": "EDGE_REGISTRY_MAX_CODE_BYTES",
    "test_results_retention": "EDGE_REGISTRY_TEST_RESULTS_RETENTION",
    "sandbox_timeout_seconds": "EDGE_SANDBOX_TIMEOUT_SECONDS",
    "sandbox_memory_limit_mb": "EDGE_SANDBOX_MEMORY_LIMIT_MB",
    "sandbox_max_concurrency": "EDGE_SANDBOX_MAX_CONCURRENCY",
    "sandbox_allow_fetch": "EDGE_SANDBOX_ALLOW_FETCH",
    "sandbox_base_url": "EDGE_SANDBOX_BASE_URL",
}


@dataclass(frozen=True)
class RegistrySettings:
    db_path: str = field(default_factory=lambda: _env_str("EDGE_REGISTRY_DB_PATH", "/data/edge-registry.db"))

    # When set, every /edge-handlers route requires `Authorization: Bearer <token>`.
    api_token: str = field(default_factory=lambda: os.getenv("EDGE_REGISTRY_API_TOKEN", "").strip())

    # Upload guardrails.
    max_code_bytes: int = field(default_factory=lambda: _env_int("EDGE_REGISTRY_MAX_CODE_BYTES", 256_000))
    # Oldest test results beyond this count are evicted per handler.
    test_results_retention: int = field(
        default_factory=lambda: _env_int("EDGE_REGISTRY_TEST_RESULTS_RETENTION", 100)
    )

    # Sandbox
    sandbox_timeout_seconds: float = field(default_factory=lambda: _env_float("EDGE_SANDBOX_TIMEOUT_SECONDS", 5.0))
    sandbox_memory_limit_mb: int = field(default_factory=lambda: _env_int("EDGE_SANDBOX_MEMORY_LIMIT_MB", 0))
    sandbox_max_concurrency: int = field(default_factory=lambda: _env_int("EDGE_SANDBOX_MAX_CONCURRENCY", 4))
    sandbox_allow_fetch: bool = field(default_factory=lambda: _env_bool("EDGE_SANDBOX_ALLOW_FETCH", True))
    # Relative request URLs are resolved against this.
    sandbox_base_url: str = field(default_factory=lambda: _env_str("EDGE_SANDBOX_BASE_URL", "http://localhost"))

    def sandbox_config(self) -> SandboxConfig:
        return SandboxConfig(
            timeout_seconds=max(0.1, float(self.sandbox_timeout_seconds)),
            memory_limit_mb=max(0, int(self.sandbox_memory_limit_mb)),
            max_concurrency=max(1, int(self.sandbox_max_concurrency)),
            allow_fetch=bool(self.sandbox_allow_fetch),
            base_url=str(self.sandbox_base_url),
        )


def _coerce(current: Any, value: Any) -> Any:
    if isinstance(current, bool):
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "y", "on"}
        return bool(value)
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    return str(value).strip()


def load_settings(config_path: str | None = None) -> RegistrySettings:
    """
    Build settings from the environment, optionally overlaid by a YAML file.

    Environment variables win; the file only fills in keys whose variable is unset.
    `config_path` defaults to EDGE_REGISTRY_CONFIG; a missing file is ignored.
    """
    settings = RegistrySettings()
    path = config_path if config_path is not None else os.getenv("EDGE_REGISTRY_CONFIG", "")
    if not path or not Path(path).is_file():
        return settings

    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"config file must contain a mapping: {path}")

    known = {f.name for f in fields(RegistrySettings)}
    overlay: dict[str, Any] = {}
    for key, value in data.items():
        if key not in known or value is None:
            continue
        env_name = ENV_VARS.get(key)
        if env_name and os.getenv(env_name) is not None:
            continue
        overlay[key] = _coerce(getattr(settings, key), value)
    return replace(settings, **overlay) if overlay else settings
