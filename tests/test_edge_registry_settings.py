from __future__ import annotations

from pathlib import Path

import pytest

from edge_registry.settings import RegistrySettings, load_settings


_ENV_KEYS = (
    "EDGE_REGISTRY_DB_PATH",
    "EDGE_REGISTRY_API_TOKEN",
    "EDGE_REGISTRY_MAX_CODE_BYTES",
    "EDGE_REGISTRY_TEST_RESULTS_RETENTION",
    "EDGE_REGISTRY_CONFIG",
    "EDGE_SANDBOX_TIMEOUT_SECONDS",
    "EDGE_SANDBOX_MEMORY_LIMIT_MB",
    "EDGE_SANDBOX_MAX_CONCURRENCY",
    "EDGE_SANDBOX_ALLOW_FETCH",
    "EDGE_SANDBOX_BASE_URL",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_defaults() -> None:
    s = RegistrySettings()
    assert s.api_token == ""
    assert s.test_results_retention == 100
    assert s.sandbox_timeout_seconds == 5.0
    assert s.sandbox_memory_limit_mb == 0
    assert s.sandbox_allow_fetch is True


def test_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("EDGE_REGISTRY_DB_PATH", "/tmp/x.db")
    monkeypatch.setenv("EDGE_SANDBOX_TIMEOUT_SECONDS", "2.5")
    monkeypatch.setenv("EDGE_SANDBOX_ALLOW_FETCH", "off")
    monkeypatch.setenv("EDGE_SANDBOX_MAX_CONCURRENCY", "not-a-number")
    s = RegistrySettings()
    assert s.db_path == "/tmp/x.db"
    assert s.sandbox_timeout_seconds == 2.5
    assert s.sandbox_allow_fetch is False
    assert s.sandbox_max_concurrency == 4


def test_sandbox_config_is_clamped() -> None:
    s = RegistrySettings(sandbox_timeout_seconds=0.0, sandbox_max_concurrency=0, sandbox_memory_limit_mb=-5)
    cfg = s.sandbox_config()
    assert cfg.timeout_seconds == 0.1
    assert cfg.max_concurrency == 1
    assert cfg.memory_limit_mb == 0


def test_yaml_overlay_fills_unset_keys(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    cfg_path = tmp_path / "edge.yaml"
    cfg_path.write_text(
        "db_path: /srv/edge.db\n"
        "sandbox_timeout_seconds: 3\n"
        "sandbox_allow_fetch: 'no'\n"
        "test_results_retention: 10\n"
        "unknown_key: ignored\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("EDGE_REGISTRY_TEST_RESULTS_RETENTION", "7")
    s = load_settings(str(cfg_path))
    assert s.db_path == "/srv/edge.db"
    assert s.sandbox_timeout_seconds == 3.0
    assert s.sandbox_allow_fetch is False
    # Environment wins over the file.
    assert s.test_results_retention == 7


def test_yaml_overlay_from_env_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    cfg_path = tmp_path / "edge.yaml"
    cfg_path.write_text("api_token: from-file\n", encoding="utf-8")
    monkeypatch.setenv("EDGE_REGISTRY_CONFIG", str(cfg_path))
    assert load_settings().api_token == "from-file"


def test_missing_config_file_is_ignored(tmp_path: Path) -> None:
    s = load_settings(str(tmp_path / "nope.yaml"))
    assert s == RegistrySettings()


def test_non_mapping_config_is_rejected(tmp_path: Path) -> None:
    cfg_path = tmp_path / "edge.yaml"
    cfg_path.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_settings(str(cfg_path))
