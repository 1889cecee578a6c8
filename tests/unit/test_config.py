"""
Unit tests for configuration loading.
"""

import json

import pytest
from pydantic import ValidationError

from task_mesh.utils.config import (
    SystemConfig,
    build_config,
    get_config,
    load_config_from_env,
    load_config_from_file,
    set_config,
)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in (
        "DEBUG", "LOG_LEVEL", "JSON_LOGGING", "DATABASE_URL", "APP_PORT", "DAPR_HTTP_PORT",
        "TASK_MESH_MAX_ATTEMPTS", "TASK_MESH_BUS_BACKEND", "TASK_MESH_CONFIG",
        "TASK_MESH_ALLOW_SAME_AGENT_RETRY",
    ):
        monkeypatch.delenv(name, raising=False)
    yield
    set_config(None)


class TestSystemConfig:
    """Test defaults and validation."""

    def test_defaults(self):
        config = SystemConfig()

        assert config.orchestrator.max_attempts == 3
        assert config.orchestrator.default_timeout_seconds == 120.0
        assert config.registry.degraded_after_seconds == 60.0
        assert config.registry.offline_after_seconds == 120.0
        assert config.scoring.rolling_window == 20
        assert config.scoring.recency_decay == 0.95
        assert config.bus.results_topic == "task-results"
        assert config.bus.task_topic_prefix == "tasks."
        assert config.api.port == 3000

    def test_max_attempts_cannot_exceed_three(self):
        with pytest.raises(ValidationError):
            SystemConfig(orchestrator={"max_attempts": 4})

    def test_unknown_bus_backend_rejected(self):
        with pytest.raises(ValidationError):
            SystemConfig(bus={"backend": "carrier-pigeon"})


class TestConfigLoading:
    """Test file and environment sources."""

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("DEBUG", "true")
        monkeypatch.setenv("APP_PORT", "8080")
        monkeypatch.setenv("DATABASE_URL", "sqlite://")
        monkeypatch.setenv("TASK_MESH_ALLOW_SAME_AGENT_RETRY", "no")

        data = load_config_from_env()

        assert data == {
            "debug": True,
            "api": {"port": 8080},
            "persistence": {"database_url": "sqlite://"},
            "orchestrator": {"allow_same_agent_retry": False},
        }

    def test_missing_file_is_empty(self, tmp_path):
        assert load_config_from_file(tmp_path / "absent.yaml") == {}

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "task-mesh.yaml"
        path.write_text("orchestrator:\n  app_id: scheduler\nbus:\n  backend: dapr\n", encoding="utf-8")

        config = build_config(path)

        assert config.orchestrator.app_id == "scheduler"
        assert config.bus.backend == "dapr"

    def test_json_file(self, tmp_path):
        path = tmp_path / "task-mesh.json"
        path.write_text(json.dumps({"scoring": {"rolling_window": 50}}), encoding="utf-8")

        assert build_config(path).scoring.rolling_window == 50

    def test_env_wins_over_file_without_dropping_siblings(self, tmp_path, monkeypatch):
        path = tmp_path / "task-mesh.yaml"
        path.write_text("bus:\n  backend: dapr\n  dapr_http_port: 3600\n", encoding="utf-8")
        monkeypatch.setenv("DAPR_HTTP_PORT", "3700")

        config = build_config(path)

        assert config.bus.backend == "dapr"
        assert config.bus.dapr_http_port == 3700

    def test_global_config(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TASK_MESH_CONFIG", str(tmp_path / "absent.yaml"))
        set_config(None)

        config = get_config()
        assert get_config() is config

        replacement = SystemConfig(debug=True)
        set_config(replacement)
        assert get_config() is replacement
