"""
Configuration management for Task Mesh.
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field

from ..models.core import (
    DEFAULT_TIMEOUT_SECONDS,
    DEGRADED_AFTER_SECONDS,
    MAX_ATTEMPTS,
    OFFLINE_AFTER_SECONDS,
)


class RegistryConfig(BaseModel):
    """Configuration for the agent registry and its key/value store."""
    store_backend: str = Field(default="memory", pattern="^(memory|file)$")
    store_path: str = Field(default="./data/agent-state")
    degraded_after_seconds: float = Field(default=DEGRADED_AFTER_SECONDS, gt=0)
    offline_after_seconds: float = Field(default=OFFLINE_AFTER_SECONDS, gt=0)


class ScoringConfig(BaseModel):
    """Configuration for agent scoring."""
    rolling_window: int = Field(default=20, ge=1, le=1000)
    recency_decay: float = Field(default=0.95, gt=0.0, le=1.0)
    neutral_success_rate: float = Field(default=0.5, ge=0.0, le=1.0)
    recovery_streak: int = Field(default=3, ge=1)
    recovery_boost: float = Field(default=1.05, ge=1.0, le=1.1)
    last_used_penalty: float = Field(default=0.95, ge=0.9, le=1.0)
    health_check_timeout_seconds: float = Field(default=3.0, gt=0)
    health_cache_seconds: float = Field(default=10.0, ge=0)


class OrchestratorConfig(BaseModel):
    """Configuration for the task orchestrator."""
    app_id: str = Field(default="orchestrator", min_length=1)
    max_attempts: int = Field(default=MAX_ATTEMPTS, ge=1, le=MAX_ATTEMPTS)
    default_timeout_seconds: float = Field(default=DEFAULT_TIMEOUT_SECONDS, gt=0)
    allow_same_agent_retry: bool = Field(default=True)
    completed_retention_seconds: float = Field(default=300.0, ge=0)
    completed_retention_max: int = Field(default=1000, ge=0)


class PersistenceConfig(BaseModel):
    """Configuration for the relational store (checkpoints, history, events)."""
    database_url: str = Field(default="sqlite:///./data/task-mesh.db")
    busy_timeout_ms: int = Field(default=5000, ge=1)
    history_backend: str = Field(default="database", pattern="^(memory|database)$")
    event_log_enabled: bool = Field(default=True)


class BusConfig(BaseModel):
    """Configuration for the message bus."""
    backend: str = Field(default="memory", pattern="^(memory|dapr)$")
    pubsub_name: str = Field(default="agent-pubsub")
    results_topic: str = Field(default="task-results")
    task_topic_prefix: str = Field(default="tasks.")
    dapr_host: str = Field(default="localhost")
    dapr_http_port: int = Field(default=3500, ge=1, le=65535)
    publish_timeout_seconds: float = Field(default=5.0, gt=0)
    publish_max_retries: int = Field(default=2, ge=0, le=10)


class ApiConfig(BaseModel):
    """Configuration for the HTTP control plane."""
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000, ge=1, le=65535)


class SystemConfig(BaseModel):
    """Main system configuration."""
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    json_logging: bool = Field(default=False)

    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    bus: BusConfig = Field(default_factory=BusConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


# (env var, section or None, field, converter)
_ENV_OVERRIDES = [
    ("DEBUG", None, "debug", _env_bool),
    ("LOG_LEVEL", None, "log_level", str),
    ("JSON_LOGGING", None, "json_logging", _env_bool),
    ("TASK_MESH_APP_ID", "orchestrator", "app_id", str),
    ("TASK_MESH_MAX_ATTEMPTS", "orchestrator", "max_attempts", int),
    ("TASK_MESH_DEFAULT_TIMEOUT", "orchestrator", "default_timeout_seconds", float),
    ("TASK_MESH_ALLOW_SAME_AGENT_RETRY", "orchestrator", "allow_same_agent_retry", _env_bool),
    ("TASK_MESH_REGISTRY_BACKEND", "registry", "store_backend", str),
    ("TASK_MESH_REGISTRY_PATH", "registry", "store_path", str),
    ("TASK_MESH_ROLLING_WINDOW", "scoring", "rolling_window", int),
    ("DATABASE_URL", "persistence", "database_url", str),
    ("TASK_MESH_HISTORY_BACKEND", "persistence", "history_backend", str),
    ("TASK_MESH_BUS_BACKEND", "bus", "backend", str),
    ("DAPR_HOST", "bus", "dapr_host", str),
    ("DAPR_HTTP_PORT", "bus", "dapr_http_port", int),
    ("TASK_MESH_PUBSUB_NAME", "bus", "pubsub_name", str),
    ("APP_PORT", "api", "port", int),
]


def load_config_from_env() -> Dict[str, Any]:
    """
    Collect configuration overrides from environment variables.

    Returns:
        Dict[str, Any]: Nested partial configuration containing only the
        values that were set
    """
    config_data: Dict[str, Any] = {}

    for env_name, section, field_name, convert in _ENV_OVERRIDES:
        raw = os.getenv(env_name)
        if not raw:
            continue
        target = config_data if section is None else config_data.setdefault(section, {})
        target[field_name] = convert(raw)

    return config_data


def load_config_from_file(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load raw configuration from a JSON or YAML file.

    Args:
        config_path: Path to configuration file

    Returns:
        Dict[str, Any]: Raw configuration data (empty when the file is absent)
    """
    if config_path is None:
        config_path = Path(os.getenv("TASK_MESH_CONFIG", "task-mesh.yaml"))

    if not config_path.exists():
        return {}

    with open(config_path, 'r', encoding='utf-8') as f:
        if config_path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(f)
        else:
            data = json.load(f)

    return data or {}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def build_config(config_path: Optional[Path] = None) -> SystemConfig:
    """
    Build configuration from file, then environment overrides.

    Args:
        config_path: Optional explicit configuration file

    Returns:
        SystemConfig: Validated configuration
    """
    data = _deep_merge(load_config_from_file(config_path), load_config_from_env())
    return SystemConfig(**data)


# Global configuration instance
_config: Optional[SystemConfig] = None


def get_config() -> SystemConfig:
    """
    Get the global configuration instance.

    Returns:
        SystemConfig: Global configuration
    """
    global _config
    if _config is None:
        _config = build_config()
    return _config


def set_config(config: Optional[SystemConfig]) -> None:
    """
    Set (or with None, reset) the global configuration instance.

    Args:
        config: Configuration to set as global
    """
    global _config
    _config = config
