"""Configuration loader for the AVS sidecar pipeline.

Loads config from a YAML cascade: config/default.yaml is always loaded,
then environment-specific overrides, then environment variables.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from avs_pipeline.core.exceptions import ConfigError

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
DEFAULT_DOCKER_HOST = "unix:///var/run/docker.sock"

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


# ---------------------------------------------------------------------------
# Config schema
# ---------------------------------------------------------------------------

class DockerConfig(BaseModel):
    host: str = DEFAULT_DOCKER_HOST
    api_version: Optional[str] = None
    network: str = "eigenavs"
    create_network: bool = True
    timeout_seconds: float = 60.0


class SidecarConfig(BaseModel):
    image: str
    container_port: int = Field(gt=0, le=65535)
    name_prefix: str
    health_path: Optional[str] = None


class SidecarsConfig(BaseModel):
    inference: SidecarConfig = Field(
        default_factory=lambda: SidecarConfig(
            image="stevenmomenta/pytorch-audio-inference:latest",
            container_port=5000,
            name_prefix="avs-inference",
        )
    )
    checker: SidecarConfig = Field(
        default_factory=lambda: SidecarConfig(
            image="stevenmomenta/audio-checking-docker:latest",
            container_port=5009,
            name_prefix="avs-checker",
        )
    )


class ReadinessConfig(BaseModel):
    initial_interval_seconds: float = Field(default=0.2, gt=0)
    max_interval_seconds: float = Field(default=2.0, gt=0)
    multiplier: float = Field(default=2.0, ge=1.0)
    timeout_seconds: float = Field(default=30.0, gt=0)
    service_host: str = "localhost"


class CheckerConfig(BaseModel):
    endpoint: str = "/process-audio"
    reference_param: Optional[str] = "file"
    timeout_seconds: float = 120.0


class LedgerConfig(BaseModel):
    task_manager_address: str = ZERO_ADDRESS
    rpc_endpoint: str = "http://localhost:8545"
    credential_scheme: str = "ecdsa"
    factory: Optional[str] = None  # "module:callable" building a Ledger from this config

    @field_validator("task_manager_address")
    @classmethod
    def _check_address(cls, value: str) -> str:
        if not _ADDRESS_RE.match(value):
            raise ValueError(f"Invalid task manager address: {value!r}")
        return value


class TriggerConfig(BaseModel):
    default_reference: str = "p270_306.wav"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class AppConfig(BaseModel):
    docker: DockerConfig = Field(default_factory=DockerConfig)
    sidecars: SidecarsConfig = Field(default_factory=SidecarsConfig)
    readiness: ReadinessConfig = Field(default_factory=ReadinessConfig)
    checker: CheckerConfig = Field(default_factory=CheckerConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    trigger: TriggerConfig = Field(default_factory=TriggerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

# Environment variable -> (section, key)
_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "DOCKER_HOST": ("docker", "host"),
    "AVS_DOCKER_NETWORK": ("docker", "network"),
    "TASK_MANAGER_ADDRESS": ("ledger", "task_manager_address"),
    "AVS_RPC_ENDPOINT": ("ledger", "rpc_endpoint"),
    "AVS_DEFAULT_REFERENCE": ("trigger", "default_reference"),
    "AVS_LOG_LEVEL": ("logging", "level"),
}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base, returning a new dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    return data if isinstance(data, dict) else {}


def _apply_env_overrides(merged: dict[str, Any]) -> dict[str, Any]:
    for var, (section, key) in _ENV_OVERRIDES.items():
        value = os.getenv(var)
        if value:
            merged.setdefault(section, {})
            merged[section][key] = value
    return merged


def load_config(
    config_dir: Optional[Path] = None,
    env: Optional[str] = None,
) -> AppConfig:
    """Load application config from YAML cascade.

    Order: default.yaml -> {env}.yaml -> env vars (TASK_MANAGER_ADDRESS, DOCKER_HOST, ...)
    """
    if config_dir is None:
        config_dir = Path(__file__).parent.parent.parent / "config"

    merged = _load_yaml(config_dir / "default.yaml")

    if env:
        overlay = _load_yaml(config_dir / f"{env}.yaml")
        merged = _deep_merge(merged, overlay)

    merged = _apply_env_overrides(merged)

    try:
        return AppConfig(**merged)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
