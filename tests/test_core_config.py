"""Tests for avs_pipeline/core/config.py: YAML cascade config loader."""

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from avs_pipeline.core.config import (
    ZERO_ADDRESS,
    AppConfig,
    CheckerConfig,
    DockerConfig,
    LedgerConfig,
    ReadinessConfig,
    SidecarConfig,
    SidecarsConfig,
    _deep_merge,
    load_config,
)
from avs_pipeline.core.exceptions import ConfigError

_ENV_VARS = (
    "DOCKER_HOST",
    "AVS_DOCKER_NETWORK",
    "TASK_MANAGER_ADDRESS",
    "AVS_RPC_ENDPOINT",
    "AVS_DEFAULT_REFERENCE",
    "AVS_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for var in _ENV_VARS:
        monkeypatch.delenv(var, raising=False)


class TestDefaults:
    def test_docker(self):
        c = DockerConfig()
        assert c.host == "unix:///var/run/docker.sock"
        assert c.network == "eigenavs"
        assert c.api_version is None

    def test_sidecars(self):
        c = SidecarsConfig()
        assert c.inference.container_port == 5000
        assert c.inference.name_prefix == "avs-inference"
        assert c.checker.container_port == 5009
        assert c.checker.image.endswith("audio-checking-docker:latest")

    def test_readiness_policy(self):
        c = ReadinessConfig()
        assert c.initial_interval_seconds == 0.2
        assert c.max_interval_seconds == 2.0
        assert c.timeout_seconds == 30.0

    def test_checker(self):
        c = CheckerConfig()
        assert c.endpoint == "/process-audio"
        assert c.reference_param == "file"

    def test_ledger_zero_address_fallback(self):
        assert LedgerConfig().task_manager_address == ZERO_ADDRESS


class TestValidation:
    def test_invalid_port(self):
        with pytest.raises(ValidationError):
            SidecarConfig(image="img", container_port=0, name_prefix="x")
        with pytest.raises(ValidationError):
            SidecarConfig(image="img", container_port=70000, name_prefix="x")

    def test_invalid_address(self):
        with pytest.raises(ValidationError):
            LedgerConfig(task_manager_address="0x1234")

    def test_checksum_case_address_accepted(self):
        addr = "0x15d34AAf54267DB7D7c367839AAf71A00a2C6A65"
        assert LedgerConfig(task_manager_address=addr).task_manager_address == addr


class TestDeepMerge:
    def test_nested_override(self):
        base = {"docker": {"network": "a", "timeout_seconds": 1}}
        merged = _deep_merge(base, {"docker": {"network": "b"}})
        assert merged == {"docker": {"network": "b", "timeout_seconds": 1}}
        assert base["docker"]["network"] == "a"


class TestLoadConfig:
    def test_repo_default_yaml(self, config_dir: Path):
        config = load_config(config_dir=config_dir)
        assert isinstance(config, AppConfig)
        assert config.docker.network == "eigenavs"
        assert config.sidecars.checker.container_port == 5009

    def test_missing_dir_gives_defaults(self, tmp_path: Path):
        config = load_config(config_dir=tmp_path)
        assert config == AppConfig()

    def test_env_overlay(self, tmp_path: Path):
        (tmp_path / "default.yaml").write_text(yaml.safe_dump({"docker": {"network": "base"}}))
        (tmp_path / "dev.yaml").write_text(yaml.safe_dump({"docker": {"network": "devnet"}}))
        assert load_config(config_dir=tmp_path, env="dev").docker.network == "devnet"
        assert load_config(config_dir=tmp_path).docker.network == "base"

    def test_env_vars_win(self, tmp_path: Path, monkeypatch):
        addr = "0x" + "ab" * 20
        monkeypatch.setenv("TASK_MANAGER_ADDRESS", addr)
        monkeypatch.setenv("DOCKER_HOST", "tcp://127.0.0.1:2375")
        monkeypatch.setenv("AVS_DEFAULT_REFERENCE", "fallback.wav")
        config = load_config(config_dir=tmp_path)
        assert config.ledger.task_manager_address == addr
        assert config.docker.host == "tcp://127.0.0.1:2375"
        assert config.trigger.default_reference == "fallback.wav"

    def test_invalid_env_address_is_config_error(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("TASK_MANAGER_ADDRESS", "not-an-address")
        with pytest.raises(ConfigError, match="Invalid configuration"):
            load_config(config_dir=tmp_path)

    def test_invalid_yaml(self, tmp_path: Path):
        (tmp_path / "default.yaml").write_text("docker: [unclosed")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(config_dir=tmp_path)
