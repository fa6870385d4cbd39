"""Tests for configuration loading and validation."""

import os

import pytest

from flowengine.config import (
    EngineConfig,
    LogLevel,
    get_config,
    get_development_config,
    get_production_config,
    get_testing_config,
    load_config,
    validate_config,
)
from flowengine.core.exceptions import ConfigurationError
from flowengine.models.core import BackoffStrategy


class TestEngineConfig:
    """Defaults, validation and conversion."""

    def test_defaults(self):
        config = EngineConfig()

        assert config.port == 8000
        assert config.max_parallelism == 10
        assert config.default_max_retries == 0
        assert config.log_level == LogLevel.INFO

    def test_invalid_values_rejected(self):
        with pytest.raises(ValueError):
            EngineConfig(port=70000)
        with pytest.raises(ValueError):
            EngineConfig(max_parallelism=0)
        with pytest.raises(ValueError):
            EngineConfig(default_max_retries=-1)
        with pytest.raises(ValueError):
            EngineConfig(node_timeout=0)

    def test_to_run_options(self):
        config = EngineConfig(parallel=True, default_max_retries=2, backoff_strategy=BackoffStrategy.EXPONENTIAL,
                              base_delay=0.5, max_delay=4.0, node_timeout=10.0)

        options = config.to_run_options()

        assert options.parallel
        assert options.default_max_retries == 2
        assert options.backoff_strategy == BackoffStrategy.EXPONENTIAL
        assert options.node_timeout == 10.0

    def test_uvicorn_config(self):
        uvicorn_config = EngineConfig(host="127.0.0.1", port=9000).get_uvicorn_config()

        assert uvicorn_config["host"] == "127.0.0.1"
        assert uvicorn_config["port"] == 9000
        assert uvicorn_config["log_level"] == "info"


class TestEnvironmentLoading:
    """FLOWENGINE_* environment variables and .env files."""

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("FLOWENGINE_PORT", "9100")
        monkeypatch.setenv("FLOWENGINE_PARALLEL", "yes")
        monkeypatch.setenv("FLOWENGINE_BACKOFF_STRATEGY", "EXPONENTIAL")
        monkeypatch.setenv("FLOWENGINE_NODE_TIMEOUT", "2.5")
        monkeypatch.setenv("FLOWENGINE_CORS_ORIGINS", "http://a.test, http://b.test")
        monkeypatch.setenv("FLOWENGINE_LOG_LEVEL", "debug")

        config = EngineConfig.from_env()

        assert config.port == 9100
        assert config.parallel
        assert config.backoff_strategy == BackoffStrategy.EXPONENTIAL
        assert config.node_timeout == 2.5
        assert config.cors_origins == ["http://a.test", "http://b.test"]
        assert config.log_level == LogLevel.DEBUG

    def test_get_config_is_cached(self):
        assert get_config() is get_config()

    def test_load_config_reads_dotenv_file(self, tmp_path):
        os.environ.pop("FLOWENGINE_DEFAULT_MAX_RETRIES", None)
        env_file = tmp_path / "engine.env"
        env_file.write_text("FLOWENGINE_DEFAULT_MAX_RETRIES=4\n")

        try:
            config = load_config(str(env_file))
            assert config.default_max_retries == 4
            assert get_config() is config
        finally:
            os.environ.pop("FLOWENGINE_DEFAULT_MAX_RETRIES", None)


class TestValidateConfig:
    """Cross-field checks."""

    def test_valid_presets(self):
        for config in (get_development_config(), get_production_config(), get_testing_config()):
            validate_config(config)

    def test_max_delay_below_base_delay(self):
        with pytest.raises(ConfigurationError) as exc_info:
            validate_config(EngineConfig(base_delay=5.0, max_delay=1.0))

        assert "max_delay" in exc_info.value.message

    def test_log_directory_created(self, tmp_path):
        log_file = tmp_path / "logs" / "engine.log"

        validate_config(EngineConfig(log_file=str(log_file)))

        assert log_file.parent.is_dir()

    def test_testing_preset_has_no_backoff(self):
        options = get_testing_config().to_run_options()

        assert options.base_delay == 0.0
        assert options.max_delay == 0.0
