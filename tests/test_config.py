"""Tests for environment-driven engine configuration."""

import logging

import pytest

from metabolic_twin.config import ENGINE_CONFIG, EngineConfig, setup_logging


class TestEngineConfig:

    def test_defaults(self, monkeypatch):
        for var in ("MT_RESOLUTION_MINUTES", "MT_PARALLEL_TIME_SERIES", "MT_MAX_WORKERS",
                    "MT_PARALLEL_MIN_POINTS", "MT_LOG_LEVEL"):
            monkeypatch.delenv(var, raising=False)
        config = EngineConfig.from_env()
        assert config.resolution_minutes == 5
        assert config.parallel_time_series is False
        assert config.max_workers is None
        assert config.parallel_min_points == 288
        assert config.log_level == "WARNING"

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("MT_RESOLUTION_MINUTES", "15")
        monkeypatch.setenv("MT_PARALLEL_TIME_SERIES", "yes")
        monkeypatch.setenv("MT_MAX_WORKERS", "3")
        monkeypatch.setenv("MT_LOG_LEVEL", "debug")
        config = EngineConfig.from_env()
        assert config.resolution_minutes == 15
        assert config.parallel_time_series is True
        assert config.max_workers == 3
        assert config.worker_count == 3
        assert config.log_level == "DEBUG"

    def test_blank_max_workers_means_cpu_count(self, monkeypatch):
        monkeypatch.setenv("MT_MAX_WORKERS", " ")
        config = EngineConfig.from_env()
        assert config.max_workers is None
        assert config.worker_count >= 1

    @pytest.mark.parametrize("var,value", [
        ("MT_RESOLUTION_MINUTES", "0"),
        ("MT_MAX_WORKERS", "-2"),
        ("MT_PARALLEL_MIN_POINTS", "0"),
        ("MT_LOG_LEVEL", "chatty"),
    ])
    def test_invalid_values_rejected(self, monkeypatch, var, value):
        monkeypatch.setenv(var, value)
        with pytest.raises(ValueError):
            EngineConfig.from_env()

    def test_frozen(self):
        config = EngineConfig()
        with pytest.raises(AttributeError):
            config.resolution_minutes = 1


class TestSetupLogging:

    def test_configures_root_logger(self, monkeypatch):
        calls = []
        monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: calls.append(kwargs))
        setup_logging("info")
        assert calls[0]["level"] == "INFO"
        assert calls[0]["format"] == "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    def test_defaults_to_configured_level(self, monkeypatch):
        calls = []
        monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: calls.append(kwargs))
        setup_logging()
        assert calls[0]["level"] == ENGINE_CONFIG.log_level
