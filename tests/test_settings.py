"""Unit tests for environment-driven settings."""

# pylint: disable=missing-class-docstring,missing-function-docstring

import pytest
from pydantic import ValidationError

from tablerepair.config import Settings
from tablerepair.repair.protocol import TableRepairer

ENV_VARS = (
    "NODE_ENV",
    "LOG_LEVEL",
    "GEMINI_API_KEY",
    "OPENROUTER_KEYS",
    "OPENROUTER_API_KEY",
    "WORKER_CONCURRENCY",
    "MAX_RETRY_ATTEMPTS",
    "RATE_LIMIT_PER_MINUTE",
    "RETRY_BASE_DELAY_MS",
    "MAX_FILE_SIZE_MB",
    "MAX_VERIFICATION_ATTEMPTS",
    "MAX_KEY_ROTATIONS",
    "USD_TO_BRL",
    "UPLOAD_DIR",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestFromEnv:

    def test_defaults(self, clean_env):
        settings = Settings.from_env()
        assert settings.environment == "development"
        assert settings.is_dev is True
        assert settings.worker_concurrency == 8
        assert settings.max_retry_attempts == 3
        assert settings.rate_limit_per_minute == 60
        assert settings.retry_base_delay_ms == 5000
        assert settings.openrouter_keys == []
        assert settings.gemini_api_key is None

    def test_values_are_coerced(self, clean_env):
        clean_env.setenv("WORKER_CONCURRENCY", "4")
        clean_env.setenv("USD_TO_BRL", "5.5")
        clean_env.setenv("UPLOAD_DIR", "/data/uploads")
        settings = Settings.from_env()
        assert settings.worker_concurrency == 4
        assert settings.usd_to_brl == 5.5
        assert str(settings.upload_dir) == "/data/uploads"

    def test_repair_limits_from_env(self, clean_env):
        clean_env.setenv("MAX_VERIFICATION_ATTEMPTS", "5")
        clean_env.setenv("MAX_KEY_ROTATIONS", "2")
        settings = Settings.from_env()
        assert settings.max_verification_attempts == 5
        assert settings.max_key_rotations == 2

    def test_repair_limits_reach_the_repairer(self, clean_env):
        clean_env.setenv("MAX_VERIFICATION_ATTEMPTS", "4")
        clean_env.setenv("MAX_KEY_ROTATIONS", "6")
        clean_env.setenv("OPENROUTER_KEYS", "k1")
        repairer = TableRepairer.from_settings(Settings.from_env())
        assert repairer.max_attempts == 4
        assert repairer.pool.max_key_rotations == 6

    def test_blank_values_keep_defaults(self, clean_env):
        clean_env.setenv("WORKER_CONCURRENCY", "  ")
        assert Settings.from_env().worker_concurrency == 8

    def test_comma_separated_keys(self, clean_env):
        clean_env.setenv("OPENROUTER_KEYS", "k1, k2,,k3 ")
        assert Settings.from_env().openrouter_keys == ["k1", "k2", "k3"]

    def test_single_key_joins_the_pool(self, clean_env):
        clean_env.setenv("OPENROUTER_KEYS", "k1,k2")
        clean_env.setenv("OPENROUTER_API_KEY", "k3")
        assert Settings.from_env().openrouter_keys == ["k1", "k2", "k3"]

    def test_single_key_is_not_duplicated(self, clean_env):
        clean_env.setenv("OPENROUTER_KEYS", "k1")
        clean_env.setenv("OPENROUTER_API_KEY", "k1")
        assert Settings.from_env().openrouter_keys == ["k1"]

    def test_invalid_number_fails_at_load(self, clean_env):
        clean_env.setenv("WORKER_CONCURRENCY", "0")
        with pytest.raises(ValidationError):
            Settings.from_env()


class TestValidation:

    def test_log_level_is_normalised(self):
        assert Settings(log_level=" debug ").log_level == "DEBUG"

    def test_unknown_log_level(self):
        with pytest.raises(ValidationError):
            Settings(log_level="LOUD")

    def test_unknown_environment(self):
        with pytest.raises(ValidationError):
            Settings(environment="staging")

    def test_max_file_size_bytes(self):
        assert Settings(max_file_size_mb=2).max_file_size_bytes == 2 * 1024 * 1024
