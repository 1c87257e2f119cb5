"""
test_config.py — load_settings() reads the environment once into frozen structs.
"""

import dataclasses

import pytest

from app.config import MIB, load_settings


@pytest.fixture
def clean_env(monkeypatch):
    for var in [
        "FORGE_CLIENT_ID", "FORGE_CLIENT_SECRET", "FORGE_BASE_URL", "FORGE_BUCKET_KEY",
        "FORGE_FORCE_TRANSLATION", "XAI_API_KEY", "OPENAI_API_KEY", "AI_TIMEOUT_SECONDS",
        "MAX_UPLOAD_BYTES", "POLL_INTERVAL_SECONDS", "POLL_MAX_ATTEMPTS", "RATE_TABLE_PATH",
        "LOG_FORMAT", "CORS_ORIGINS",
    ]:
        monkeypatch.delenv(var, raising=False)
    return monkeypatch


class TestLoadSettings:

    def test_defaults(self, clean_env):
        settings = load_settings()
        assert settings.forge.configured is False
        assert settings.forge.bucket_key == "estimate-ai-bucket"
        assert settings.pipeline.max_upload_bytes == 500 * MIB
        assert settings.pipeline.chunk_bytes == 5 * MIB
        assert settings.pipeline.poll_interval_seconds == 30.0
        assert settings.pipeline.poll_max_attempts == 60
        assert settings.ai.timeout_seconds == 60.0
        assert settings.json_logs is True

    def test_environment_overrides(self, clean_env):
        clean_env.setenv("FORGE_CLIENT_ID", "id")
        clean_env.setenv("FORGE_CLIENT_SECRET", "secret")
        clean_env.setenv("FORGE_BASE_URL", "https://forge.example/")
        clean_env.setenv("FORGE_BUCKET_KEY", "My-Bucket")
        clean_env.setenv("FORGE_FORCE_TRANSLATION", "false")
        clean_env.setenv("POLL_MAX_ATTEMPTS", "10")
        clean_env.setenv("LOG_FORMAT", "text")
        clean_env.setenv("CORS_ORIGINS", "https://a.example, https://b.example")
        settings = load_settings()
        assert settings.forge.configured is True
        assert settings.forge.base_url == "https://forge.example"
        assert settings.forge.bucket_key == "my-bucket"
        assert settings.forge.force_translation is False
        assert settings.pipeline.poll_max_attempts == 10
        assert settings.json_logs is False
        assert settings.cors_origins == ("https://a.example", "https://b.example")

    def test_blank_numeric_falls_back(self, clean_env):
        clean_env.setenv("AI_TIMEOUT_SECONDS", "  ")
        assert load_settings().ai.timeout_seconds == 60.0

    def test_settings_are_frozen(self, clean_env):
        settings = load_settings()
        with pytest.raises(dataclasses.FrozenInstanceError):
            settings.forge.client_id = "changed"
