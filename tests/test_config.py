"""Tests for settings loading."""

import pytest
from pydantic import ValidationError

from reporthub.config import IngestSettings


@pytest.fixture
def clean_env(monkeypatch):
    for key in (
        "DATABASE_URL",
        "BLOB_BACKEND",
        "UPLOAD_CONCURRENCY",
        "WEBHOOK_URLS",
        "CORS_ORIGINS",
        "API_KEYS",
        "LOG_JSON",
        "LOG_LEVEL",
        "APP_URL",
        "STEPS_INLINE_MAX_BYTES",
    ):
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


class TestIngestSettings:
    def test_defaults(self, clean_env):
        settings = IngestSettings.from_env(load_env_file=False)
        assert settings.blob_backend == "local"
        assert settings.steps_inline_max_bytes == 0
        assert settings.steps_inline_max_count == 0
        assert settings.app_url == "http://localhost:3000"
        assert settings.api_keys == {}
        assert settings.log_json is False

    def test_from_env(self, clean_env):
        clean_env.setenv("DATABASE_URL", "postgresql://u@db/reports")
        clean_env.setenv("UPLOAD_CONCURRENCY", "3")
        clean_env.setenv("WEBHOOK_URLS", "https://a.test/hook, https://b.test/hook")
        clean_env.setenv("API_KEYS", "k1:proj-1,broken")
        clean_env.setenv("LOG_JSON", "true")
        clean_env.setenv("LOG_LEVEL", "debug")
        clean_env.setenv("APP_URL", "https://reports.test/")

        settings = IngestSettings.from_env(load_env_file=False)

        assert settings.database_url == "postgresql://u@db/reports"
        assert settings.upload_concurrency == 3
        assert settings.webhook_urls == ["https://a.test/hook", "https://b.test/hook"]
        assert settings.api_keys == {"k1": "proj-1"}
        assert settings.log_json is True
        assert settings.log_level == "DEBUG"
        assert settings.app_url == "https://reports.test"

    def test_invalid_values_rejected(self, clean_env):
        clean_env.setenv("BLOB_BACKEND", "ftp")
        with pytest.raises(ValidationError):
            IngestSettings.from_env(load_env_file=False)

    def test_frozen(self):
        settings = IngestSettings()
        with pytest.raises(ValidationError):
            settings.app_url = "https://other.test"
