"""
Tests for bridge configuration loading.
"""

import pytest

from bridge_config import BridgeConfig


BRIDGE_VARS = [
    "GOOGLE_CLIENT_ID", "GOOGLE_CLIENT_SECRET", "DEVELOPMENT_REDIRECT_URI",
    "PRODUCTION_REDIRECT_URI", "NODE_ENV", "TICKETING_API_BASE_URL",
    "TICKETING_REGISTER_ENDPOINT", "TICKETING_LOGIN_ENDPOINT",
    "TICKETING_CONFLICT_MESSAGE_FALLBACK", "PORT", "UPSTREAM_TIMEOUT", "REDIS_URL",
    "HANDOFF_ENCRYPTION_KEY", "RATE_LIMIT_ENABLED", "LOG_LEVEL", "CORS_ALLOW_ORIGINS",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Empty bridge environment; cwd moved so no stray .env is picked up."""
    for name in BRIDGE_VARS:
        # setenv first so teardown also removes values load_dotenv() wrote
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)
    return monkeypatch


class TestFromEnv:
    """BridgeConfig.from_env()"""

    def test_defaults(self, clean_env, tmp_path):
        config = BridgeConfig.from_env(dotenv_path=str(tmp_path / "missing.env"))

        assert config.environment == "development"
        assert config.port == 3001
        assert config.upstream_timeout == 10.0
        assert config.ticketing_register_endpoint == "/auth/register"
        assert config.ticketing_login_endpoint == "/auth/login"
        assert config.conflict_message_fallback is True
        assert config.redis_url is None
        assert config.rate_limit_enabled is True
        assert config.cors_allow_origins == ["*"]

    def test_reads_environment(self, clean_env, tmp_path):
        clean_env.setenv("GOOGLE_CLIENT_ID", "cid")
        clean_env.setenv("NODE_ENV", "production")
        clean_env.setenv("TICKETING_API_BASE_URL", "https://tickets.example.com/api/")
        clean_env.setenv("PORT", "8080")
        clean_env.setenv("TICKETING_CONFLICT_MESSAGE_FALLBACK", "false")
        clean_env.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")

        config = BridgeConfig.from_env(dotenv_path=str(tmp_path / "missing.env"))

        assert config.google_client_id == "cid"
        assert config.is_development is False
        assert config.ticketing_api_base_url == "https://tickets.example.com/api"
        assert config.port == 8080
        assert config.conflict_message_fallback is False
        assert config.cors_allow_origins == ["https://a.example", "https://b.example"]

    def test_invalid_numbers_fall_back_to_defaults(self, clean_env, tmp_path):
        clean_env.setenv("PORT", "not-a-port")
        clean_env.setenv("UPSTREAM_TIMEOUT", "soon")

        config = BridgeConfig.from_env(dotenv_path=str(tmp_path / "missing.env"))

        assert config.port == 3001
        assert config.upstream_timeout == 10.0

    def test_dotenv_file_is_loaded(self, clean_env, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("GOOGLE_CLIENT_SECRET=from-dotenv\nPORT=4000\n")

        config = BridgeConfig.from_env(dotenv_path=str(env_file))

        assert config.google_client_secret == "from-dotenv"
        assert config.port == 4000

    def test_environment_wins_over_dotenv(self, clean_env, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("PORT=4000\n")
        clean_env.setenv("PORT", "5000")

        config = BridgeConfig.from_env(dotenv_path=str(env_file))

        assert config.port == 5000


class TestDerivedSettings:

    def test_redirect_uri_follows_environment(self, config):
        assert config.redirect_uri == config.development_redirect_uri

        config.environment = "production"
        assert config.redirect_uri == config.production_redirect_uri

    def test_ticketing_urls(self, config):
        assert config.register_url == "https://tickets.example.com/api/auth/register"
        assert config.login_url == "https://tickets.example.com/api/auth/login"

    def test_missing_settings(self):
        config = BridgeConfig(google_client_id="cid", environment="production")

        missing = config.missing_settings()

        assert "GOOGLE_CLIENT_ID" not in missing
        assert "GOOGLE_CLIENT_SECRET" in missing
        assert "TICKETING_API_BASE_URL" in missing
        assert "PRODUCTION_REDIRECT_URI" in missing

    def test_describe_never_exposes_values(self, config):
        summary = config.describe()

        assert summary["GOOGLE_CLIENT_SECRET"] == "SET"
        assert summary["REDIS_URL"] == "NOT_SET"
        assert "client-secret" not in str(summary)
