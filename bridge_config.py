"""
Bridge Configuration

Loads the Google Auth Bridge settings from the environment (and an optional
.env file). Mirrors the variables of the original Node deployment so existing
.env files keep working.
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Optional, List

from dotenv import load_dotenv


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class BridgeConfig:
    """Runtime configuration for the bridge service."""
    google_client_id: str = ""
    google_client_secret: str = ""
    development_redirect_uri: str = ""
    production_redirect_uri: str = ""
    environment: str = "development"
    ticketing_api_base_url: str = ""
    ticketing_register_endpoint: str = "/auth/register"
    ticketing_login_endpoint: str = "/auth/login"
    conflict_message_fallback: bool = True
    port: int = 3001
    upstream_timeout: float = 10.0
    redis_url: Optional[str] = None
    handoff_encryption_key: Optional[str] = None
    rate_limit_enabled: bool = True
    log_level: str = "INFO"
    cors_allow_origins: List[str] = field(default_factory=lambda: ["*"])

    REQUIRED_SETTINGS = (
        ("GOOGLE_CLIENT_ID", "google_client_id"),
        ("GOOGLE_CLIENT_SECRET", "google_client_secret"),
        ("TICKETING_API_BASE_URL", "ticketing_api_base_url"),
    )

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "BridgeConfig":
        """
        Build configuration from environment variables.

        Args:
            dotenv_path: Optional .env file to load first (default: search from cwd).
                         Variables already present in the environment win.

        Returns:
            BridgeConfig
        """
        load_dotenv(dotenv_path=dotenv_path, override=False)

        try:
            port = int(os.getenv("PORT", "3001"))
        except ValueError:
            logging.warning(f"Invalid PORT '{os.getenv('PORT')}', defaulting to 3001")
            port = 3001

        try:
            timeout = float(os.getenv("UPSTREAM_TIMEOUT", "10"))
        except ValueError:
            logging.warning(f"Invalid UPSTREAM_TIMEOUT '{os.getenv('UPSTREAM_TIMEOUT')}', defaulting to 10s")
            timeout = 10.0

        origins = os.getenv("CORS_ALLOW_ORIGINS", "*")

        return cls(
            google_client_id=os.getenv("GOOGLE_CLIENT_ID", ""),
            google_client_secret=os.getenv("GOOGLE_CLIENT_SECRET", ""),
            development_redirect_uri=os.getenv("DEVELOPMENT_REDIRECT_URI", ""),
            production_redirect_uri=os.getenv("PRODUCTION_REDIRECT_URI", ""),
            environment=os.getenv("NODE_ENV", "development"),
            ticketing_api_base_url=os.getenv("TICKETING_API_BASE_URL", "").rstrip('/'),
            ticketing_register_endpoint=os.getenv("TICKETING_REGISTER_ENDPOINT", "/auth/register"),
            ticketing_login_endpoint=os.getenv("TICKETING_LOGIN_ENDPOINT", "/auth/login"),
            conflict_message_fallback=_env_flag("TICKETING_CONFLICT_MESSAGE_FALLBACK", "true"),
            port=port,
            upstream_timeout=timeout,
            redis_url=os.getenv("REDIS_URL") or None,
            handoff_encryption_key=os.getenv("HANDOFF_ENCRYPTION_KEY") or None,
            rate_limit_enabled=_env_flag("RATE_LIMIT_ENABLED", "true"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            cors_allow_origins=[o.strip() for o in origins.split(",") if o.strip()],
        )

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def redirect_uri(self) -> str:
        """Redirect URI registered with Google for the current environment."""
        if self.is_development:
            return self.development_redirect_uri
        return self.production_redirect_uri

    @property
    def register_url(self) -> str:
        return f"{self.ticketing_api_base_url}{self.ticketing_register_endpoint}"

    @property
    def login_url(self) -> str:
        return f"{self.ticketing_api_base_url}{self.ticketing_login_endpoint}"

    def missing_settings(self) -> List[str]:
        """Names of required variables that are not set (redirect URI included)."""
        missing = [env for env, attr in self.REQUIRED_SETTINGS if not getattr(self, attr)]
        if not self.redirect_uri:
            missing.append("DEVELOPMENT_REDIRECT_URI" if self.is_development else "PRODUCTION_REDIRECT_URI")
        return missing

    def describe(self) -> dict:
        """Startup summary safe for logs: SET/NOT_SET instead of values."""
        def flag(value) -> str:
            return "SET" if value else "NOT_SET"

        return {
            "NODE_ENV": self.environment,
            "GOOGLE_CLIENT_ID": flag(self.google_client_id),
            "GOOGLE_CLIENT_SECRET": flag(self.google_client_secret),
            "DEVELOPMENT_REDIRECT_URI": flag(self.development_redirect_uri),
            "PRODUCTION_REDIRECT_URI": flag(self.production_redirect_uri),
            "TICKETING_API_BASE_URL": flag(self.ticketing_api_base_url),
            "REDIS_URL": flag(self.redis_url),
            "HANDOFF_ENCRYPTION_KEY": flag(self.handoff_encryption_key),
        }
