"""OTP Guard — configuration loaded from environment."""

from enum import StrEnum

from pydantic_settings import BaseSettings


class Environment(StrEnum):
    """Deployment environment the process runs in."""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"

    @property
    def allows_test_hooks(self) -> bool:
        """Whether code echoing, simulated delivery and test codes may be used."""
        return self is not Environment.PRODUCTION


class Settings(BaseSettings):
    """Application-wide settings, loaded from .env or environment variables."""

    # ── Database ──────────────────────────────────────────
    database_url: str = "sqlite+aiosqlite:///./otp_guard.db"

    # ── App ───────────────────────────────────────────────
    app_name: str = "OTP Guard"
    environment: Environment = Environment.DEVELOPMENT
    debug: bool = False

    # ── Email (SMTP) ──────────────────────────────────────
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    email_from: str = ""
    smtp_timeout_seconds: float = 10.0

    # ── WhatsApp (AiSensy campaign API) ───────────────────
    aisensy_api_key: str = ""
    aisensy_api_url: str = "https://backend.aisensy.com/campaign/t1/api/v2"
    aisensy_campaign_name: str = "otp_auth"
    whatsapp_timeout_seconds: float = 20.0

    # ── One-time codes ────────────────────────────────────
    otp_code_length: int = 4
    otp_ttl_minutes: int = 5
    otp_default_max_requests: int = 5
    otp_default_window_minutes: int = 5
    otp_failure_threshold: int = 3
    otp_test_codes_enabled: bool = False
    delivery_timeout_seconds: float = 25.0

    # ── Admin settings / maintenance ──────────────────────
    settings_cache_ttl_seconds: float = 60.0
    cleanup_interval_seconds: float = 600.0
    default_platform_name: str = "OTP Guard"
    default_contact_email: str = "no-reply@example.com"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


# Singleton settings instance
settings = Settings()
