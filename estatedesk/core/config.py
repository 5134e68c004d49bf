from functools import lru_cache
import os
from typing import List, Optional

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    debug: bool = False
    project_name: str = "EstateDesk Impersonation API"
    environment: str = "development"
    log_level: str = "INFO"

    # Raw CORS origins string - read from env
    cors_origins_raw: Optional[str] = Field(
        default=None,
        alias="CORS_ORIGINS"
    )

    @computed_field
    @property
    def backend_cors_origins(self) -> List[str]:
        """Parse CORS_ORIGINS from environment variable (comma-separated string)."""
        raw = self.cors_origins_raw
        if not raw:
            raw = os.environ.get("BACKEND_CORS_ORIGINS") or ""

        if not raw or not raw.strip():
            return []

        origins = []
        for origin in raw.split(","):
            origin = origin.strip()
            if origin:
                if origin.lower().startswith("https://"):
                    origin = "https://" + origin[8:]
                elif origin.lower().startswith("http://"):
                    origin = "http://" + origin[7:]
                origins.append(origin)
        return origins

    database_url: str = "sqlite+aiosqlite:///./estatedesk.db"

    jwt_secret_key: str = "change-me"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 12

    # Signs the browser-session cookie that carries impersonation state.
    # The cookie has no max-age, so it dies with the browser session.
    session_secret_key: str = "change-me-too"
    session_cookie_name: str = "estatedesk_session"

    # Safety monitor
    impersonation_warning_at_minutes: int = 25
    impersonation_inactivity_timeout_minutes: int = 30
    impersonation_hidden_inactivity_minutes: int = 5
    impersonation_extension_minutes: int = 30
    impersonation_expiry_check_seconds: int = 60
    impersonation_exit_redirect: str = "/rtm"

    # User search
    inactive_account_days: int = 30

    # Audit reporting and retry
    audit_summary_top_n: int = 10
    audit_retry_interval_seconds: int = 30
    audit_retry_max_attempts: int = 5
    audit_retry_queue_size: int = 1000

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
