from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve .env from backend project root so it loads regardless of cwd
_BACKEND_ROOT = Path(__file__).resolve().parent.parent.parent
_ENV_FILE = _BACKEND_ROOT / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=(str(_ENV_FILE), ".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str
    db_query_timeout_seconds: float = 10.0
    db_max_retries: int = 2
    db_retry_base_delay_seconds: float = 1.0
    slow_query_threshold_ms: int = 1000

    # Cache
    cache_ttl_seconds: int = 300
    cache_check_period_seconds: int = 600

    # CORS
    cors_origins: str = "http://localhost:3000"

    # Slot business rules
    slots_page_limit_default: int = 50
    slots_page_limit_max: int = 200
    slot_default_price: float = 50.0

    # Meeting links: "justhear_demo" or "custom" (custom needs meeting_base_url)
    meeting_provider: str = "justhear_demo"
    meeting_base_url: str = ""
    meeting_issue_timeout_seconds: float = 5.0

    # Env
    env: str = "development"

    # Email (SMTP). Leave smtp_host empty to disable sending.
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    from_email: str = ""
    from_name: str = "JustHear"
    site_name: str = "JustHear"
    contact_email: str = "support@justhear.com"

    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def email_enabled(self) -> bool:
        return bool(self.smtp_host and self.smtp_user and self.smtp_password and self.from_email)


settings = Settings()
