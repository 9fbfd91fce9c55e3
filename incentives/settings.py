"""Runtime settings loaded from the environment."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="INCENTIVES_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    environment: str = "development"

    # Logging
    log_level: str = "INFO"
    log_format: str = "text"  # text, json

    # Notifications
    notification_default_limit: int = 50
    notification_max_limit: int = 200

    # Audit
    audit_log_limit: int = 1000

    # Reports
    report_default_months: int = 6
    report_min_months: int = 3
    report_max_months: int = 12
    report_top_policies: int = 5

    # E-sign collaborator
    signature_provider: str = "logging"

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


@lru_cache
def get_settings() -> Settings:
    return Settings()
