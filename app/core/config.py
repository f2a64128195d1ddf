from decimal import Decimal
from pathlib import Path
import os

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Config(BaseSettings):
    # Database Configuration
    database_url: str = Field(
        default=f"sqlite+aiosqlite:///{Path(__file__).parent.parent.parent / 'data' / 'closing.db'}",
        alias="DB_URL",
    )

    # JWT Configuration (tokens are issued by the store's auth service)
    jwt_secret: str = Field(default="dev-only-secret-change-me-in-production", alias="JWT_SECRET")
    algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(default=720, alias="ACCESS_TOKEN_EXPIRE_MINUTES")

    # Close draft wizard
    draft_autosave_debounce_ms: int = Field(default=500, alias="DRAFT_AUTOSAVE_DEBOUNCE_MS")
    draft_finalize_stale_seconds: int = Field(default=120, alias="DRAFT_FINALIZE_STALE_SECONDS")
    draft_cleanup_max_age_hours: int = Field(default=72, alias="DRAFT_CLEANUP_MAX_AGE_HOURS")
    closing_cash_max: Decimal = Field(default=Decimal("999999.99"), alias="CLOSING_CASH_MAX")

    # Lottery day close
    lottery_prepare_ttl_seconds: int = Field(default=300, alias="LOTTERY_PREPARE_TTL_SECONDS")
    # False for POS integrations that only allow closing lottery from the day close wizard
    lottery_independent_close_allowed: bool = Field(
        default=True, alias="LOTTERY_INDEPENDENT_CLOSE_ALLOWED"
    )

    is_production: bool = (
        os.getenv("ENVIRONMENT", "development").lower() == "production"
    )

    @property
    def secret_key(self) -> str:
        return self.jwt_secret

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        populate_by_name=True,
    )


# Instantiate the settings
config = Config()
