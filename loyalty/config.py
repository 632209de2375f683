from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import ExpiredRedemptionPolicy


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    app_env: str = Field(default="dev", alias="LOYALTY_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Calendar day boundary for streaks and clock for reward time windows.
    timezone: str = Field(default="UTC", alias="LOYALTY_TIMEZONE")

    redemption_expiry_days: int = Field(default=30, gt=0, alias="REDEMPTION_EXPIRY_DAYS")
    expired_redemption_policy: ExpiredRedemptionPolicy = Field(
        default=ExpiredRedemptionPolicy.FORFEIT,
        alias="EXPIRED_REDEMPTION_POLICY",
    )
    redeem_click_window_seconds: int = Field(default=10, gt=0, alias="REDEEM_CLICK_WINDOW_SECONDS")
    points_per_credit_unit: int = Field(default=100, gt=0, alias="POINTS_PER_CREDIT_UNIT")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
