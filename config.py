from decimal import Decimal
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables (prefix COMMISSION_)."""

    model_config = SettingsConfigDict(
        env_prefix="COMMISSION_",
        env_file=".env",
        extra="ignore",
    )

    # Database
    DATABASE_URL: str = "dbname=plots user=plots password=secret host=localhost port=5432"

    # App
    APP_NAME: str = "Plot Commission Service"
    LOG_LEVEL: str = "INFO"

    # Percentage rates applied to the sale amount (sold-mode)
    DIRECT_RATE: Decimal = Decimal("6")
    LEVEL1_RATE: Decimal = Decimal("2")
    LEVEL2_RATE: Decimal = Decimal("0.5")

    # Per-area rates (booked-mode projection, per unit of plot area)
    DIRECT_AREA_RATE: Decimal = Decimal("1000")
    LEVEL1_AREA_RATE: Decimal = Decimal("200")
    LEVEL2_AREA_RATE: Decimal = Decimal("50")

    # Paid percentage at which a booked plot becomes eligible for distribution
    COMMISSION_THRESHOLD: Decimal = Decimal("75")

    # Upline levels paid beyond the direct seller
    MAX_UPLINE_DEPTH: int = 2


@lru_cache()
def get_settings() -> Settings:
    return Settings()
