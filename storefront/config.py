"""
Application configuration loaded from environment variables.
"""
from decimal import Decimal
from typing import Optional

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # ── Database ────────────────────────────────────────────────────────────
    # Set DATABASE_URL env var to use PostgreSQL in production.
    DATABASE_URL: str = "sqlite:///./storefront.db"
    DB_ECHO: bool = False          # Set True to log all SQL (dev only)

    # ── Application ─────────────────────────────────────────────────────────
    APP_NAME: str = "DigiVault Storefront"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # ── Logging ─────────────────────────────────────────────────────────────
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True          # False renders human-readable console lines

    # ── Money & orders ──────────────────────────────────────────────────────
    CURRENCY: str = "RUB"
    MAX_DEPOSIT_AMOUNT: Decimal = Decimal("100000")
    ORDER_NUMBER_PREFIX: str = "DV"

    # ── Deposits ────────────────────────────────────────────────────────────
    DEPOSIT_SUCCESS_URL: str = "/account/deposit?success=true"
    DEPOSIT_CANCEL_URL: str = "/account/deposit?cancelled=true"

    # ── Test payment provider ───────────────────────────────────────────────
    TEST_PROVIDER_ENABLED: bool = True
    TEST_PROVIDER_AUTO_COMPLETE: bool = True     # complete deposits synchronously
    TEST_PROVIDER_WEBHOOK_SECRET: Optional[str] = None

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
