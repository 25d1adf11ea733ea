# settings.py
from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Literal



class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    # -----------------------
    # Storage
    # -----------------------
    STORE_BACKEND: Literal["postgres", "memory"] = "postgres"
    DATABASE_URL: str = Field(default="")
    DB_STATEMENT_TIMEOUT_MS: int = 5000
    DB_IDLE_TX_TIMEOUT_MS: int = 30000
    DB_POOL_MIN: int = Field(default=1, ge=1)
    DB_POOL_MAX: int = Field(default=10, ge=1)

    # -----------------------
    # JWT
    # -----------------------
    JWT_SECRET: str = Field(default="dev-secret-change-me", min_length=16)
    JWT_ALG: str = Field(default="HS256")
    JWT_ACCESS_MINUTES: int = Field(default=60)

    # -----------------------
    # Payment processor (Mode Switch)
    # -----------------------
    PROCESSOR_MODE: Literal["mock", "stripe"] = "mock"
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_WEBHOOK_TOLERANCE_S: int = 300
    STRIPE_MAX_NETWORK_RETRIES: int = 0

    # used to build onboarding refresh/return urls
    APP_URL: str = "http://localhost:8000"
    ONBOARDING_REFRESH_PATH: str = "/payouts/onboarding/refresh"
    ONBOARDING_RETURN_PATH: str = "/payouts/onboarding/return"

    # -----------------------
    # Job posting economics (cents)
    # -----------------------
    CURRENCY: str = "usd"
    PLATFORM_FEE_CENTS: int = Field(default=250, ge=0)

    FIXED_MIN_CENTS: int = 1_000
    FIXED_MAX_CENTS: int = 1_000_000
    HOURLY_MIN_CENTS: int = 1_000
    HOURLY_MAX_CENTS: int = 50_000

    # -----------------------
    # Timeouts (seconds)
    # -----------------------
    AUTH_TIMEOUT_S: float = 12.0
    STATUS_TIMEOUT_S: float = 5.0
    COMMIT_TIMEOUT_S: float = 5.0

    # -----------------------
    # Compensation / recovery
    # -----------------------
    REFUND_MAX_ATTEMPTS: int = Field(default=3, ge=1)
    REFUND_BACKOFF_BASE_S: float = 0.5

    ONBOARDING_STALE_MINUTES: int = Field(default=60, ge=1)
    RECOVERY_MAX_ATTEMPTS: int = Field(default=3, ge=1)
    STATUS_POLL_SECONDS: int = Field(default=45, ge=1)
    # session polls stop on their own after this long without a renewed watch
    SESSION_POLL_TTL_MINUTES: int = Field(default=15, ge=1)



settings = Settings()
