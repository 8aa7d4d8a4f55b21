"""
config/settings.py
Environment-driven configuration (pydantic-settings). Values also load from .env.
"""

from decimal import Decimal
from functools import lru_cache
from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ──────────────────────────────────────────
    APP_NAME: str = "Mentorship Tracker"
    APP_ENV: str = "development"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    SECRET_KEY: str

    # ── Server ───────────────────────────────────────────────
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 4

    # ── Database ─────────────────────────────────────────────
    DATABASE_URL: str
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 40
    DATABASE_POOL_TIMEOUT: int = 30
    DATABASE_CONNECT_ATTEMPTS: int = 5

    # ── Redis ────────────────────────────────────────────────
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_MAX_CONNECTIONS: int = 50
    REDIS_CONNECT_ATTEMPTS: int = 3

    # ── JWT ──────────────────────────────────────────────────
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    JWT_REFRESH_TOKEN_EXPIRE_DAYS: int = 30

    # ── CORS ─────────────────────────────────────────────────
    ALLOWED_ORIGINS: str = "http://localhost:3000"

    # ── Rate Limiting ────────────────────────────────────────
    RATE_LIMIT_UNAUTH_PER_MINUTE: int = 20

    # ── Wallet ───────────────────────────────────────────────
    STARTING_BALANCE: Decimal = Decimal("500.00")
    TOPUP_MIN_AMOUNT: Decimal = Decimal("1.00")
    TOPUP_MAX_AMOUNT: Decimal = Decimal("10000.00")
    ADMIN_WALLET_NUMBER: str = ""
    CURRENCY: str = "EGP"

    # ── Mentorship ───────────────────────────────────────────
    FACE_TO_FACE_SESSION_PRICE: Decimal = Decimal("500.00")
    FACE_TO_FACE_SESSION_DURATION_MINUTES: int = 60
    SLOT_DAY_START_HOUR: int = 9
    SLOT_DAY_END_HOUR: int = 22         # exclusive: last slot is 21:00 - 22:00
    SLOT_LENGTH_MINUTES: int = 60

    # ── Learning Platforms ───────────────────────────────────
    ENROLLMENT_DURATION_DAYS: int = 30

    # ── Dev Seed ─────────────────────────────────────────────
    SEED_ADMIN_EMAIL: str = ""
    SEED_ADMIN_PASSWORD: str = ""

    @field_validator("SLOT_DAY_END_HOUR")
    @classmethod
    def validate_slot_window(cls, v: int, info) -> int:
        start = info.data.get("SLOT_DAY_START_HOUR", 0)
        if not start < v <= 24:
            raise ValueError("SLOT_DAY_END_HOUR must be after SLOT_DAY_START_HOUR and at most 24")
        return v

    @property
    def allowed_origins_list(self) -> List[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
