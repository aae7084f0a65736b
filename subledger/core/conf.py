from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

from subledger.core.path_conf import BASE_PATH


class Settings(BaseSettings):
    """Global configuration"""

    model_config = SettingsConfigDict(
        env_file=f'{BASE_PATH}/.env',
        env_file_encoding='utf-8',
        extra='ignore',
        case_sensitive=True,
    )

    # .env current environment
    ENVIRONMENT: Literal['dev', 'prod', 'test'] = 'dev'

    # FastAPI
    FASTAPI_API_V1_PATH: str = '/api/v1'
    FASTAPI_TITLE: str = 'Subledger'
    FASTAPI_DESCRIPTION: str = 'Subscription lifecycle and credit ledger service'

    # Database
    DATABASE_URL: str = f'sqlite+aiosqlite:///{BASE_PATH}/subledger.db'
    DATABASE_ECHO: bool = False

    # .env Stripe
    STRIPE_SECRET_KEY: str = ''
    STRIPE_WEBHOOK_SECRET: str = ''

    # Stripe
    STRIPE_WEBHOOK_TOLERANCE: int = 300  # 5 minutes
    STRIPE_SUCCESS_URL: str = 'http://localhost:3000/dashboard/subscription?success=true'
    STRIPE_CANCEL_URL: str = 'http://localhost:3000/dashboard/subscription?canceled=true'

    # .env Stripe price ids (plan x billing duration)
    STRIPE_PRICE_BASIC_MONTHLY: str = ''
    STRIPE_PRICE_BASIC_SEMIANNUAL: str = ''
    STRIPE_PRICE_BASIC_YEARLY: str = ''
    STRIPE_PRICE_PREMIUM_MONTHLY: str = ''
    STRIPE_PRICE_PREMIUM_SEMIANNUAL: str = ''
    STRIPE_PRICE_PREMIUM_YEARLY: str = ''
    STRIPE_PRICE_ULTIMATE_MONTHLY: str = ''
    STRIPE_PRICE_ULTIMATE_SEMIANNUAL: str = ''
    STRIPE_PRICE_ULTIMATE_YEARLY: str = ''

    # Plans
    FREE_PLAN_CREDITS: int = 50
    FREE_PERIOD_DAYS: int = 30
    TRIAL_DAYS: int = 7

    # Snapshot cache
    SNAPSHOT_CACHE_TTL: int = 60 * 5  # 5 minutes
    USAGE_CACHE_TTL: int = 30
    CACHE_SWEEP_INTERVAL: int = 60
    CACHE_MAX_ENTRIES: int = 10_000

    # Gateway circuit breaker
    GATEWAY_FAILURE_THRESHOLD: int = 5
    GATEWAY_RECOVERY_TIMEOUT: int = 60


@lru_cache
def get_settings() -> Settings:
    """Get the global settings"""
    return Settings()


settings = get_settings()
