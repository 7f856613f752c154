"""
Configuration Module

Environment-driven settings for the treasury engine, read with pydantic-settings
from ``TREASURY_*`` variables (or a ``.env`` file). The engine is handed one
instance at construction time.
"""

from pydantic import BaseModel, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional

from .currency import Currency
from .providers import TransferProviderName


class FeeTier(BaseModel):
    """Flat fee charged for transfers whose amount falls in [min_amount, max_amount]"""
    min_amount: int = 0
    max_amount: Optional[int] = None
    fee: int


class TreasuryConfig(BaseSettings):
    """Treasury engine configuration"""

    model_config = SettingsConfigDict(
        env_prefix="TREASURY_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Database configuration
    database_url: str = "sqlite:///treasury.db"  # memory:// for tests

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Ledger rules (amounts in minor units)
    default_currency: str = "NGN"
    transfer_fee: int = 25_00
    fee_tiers: List[FeeTier] = []
    duplicate_window_seconds: int = 60

    # Settlement
    requery_after_minutes: int = 60
    max_requeries: int = 24
    clearance_sweep_interval_seconds: int = 900
    budget_expiry_sweep_interval_seconds: int = 3600
    job_max_attempts: int = 4
    job_backoff_seconds: float = 60.0
    job_workers: int = 2

    # Transfer provider
    default_transfer_provider: str = "mock"
    provider_base_url: str = ""
    provider_api_key: str = ""
    provider_timeout: float = 10.0

    # Bank verification provider
    bank_verification_base_url: str = ""
    bank_verification_api_key: str = ""
    counterparty_cache_ttl_seconds: int = 86_400

    # Notifications
    notification_webhook_url: str = ""  # Empty = webhook delivery disabled
    notification_timeout: int = 10

    # Feature flags
    enable_audit_logging: bool = True

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        level = v.upper()
        if level not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ValueError(f'Unknown log level {v!r}')
        return level

    @field_validator('log_format')
    @classmethod
    def validate_log_format(cls, v):
        if v not in ('json', 'text'):
            raise ValueError('Must be "json" or "text"')
        return v

    @field_validator('default_currency')
    @classmethod
    def validate_currency(cls, v):
        return Currency.from_code(v).code

    @field_validator('default_transfer_provider')
    @classmethod
    def validate_provider(cls, v):
        return TransferProviderName(v).value

    @property
    def currency(self) -> Currency:
        return Currency.from_code(self.default_currency)
