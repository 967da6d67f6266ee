"""
Application settings.

Loads configuration from environment variables using pydantic-settings.
"""

from decimal import Decimal
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="COMMISSION_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database
    database_url: str = "sqlite:///./commission_ledger.db"
    database_echo: bool = False

    # Civil day boundaries for settlement, quotas and withdrawal windows
    settlement_timezone: str = "Asia/Karachi"

    # Commission rates per ancestor level
    management_bonus_rates: dict[str, Decimal] = Field(
        default_factory=lambda: {
            "A": Decimal("0.08"),
            "B": Decimal("0.03"),
            "C": Decimal("0.01"),
        }
    )
    referral_reward_rates: dict[str, Decimal] = Field(
        default_factory=lambda: {
            "A": Decimal("0.10"),
            "B": Decimal("0.03"),
            "C": Decimal("0.01"),
        }
    )

    # Tasks
    default_daily_task_quota: int = Field(default=10, ge=0)

    # Settlement
    settlement_max_workers: int = Field(default=4, ge=1)
    settlement_failure_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    settlement_stale_after_minutes: int = Field(default=60, ge=1)
    settlement_cron_hour: int = Field(default=0, ge=0, le=23)
    settlement_cron_minute: int = Field(default=0, ge=0, le=59)
    scheduler_enabled: bool = False

    # Withdrawals
    minimum_withdrawal: int = Field(default=500, ge=0)
    weekly_withdrawal_cap: int = Field(default=100_000, ge=0)
    max_daily_withdrawals: int = Field(default=5, ge=1)
    withdrawal_fee_percentage: Decimal = Field(default=Decimal("10"), ge=0)

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    @field_validator("management_bonus_rates", "referral_reward_rates")
    @classmethod
    def validate_rates(cls, v: dict[str, Decimal]) -> dict[str, Decimal]:
        """Rates must be keyed by level A/B/C and lie in [0, 1]."""
        unknown = set(v) - {"A", "B", "C"}
        if unknown:
            raise ValueError(f"Unknown referral levels in rates: {sorted(unknown)}")
        for level, rate in v.items():
            if rate < 0 or rate > 1:
                raise ValueError(f"Rate for level {level} must be between 0 and 1")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {v}")
        return level


@lru_cache
def get_settings() -> Settings:
    return Settings()
