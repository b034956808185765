"""Application configuration schema and validation."""

from decimal import Decimal
from typing import Literal

from pydantic import Field, PostgresDsn, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    env: Literal["dev", "staging", "prod"] = Field(
        ...,
        description="Application environment",
    )
    db_dsn: PostgresDsn = Field(
        ...,
        description="PostgreSQL database connection string",
    )
    db_pool_min: int = Field(
        default=2,
        ge=1,
        description="Minimum database connection pool size",
    )
    db_pool_max: int = Field(
        default=10,
        ge=1,
        description="Maximum database connection pool size",
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    paystack_secret_key: SecretStr = Field(
        default=SecretStr(""),
        description="Paystack secret key (API auth and webhook HMAC secret)",
    )
    paystack_base_url: str = Field(
        default="https://api.paystack.co",
        description="Paystack API base URL",
    )
    paystack_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=60,
        description="Timeout for a single payment processor call",
    )
    paystack_bank_country: str = Field(
        default="nigeria",
        description="Country used for bank listing",
    )
    bank_list_cache_ttl_seconds: int = Field(
        default=3600,
        ge=0,
        description="How long a fetched bank list is served from cache",
    )
    webhook_server_port: int = Field(
        default=8080,
        ge=1,
        le=65535,
        description="Port for the payment webhook / API server",
    )
    currency: str = Field(
        default="NGN",
        min_length=3,
        max_length=3,
        description="Settlement currency (single-currency ledger)",
    )
    min_withdrawal: Decimal = Field(
        default=Decimal("5000"),
        gt=0,
        description="Smallest payout a seller can request",
    )
    platform_commission_percentage: Decimal = Field(
        default=Decimal("3"),
        ge=0,
        le=100,
        description="Default platform commission on order revenue",
    )
    payout_requires_kyc: bool = Field(
        default=True,
        description="Reject payouts for owners without a VERIFIED identity result",
    )
    default_plan_slug: str = Field(
        default="basic",
        description="Plan whose limits apply once a subscription has lapsed",
    )
    admin_api_token: SecretStr = Field(
        default=SecretStr(""),
        description="Bearer token for operator payout endpoints (empty disables them)",
    )
    trial_plan_slug: str = Field(
        default="business",
        description="Plan whose limits apply while an account is on trial",
    )
    trial_days: int = Field(
        default=15,
        ge=1,
        le=90,
        description="Length of the free trial granted at signup",
    )
    billing_cycle_days: dict[str, int] = Field(
        default={"monthly": 30, "yearly": 365},
        description="Days of access bought by one payment per billing cycle",
    )
    ai_features: list[str] = Field(
        default=["ai_product_description", "ai_ad_copy", "ai_shop_review", "marketing_assistant"],
        description="Features gated on the plan's ai_features_enabled flag",
    )
    referral_tier_thresholds: dict[str, int] = Field(
        default={"bronze": 10, "silver": 50, "gold": 100},
        description="Rewarded referrals needed to reach each ambassador tier",
    )
    bronze_reward_days: int = Field(
        default=30,
        ge=1,
        description="Subscription days granted at the bronze tier",
    )
    silver_feature_days: int = Field(
        default=30,
        ge=1,
        description="Days a storefront stays featured at the silver tier",
    )

    @field_validator("db_pool_max")
    @classmethod
    def validate_pool_max(cls, v: int, info) -> int:
        """Ensure pool_max >= pool_min."""
        if "db_pool_min" in info.data and v < info.data["db_pool_min"]:
            raise ValueError("db_pool_max must be >= db_pool_min")
        return v

    @field_validator("billing_cycle_days")
    @classmethod
    def validate_billing_cycles(cls, v: dict[str, int]) -> dict[str, int]:
        """Every billing cycle must buy a positive number of days."""
        for cycle, days in v.items():
            if days <= 0:
                raise ValueError(f"billing cycle {cycle!r} must grant at least one day")
        return v

    @field_validator("referral_tier_thresholds")
    @classmethod
    def validate_tier_thresholds(cls, v: dict[str, int]) -> dict[str, int]:
        """Thresholds must cover bronze/silver/gold and escalate."""
        missing = {"bronze", "silver", "gold"} - set(v)
        if missing:
            raise ValueError(f"missing referral tiers: {sorted(missing)}")
        if not 0 < v["bronze"] <= v["silver"] <= v["gold"]:
            raise ValueError("referral tier thresholds must satisfy 0 < bronze <= silver <= gold")
        return v


_config: AppConfig | None = None


def get_config() -> AppConfig:
    """Get or create the singleton AppConfig instance."""
    global _config
    if _config is None:
        _config = AppConfig()
    return _config
