"""
Storefront checkout service configuration.
"""
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings


def find_env_file() -> str:
    """Find .env file - check local dir, then project root."""
    local_env = Path(".env")
    root_env = Path("../.env")

    if local_env.exists():
        return str(local_env)
    elif root_env.exists():
        return str(root_env)
    return ".env"  # default


class Settings(BaseSettings):
    """Service settings from environment variables."""

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False

    # Logging
    log_level: str = "info"
    log_path: str = ""  # e.g. /app/logs/storefront.log

    # Version
    version: str = "1.0.0"

    # MongoDB
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_database: str = "storefront"

    # Stripe
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_webhook_tolerance_seconds: int = 300
    stripe_timeout_seconds: float = 10.0
    stripe_max_network_retries: int = 2
    stripe_success_url: str = "http://localhost:3000/checkout/success"
    stripe_cancel_url: str = "http://localhost:3000/checkout/cancel"
    stripe_allowed_countries: list[str] = ["VN", "US"]

    # VNPay
    vnpay_tmn_code: str = ""
    vnpay_hash_secret: str = ""
    vnpay_url: str = "https://sandbox.vnpayment.vn/paymentv2/vpcpay.html"
    vnpay_return_url: str = "http://localhost:3000/checkout/vnpay-return"
    vnpay_locale: str = "vn"
    vnpay_expire_minutes: int = 15

    class Config:
        env_file = find_env_file()
        env_file_encoding = "utf-8"
        env_prefix = ""
        case_sensitive = False
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
