"""
Orderflow — configuration

Settings come from environment variables, the same way the services read
DATABASE_URL / REDIS_URL. Defaults target a local SQLite file so the
service starts without any infrastructure.
"""

import logging
import os

from pydantic import BaseModel


class Settings(BaseModel):
    database_url: str = "sqlite+aiosqlite:///./orderflow.db"
    redis_url: str | None = None
    stripe_webhook_secret: str | None = None
    stripe_signature_tolerance: int = 300
    webhook_timeout_seconds: float = 5.0
    ledger_claim_timeout_seconds: int = 300
    tax_rate_bps: int = 800
    free_shipping_threshold: int = 10000
    flat_shipping: int = 999
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment, ignoring unset keys."""
        env = {
            "database_url": os.environ.get("DATABASE_URL"),
            "redis_url": os.environ.get("REDIS_URL"),
            "stripe_webhook_secret": os.environ.get("STRIPE_WEBHOOK_SECRET"),
            "stripe_signature_tolerance": os.environ.get("STRIPE_SIGNATURE_TOLERANCE"),
            "webhook_timeout_seconds": os.environ.get("WEBHOOK_TIMEOUT_SECONDS"),
            "ledger_claim_timeout_seconds": os.environ.get("LEDGER_CLAIM_TIMEOUT_SECONDS"),
            "tax_rate_bps": os.environ.get("TAX_RATE_BPS"),
            "free_shipping_threshold": os.environ.get("FREE_SHIPPING_THRESHOLD"),
            "flat_shipping": os.environ.get("FLAT_SHIPPING"),
            "log_level": os.environ.get("LOG_LEVEL"),
        }
        return cls(**{k: v for k, v in env.items() if v is not None})


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
