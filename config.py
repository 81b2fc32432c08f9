"""
Runtime configuration for the Coloring Studio backend.
Everything is read from environment variables once, at startup.
"""

import os
from dataclasses import dataclass, field
from typing import List

DEFAULT_FREE_GENERATION_LIMIT = 5


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("true", "1", "yes")


@dataclass(frozen=True)
class Settings:
    """Immutable settings snapshot passed into the app factory."""
    environment: str = "production"
    log_level: str = "INFO"

    # Storage
    database_url: str = ""
    db_path: str = "./temp/app_data.db"

    # Razorpay
    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_api_base: str = "https://api.razorpay.com/v1"
    order_amount_paise: int = 1000  # ₹10
    order_currency: str = "INR"

    # Image generation webhook
    generation_webhook_url: str = ""
    generation_timeout_seconds: float = 30.0
    free_generation_limit: int = DEFAULT_FREE_GENERATION_LIMIT

    # HTTP
    allowed_origins: List[str] = field(default_factory=lambda: ["*"])
    rate_limit_enabled: bool = True
    generate_rate_limit: str = "10/minute"

    @property
    def use_postgres(self) -> bool:
        return self.database_url.startswith("postgres")

    @property
    def is_dev(self) -> bool:
        return self.environment == "development"

    @classmethod
    def from_env(cls) -> "Settings":
        temp_dir = os.path.abspath(os.environ.get("TEMP_DIR", "./temp"))
        return cls(
            environment=os.environ.get("ENVIRONMENT", "production").lower(),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            database_url=os.environ.get("DATABASE_URL", ""),
            db_path=os.environ.get("STUDIO_DB_PATH", os.path.join(temp_dir, "app_data.db")),
            razorpay_key_id=os.environ.get("RAZORPAY_KEY_ID", ""),
            razorpay_key_secret=os.environ.get("RAZORPAY_KEY_SECRET", ""),
            razorpay_api_base=os.environ.get("RAZORPAY_API_BASE", "https://api.razorpay.com/v1").rstrip("/"),
            order_amount_paise=int(os.environ.get("ORDER_AMOUNT_PAISE", "1000")),
            order_currency=os.environ.get("ORDER_CURRENCY", "INR"),
            generation_webhook_url=os.environ.get("GENERATION_WEBHOOK_URL", ""),
            generation_timeout_seconds=float(os.environ.get("GENERATION_TIMEOUT_SECONDS", "30")),
            free_generation_limit=int(os.environ.get("FREE_GENERATION_LIMIT", DEFAULT_FREE_GENERATION_LIMIT)),
            allowed_origins=[o.strip() for o in os.environ.get("ALLOWED_ORIGINS", "*").split(",") if o.strip()],
            rate_limit_enabled=_env_bool("RATE_LIMIT_ENABLED", "true"),
            generate_rate_limit=os.environ.get("GENERATE_RATE_LIMIT", "10/minute"),
        )
