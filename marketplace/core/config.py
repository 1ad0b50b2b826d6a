"""
Configuration management for the marketplace backend.

Loads settings from the YAML config file, then lets environment variables
(or a .env file) override the deployment-specific values.
"""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import yaml
from dotenv import load_dotenv

load_dotenv()


def _project_root() -> Path:
    """Return project root (parent of the marketplace package)."""
    return Path(__file__).resolve().parent.parent.parent


DEFAULT_CONFIG_PATH = _project_root() / "config" / "default.yaml"


@dataclass
class MarketplaceConfig:
    """Configuration for the marketplace service."""

    database_url: str = "sqlite:///./marketplace.db"

    # Stripe Checkout (card payments)
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_api_base: str = "https://api.stripe.com"
    currency: str = "usd"
    payment_success_url: str = "http://localhost:5173/dashboard?payment=success"
    payment_cancel_url: str = "http://localhost:5173/checkout?payment=cancelled"
    webhook_tolerance_seconds: int = 300

    # Seller-facing behaviour
    low_stock_threshold: int = 10       # Products below this stock show on the dashboard
    driver_eta_hours: int = 2           # Estimated delivery offset when a driver is assigned

    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_yaml(cls, config_path: Optional[Path] = None) -> "MarketplaceConfig":
        """Load configuration from YAML file, then apply environment overrides."""
        path = config_path or DEFAULT_CONFIG_PATH
        data = {}
        if path.exists():
            with open(path, 'r') as f:
                data = yaml.safe_load(f) or {}

        database_config = data.get('database', {})
        payments_config = data.get('payments', {})
        sellers_config = data.get('sellers', {})
        server_config = data.get('server', {})

        config = cls(
            database_url=database_config.get('url', cls.database_url),
            stripe_api_base=payments_config.get('api_base', cls.stripe_api_base),
            currency=payments_config.get('currency', cls.currency),
            payment_success_url=payments_config.get('success_url', cls.payment_success_url),
            payment_cancel_url=payments_config.get('cancel_url', cls.payment_cancel_url),
            webhook_tolerance_seconds=payments_config.get('webhook_tolerance_seconds', 300),
            low_stock_threshold=sellers_config.get('low_stock_threshold', 10),
            driver_eta_hours=sellers_config.get('driver_eta_hours', 2),
            cors_origins=server_config.get('cors_origins', ["*"]),
        )
        config.apply_env()
        return config

    def apply_env(self) -> None:
        """Secrets and connection strings always come from the environment when set."""
        self.database_url = os.getenv("DATABASE_URL") or self.database_url
        self.stripe_secret_key = os.getenv("STRIPE_SECRET_KEY", self.stripe_secret_key)
        self.stripe_webhook_secret = os.getenv("STRIPE_WEBHOOK_SECRET", self.stripe_webhook_secret)
        self.stripe_api_base = os.getenv("STRIPE_API_BASE", self.stripe_api_base)


# Global config instance
_config: Optional[MarketplaceConfig] = None


def get_config() -> MarketplaceConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = MarketplaceConfig.from_yaml()
    return _config


def set_config(config: MarketplaceConfig) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
