from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv


load_dotenv()


def _env(name: str, default: str | None = None) -> str | None:
    return os.getenv(name, default)


def _flag(name: str, default: str = "false") -> bool:
    return str(_env(name, default)).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    postgres_dsn: str
    store_timeout_seconds: float
    auto_create_schema: bool
    plan_cache_ttl_seconds: float
    free_request_limit: int
    usage_cycle_days: int
    stripe_secret_key: str
    stripe_webhook_secret: str
    stripe_price_gold: str
    stripe_price_platinum: str
    stripe_timeout_seconds: float
    stripe_success_url: str
    stripe_cancel_url: str
    frontend_url: str
    admin_api_key: str
    remove_api_limits: bool
    environment: str
    log_level: str

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def price_plans(self) -> dict[str, str]:
        """Stripe price id -> plan tier."""
        mapping = {}
        if self.stripe_price_gold:
            mapping[self.stripe_price_gold] = "gold"
        if self.stripe_price_platinum:
            mapping[self.stripe_price_platinum] = "platinum"
        return mapping

    @property
    def plan_prices(self) -> dict[str, str]:
        return {plan: price_id for price_id, plan in self.price_plans.items()}


def get_settings() -> Settings:
    frontend_url = _env("FRONTEND_URL", "http://localhost:3000").rstrip("/")
    return Settings(
        postgres_dsn=_env("POSTGRES_DSN", ""),
        store_timeout_seconds=float(_env("STORE_TIMEOUT_SECONDS", "3")),
        auto_create_schema=_flag("AUTO_CREATE_SCHEMA"),
        plan_cache_ttl_seconds=float(_env("PLAN_CACHE_TTL_SECONDS", "300")),
        free_request_limit=int(_env("FREE_REQUEST_LIMIT", "250")),
        usage_cycle_days=int(_env("USAGE_CYCLE_DAYS", "30")),
        stripe_secret_key=_env("STRIPE_SECRET_KEY", ""),
        stripe_webhook_secret=_env("STRIPE_WEBHOOK_SECRET", ""),
        stripe_price_gold=_env("STRIPE_PRICE_GOLD", ""),
        stripe_price_platinum=_env("STRIPE_PRICE_PLATINUM", ""),
        stripe_timeout_seconds=float(_env("STRIPE_TIMEOUT_SECONDS", "10")),
        stripe_success_url=_env("STRIPE_SUCCESS_URL", f"{frontend_url}/billing/success"),
        stripe_cancel_url=_env("STRIPE_CANCEL_URL", f"{frontend_url}/pricing"),
        frontend_url=frontend_url,
        admin_api_key=_env("ADMIN_API_KEY", ""),
        remove_api_limits=_flag("REMOVE_API_LIMITS"),
        environment=_env("ENVIRONMENT", "development").strip().lower(),
        log_level=_env("LOG_LEVEL", "INFO").strip().upper(),
    )
