from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(case_sensitive=True, extra="ignore")

    REFLECT_ENV: str = "development"
    APP_VERSION: str = "dev"
    API_HOST: str = "127.0.0.1"
    API_PORT: int = 8000
    LOG_LEVEL: str = "INFO"
    API_CORS_ORIGINS: str = "http://localhost:5173"
    API_RATE_LIMIT_ENABLED: bool = True
    API_RATE_LIMIT_PER_MINUTE: int = 60
    SUPABASE_URL: str
    SUPABASE_ANON_KEY: str
    SUPABASE_SERVICE_ROLE_KEY: str | None = None
    SUPABASE_ISSUER: str | None = None
    SUPABASE_JWKS_URL: str | None = None
    SUPABASE_JWT_SECRET: str | None = None
    BILLING_STORE: str = "supabase"
    TRIAL_DURATION_DAYS: int = 3
    PROVIDER_API_TIMEOUT_SECONDS: float = 5.0
    SUBSCRIPTION_WRITE_RETRIES: int = 3
    WEBHOOK_EVENT_TTL_SECONDS: int = 86_400
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_WEBHOOK_SECRET: str | None = None
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300
    STRIPE_PRICE_MAP: str = ""
    CHECKOUT_SUCCESS_URL: str = "http://localhost:5173/checkout-success?session_id={CHECKOUT_SESSION_ID}"
    CHECKOUT_CANCEL_URL: str = "http://localhost:5173/subscription"
    LEMONSQUEEZY_API_KEY: str | None = None
    LEMONSQUEEZY_WEBHOOK_SECRET: str | None = None
    LEMONSQUEEZY_API_BASE: str = "https://api.lemonsqueezy.com"

    @model_validator(mode="after")
    def apply_supabase_defaults(self) -> "Settings":
        if not self.SUPABASE_URL.strip():
            raise ValueError("SUPABASE_URL must be configured")
        if not self.SUPABASE_ANON_KEY.strip():
            raise ValueError("SUPABASE_ANON_KEY must be configured")

        if not self.SUPABASE_ISSUER:
            self.SUPABASE_ISSUER = f"{self.SUPABASE_URL.rstrip('/')}/auth/v1"
        if not self.SUPABASE_JWKS_URL:
            self.SUPABASE_JWKS_URL = (
                f"{self.SUPABASE_ISSUER.rstrip('/')}/.well-known/jwks.json"
            )

        store = self.BILLING_STORE.strip().lower()
        if store not in {"supabase", "memory"}:
            raise ValueError("BILLING_STORE must be 'supabase' or 'memory'")
        self.BILLING_STORE = store
        if self.TRIAL_DURATION_DAYS < 1:
            raise ValueError("TRIAL_DURATION_DAYS must be at least 1")
        if self.is_production and store == "supabase":
            if not (self.SUPABASE_SERVICE_ROLE_KEY or "").strip():
                raise ValueError("SUPABASE_SERVICE_ROLE_KEY must be configured in production")
        return self

    @property
    def is_production(self) -> bool:
        return self.REFLECT_ENV.strip().lower() == "production"

    @property
    def cors_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.API_CORS_ORIGINS.split(",") if origin.strip()]

    @property
    def stripe_price_map(self) -> dict[str, str]:
        """planId -> Stripe price id, from ``pro-monthly=price_123,unlimited-monthly=price_456``."""
        pairs: dict[str, str] = {}
        for item in self.STRIPE_PRICE_MAP.split(","):
            plan_id, _, price_id = item.partition("=")
            if plan_id.strip() and price_id.strip():
                pairs[plan_id.strip().lower()] = price_id.strip()
        return pairs


@lru_cache
def get_settings() -> Settings:
    return Settings()
