"""Stripe settings configuration."""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import SecretStr


class StripeSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    STRIPE_WEBHOOK_SECRET: str = "whsec_test_webhook_secret"
    STRIPE_SECRET_KEY: SecretStr = SecretStr("sk_test_stripe_secret_key")

    STRIPE_PRICE_STARTER_MONTHLY: str = "price_starter_monthly"
    STRIPE_PRICE_HOBBY_MONTHLY: str = "price_hobby_monthly"
    STRIPE_PRICE_PRO_MONTHLY: str = "price_pro_monthly"
    STRIPE_PRICE_BUSINESS_MONTHLY: str = "price_business_monthly"

    STRIPE_PRICE_CREDITS_SMALL: str = "price_credits_small"
    STRIPE_PRICE_CREDITS_MEDIUM: str = "price_credits_medium"
    STRIPE_PRICE_CREDITS_LARGE: str = "price_credits_large"

    # Seconds after which an unfinished event claim may be taken over; 0 disables
    STRIPE_EVENT_CLAIM_TIMEOUT_SECONDS: int = 600
