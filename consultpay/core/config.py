from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    ENV: str = "local"
    APP_NAME: str = "Consultpay API"
    # Comma-separated origins for CORS. If empty, uses localhost defaults.
    CORS_ORIGINS: str = ""
    LOG_LEVEL: str = "INFO"

    SECRET_KEY: str = "change-me"

    DATABASE_URL: str = "sqlite:///./consultpay.db"

    @field_validator("DATABASE_URL", mode="after")
    @classmethod
    def normalize_database_url(cls, v: str) -> str:
        """Render and others give postgres://; SQLAlchemy expects postgresql+psycopg2://."""
        if v and v.startswith("postgres://"):
            return "postgresql+psycopg2://" + v[11:]
        return v
    REDIS_URL: str = "redis://localhost:6379/0"

    FRONTEND_URL: str = "http://localhost:3000"  # Paystack callback_url base

    # Outbound provider calls never block longer than this
    PROVIDER_TIMEOUT_SECONDS: int = 20

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300

    # Paystack
    PAYSTACK_SECRET_KEY: str = ""
    PAYSTACK_WEBHOOK_SECRET: str = ""  # Paystack signs with the secret key; override only if proxied
    PAYSTACK_BASE_URL: str = "https://api.paystack.co"

    # Worker jobs
    WEBHOOK_RETRY_BATCH: int = 50
    WEBHOOK_MAX_AUTO_RETRIES: int = 5
    PENDING_RECONCILE_AFTER_MINUTES: int = 30

    @property
    def paystack_webhook_secret(self) -> str:
        return self.PAYSTACK_WEBHOOK_SECRET or self.PAYSTACK_SECRET_KEY


settings = Settings()
