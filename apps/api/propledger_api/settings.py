"""Application settings and configuration."""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: Optional[str] = None
    postgres_user: str = "propledger"
    postgres_password: str = "propledger_dev_password"
    postgres_db: str = "propledger"
    postgres_port: int = 5432
    transaction_max_retries: int = 3  # Serialization/deadlock retries per transaction
    # Role the application connects as; migrations limit it to SELECT, INSERT on audit_log
    app_db_role: str = Field(default="propledger_app", pattern=r"^[A-Za-z_][A-Za-z0-9_]*$")

    # API server (propledger serve)
    api_port: int = 8000
    environment: str = "development"
    api_host: str = "0.0.0.0"

    # Logging
    log_level: str = "INFO"

    # Payment provider webhooks
    stripe_webhook_secret: Optional[str] = None  # Required in non-dev
    allow_insecure_webhook_test: bool = False  # Skips signature checks, test/CI only
    webhook_signature_tolerance_seconds: int = 300

    # Checkout sessions
    stripe_secret_key: Optional[str] = None  # Required to create checkouts
    checkout_success_url: str = "http://localhost:3000/payments/success?session_id={CHECKOUT_SESSION_ID}"
    checkout_cancel_url: str = "http://localhost:3000/payments/cancel"

    # Tenant data: "database" (real) or "fixture" (seeded demo data)
    tenant_data_provider: str = "database"

    # CORS
    cors_origins: list[str] = ["*"]
    cors_allow_credentials: bool = True
    cors_allow_methods: list[str] = ["*"]
    cors_allow_headers: list[str] = ["*"]

    @property
    def database_url_computed(self) -> str:
        """Compute database URL if not explicitly set."""
        if self.database_url:
            return self.database_url
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@localhost:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def is_development(self) -> bool:
        """Check if running in a development or test environment."""
        return self.environment.lower() in ("development", "test", "dev")

    def validate_production_settings(self):
        """Validate settings for production environment."""
        if not self.is_development:
            if not self.stripe_webhook_secret:
                raise ValueError(
                    "STRIPE_WEBHOOK_SECRET is required outside development. "
                    "Webhook signatures cannot be verified without it."
                )
            if self.allow_insecure_webhook_test:
                raise ValueError(
                    "ALLOW_INSECURE_WEBHOOK_TEST=true is not allowed outside development/test."
                )
            if self.tenant_data_provider != "database":
                raise ValueError(
                    f"TENANT_DATA_PROVIDER={self.tenant_data_provider} is not allowed in production. "
                    "Use TENANT_DATA_PROVIDER=database."
                )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
