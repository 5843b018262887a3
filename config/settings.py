"""
Application settings loaded from environment variables.

Uses pydantic-settings for validation and type safety.
Every timing constant of the progress countdown lives here so it can be
tuned per deployment without touching code.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """
    Application settings.

    All values loaded from .env file or environment variables.
    Validation happens automatically on startup.
    """

    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),  # Check current dir, then parent
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"  # Ignore extra env vars
    )

    # ===================
    # SUPABASE
    # ===================
    supabase_url: Optional[str] = Field(
        None,
        description="Supabase project URL"
    )
    supabase_key: Optional[str] = Field(
        None,
        description="Supabase anon/public key"
    )

    # ===================
    # AI SERVICE
    # ===================
    ai_provider: str = Field(
        default="http",
        pattern="^(http|claude)$",
        description="Which listing AI backend to use"
    )
    ai_service_url: str = Field(
        default="http://localhost:8100",
        description="Base URL of the listing AI service"
    )
    ai_service_api_key: Optional[str] = Field(
        None,
        description="Bearer token for the listing AI service"
    )
    ai_request_timeout_seconds: float = Field(
        default=90.0,
        ge=1,
        le=600,
        description="Timeout for a single AI service call"
    )
    anthropic_api_key: Optional[str] = Field(
        None,
        description="Anthropic API key (ai_provider=claude)"
    )
    claude_model: str = Field(
        default="claude-sonnet-4-20250514",
        description="Claude model used for vision tasks"
    )

    # ===================
    # STORAGE
    # ===================
    storage_upload_url: str = Field(
        default="http://localhost:8200/upload",
        description="Image storage upload endpoint"
    )
    upload_timeout_seconds: float = Field(
        default=30.0,
        ge=1,
        le=300,
        description="Timeout for a single image upload"
    )

    # ===================
    # CREDITS & PAYMENTS
    # ===================
    credit_backend: str = Field(
        default="memory",
        pattern="^(memory|http|supabase)$",
        description="Where the credit ledger lives"
    )
    credit_api_url: str = Field(
        default="http://localhost:8300/api/credits",
        description="Credit query/debit endpoint base URL"
    )
    free_monthly_allowance: int = Field(
        default=5,
        ge=0,
        le=1000,
        description="Free AI descriptions per calendar month"
    )
    checkout_base_url: str = Field(
        default="https://checkout.example.com/credits",
        description="External payment checkout page"
    )
    checkout_return_url: str = Field(
        default="http://localhost:5173/post-ad",
        description="Where the payment processor sends the user back"
    )
    credit_poll_interval_seconds: float = Field(
        default=5.0,
        gt=0,
        le=60,
        description="How often the resume poller re-reads the balance"
    )
    credit_poll_timeout_seconds: float = Field(
        default=1800.0,
        gt=0,
        le=86400,
        description="Poller gives up after this long"
    )

    # ===================
    # BATCH LIMITS
    # ===================
    max_batch_size: int = Field(
        default=30,
        ge=1,
        le=500,
        description="Hard cap on photos per bulk upload"
    )
    small_batch_threshold: int = Field(
        default=4,
        ge=2,
        le=50,
        description="Batches at or above this size use the bulk classifier"
    )
    bulk_max_rounds: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Re-submissions of unprocessed photos to the bulk classifier"
    )
    upload_concurrency: int = Field(
        default=3,
        ge=1,
        le=16,
        description="Concurrent uploads to the storage endpoint"
    )
    enrichment_concurrency: int = Field(
        default=1,
        ge=1,
        le=16,
        description="Concurrent enrichment calls (1 = serialized)"
    )

    # ===================
    # PROGRESS COST MODEL
    # ===================
    upload_seconds_per_asset: float = Field(
        default=1.5,
        ge=0,
        le=120,
        description="Expected upload time per photo"
    )
    analyze_seconds_per_asset: float = Field(
        default=2.0,
        ge=0,
        le=120,
        description="Expected classification time per photo"
    )
    describe_seconds_per_group: float = Field(
        default=8.0,
        ge=0,
        le=600,
        description="Expected description time per item group"
    )

    # ===================
    # CHECKPOINTS
    # ===================
    checkpoint_backend: str = Field(
        default="file",
        pattern="^(file|memory|supabase)$",
        description="Where in-flight checkpoints are stored"
    )
    checkpoint_dir: str = Field(
        default=".checkpoints",
        description="Directory for file checkpoints"
    )
    checkpoint_ttl_minutes: int = Field(
        default=120,
        ge=1,
        le=10080,
        description="Lifetime of a checkpoint / live session"
    )

    # ===================
    # APP SETTINGS
    # ===================
    environment: str = Field(
        default="development",
        pattern="^(development|staging|production)$",
        description="Application environment"
    )
    debug: bool = Field(
        default=True,
        description="Enable debug mode"
    )
    log_level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Logging level"
    )
    api_host: str = Field(
        default="0.0.0.0",
        description="API host"
    )
    api_port: int = Field(
        default=8000,
        ge=1000,
        le=65535,
        description="API port"
    )

    # ===================
    # COMPUTED PROPERTIES
    # ===================
    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"

    @property
    def supabase_configured(self) -> bool:
        """Check if Supabase credentials are present."""
        return bool(self.supabase_url and self.supabase_key)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload.

    Returns:
        Settings: Application settings

    Raises:
        ValidationError: If env vars are invalid
    """
    return Settings()


# For convenient imports: from config.settings import settings
settings = get_settings()
