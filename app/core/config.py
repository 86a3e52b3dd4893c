"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"

    # App Version (format: a.bc.de - major.feature.patch)
    VERSION: str = "0.01.00"

    # Database
    DATABASE_URL: str = "sqlite+pysqlite:///./channels.db"

    # Session Token (supports key rotation)
    JWT_SECRET: str = "change-this-in-production"
    JWT_SECRET_PREVIOUS: str = ""  # Set during rotation, clear after
    JWT_EXPIRES_HOURS: int = 4

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000"

    # Frontend (for safe redirects after OAuth)
    FRONTEND_URL: str = "http://localhost:3000"

    # Public base URL of this API (OAuth redirect URIs, webhook callbacks)
    API_BASE_URL: str = "http://localhost:8000"

    # Token Encryption (channel OAuth tokens, IMAP passwords, integration secrets)
    CHANNEL_ENCRYPTION_KEY: str = ""  # Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"

    # Internal scheduled endpoints (cron jobs)
    INTERNAL_SECRET: str = ""  # Secret for /internal/scheduled/* endpoints

    # Meta Graph API (Instagram, Messenger, WhatsApp)
    META_API_VERSION: str = "v21.0"
    META_APP_SECRET: str = ""  # Optional platform-wide app secret for webhook signatures
    WEBHOOK_MAX_PAYLOAD_BYTES: int = 100000  # 100KB limit

    # OAuth state tokens
    OAUTH_STATE_TTL_SECONDS: int = 600

    # Channel sync policy
    CHANNEL_TOKEN_REFRESH_LEEWAY_SECONDS: int = 300
    CHANNEL_FAILURE_THRESHOLD: int = 10
    CHANNEL_SYNC_TIMEOUT_SECONDS: int = 300
    CHANNEL_SYNC_LOCK_STALE_SECONDS: int = 900
    CHANNEL_SYNC_BATCH_LIMIT: int = 200
    CHANNEL_DEFAULT_SYNC_INTERVAL_MINUTES: int = 5

    # Error Tracking (optional, set in production)
    SENTRY_DSN: str = ""

    # Rate Limiting (requests per minute)
    RATE_LIMIT_WEBHOOK: int = 100  # Provider webhooks
    RATE_LIMIT_API: int = 60  # General API

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS_ORIGINS into a list."""
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def jwt_secrets(self) -> list[str]:
        """Returns list of valid secrets (current first, then previous if set)."""
        secrets = [self.JWT_SECRET]
        if self.JWT_SECRET_PREVIOUS:
            secrets.append(self.JWT_SECRET_PREVIOUS)
        return secrets

    @property
    def cookie_secure(self) -> bool:
        """Secure cookies only in production."""
        return self.ENV != "dev"


settings = Settings()
