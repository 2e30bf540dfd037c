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
    DATABASE_URL: str = "sqlite:///./eventcrm.db"

    # Public base URL of this API (used for tracking pixel links)
    API_BASE_URL: str = "http://localhost:8000"

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000"

    # Shared secret for staff routes (check-in, campaigns). Empty = open (dev only)
    ADMIN_API_KEY: str = ""

    # Internal scheduled endpoints (cron jobs)
    INTERNAL_SECRET: str = ""

    # Error Tracking (optional, set in production)
    SENTRY_DSN: str = ""

    # Email
    EMAIL_FROM: str = "events@example.com"
    EMAIL_FROM_NAME: str = "Events"
    RESEND_API_KEY: str = ""
    RESEND_API_URL: str = "https://api.resend.com"
    RESEND_WEBHOOK_SECRET: str = ""  # Svix signing secret (whsec_...)
    MAILGUN_API_KEY: str = ""
    MAILGUN_DOMAIN: str = ""
    MAILGUN_API_URL: str = "https://api.mailgun.net/v3"
    # Comma-separated provider fallback order
    EMAIL_PROVIDER_ORDER: str = "resend,mailgun"
    WEBHOOK_MAX_PAYLOAD_BYTES: int = 256000  # 256KB limit

    # Campaign sending
    CAMPAIGN_SEND_DELAY_SECONDS: float = 1.0  # Pause between provider requests
    CAMPAIGN_INLINE_MAX_RECIPIENTS: int = 25  # Larger audiences go to the worker
    CAMPAIGN_PAGE_SIZE: int = 100
    # Comma-separated domains never included in a campaign audience
    AUDIENCE_EXCLUDED_DOMAINS: str = ""

    # Check-in
    CHECKIN_SEARCH_LIMIT: int = 20

    # Registration
    TICKET_TOKEN_MAX_ATTEMPTS: int = 5

    # Engagement scoring weights
    ENGAGEMENT_WEIGHT_EMAIL_OPEN: int = 5
    ENGAGEMENT_WEIGHT_EVENT_ATTENDED: int = 20
    ENGAGEMENT_RECENCY_BONUS_7D: int = 20
    ENGAGEMENT_RECENCY_BONUS_30D: int = 10

    # Rate Limiting (requests per minute)
    RATE_LIMIT_REGISTER: int = 10
    RATE_LIMIT_WEBHOOK: int = 300
    RATE_LIMIT_API: int = 120
    REDIS_URL: str = "redis://localhost:6379/0"

    # Worker
    WORKER_POLL_INTERVAL: int = 10
    WORKER_BATCH_SIZE: int = 10
    JOB_MAX_ATTEMPTS: int = 3
    # Must exceed the time to send one audience page
    JOB_LEASE_SECONDS: int = 600

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS_ORIGINS into a list."""
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def email_provider_order_list(self) -> list[str]:
        """Parse EMAIL_PROVIDER_ORDER into lowercase provider names."""
        return [
            p.strip().lower() for p in self.EMAIL_PROVIDER_ORDER.split(",") if p.strip()
        ]

    @property
    def excluded_domains_list(self) -> list[str]:
        """Parse AUDIENCE_EXCLUDED_DOMAINS into lowercase list."""
        if not self.AUDIENCE_EXCLUDED_DOMAINS:
            return []
        return [
            d.strip().lower()
            for d in self.AUDIENCE_EXCLUDED_DOMAINS.split(",")
            if d.strip()
        ]


settings = Settings()
