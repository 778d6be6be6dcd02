"""Application configuration with environment variables."""

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"

    # App Version (format: a.bc.de - major.feature.patch)
    VERSION: str = "0.01.00"

    # Database
    DATABASE_URL: str

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000"

    # Frontend (intake form and tracking deep links)
    FRONTEND_URL: str = "http://localhost:3000"

    # Error Tracking (optional, set in production)
    SENTRY_DSN: str = ""

    # LINE Messaging API
    LINE_CHANNEL_SECRET: str = ""
    LINE_ACCESS_TOKEN: str = ""
    LINE_API_BASE_URL: str = "https://api.line.me"
    LINE_LIFF_ID: str = ""
    LINE_RICH_MENU_ID: str = ""  # Linked to every new follower when set
    LINE_WEBHOOK_MAX_PAYLOAD_BYTES: int = 1_000_000
    LINE_REPAIR_KEYWORD: str = "แจ้งซ่อม"
    LINE_HELPDESK_PHONE: str = ""

    # Repair tickets
    TICKET_CODE_PREFIX: str = "TRR"
    DESK_TIMEZONE: str = "Asia/Bangkok"
    CHECK_STATUS_PAGE_SIZE: int = 3

    # Notification delivery
    NOTIFY_MAX_RETRIES: int = 2
    NOTIFY_RETRY_DELAY_SECONDS: float = 0.5

    # Account linking
    LINKING_TOKEN_TTL_MINUTES: int = 15

    # Attachments (S3-compatible storage)
    ATTACHMENT_MAX_BYTES: int = 5 * 1024 * 1024
    S3_BUCKET: str = ""
    S3_REGION: str = ""
    S3_ENDPOINT_URL: str = ""
    S3_PUBLIC_BASE_URL: str = ""  # Falls back to the bucket's virtual-host URL
    AWS_ACCESS_KEY_ID: str = ""
    AWS_SECRET_ACCESS_KEY: str = ""

    @field_validator("LINE_CHANNEL_SECRET", "LINE_ACCESS_TOKEN", mode="before")
    @classmethod
    def _strip_quotes(cls, value):
        if isinstance(value, str):
            return value.strip().strip("'\"")
        return value

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS_ORIGINS into a list."""
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def frontend_base_url(self) -> str:
        return self.FRONTEND_URL.rstrip("/")

    @property
    def line_configured(self) -> bool:
        """True when both LINE credentials are present."""
        return bool(self.LINE_CHANNEL_SECRET and self.LINE_ACCESS_TOKEN)


settings = Settings()
