from typing import Annotated, Any, Literal
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import computed_field, AnyUrl, BeforeValidator


def parse_cors(v: Any) -> list[str] | str:
    if isinstance(v, str) and not v.startswith("["):
        return [i.strip() for i in v.split(",")]
    elif isinstance(v, list | str):
        return v
    raise ValueError(v)


class Settings(BaseSettings):
    APP_NAME: str = "Recruiter Outreach"
    API_PREFIX: str = "/api"
    APP_BASE_URL: str

    # Signs the session cookie issued by the dashboard's auth layer
    SESSION_SECRET: str

    # Shared secret expected in X-Cron-Secret on scheduled job routes
    CRON_SECRET: str = ""

    # Google OAuth client used to refresh stored mailbox tokens
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GOOGLE_TOKEN_URL: str = "https://oauth2.googleapis.com/token"

    # Gmail API Configuration
    GMAIL_API_BASE_URL: str = "https://gmail.googleapis.com/gmail/v1/users/me"
    GMAIL_SCOPES: str = "https://www.googleapis.com/auth/gmail.send https://www.googleapis.com/auth/gmail.modify"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def GMAIL_SCOPES_LIST(self) -> list[str]:
        """Parse Gmail scopes from space-separated string to list."""
        return [scope.strip() for scope in self.GMAIL_SCOPES.split() if scope.strip()]

    GMAIL_HTTP_TIMEOUT_SECONDS: float = 15.0
    OAUTH_HTTP_TIMEOUT_SECONDS: float = 10.0

    # Database
    DATABASE_URL: str

    # Cooldown policy
    EMAIL_COOLDOWN_DAYS: int = 7
    COOLDOWN_GRACE_DAYS: int = 7
    COOLDOWN_NOTIFY_WINDOW_HOURS: int = 24

    # Daily send limits per subscription tier
    DAILY_LIMIT_FREE: int = 5
    DAILY_LIMIT_PRO: int = 50
    DAILY_LIMIT_PREMIUM: int = 1000

    # Inbound reply polling
    POLL_LOOKBACK_HOURS: int = 24
    POLL_MAX_RESULTS: int = 10
    REPLY_DETECTION_MODE: Literal["heuristic", "headers_only", "provider_thread"] = "heuristic"

    # Message recorder
    MESSAGE_COUNTER_MAX_RETRIES: int = 5
    BODY_PREVIEW_LENGTH: int = 200

    # Availability notifications (optional e-mail copy via Resend)
    RESEND_API_KEY: str = ""
    RESEND_API_URL: str = "https://api.resend.com/emails"
    NOTIFICATION_FROM_ADDRESS: str = "Recruiter Outreach <noreply@example.com>"

    TRACKING_FALLBACK_URL: str = "https://example.com"

    # In-process scheduler (external cron can call the job routes instead)
    ENABLE_SCHEDULER: bool = False
    POLL_INTERVAL_MINUTES: int = 5
    CLEANUP_INTERVAL_HOURS: int = 24

    LOG_LEVEL: str = "INFO"

    FRONTEND_HOST: str = "http://localhost:5173"
    BACKEND_CORS_ORIGINS: Annotated[list[AnyUrl] | str, BeforeValidator(parse_cors)] = [
        "http://localhost:8000"
    ]

    @computed_field  # type: ignore[prop-decorator]
    @property
    def ALL_CORS_ORIGINS(self) -> list[str]:
        return [str(origin).rstrip("/") for origin in self.BACKEND_CORS_ORIGINS] + [
            self.FRONTEND_HOST
        ]

    @computed_field  # type: ignore[prop-decorator]
    @property
    def TRACKING_BASE_URL(self) -> str:
        """Public URL of the tracking endpoint embedded in outbound mail."""
        return f"{self.APP_BASE_URL.rstrip('/')}{self.API_PREFIX}/track"

    def daily_limit_for(self, tier: str | None) -> int:
        tier = (tier or "FREE").upper()
        if tier == "FREE":
            return self.DAILY_LIMIT_FREE
        elif tier == "PRO":
            return self.DAILY_LIMIT_PRO
        return self.DAILY_LIMIT_PREMIUM

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
