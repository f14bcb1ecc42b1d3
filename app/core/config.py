from dataclasses import dataclass
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve .env from the project root so it loads regardless of cwd
_BACKEND_ROOT = Path(__file__).resolve().parent.parent.parent
_ENV_FILE = _BACKEND_ROOT / ".env"


@dataclass(frozen=True)
class FeatureFlags:
    """Behaviour toggles handed to business logic instead of reading the environment."""

    hide_demo_content: bool = False
    require_email_verification: bool = False


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=(str(_ENV_FILE), ".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = "sqlite+aiosqlite:///./booking.db"

    # JWT
    secret_key: str = "change-me"
    access_token_expire_minutes: int = 60 * 24
    algorithm: str = "HS256"

    # CORS
    cors_origins: str = "http://localhost:5173"

    # Public URL of the web app (checkout redirects land here)
    app_url: str = "http://localhost:5173"

    # Stripe. An empty or placeholder key disables payment-dependent paths.
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    currency: str = "usd"

    # Booking rules
    cancellation_window_hours: int = 24

    # Feature flags
    allow_demo_content: bool = False
    hide_demo_content: bool | None = None
    require_email_verification: bool = False

    # Env
    env: str = "development"

    # Email (SMTP). Leave smtp_host empty to log messages instead of sending.
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    from_email: str = ""
    from_name: str = "MeechLocs"
    site_name: str = "MeechLocs"
    contact_email: str = "no-reply@meechlocs.test"

    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def email_enabled(self) -> bool:
        return bool(self.smtp_host and self.smtp_user and self.smtp_password and self.from_email)

    @property
    def is_production(self) -> bool:
        return self.env.lower() == "production"

    def should_hide_demo_content(self) -> bool:
        # Demo content is visible in local development only, unless explicitly allowed
        # or HIDE_DEMO_CONTENT=false.
        if self.allow_demo_content:
            return False
        if self.hide_demo_content is False:
            return False
        return self.env.lower() != "development"

    def feature_flags(self) -> FeatureFlags:
        return FeatureFlags(
            hide_demo_content=self.should_hide_demo_content(),
            require_email_verification=self.require_email_verification,
        )


settings = Settings()
