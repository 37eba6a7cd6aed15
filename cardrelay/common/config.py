"""Central environment-driven settings for the cardrelay process.

The application context builds one instance at startup and hands it to every
service explicitly. Values come from environment variables (see
`.env.example`) or a local `.env` file.
"""

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "cardrelay"
    log_level: str = "INFO"
    database_dsn: str = "sqlite:///./data/cardrelay.db"
    auto_create_schema: bool = True
    api_key: SecretStr | None = None
    otel_exporter_otlp_endpoint: str | None = None
    http_host: str = "127.0.0.1"
    http_port: int = 8080

    # Secret store
    master_key: SecretStr | None = None
    credentials_path: str = ".credentials.enc"
    credentials_salt: str = "cardrelay-credential-salt-v1"

    # Scheduling
    scheduling_enabled: bool = True
    purchase_cron: str = "0 10 * * 0"
    timezone: str = "America/Los_Angeles"
    max_retries: int = Field(default=3, ge=0, le=20)
    retry_backoff_multiplier: float = Field(default=2.0, ge=1.0, le=10.0)
    retry_base_delay_minutes: float = Field(default=15.0, gt=0)
    purchase_cooldown_days: float = Field(default=6.0, ge=0)
    email_poll_interval_minutes: float = Field(default=5.0, gt=0)
    redemption_sweep_interval_minutes: float = Field(default=30.0, gt=0)
    redemption_delay_min_seconds: float = Field(default=2.0, ge=0)
    redemption_delay_max_seconds: float = Field(default=5.0, ge=0)
    shutdown_grace_seconds: float = 60.0

    # Timeouts
    network_timeout_seconds: float = 30.0
    automation_timeout_seconds: float = 600.0
    manual_intervention_timeout_seconds: float = 300.0
    attended_mode: bool = False

    # Automation plug-ins ("module:attribute" import paths)
    purchaser_path: str | None = None
    redeemer_path: str | None = None
    session_factory_path: str = "cardrelay.services.automation.session:DetachedSessionFactory"

    # Mailbox
    imap_host: str = "imap.gmail.com"
    imap_port: int = 993
    imap_mailbox: str = "INBOX"
    email_from_filter: list[str] = ["costco@costco.com", "noreply@costco.com"]
    email_lookback_days: int = Field(default=7, ge=1)
    gift_card_keywords: list[str] = ["gift card", "egift"]
    code_min_length: int = 16
    code_max_length: int = 20
    card_value_min_cents: int = 1_000
    card_value_max_cents: int = 50_000
    default_card_value_cents: int = 10_000

    # Notifications
    slack_webhook_url: str | None = None
    slack_channel: str | None = None
    discord_webhook_url: str | None = None

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @field_validator("purchase_cron")
    @classmethod
    def _valid_cron(cls, value: str) -> str:
        if not croniter.is_valid(value):
            raise ValueError(f"invalid cron expression: {value!r}")
        return value

    @field_validator("timezone")
    @classmethod
    def _valid_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone: {value!r}") from exc
        return value

    @field_validator("redemption_delay_max_seconds")
    @classmethod
    def _delay_window(cls, value: float, info) -> float:
        low = info.data.get("redemption_delay_min_seconds", 0.0)
        if value < low:
            raise ValueError("redemption_delay_max_seconds must be >= redemption_delay_min_seconds")
        return value
