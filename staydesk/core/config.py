from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    ENV: str = "local"
    APP_NAME: str = "StayDesk API"
    LOG_LEVEL: str = "INFO"
    # Comma-separated origins for CORS. If empty, uses localhost defaults.
    CORS_ORIGINS: str = ""

    SECRET_KEY: str
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7

    DATABASE_URL: str

    @field_validator("DATABASE_URL", mode="after")
    @classmethod
    def normalize_database_url(cls, v: str) -> str:
        """Render and others give postgres://; SQLAlchemy expects postgresql+psycopg2://."""
        if v and v.startswith("postgres://"):
            return "postgresql+psycopg2://" + v[11:]
        return v
    DB_POOL_TIMEOUT_SECONDS: int = 10
    DB_STATEMENT_TIMEOUT_MS: int = 15000  # postgres only
    REDIS_URL: str = "redis://localhost:6379/0"

    # Hotel policy
    CURRENCY: str = "XOF"
    HOTEL_TIMEZONE: str = "Africa/Dakar"
    CHECK_IN_TIME: str = "14:00"  # HH:MM, local to HOTEL_TIMEZONE
    CANCELLATION_NOTICE_HOURS: int = 0  # guests must cancel at least this long before check-in
    BOOKING_HOLD_MINUTES: int = 0  # 0 = unpaid PENDING bookings never expire
    ALLOW_PARTIAL_REFUNDS: bool = True
    ROOM_LOCK_TIMEOUT_SECONDS: float = 5.0
    # PENDING payments older than this are failed so the guest can retry on either channel; 0 = never
    PAYMENT_TIMEOUT_MINUTES: int = 60
    MOBILE_MONEY_TIMEOUT_MINUTES: int = 1440  # staff reconcile transfers by hand

    # Email (SendGrid if configured, otherwise SMTP; MailHog for local)
    HOTEL_NAME: str = "StayDesk Hotel"
    SMTP_HOST: str = "localhost"
    SMTP_PORT: int = 25
    SMTP_USERNAME: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM: str = "reservations@staydesk.local"
    SENDGRID_API_KEY: str = ""
    SENDGRID_FROM_EMAIL: str = ""
    EMAIL_MAX_ATTEMPTS: int = 5

    # Mobile money (manual reconciliation)
    MOBILE_MONEY_OPERATORS: str = "ORANGE,WAVE,FREE"
    # OPERATOR:number pairs the guest transfers to, e.g. ORANGE:771234567,WAVE:781234567
    MOBILE_MONEY_RECIPIENTS: str = "ORANGE:770000000,WAVE:780000000,FREE:760000000"
    MOBILE_MONEY_PHONE_PATTERN: str = r"^(\+221|00221)?[76][0-9]{8}$"

    # Card gateway (HTTP Signature / REST payments)
    GATEWAY_HOST: str = "api.sandbox.gateway.test"
    GATEWAY_MERCHANT_ID: str = ""
    GATEWAY_KEY_ID: str = ""
    GATEWAY_SECRET_KEY_B64: str = ""
    GATEWAY_TIMEOUT_SECONDS: int = 25
    GATEWAY_SANDBOX: bool = False  # If True, skip real gateway calls and return mock intents (dev only)
    GATEWAY_WEBHOOK_SECRET_B64: str = ""
    GATEWAY_WEBHOOK_PATH: str = ""  # If set, use this path for webhook signature verification
    GATEWAY_WEBHOOK_TOLERANCE_SECONDS: int = 300

    @property
    def mobile_money_operators(self) -> list[str]:
        return [o.strip().upper() for o in self.MOBILE_MONEY_OPERATORS.split(",") if o.strip()]

    @property
    def mobile_money_recipients(self) -> dict[str, str]:
        out = {}
        for pair in self.MOBILE_MONEY_RECIPIENTS.split(","):
            if ":" in pair:
                op, number = pair.split(":", 1)
                out[op.strip().upper()] = number.strip()
        return out


settings = Settings()
