from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _digits(value: str) -> str:
    return "".join(ch for ch in value if ch.isdigit())


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.

    The instance is frozen: it is built once at process start and handed to
    the routes and the delivery service, never mutated afterwards.
    """

    # env vars take precedence over the .env fallback
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
        frozen=True,
    )

    # Database / logging
    DATABASE_URL: str = "sqlite:///./sms_booking.db"
    LOG_LEVEL: str = "INFO"

    # Inbound webhook HMAC secret; empty disables verification
    WEBHOOK_SECRET: str = ""
    # Per-client webhook requests allowed per window; 0 disables the limit
    WEBHOOK_RATE_LIMIT: int = Field(default=100, ge=0)
    WEBHOOK_RATE_WINDOW_SECONDS: int = Field(default=60, gt=0)

    # SMS gateway
    SMS_GATEWAY_BASE_URL: str = "https://connect.sensorequation.com"
    SMS_GATEWAY_API_KEY: str = ""
    SMS_GATEWAY_DEVICES: str = "3"
    ALLOW_MOCK_SEND: bool = True

    # Delivery retry policy
    SEND_MAX_RETRIES: int = Field(default=3, ge=1)
    SEND_BASE_DELAY_MS: int = Field(default=800, ge=0)
    SEND_TIMEOUT_MS: int = Field(default=15000, gt=0)

    # Numbers recorded on stored messages
    SMS_SENDER_NUMBER: str = "0000000000"
    SMS_SYSTEM_NUMBER: Optional[str] = None

    # Public booking front end used to build booking links
    BOOKING_BASE_URL: str = "http://localhost:5173"

    @field_validator("SMS_GATEWAY_BASE_URL", "BOOKING_BASE_URL")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("SMS_SENDER_NUMBER")
    @classmethod
    def sender_digits(cls, v: str) -> str:
        return _digits(v) or "0000000000"

    @field_validator("SMS_SYSTEM_NUMBER")
    @classmethod
    def system_digits(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return _digits(v) or None

    @property
    def system_number(self) -> str:
        """Number recorded as the recipient of inbound messages."""
        return self.SMS_SYSTEM_NUMBER or self.SMS_SENDER_NUMBER

    @property
    def gateway_configured(self) -> bool:
        """True when an API key for the SMS gateway is present."""
        return bool(self.SMS_GATEWAY_API_KEY)

    @property
    def send_endpoint(self) -> str:
        return f"{self.SMS_GATEWAY_BASE_URL}/services/send-message.php"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
