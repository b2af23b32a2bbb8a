"""Application configuration."""

import json
from decimal import Decimal, InvalidOperation
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_parse_none_str="null",
    )

    # Application
    app_name: str = Field(default="Visitflow API", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")
    api_v1_prefix: str = Field(default="/api/v1", alias="API_V1_PREFIX")

    # Server
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")
    reload: bool = Field(default=False, alias="RELOAD")

    # Database
    database_url: str = Field(..., alias="DATABASE_URL")

    # Redis
    redis_host: str = Field(..., alias="REDIS_HOST")
    redis_port: int = Field(..., alias="REDIS_PORT")
    redis_username: str = Field(default="default", alias="REDIS_USERNAME")
    redis_password: str = Field(default="", alias="REDIS_PASSWORD")
    redis_decode_responses: bool = Field(default=True, alias="REDIS_DECODE_RESPONSES")

    # JWT (tokens are issued by the identity provider, only verified here)
    jwt_secret_key: str = Field(..., alias="JWT_SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(default=30, alias="ACCESS_TOKEN_EXPIRE_MINUTES")

    # CORS
    cors_origins_str: str = Field(
        default="http://localhost:3000",
        alias="CORS_ORIGINS",
    )
    cors_allow_credentials: bool = Field(default=True, alias="CORS_ALLOW_CREDENTIALS")

    @property
    def cors_origins(self) -> list[str]:
        """Get CORS origins as a list."""
        if isinstance(self.cors_origins_str, str):
            return [origin.strip() for origin in self.cors_origins_str.split(",") if origin.strip()]
        return [self.cors_origins_str]

    # Appointment holds and payment reconciliation
    appointment_hold_minutes: int = Field(default=15, ge=1, alias="APPOINTMENT_HOLD_MINUTES")
    payment_timeout_minutes: int = Field(default=20, ge=1, alias="PAYMENT_TIMEOUT_MINUTES")
    reconcile_max_attempts: int = Field(default=5, ge=1, alias="RECONCILE_MAX_ATTEMPTS")
    sweep_interval_seconds: int = Field(default=60, ge=1, alias="SWEEP_INTERVAL_SECONDS")
    sweeper_enabled: bool = Field(default=True, alias="SWEEPER_ENABLED")

    # Clinic day grid
    clinic_timezone: str = Field(default="Asia/Kolkata", alias="CLINIC_TIMEZONE")
    clinic_open: str = Field(default="09:00", alias="CLINIC_OPEN")
    clinic_close: str = Field(default="17:00", alias="CLINIC_CLOSE")
    slot_minutes: int = Field(default=30, ge=5, alias="SLOT_MINUTES")
    break_start: str | None = Field(default="13:00", alias="BREAK_START")
    break_end: str | None = Field(default="14:00", alias="BREAK_END")

    # Payment gateway
    payment_provider: str = Field(default="mock", alias="PAYMENT_PROVIDER")
    payment_currency: str = Field(default="INR", alias="PAYMENT_CURRENCY")
    payment_gateway_url: str = Field(default="", alias="PAYMENT_GATEWAY_URL")
    payment_gateway_key_id: str = Field(default="", alias="PAYMENT_GATEWAY_KEY_ID")
    payment_gateway_secret: str = Field(
        default="mock-gateway-secret-for-development-only",
        alias="PAYMENT_GATEWAY_SECRET",
    )
    payment_gateway_timeout_seconds: float = Field(
        default=10.0, gt=0, alias="PAYMENT_GATEWAY_TIMEOUT_SECONDS"
    )

    # Fees
    default_consultation_fee: Decimal = Field(
        default=Decimal("500.00"), alias="DEFAULT_CONSULTATION_FEE"
    )
    consultation_fees_str: str = Field(
        default="{}",
        alias="CONSULTATION_FEES",
        description="JSON object mapping doctor id to consultation fee",
    )

    @field_validator("consultation_fees_str")
    @classmethod
    def validate_consultation_fees(cls, v: str) -> str:
        """Validate the fee map is a JSON object of non-negative amounts."""
        try:
            raw = json.loads(v or "{}")
        except json.JSONDecodeError as e:
            raise ValueError(f"CONSULTATION_FEES is not valid JSON: {e}") from e

        if not isinstance(raw, dict):
            raise ValueError("CONSULTATION_FEES must be a JSON object")

        for doctor_id, fee in raw.items():
            try:
                amount = Decimal(str(fee))
            except InvalidOperation as e:
                raise ValueError(f"Invalid consultation fee for {doctor_id}: {fee!r}") from e
            if not amount.is_finite() or amount < 0:
                raise ValueError(f"Invalid consultation fee for {doctor_id}: {fee!r}")
        return v

    @property
    def consultation_fees(self) -> dict[str, Decimal]:
        """Get per-doctor consultation fees."""
        raw = json.loads(self.consultation_fees_str or "{}")
        return {str(doctor_id): Decimal(str(fee)) for doctor_id, fee in raw.items()}

    def consultation_fee_for(self, doctor_id: str) -> Decimal:
        """Resolve the consultation fee charged for a doctor."""
        return self.consultation_fees.get(doctor_id, self.default_consultation_fee)

    # Display caches (best-effort, may be slightly stale)
    availability_cache_ttl_seconds: int = Field(default=5, alias="AVAILABILITY_CACHE_TTL_SECONDS")
    queue_stats_cache_ttl_seconds: int = Field(default=5, alias="QUEUE_STATS_CACHE_TTL_SECONDS")

    # Domain events
    events_channel: str = Field(default="visitflow:events", alias="EVENTS_CHANNEL")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: str = Field(default="json", alias="LOG_FORMAT")

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment.lower() == "development"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()  # type: ignore[call-arg]


# Global settings instance
settings = get_settings()
