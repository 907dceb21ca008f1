import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv

from errors import FatalConfigurationError

load_dotenv()


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise FatalConfigurationError(f"{name} must be an integer, got {raw!r}")


def _float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise FatalConfigurationError(f"{name} must be a number, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    """Runtime configuration read from the environment."""

    app_env: str
    log_level: str
    database_url: str

    # Campaign provider
    campaign_webhook_secret: Optional[str]

    # AI enrichment
    openai_api_key: Optional[str]
    openai_model: str
    registry_api_key: Optional[str]
    registry_base_url: Optional[str]

    # Chat platform
    slack_bot_token: Optional[str]
    slack_signing_secret: Optional[str]
    slack_sales_channel: str
    skip_chat_signature_verification: bool

    # Admin auth
    admin_jwt_secret: Optional[str]
    admin_jwks_url: Optional[str]
    admin_jwt_audience: Optional[str]
    admin_emails: List[str] = field(default_factory=list)

    # Dead-letter persistence
    redis_url: Optional[str] = None

    # Feature flags
    ai_enrichment_enabled: bool = True
    chat_notifications_enabled: bool = True

    # Tunables
    http_timeout_seconds: float = 20.0
    llm_timeout_seconds: float = 30.0
    retry_attempts: int = 3
    retry_base_delay_seconds: float = 0.5
    breaker_threshold: int = 5
    breaker_cooldown_seconds: float = 60.0
    dead_letter_max_size: int = 1000
    dead_letter_ttl_seconds: int = 7 * 24 * 3600
    status_ttl_seconds: int = 3600
    status_max_size: int = 10000

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


def load_settings() -> Settings:
    """Build Settings from the environment and validate required values."""
    settings = Settings(
        app_env=os.getenv("APP_ENV", "development"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        database_url=os.getenv("DATABASE_URL", ""),
        campaign_webhook_secret=os.getenv("CAMPAIGN_WEBHOOK_SECRET") or None,
        openai_api_key=os.getenv("OPENAI_API_KEY") or None,
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        registry_api_key=os.getenv("REGISTRY_API_KEY") or None,
        registry_base_url=os.getenv("REGISTRY_BASE_URL") or None,
        slack_bot_token=os.getenv("SLACK_BOT_TOKEN") or None,
        slack_signing_secret=os.getenv("SLACK_SIGNING_SECRET") or None,
        slack_sales_channel=os.getenv("SLACK_SALES_CHANNEL", "#sales-leads"),
        skip_chat_signature_verification=_flag("SKIP_CHAT_SIGNATURE_VERIFICATION"),
        admin_jwt_secret=os.getenv("ADMIN_JWT_SECRET") or None,
        admin_jwks_url=os.getenv("ADMIN_JWKS_URL") or None,
        admin_jwt_audience=os.getenv("ADMIN_JWT_AUDIENCE") or None,
        admin_emails=[e.strip().lower() for e in os.getenv("ADMIN_EMAILS", "").split(",") if e.strip()],
        redis_url=os.getenv("REDIS_URL") or None,
        ai_enrichment_enabled=_flag("ENABLE_AI_ENRICHMENT", "true"),
        chat_notifications_enabled=_flag("ENABLE_CHAT_NOTIFICATIONS", "true"),
        http_timeout_seconds=_float("HTTP_TIMEOUT_SECONDS", 20.0),
        llm_timeout_seconds=_float("LLM_TIMEOUT_SECONDS", 30.0),
        retry_attempts=_int("RETRY_ATTEMPTS", 3),
        retry_base_delay_seconds=_float("RETRY_BASE_DELAY_SECONDS", 0.5),
        breaker_threshold=_int("BREAKER_THRESHOLD", 5),
        breaker_cooldown_seconds=_float("BREAKER_COOLDOWN_SECONDS", 60.0),
        dead_letter_max_size=_int("DEAD_LETTER_MAX_SIZE", 1000),
        dead_letter_ttl_seconds=_int("DEAD_LETTER_TTL_SECONDS", 7 * 24 * 3600),
        status_ttl_seconds=_int("STATUS_TTL_SECONDS", 3600),
        status_max_size=_int("STATUS_MAX_SIZE", 10000),
    )
    validate(settings)
    return settings


def validate(settings: Settings) -> None:
    missing = []
    if not settings.database_url:
        missing.append("DATABASE_URL")
    if not settings.slack_signing_secret and not settings.skip_chat_signature_verification:
        missing.append("SLACK_SIGNING_SECRET")
    if not settings.admin_jwt_secret and not settings.admin_jwks_url:
        missing.append("ADMIN_JWT_SECRET or ADMIN_JWKS_URL")
    if settings.is_production:
        if not settings.openai_api_key and settings.ai_enrichment_enabled:
            missing.append("OPENAI_API_KEY")
        if not settings.slack_bot_token and settings.chat_notifications_enabled:
            missing.append("SLACK_BOT_TOKEN")
    if missing:
        raise FatalConfigurationError(f"Missing required configuration: {', '.join(missing)}")

    if settings.is_production and settings.skip_chat_signature_verification:
        raise FatalConfigurationError("SKIP_CHAT_SIGNATURE_VERIFICATION cannot be enabled in production")
    if settings.retry_attempts < 1:
        raise FatalConfigurationError("RETRY_ATTEMPTS must be at least 1")


@lru_cache
def get_settings() -> Settings:
    return load_settings()
