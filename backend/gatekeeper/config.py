from functools import lru_cache
from typing import List, Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # App settings
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    PROJECT_NAME: str = "Huddle Gatekeeper"
    VERSION: str = "0.1.0"
    API_PREFIX: str = "/api"

    # CORS
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    # Database (system of record for reputation and the review queue)
    DATABASE_URL: str = "sqlite:///./gatekeeper.db"

    # Shared cache. Empty means local memory mode.
    REDIS_URL: str = ""
    REDIS_KEY_PREFIX: str = "huddle:"
    REDIS_SOCKET_TIMEOUT_S: float = 1.0
    REDIS_RETRY_BACKOFF_S: float = 2.0

    # Fast categorical screen (OpenAI moderation endpoint)
    OPENAI_API_KEY: str = ""
    SCREEN_MODEL: str = "omni-moderation-latest"

    # Contextual escalation (any OpenAI-compatible endpoint, Gemini by default)
    ESCALATION_API_KEY: str = ""
    ESCALATION_BASE_URL: str = "https://generativelanguage.googleapis.com/v1beta/openai/"
    # Ordered fallback chain: fastest/quota-limited first, slowest/reliable last
    ESCALATION_MODELS: List[str] = [
        "gemini-2.5-flash-lite",
        "gemini-2.5-flash",
        "gemini-2.5-pro",
    ]
    ESCALATION_TEMPERATURE: float = 0.1
    ESCALATION_MAX_TOKENS: int = 300

    # Message shaping
    MAX_MESSAGE_CHARS: int = 10000
    MAX_HISTORY_CHARS: int = 2000
    MAX_HISTORY_MESSAGES: int = 10

    # Reputation
    REPUTATION_START: int = 50
    REPUTATION_MIN: int = 0
    REPUTATION_MAX: int = 100
    REPUTATION_REWARD_SAFE: int = 1
    REPUTATION_PENALTY_UNSAFE: int = -20
    REPUTATION_SUSPICIOUS_THRESHOLD: int = 30
    REPUTATION_MIN_LEN_FOR_REWARD: int = 10
    REPUTATION_CACHE_TTL_S: int = 2592000  # 30 days

    # Rate limiting (messages per window sent to the providers)
    RATE_LIMIT_SUSPICIOUS: int = 5
    RATE_LIMIT_DEFAULT: int = 20
    RATE_LIMIT_WINDOW_S: int = 60

    # Decision cache
    VERDICT_CACHE_TTL_S: int = 86400
    LOCAL_CACHE_MAX_ENTRIES: int = 5000

    # Age tiers
    ADULT_AGE: int = 18
    UNKNOWN_AGE_POLICY: Literal["adult", "minor"] = "adult"

    # Review queue worker
    REVIEW_WORKER_ENABLED: bool = True
    REVIEW_WORKER_INTERVAL_S: int = 60
    REVIEW_MAX_RETRIES: int = 3
    MODERATION_EVENTS_CHANNEL: str = "moderation_events"

    # Log provider payloads and raw outputs at DEBUG level
    DEBUG_AI: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
    )


@lru_cache()
def get_settings() -> Settings:
    settings = Settings()

    # Only validate provider keys in production
    if settings.ENVIRONMENT == "production" and not settings.OPENAI_API_KEY:
        raise ValueError("OPENAI_API_KEY is required in production environment")

    return settings
