from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DATABASE_URL: str = ""
    BEEPER_API_URL: str = "http://localhost:23373"
    BEEPER_TOKEN: str = ""  # Required by BeeperClient; missing token is a ConfigurationError.
    BEEPER_TIMEOUT_SECONDS: float = 15.0
    BEEPER_MAX_RETRIES: int = 2
    BEEPER_RETRY_BASE_DELAY: float = 0.5

    SYNC_INTERVAL_MINUTES: int = 10
    SYNC_MAX_PAGES: int = 20
    SYNC_RECENT_MESSAGES: int = 15
    SYNC_INITIAL_MESSAGES: int = 50
    SYNC_MESSAGE_CONCURRENCY: int = 4
    SYNC_LOCK_TTL_SECONDS: int = 900
    BACKFILL_MESSAGES_PER_REQUEST: int = 50

    # Instagram injects its assistant into DMs as a participant.
    BOT_PARTICIPANT_DENYLIST: list[str] = ["meta ai", "meta.ai"]
    UNAVAILABLE_STATUS_CODES: list[int] = [502, 503, 504, 521, 522, 523, 530]
    UNAVAILABLE_MESSAGE_MARKERS: list[str] = [
        "tunnel",
        "bad gateway",
        "cloudflare",
        "connection refused",
        "origin is unreachable",
    ]

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
