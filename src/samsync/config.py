"""Configuration settings for samsync."""

from typing import Annotated, List

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    SAM_API_KEY: str

    # Optional rotation pool, comma separated: "key1,key2,key3"
    SAM_API_KEYS: Annotated[List[str], NoDecode] = []

    # SAM API Base URL (production endpoint)
    SAM_BASE_URL: str = "https://api.sam.gov/prod/opportunities/v2/search"

    # Request budget per credential
    SAM_RATE_LIMIT_PER_MINUTE: int = 60
    SAM_RATE_LIMIT_WINDOW_SECONDS: float = 60.0

    SAM_REQUEST_TIMEOUT: float = 30.0
    SAM_MAX_RETRIES: int = 3
    SAM_RETRY_DELAY: float = 1.0
    SAM_MAX_RATE_LIMIT_WAIT_SECONDS: float = 60.0

    # Default search filters
    # a: Award Notice
    # 236220: Commercial and Institutional Building Construction
    SAM_DEFAULT_PTYPE: str = "a"
    SAM_DEFAULT_NCODE: str = "236220"

    # Target NAICS Codes for targeted syncs
    # 236210: Industrial Building Construction
    # 236220: Commercial and Institutional Building Construction
    # 237110: Water and Sewer Line Construction
    # 237130: Power and Communication Line Construction
    # 237310: Highway, Street, and Bridge Construction
    # 237990: Other Heavy and Civil Engineering Construction
    TARGET_NAICS: List[str] = [
        "236210",
        "236220",
        "237110",
        "237130",
        "237310",
        "237990",
    ]

    # Sync pipeline
    SYNC_PAGE_SIZE: int = 100
    SYNC_BATCH_SIZE: int = 100
    SYNC_PAGE_DELAY_SECONDS: float = 0.1
    SYNC_BATCH_DELAY_SECONDS: float = 0.1
    SYNC_INTERVAL_MINUTES: int = 30
    SYNC_LOOKBACK_DAYS: int = 30

    # Local storage
    OPPORTUNITY_STORE_FILE: str = "data/opportunities.jsonl"
    SYNC_RUN_LOG_FILE: str = "data/sync_runs.jsonl"

    RETENTION_DAYS: int = 365

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("SAM_API_KEYS", mode="before")
    @classmethod
    def _split_api_keys(cls, value: object) -> object:
        if isinstance(value, str):
            return [key.strip() for key in value.split(",") if key.strip()]
        return value

    @property
    def api_keys(self) -> List[str]:
        """Credentials to rotate through, falling back to the single key."""
        return self.SAM_API_KEYS or [self.SAM_API_KEY]


settings = Settings()  # type: ignore[call-arg]
