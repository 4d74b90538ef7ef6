# backend/tracking/core/config.py
import os
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional
from dotenv import load_dotenv
from pydantic import computed_field

load_dotenv()

class Settings(BaseSettings):
    PROJECT_NAME: str = "Storefront Tracking Backend"
    API_V1_STR: str = "/api/v1"
    LOGGING_LEVEL: str = os.getenv("LOGGING_LEVEL", "INFO")
    CLIENT_URL: str = "http://localhost:5173"

    # --- Database (reporting only) ---
    DATABASE_URL: str = "sqlite+aiosqlite:///./analytics.db"
    DATABASE_ECHO: bool = False

    # --- Admin access ---
    ADMIN_API_KEY: Optional[str] = None

    # --- Meta Conversions API ---
    META_ACCESS_TOKEN: Optional[str] = None
    META_PIXEL_ID: Optional[str] = None
    META_API_VERSION: str = "v18.0"
    META_GRAPH_URL: str = "https://graph.facebook.com"
    META_TEST_EVENT_CODE: Optional[str] = None
    META_REQUEST_TIMEOUT: float = 10.0
    META_MAX_RETRIES: int = 3
    META_RETRY_DELAY: float = 1.0  # seconds, doubled on every retry

    # --- Deduplication and retry queue ---
    DEDUP_TTL_SECONDS: int = 24 * 60 * 60
    DEDUP_SWEEP_INTERVAL_SECONDS: int = 300
    RETRY_QUEUE_INTERVAL_SECONDS: int = 300  # 0 disables the periodic drain
    RETRY_QUEUE_MAX_SIZE: int = 1000
    MAX_BATCH_SIZE: int = 100

    @computed_field(return_type=bool)
    @property
    def META_CAPI_CONFIGURED(self) -> bool:
        return bool(self.META_ACCESS_TOKEN and self.META_PIXEL_ID)

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=False,
        extra='ignore'
    )

settings = Settings()
if not settings.META_CAPI_CONFIGURED:
    print("WARNING: META_ACCESS_TOKEN / META_PIXEL_ID are not set. Server-side conversion tracking is disabled.")
if not settings.ADMIN_API_KEY:
    print("WARNING: ADMIN_API_KEY is not set. Admin endpoints will answer 503.")
