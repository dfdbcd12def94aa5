from __future__ import annotations

from dataclasses import dataclass
from typing import List, Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


DrainMode = Literal["fire_and_forget", "tracked"]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)

    # Core
    APP_NAME: str = "ContactCoordinator"
    ENV: str = "dev"
    LOG_LEVEL: str = "INFO"

    # Admin
    ADMIN_USERNAME: str = "admin"
    ADMIN_PASSWORD: str = "change-me"

    # CORS
    CORS_ORIGINS: List[str] = ["*"]

    # Dedup windows
    INBOUND_DEDUP_WINDOW_SECONDS: float = 300.0
    RESPONSE_WINDOW_SECONDS: float = 30.0

    # Processing
    PROCESSING_TIMEOUT_SECONDS: float = 30.0
    LOCK_TIMEOUT_SECONDS: float = 30.0
    DRAIN_MODE: DrainMode = "fire_and_forget"
    CANCEL_ON_TIMEOUT: bool = False

    # Sending
    MAX_RETRIES: int = 3
    RETRY_BACKOFF_BASE_SECONDS: float = 1.0
    SEND_TIMEOUT_SECONDS: float = 30.0

    # Capacity
    MAX_QUEUE_SIZE: int = 20
    MAX_CONTACTS: int = 100
    MAX_MESSAGE_HASHES: int = 1000
    MAX_SENT_RESPONSES: int = 5000

    # Janitor
    CLEANUP_INTERVAL_SECONDS: float = 30.0
    INACTIVITY_THRESHOLD_SECONDS: float = 300.0
    SHUTDOWN_TIMEOUT_SECONDS: float = 10.0

    # WeChat Work transport
    WEWORK_CORP_ID: Optional[str] = None
    WEWORK_AGENT_ID: Optional[str] = None
    WEWORK_SECRET: Optional[str] = None
    WEWORK_TOKEN: Optional[str] = None
    WEWORK_ENCODING_AES_KEY: Optional[str] = None


@dataclass
class CoordinatorConfig:
    """Engine knobs, decoupled from the environment so tests can build one directly."""

    inbound_window: float = 300.0
    response_window: float = 30.0
    processing_timeout: float = 30.0
    lock_timeout: float = 30.0
    max_retries: int = 3
    backoff_base: float = 1.0
    send_timeout: float = 30.0
    max_queue_size: int = 20
    max_contacts: int = 100
    max_message_hashes: int = 1000
    max_sent_responses: int = 5000
    cleanup_interval: float = 30.0
    inactivity_threshold: float = 300.0
    shutdown_timeout: float = 10.0
    drain_mode: DrainMode = "fire_and_forget"
    cancel_on_timeout: bool = False

    @classmethod
    def from_settings(cls, s: Settings) -> "CoordinatorConfig":
        return cls(
            inbound_window=s.INBOUND_DEDUP_WINDOW_SECONDS,
            response_window=s.RESPONSE_WINDOW_SECONDS,
            processing_timeout=s.PROCESSING_TIMEOUT_SECONDS,
            lock_timeout=s.LOCK_TIMEOUT_SECONDS,
            max_retries=s.MAX_RETRIES,
            backoff_base=s.RETRY_BACKOFF_BASE_SECONDS,
            send_timeout=s.SEND_TIMEOUT_SECONDS,
            max_queue_size=s.MAX_QUEUE_SIZE,
            max_contacts=s.MAX_CONTACTS,
            max_message_hashes=s.MAX_MESSAGE_HASHES,
            max_sent_responses=s.MAX_SENT_RESPONSES,
            cleanup_interval=s.CLEANUP_INTERVAL_SECONDS,
            inactivity_threshold=s.INACTIVITY_THRESHOLD_SECONDS,
            shutdown_timeout=s.SHUTDOWN_TIMEOUT_SECONDS,
            drain_mode=s.DRAIN_MODE,
            cancel_on_timeout=s.CANCEL_ON_TIMEOUT,
        )


settings = Settings()
