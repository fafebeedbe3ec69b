from typing import List, Optional, Union
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import json


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True
    )

    # Application
    APP_NAME: str = "CircleAPI"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    SECRET_KEY: str
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Database
    DB_USER: str
    DB_PASSWORD: str
    DB_NAME: str
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_URL: Optional[str] = None
    DB_AUTO_CREATE: bool = True

    @property
    def DATABASE_URL(self) -> str:
        if self.DB_URL:
            return self.DB_URL
        return f"postgresql+asyncpg://{self.DB_USER}:{self.DB_PASSWORD}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"

    # Redis
    REDIS_ENABLED: bool = False
    REDIS_PASSWORD: str = ""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379

    @property
    def REDIS_URL(self) -> str:
        return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/0"

    # JWT
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"

    # Email
    EMAIL_NOTIFICATIONS_ENABLED: bool = False
    SMTP_HOST: str = "smtp.gmail.com"
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM_EMAIL: str = "noreply@localhost"
    SMTP_FROM_NAME: str = "Circle"

    # CORS
    BACKEND_CORS_ORIGINS: Union[List[str], str] = []

    @field_validator("BACKEND_CORS_ORIGINS", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",") if i.strip()]
        elif isinstance(v, str) and v.startswith("["):
            return json.loads(v)
        return v

    # Throttle state: "memory" keeps throttle maps in-process, "redis" shares them
    THROTTLE_BACKEND: str = "memory"

    @field_validator("THROTTLE_BACKEND")
    @classmethod
    def check_throttle_backend(cls, v: str) -> str:
        if v not in ("memory", "redis"):
            raise ValueError("THROTTLE_BACKEND must be 'memory' or 'redis'")
        return v

    # Connection registry
    MAX_CONNECTIONS_PER_USER: int = 5
    MAX_TOTAL_CONNECTIONS: int = 1000
    CONNECTION_TIMEOUT_SECONDS: float = 300
    CONNECTION_CLEANUP_INTERVAL_SECONDS: float = 60
    HEARTBEAT_INTERVAL_SECONDS: float = 30
    ACTIVITY_SYNC_INTERVAL_SECONDS: float = 5

    # Presence
    PRESENCE_UPDATE_THROTTLE_SECONDS: float = 5
    PRESENCE_SYNC_INTERVAL_SECONDS: float = 60
    PRESENCE_BATCH_SIZE: int = 50
    PRESENCE_BATCH_PAUSE_SECONDS: float = 0.05
    PRESENCE_RECONCILE_LIMIT: int = 500

    # Notifications
    NOTIFICATION_THROTTLE_SECONDS: float = 1
    NOTIFICATION_ACK_TIMEOUT_SECONDS: float = 5
    NOTIFICATION_MAX_QUEUE_PER_USER: int = 100
    NOTIFICATION_BATCH_SIZE: int = 50
    NOTIFICATION_BATCH_PAUSE_SECONDS: float = 0.1
    NOTIFICATION_DEDUP_WINDOW_SECONDS: float = 300

    # Activity feed
    ACTIVITY_THROTTLE_SECONDS: float = 2
    ACTIVITY_BATCH_SIZE: int = 25
    ACTIVITY_BATCH_PAUSE_SECONDS: float = 0.1
    ACTIVITY_MAX_AGE_DAYS: int = 7
    ACTIVITY_CLEANUP_INTERVAL_SECONDS: float = 300

    # Friend requests
    FRIEND_REQUEST_TTL_DAYS: int = 30
    FRIEND_REQUEST_MESSAGE_MAX_LENGTH: int = 500
    FRIEND_REQUEST_SWEEP_INTERVAL_SECONDS: float = 300

    # Schema probing
    SCHEMA_WARNING_INTERVAL_SECONDS: float = 3600


settings = Settings()
