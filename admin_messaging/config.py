from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

_ROOT_DIR = Path(__file__).resolve().parents[1]


class Settings(BaseSettings):

    app_name: str = "Admin Messaging API"
    log_level: str = "INFO"

    storage_backend: Literal["mongo", "memory"] = "mongo"
    mongo_url: str = "mongodb://localhost:27017"
    mongo_db_name: str = "admin_messaging"

    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24

    redis_url: Optional[str] = None

    storage_upload_url: Optional[str] = None
    storage_api_key: Optional[str] = None
    upload_timeout_seconds: float = 60.0

    ffmpeg_binary: str = "ffmpeg"
    transcode_timeout_seconds: float = 30.0

    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_from_email: str = "no-reply@localhost"
    smtp_from_name: str = "Store Messaging"
    smtp_timeout_seconds: float = 10.0
    dashboard_url: str = "http://localhost:5173"

    max_attachment_bytes: int = 50 * 1024 * 1024
    max_files_per_message: int = 10
    max_message_length: int = 5000
    edit_window_hours: int = 24

    model_config = SettingsConfigDict(
        env_file=str(_ROOT_DIR / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
