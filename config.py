from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables (and `.env`).
    """
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Database (MongoDB)
    DATABASE_URL: Optional[str] = None
    DATABASE_NAME: str = "task-management"

    # Security
    JWT_SECRET: str = "development_secret_key_change_me"
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_HOURS: int = 24
    RESET_TOKEN_EXPIRE_MINUTES: int = 60

    # Chatbot (Gemini)
    AI_API_KEY: Optional[str] = None
    AI_MODEL: str = "gemini-2.0-flash"
    AI_TIMEOUT_SECONDS: int = 60

    # Mail
    CLIENT_URL: str = "http://localhost:3000"
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USER: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    SMTP_USE_TLS: bool = True
    MAIL_FROM: str = "Task Manager <noreply@taskmanager.com>"

    UPLOADS_DIR: str = "uploads"
    CORS_ORIGINS: List[str] = ["*"]
    LOG_LEVEL: str = "INFO"
    PORT: int = 9000


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
