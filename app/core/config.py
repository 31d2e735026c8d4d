import os
import logging
from typing import Any, Optional

from pydantic import Field, HttpUrl, PostgresDsn, field_validator, ValidationInfo
from pydantic_settings import BaseSettings, SettingsConfigDict

from dotenv import load_dotenv

load_dotenv()

# Затем проверяем, запущено ли приложение в Docker
is_docker = os.path.exists("/.dockerenv") or os.path.exists("/run/.containerenv")

# Если запущено в Docker, перезагружаем переменные из .env.docker
if is_docker:
    load_dotenv(".env.docker", override=True)


class Settings(BaseSettings):
    API_V1_STR: str = "/api"

    PROJECT_NAME: str = "shop_snapshot_sync"

    SENTRY_DSN: Optional[HttpUrl] = None

    POSTGRES_SERVER: str = "localhost"
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = "postgres"
    POSTGRES_DB: str = "shop_snapshot_sync"
    # Строка, а не PostgresDsn: для локального запуска допускается любой URL SQLAlchemy
    SQLALCHEMY_DATABASE_URI: Optional[str] = Field(default=None, validate_default=True)

    # Брокер и backend Celery (Redis)
    CELERY_BROKER_URL: str = "redis://redis:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://redis:6379/1"

    # Shoptet API
    SHOPTET_API_URL: str = "https://api.myshoptet.com"
    SHOPTET_TIMEOUT: float = 30.0
    SHOPTET_DOWNLOAD_TIMEOUT: Optional[float] = None
    SHOPTET_RETRY_TIMES: int = 2
    SHOPTET_RETRY_SLEEP: float = 1.0

    # Каталог для скачанных снапшотов
    SNAPSHOT_STORAGE_ROOT: str = os.path.join(os.getcwd(), "storage")

    # Часовой пояс по умолчанию для магазинов без собственного
    APP_TIMEZONE: str = "Europe/Prague"

    @field_validator("SQLALCHEMY_DATABASE_URI", mode='before')
    def assemble_db_connection(cls, v: Optional[str], values: ValidationInfo) -> Any:
        if isinstance(v, str) and v:
            return v
        return PostgresDsn.build(
            scheme="postgresql",
            username=values.data.get("POSTGRES_USER"),
            password=values.data.get("POSTGRES_PASSWORD"),
            host=values.data.get("POSTGRES_SERVER"),
            path=f"{values.data.get('POSTGRES_DB') or ''}",
        ).unicode_string()

    model_config = SettingsConfigDict(case_sensitive=True, extra="ignore")


settings = Settings()
logging.info(f"settings {settings.PROJECT_NAME} db={settings.POSTGRES_SERVER}")
