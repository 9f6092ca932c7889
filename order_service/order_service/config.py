"""Orders service settings.

Loaded from environment variables (and an optional ``.env`` file):

- SERVICE_NAME: name bound to every log record (default: orders-service)
- LOG_LEVEL / LOG_FILE: loguru level and optional rotating file
- DATABASE_URL: SQLAlchemy URL of the orders database
- DATABASE_POOL_TIMEOUT: seconds to wait for a pooled connection
- KAFKA_BOOTSTRAP_SERVERS: broker list used for catalog requests
- CATALOG_BACKEND: "kafka" (default) or "memory" for local development
- CATALOG_REQUEST_TOPIC / CATALOG_REPLY_TOPIC: request/reply topics
- CATALOG_TIMEOUT_SECONDS: per-call timeout for catalog requests
- CATALOG_RETRIES: extra catalog attempts after a timeout
- DEFAULT_PAGE_SIZE: page size used when a listing request omits it
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration of the orders service."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    service_name: str = "orders-service"
    log_level: str = "INFO"
    log_file: Optional[str] = None

    database_url: str = "sqlite:///./orders.db"
    database_pool_timeout: float = Field(5.0, gt=0)

    kafka_bootstrap_servers: str = "kafka:9092"
    catalog_backend: Literal["kafka", "memory"] = "kafka"
    catalog_request_topic: str = "products.validate"
    catalog_reply_topic: str = "orders.products.replies"
    catalog_timeout_seconds: float = Field(5.0, gt=0)
    catalog_retries: int = Field(0, ge=0)

    default_page_size: int = Field(10, ge=1)


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return Settings()
