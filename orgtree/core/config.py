import os
import logging
from pydantic import BaseModel, Field
from dotenv import load_dotenv

load_dotenv()


class CacheSettings(BaseModel):
    enabled: bool = Field(default=os.getenv("ENABLE_CACHING", "true").lower() == "true")
    max_size: int = Field(default=int(os.getenv("CACHE_MAX_SIZE", "500")))
    ttl_seconds: int = Field(default=int(os.getenv("CACHE_TTL_SECONDS", "300")))


class Config(BaseModel):
    app_name: str = "Org Tree Engine"
    environment: str = os.getenv("APP_ENV", "development")
    version: str = "1.0.0"

    # Database
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./orgtree.db")

    # Logging
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # Subtree cache in front of the node store
    cache: CacheSettings = CacheSettings()

    # Optimistic concurrency: a create or move whose snapshot went stale is retried
    # this many times in total before the error reaches the caller.
    move_max_attempts: int = int(os.getenv("MOVE_MAX_ATTEMPTS", "3"))
    move_retry_wait_seconds: float = float(os.getenv("MOVE_RETRY_WAIT_SECONDS", "0.05"))

    # Bootstrap
    seed_default_departments: bool = os.getenv("SEED_DEFAULT_DEPARTMENTS", "false").lower() == "true"

settings = Config()

_logger = logging.getLogger(__name__)
if settings.move_max_attempts < 1:
    raise RuntimeError(
        f"FATAL: MOVE_MAX_ATTEMPTS must be at least 1 (got {settings.move_max_attempts})."
    )
if settings.environment != "development" and settings.database_url.startswith("sqlite:///./"):
    _logger.warning("Using a local SQLite file outside development; set DATABASE_URL.")
