# exportqueue/core/config.py

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


#
# =====================================================
#                    SETTINGS CLASS
# =====================================================
#


class Settings(BaseSettings):
    """
    Application Settings
    """

    model_config = SettingsConfigDict(
        env_file=".env", extra="ignore", case_sensitive=False
    )

    environment: str = "local"
    allowed_cors_urls: str = "*"

    # Database
    database_url: str = "sqlite:///./exports.db"
    database_echo: bool = False

    # Redis base fields (for .env / local)
    redis_host: str = "localhost"
    redis_port: str = "6379"
    redis_username: Optional[str] = None
    redis_password: Optional[str] = None

    # Export processing
    export_storage_dir: str = "./assets"
    export_page_size: int = 500  # rows per runner tick
    export_lease_seconds: int = 300  # a crashed tick frees the job after this
    export_tick_seconds: int = 10  # beat interval for the runner
    export_batch_limit: int = 50  # jobs advanced per beat

    # Identity of the requester, set by the upstream auth proxy
    identity_header: str = "X-User-Id"

    api_prefix: str = "/api"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "console"  # "console" or "json"

    #
    # ---------------------------
    #  REDIS / CELERY
    # ---------------------------
    #
    @property
    def redis_url(self) -> str:
        """Construct the Redis URL."""
        host = self.redis_host or "localhost"
        port = self.redis_port or "6379"
        if self.redis_username and self.redis_password:
            return f"redis://{self.redis_username}:{self.redis_password}@{host}:{port}"
        elif self.redis_password:
            return f"redis://:{self.redis_password}@{host}:{port}"
        else:
            return f"redis://{host}:{port}"

    @property
    def celery_broker(self) -> str:
        """Construct the Redis URL for Celery broker (DB 1)."""
        return f"{self.redis_url}/1"

    @property
    def celery_backend(self) -> str:
        """Construct the Redis URL for Celery backend (DB 2)."""
        return f"{self.redis_url}/2"


@lru_cache
def get_settings() -> Settings:
    """Load settings once per process."""
    return Settings()


settings = get_settings()
