from pathlib import Path
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional
from urllib.parse import urlsplit

PACKAGE_DIR = Path(__file__).resolve().parent
BUNDLED_SQL_DIR = PACKAGE_DIR / "sql"

# Hosts of managed Postgres providers that only accept TLS connections
MANAGED_DB_HOST_SUFFIXES = (".render.com",)


class Settings(BaseSettings):
    APP_NAME: str = "schemaops"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    DATABASE_URL: str = ""
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 5
    DB_POOL_RECYCLE: int = 300
    DB_SSL: str = "auto"  # auto | require | disable

    MIGRATIONS_DIR: Optional[str] = None
    BASE_SCHEMA_PATH: Optional[str] = None
    RUN_MIGRATIONS_ON_STARTUP: bool = True
    MIGRATIONS_FAIL_FAST: bool = False

    ADMIN_USERNAME: str = "Admin"
    ADMIN_NAME: str = "Super Admin"
    ADMIN_EMAIL: str = "admin@example.com"
    ADMIN_PASSWORD: Optional[str] = None

    INTERNAL_JOB_SECRET: Optional[str] = None  # Required outside DEBUG for /internal/jobs/*

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    def ssl_required_for(self, host: Optional[str]) -> bool:
        """Whether a connection to ``host`` must use TLS under the DB_SSL mode."""
        mode = self.DB_SSL.lower()
        if mode == "require":
            return True
        if mode == "disable":
            return False
        if self.ENVIRONMENT in ("production", "staging"):
            return True
        host = (host or "").lower()
        return any(host.endswith(suffix) for suffix in MANAGED_DB_HOST_SUFFIXES)

    @property
    def use_ssl(self) -> bool:
        return self.ssl_required_for(urlsplit(self.DATABASE_URL).hostname)

    @property
    def migrations_dir(self) -> Path:
        if self.MIGRATIONS_DIR:
            return Path(self.MIGRATIONS_DIR)
        return BUNDLED_SQL_DIR / "versions"

    @property
    def base_schema_path(self) -> Path:
        if self.BASE_SCHEMA_PATH:
            return Path(self.BASE_SCHEMA_PATH)
        return BUNDLED_SQL_DIR / "base_schema.sql"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
