from __future__ import annotations

from urllib.parse import urlsplit, urlunsplit

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ACCEPTED_SCHEMES = ("postgresql://", "postgres://")


class PoolConfig(BaseSettings):
    """Connection, pool and lifecycle settings, read from the environment / `.env`.

    Pool:
        DATABASE_URL, DB_POOL_MIN_SIZE, DB_POOL_MAX_SIZE, DB_POOL_TIMEOUT_SECONDS
    Startup:
        DB_CONNECT_ATTEMPTS, DB_CONNECT_WAIT_SECONDS
    Transactions:
        DB_TRANSACTION_TIMEOUT_SECONDS (deferred handle deadline),
        DB_TRANSACTION_PROBE (materializing probe vs. asyncpg status)
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    database_url: str = Field(..., alias="DATABASE_URL", min_length=1)
    db_pool_min_size: int = Field(default=1, alias="DB_POOL_MIN_SIZE", ge=1)
    db_pool_max_size: int = Field(default=10, alias="DB_POOL_MAX_SIZE", ge=1)
    db_pool_timeout_seconds: float | None = Field(
        default=None, alias="DB_POOL_TIMEOUT_SECONDS", gt=0
    )

    db_connect_attempts: int = Field(default=3, alias="DB_CONNECT_ATTEMPTS", ge=1)
    db_connect_wait_seconds: float = Field(default=1.0, alias="DB_CONNECT_WAIT_SECONDS", ge=0)

    db_transaction_timeout_seconds: float | None = Field(
        default=2.0, alias="DB_TRANSACTION_TIMEOUT_SECONDS", gt=0
    )
    db_transaction_probe: bool = Field(default=True, alias="DB_TRANSACTION_PROBE")

    @field_validator("database_url")
    @classmethod
    def _check_scheme(cls, value: str) -> str:
        url = value.strip()
        if not url:
            raise ValueError("DATABASE_URL cannot be empty")
        if not url.startswith(_ACCEPTED_SCHEMES):
            raise ValueError("DATABASE_URL must start with postgresql:// or postgres://")
        return url

    @model_validator(mode="after")
    def _check_pool_bounds(self) -> PoolConfig:
        if self.db_pool_max_size < self.db_pool_min_size:
            raise ValueError("DB_POOL_MAX_SIZE must be greater than or equal to DB_POOL_MIN_SIZE")
        return self

    @property
    def dsn(self) -> str:
        return self.database_url

    @property
    def redacted_dsn(self) -> str:
        """DSN with the password replaced, safe to log."""
        parts = urlsplit(self.database_url)
        if parts.password is None:
            return self.database_url
        host = parts.hostname or ""
        if parts.port is not None:
            host = f"{host}:{parts.port}"
        netloc = f"{parts.username or ''}:***@{host}"
        return urlunsplit(parts._replace(netloc=netloc))

    @property
    def min_size(self) -> int:
        return self.db_pool_min_size

    @property
    def max_size(self) -> int:
        return self.db_pool_max_size

    @property
    def timeout(self) -> float | None:
        """Seconds to wait when acquiring a connection; None means asyncpg's default."""
        return self.db_pool_timeout_seconds

    @property
    def transaction_timeout(self) -> float | None:
        return self.db_transaction_timeout_seconds

    @property
    def transaction_probe(self) -> bool:
        return self.db_transaction_probe
