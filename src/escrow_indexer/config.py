"""Environment-driven settings for the escrow indexer.

Every group reads the process environment and the ``.env`` file in the
working directory. ``get_settings()`` caches one validated instance.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

DEFAULT_ESCROW_ADDRESS = "0xca38607d85e8f6294dc10728669605e6664c2d70"


class DatabaseSettings(BaseSettings):
    """Where the materialized ledger is stored."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL connection string (sqlite+aiosqlite accepted for local runs)",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Accept async-capable PostgreSQL or SQLite URLs."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError(
                "DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string"
            )
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings (auxiliary read cache)."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string; caching is disabled when unset",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Require a redis:// scheme."""
        if v is not None and not v.startswith("redis://"):
            raise ValueError("REDIS_URL must start with redis://")
        return v


class ChainSettings(BaseSettings):
    """Chain and escrow contract settings."""

    model_config = SettingsConfigDict(env_prefix="CHAIN_", extra="ignore")

    chain_id: int = Field(
        default=8453,
        alias="CHAIN_ID",
        ge=1,
        le=2**32 - 1,
        description="Chain id of the indexed network (must fit in 4 bytes)",
    )
    rpc_url: str | None = Field(
        default=None,
        alias="CHAIN_RPC_URL",
        description="Primary RPC endpoint used for auxiliary contract reads",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="CHAIN_FALLBACK_RPC_URL",
        description="Fallback RPC endpoint",
    )
    escrow_address: str = Field(
        default=DEFAULT_ESCROW_ADDRESS,
        alias="CHAIN_ESCROW_ADDRESS",
        description="Escrow contract address",
    )
    max_requests_per_second: float = Field(
        default=50.0,
        alias="CHAIN_MAX_REQUESTS_PER_SECOND",
        gt=0.0,
        le=10_000.0,
        description="Rate limit for RPC calls",
    )

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_rpc_url(cls, v: str | None) -> str | None:
        """Require an HTTP(S) endpoint."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v

    @field_validator("escrow_address")
    @classmethod
    def validate_escrow_address(cls, v: str) -> str:
        if not (v.startswith("0x") and len(v) == 42):
            raise ValueError("CHAIN_ESCROW_ADDRESS must be a 0x-prefixed 20-byte address")
        return v.lower()


class LedgerSettings(BaseSettings):
    """Materialization engine settings."""

    model_config = SettingsConfigDict(env_prefix="LEDGER_", extra="ignore")

    one_token_unit: int = Field(
        default=1_000_000,
        alias="LEDGER_ONE_TOKEN_UNIT",
        ge=1,
        description="Smallest remaining balance that can still serve an intent (token base units)",
    )
    deduplicate_events: bool = Field(
        default=True,
        alias="LEDGER_DEDUPLICATE_EVENTS",
        description="Skip events whose ordered id was already applied",
    )
    fetch_payee_details: bool = Field(
        default=True,
        alias="LEDGER_FETCH_PAYEE_DETAILS",
        description="Read payee details from the escrow contract when not stored yet",
    )


def _from_env_file(group: type[BaseSettings]) -> BaseSettings:
    # Nested groups only see .env when the file is passed to them explicitly.
    return group(_env_file=_ENV_FILE, _env_file_encoding=_ENV_FILE_ENCODING)


class Settings(BaseSettings):
    """Top-level indexer settings.

    Example:
        ```python
        from escrow_indexer.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.ledger.one_token_unit)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    database: DatabaseSettings = Field(default_factory=lambda: _from_env_file(DatabaseSettings))
    redis: RedisSettings = Field(default_factory=lambda: _from_env_file(RedisSettings))
    chain: ChainSettings = Field(default_factory=lambda: _from_env_file(ChainSettings))
    ledger: LedgerSettings = Field(default_factory=lambda: _from_env_file(LedgerSettings))

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Root logger level",
    )

    def get_logging_level(self) -> int:
        """Numeric level for ``logging``."""
        return int(getattr(logging, self.log_level))

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Settings suitable for the startup log line, with passwords masked."""
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "chain": {
                "chain_id": str(self.chain.chain_id),
                "rpc_url": self.chain.rpc_url or "(not set)",
                "fallback_rpc_url": self.chain.fallback_rpc_url or "(not set)",
                "escrow_address": self.chain.escrow_address,
            },
            "ledger": {
                "one_token_unit": str(self.ledger.one_token_unit),
                "deduplicate_events": str(self.ledger.deduplicate_events),
                "fetch_payee_details": str(self.ledger.fetch_payee_details),
            },
            "log_level": self.log_level,
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        scheme, sep, rest = url.partition("://")
        credentials, at, host = rest.rpartition("@")
        if not sep or not at or ":" not in credentials:
            return url
        user = credentials.split(":", 1)[0]
        return f"{scheme}://{user}:***@{host}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the cached settings, validating them on first call.

    Raises:
        ValidationError: If DATABASE_URL is missing or a value is invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Forget the cached settings so the next call re-reads the environment."""
    get_settings.cache_clear()
