"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
holder sync engine, loading and validating environment variables at
startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


def _parse_csv(v: object, *, name: str) -> tuple[str, ...]:
    if v is None:
        return ()
    if isinstance(v, str):
        return tuple(p.strip().lower() for p in v.split(",") if p.strip())
    if isinstance(v, (list, tuple)):
        return tuple(str(x).strip().lower() for x in v)
    raise TypeError(f"Invalid {name} type")


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL (or SQLite for local runs) connection string",
    )
    pool_size: int = Field(
        default=5,
        alias="DATABASE_POOL_SIZE",
        ge=1,
        le=100,
        description="Connection pool size (ignored for SQLite)",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite:///", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or SQLite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string (optional RPC cache)",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None:
            return v
        if not v.startswith("redis://"):
            raise ValueError("REDIS_URL must start with redis://")
        return v


class RpcSettings(BaseSettings):
    """EVM JSON-RPC settings used for native balances and token decimals."""

    model_config = SettingsConfigDict(env_prefix="RPC_", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="RPC_URL",
        description="Primary EVM RPC endpoint",
    )
    fallback_url: str | None = Field(
        default=None,
        alias="RPC_FALLBACK_URL",
        description="Fallback EVM RPC endpoint",
    )
    chain: str = Field(
        default="ethereum",
        alias="RPC_CHAIN",
        description="Chain served by RPC_URL; pools on other chains skip on-chain lookups",
    )
    max_requests_per_second: float = Field(
        default=25.0,
        alias="RPC_MAX_REQUESTS_PER_SECOND",
        gt=0,
        le=1000,
        description="Token-bucket rate limit for RPC calls",
    )

    @field_validator("url", "fallback_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v

    @property
    def enabled(self) -> bool:
        return self.url is not None


class MoralisSettings(BaseSettings):
    """Moralis Web3 Data API settings."""

    model_config = SettingsConfigDict(env_prefix="MORALIS_", extra="ignore")

    api_key: SecretStr | None = Field(
        default=None,
        alias="MORALIS_API_KEY",
        description="Moralis API key",
    )
    base_url: str = Field(
        default="https://deep-index.moralis.io/api/v2.2",
        alias="MORALIS_BASE_URL",
        description="Moralis API base URL",
    )
    max_requests_per_second: float = Field(
        default=20.0,
        alias="MORALIS_MAX_REQUESTS_PER_SECOND",
        gt=0,
        le=100,
        description="Minimum spacing between Moralis calls",
    )

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("MORALIS_BASE_URL must be an HTTP(S) endpoint")
        return v.rstrip("/")

    @property
    def enabled(self) -> bool:
        return self.api_key is not None


class AlchemySettings(BaseSettings):
    """Alchemy JSON-RPC and Prices API settings."""

    model_config = SettingsConfigDict(env_prefix="ALCHEMY_", extra="ignore")

    api_key: SecretStr | None = Field(
        default=None,
        alias="ALCHEMY_API_KEY",
        description="Alchemy API key",
    )
    max_transfer_pages: int = Field(
        default=10,
        alias="ALCHEMY_MAX_TRANSFER_PAGES",
        ge=1,
        le=500,
        description="Upper bound on alchemy_getAssetTransfers pages replayed per token",
    )
    max_requests_per_second: float = Field(
        default=10.0,
        alias="ALCHEMY_MAX_REQUESTS_PER_SECOND",
        gt=0,
        le=100,
        description="Minimum spacing between Alchemy calls",
    )

    @property
    def enabled(self) -> bool:
        return self.api_key is not None


class EtherscanSettings(BaseSettings):
    """Etherscan v2 API settings."""

    model_config = SettingsConfigDict(env_prefix="ETHERSCAN_", extra="ignore")

    api_key: SecretStr | None = Field(
        default=None,
        alias="ETHERSCAN_API_KEY",
        description="Etherscan API key",
    )
    base_url: str = Field(
        default="https://api.etherscan.io/v2/api",
        alias="ETHERSCAN_BASE_URL",
        description="Etherscan API endpoint",
    )
    max_requests_per_second: float = Field(
        default=5.0,
        alias="ETHERSCAN_MAX_REQUESTS_PER_SECOND",
        gt=0,
        le=20,
        description="Etherscan free tier allows 5 calls per second",
    )

    @property
    def enabled(self) -> bool:
        return self.api_key is not None


class CoinGeckoSettings(BaseSettings):
    """CoinGecko price API settings."""

    model_config = SettingsConfigDict(env_prefix="COINGECKO_", extra="ignore")

    enabled: bool = Field(
        default=True,
        alias="COINGECKO_ENABLED",
        description="Use CoinGecko as a price source",
    )
    base_url: str = Field(
        default="https://api.coingecko.com/api/v3",
        alias="COINGECKO_BASE_URL",
        description="CoinGecko API base URL",
    )
    api_key: SecretStr | None = Field(
        default=None,
        alias="COINGECKO_API_KEY",
        description="Optional demo API key",
    )


class MorphoSettings(BaseSettings):
    """Morpho Blue GraphQL settings."""

    model_config = SettingsConfigDict(env_prefix="MORPHO_", extra="ignore")

    graphql_url: str = Field(
        default="https://blue-api.morpho.org/graphql",
        alias="MORPHO_GRAPHQL_URL",
        description="Morpho GraphQL endpoint",
    )
    enabled: bool = Field(
        default=True,
        alias="MORPHO_ENABLED",
        description="Enable the protocol-specific vault price tier",
    )


class PricingSettings(BaseSettings):
    """Price resolution settings."""

    model_config = SettingsConfigDict(env_prefix="PRICING_", extra="ignore")

    cache_ttl_seconds: int = Field(
        default=3600,
        alias="PRICING_CACHE_TTL_SECONDS",
        ge=0,
        le=7 * 24 * 3600,
        description="How long a cached token price stays fresh",
    )
    morpho_vaults: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(),
        alias="PRICING_MORPHO_VAULTS",
        description="Extra vault addresses to price via Morpho (comma-separated)",
    )

    @field_validator("morpho_vaults", mode="before")
    @classmethod
    def _parse_vaults(cls, v: object) -> tuple[str, ...]:
        return _parse_csv(v, name="PRICING_MORPHO_VAULTS")


class HolderSettings(BaseSettings):
    """Holder record computation settings."""

    model_config = SettingsConfigDict(env_prefix="HOLDERS_", extra="ignore")

    default_decimals: int = Field(
        default=18,
        alias="HOLDERS_DEFAULT_DECIMALS",
        ge=0,
        le=36,
        description="Token decimals used when the chain lookup is unavailable",
    )
    wallet_lookup_concurrency: int = Field(
        default=5,
        alias="HOLDERS_WALLET_LOOKUP_CONCURRENCY",
        ge=1,
        le=100,
        description="Maximum concurrent per-holder wallet lookups",
    )


class SyncSettings(BaseSettings):
    """Per-pool sync settings."""

    model_config = SettingsConfigDict(env_prefix="SYNC_", extra="ignore")

    top_holders_limit: int = Field(
        default=100,
        alias="SYNC_TOP_HOLDERS_LIMIT",
        ge=1,
        le=10_000,
        description="Number of top holders stored per pool",
    )
    fetch_timeout_seconds: float = Field(
        default=60.0,
        alias="SYNC_FETCH_TIMEOUT_SECONDS",
        gt=0,
        le=3600,
        description="Default holder fetch timeout",
    )
    chain_timeouts: Annotated[dict[str, float], NoDecode] = Field(
        default_factory=lambda: {"base": 30.0},
        alias="SYNC_CHAIN_TIMEOUTS",
        description="Per-chain fetch timeout overrides, e.g. 'base=30,ethereum=60'",
    )
    quick_fetch_timeout_seconds: float = Field(
        default=15.0,
        alias="SYNC_QUICK_FETCH_TIMEOUT_SECONDS",
        gt=0,
        le=600,
        description="Timeout for the reduced fetch raced after a primary timeout",
    )
    providers_priority: Annotated[tuple[str, ...], NoDecode] = Field(
        default=("moralis", "alchemy", "etherscan"),
        alias="PROVIDERS_PRIORITY",
        description="Provider order for holder lookups (comma-separated)",
    )

    @field_validator("chain_timeouts", mode="before")
    @classmethod
    def _parse_chain_timeouts(cls, v: object) -> dict[str, float]:
        if v is None:
            return {}
        if isinstance(v, dict):
            return {str(k).lower(): float(t) for k, t in v.items()}
        if isinstance(v, str):
            out: dict[str, float] = {}
            for part in v.split(","):
                part = part.strip()
                if not part:
                    continue
                chain, sep, seconds = part.partition("=")
                if not sep:
                    raise ValueError(f"SYNC_CHAIN_TIMEOUTS entry must be chain=seconds: {part!r}")
                out[chain.strip().lower()] = float(seconds)
            return out
        raise TypeError("Invalid SYNC_CHAIN_TIMEOUTS type")

    @field_validator("providers_priority", mode="before")
    @classmethod
    def _parse_priority(cls, v: object) -> tuple[str, ...]:
        parsed = _parse_csv(v, name="PROVIDERS_PRIORITY")
        if not parsed:
            raise ValueError("PROVIDERS_PRIORITY must name at least one provider")
        return parsed

    def timeout_for(self, chain: str) -> float:
        """Fetch timeout for a chain, falling back to the default."""
        return self.chain_timeouts.get(chain.lower(), self.fetch_timeout_seconds)


class SchedulerSettings(BaseSettings):
    """Bulk sync scheduler settings."""

    model_config = SettingsConfigDict(env_prefix="SCHEDULER_", extra="ignore")

    interval_seconds: int = Field(
        default=30 * 60,
        alias="SCHEDULER_INTERVAL_SECONDS",
        ge=10,
        le=7 * 24 * 3600,
        description="Interval between bulk runs",
    )
    inter_pool_delay_seconds: float = Field(
        default=2.0,
        alias="SCHEDULER_INTER_POOL_DELAY_SECONDS",
        ge=0,
        le=600,
        description="Pause between pools within a bulk run",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from holder_sync.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.sync.timeout_for("base"))
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    rpc: RpcSettings = Field(
        default_factory=lambda: RpcSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    moralis: MoralisSettings = Field(
        default_factory=lambda: MoralisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    alchemy: AlchemySettings = Field(
        default_factory=lambda: AlchemySettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    etherscan: EtherscanSettings = Field(
        default_factory=lambda: EtherscanSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    coingecko: CoinGeckoSettings = Field(
        default_factory=lambda: CoinGeckoSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    morpho: MorphoSettings = Field(
        default_factory=lambda: MorphoSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    pricing: PricingSettings = Field(
        default_factory=lambda: PricingSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    holders: HolderSettings = Field(
        default_factory=lambda: HolderSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    sync: SyncSettings = Field(
        default_factory=lambda: SyncSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    scheduler: SchedulerSettings = Field(
        default_factory=lambda: SchedulerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "rpc": {
                "chain": self.rpc.chain,
                "url": self.rpc.url or "(not set)",
                "fallback_url": self.rpc.fallback_url or "(not set)",
            },
            "providers": {
                "priority": ",".join(self.sync.providers_priority),
                "moralis_api_key": "(set)" if self.moralis.api_key else "(not set)",
                "alchemy_api_key": "(set)" if self.alchemy.api_key else "(not set)",
                "etherscan_api_key": "(set)" if self.etherscan.api_key else "(not set)",
                "coingecko_enabled": str(self.coingecko.enabled),
                "morpho_enabled": str(self.morpho.enabled),
            },
            "sync": {
                "top_holders_limit": str(self.sync.top_holders_limit),
                "fetch_timeout_seconds": str(self.sync.fetch_timeout_seconds),
                "chain_timeouts": ",".join(f"{k}={v:g}" for k, v in sorted(self.sync.chain_timeouts.items())),
                "quick_fetch_timeout_seconds": str(self.sync.quick_fetch_timeout_seconds),
            },
            "scheduler": {
                "interval_seconds": str(self.scheduler.interval_seconds),
                "inter_pool_delay_seconds": str(self.scheduler.inter_pool_delay_seconds),
            },
            "pricing_cache_ttl_seconds": str(self.pricing.cache_ttl_seconds),
            "log_level": self.log_level,
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Uses LRU cache to ensure settings are loaded only once and
    reused across the application.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
