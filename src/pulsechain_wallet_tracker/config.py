"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
PulseChain wallet tracker, loading and validating environment variables
at startup.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


def _split_urls(v: object, *, name: str) -> tuple[str, ...]:
    if isinstance(v, str):
        parts = tuple(p.strip() for p in v.split(",") if p.strip())
    elif isinstance(v, (list, tuple)):
        parts = tuple(str(x).strip() for x in v if str(x).strip())
    else:
        raise TypeError(f"Invalid {name} type")
    if not parts:
        raise ValueError(f"{name} must list at least one URL")
    return parts


class PulseChainSettings(BaseSettings):
    """PulseChain RPC settings (HTTP reads and WebSocket subscriptions)."""

    model_config = SettingsConfigDict(env_prefix="PULSECHAIN_", extra="ignore")

    rpc_urls: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(
            "https://rpc-pulsechain.g4mm4.io",
            "https://rpc.pulsechain.com",
        ),
        alias="PULSECHAIN_RPC_URLS",
        description="HTTP(S) RPC endpoints in failover order (comma-separated)",
    )
    ws_urls: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(
            "wss://rpc-pulsechain.g4mm4.io",
            "wss://rpc.pulsechain.com",
            "wss://pulsechain-rpc.publicnode.com",
        ),
        alias="PULSECHAIN_WS_URLS",
        description="WebSocket RPC endpoints in reconnect rotation order (comma-separated)",
    )
    request_timeout_seconds: float = Field(
        default=10.0,
        alias="PULSECHAIN_REQUEST_TIMEOUT_SECONDS",
        gt=0.0,
        le=300.0,
        description="Timeout for a single RPC attempt",
    )
    max_retries: int = Field(
        default=3,
        alias="PULSECHAIN_MAX_RETRIES",
        ge=1,
        le=20,
        description="Maximum attempts per RPC call across endpoints",
    )
    max_requests_per_second: float = Field(
        default=25.0,
        alias="PULSECHAIN_MAX_REQUESTS_PER_SECOND",
        gt=0.0,
        le=1000.0,
        description="Client-side RPC rate limit",
    )

    @field_validator("rpc_urls", mode="before")
    @classmethod
    def _parse_rpc_urls(cls, v: object) -> tuple[str, ...]:
        urls = _split_urls(v, name="PULSECHAIN_RPC_URLS")
        for url in urls:
            if not url.startswith(("http://", "https://")):
                raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return urls

    @field_validator("ws_urls", mode="before")
    @classmethod
    def _parse_ws_urls(cls, v: object) -> tuple[str, ...]:
        urls = _split_urls(v, name="PULSECHAIN_WS_URLS")
        for url in urls:
            if not url.startswith(("ws://", "wss://")):
                raise ValueError("WebSocket URL must start with ws:// or wss://")
        return urls


class ScannerSettings(BaseSettings):
    """PulseChain Scan (bulk balance source) settings."""

    model_config = SettingsConfigDict(env_prefix="SCANNER_", extra="ignore")

    api_url: str = Field(
        default="https://api.scan.pulsechain.com/api/v2",
        alias="SCANNER_API_URL",
        description="PulseChain Scan v2 API base URL",
    )
    timeout_seconds: float = Field(
        default=30.0,
        alias="SCANNER_TIMEOUT_SECONDS",
        gt=0.0,
        le=300.0,
        description="HTTP timeout per scanner request",
    )
    max_retries: int = Field(
        default=3,
        alias="SCANNER_MAX_RETRIES",
        ge=1,
        le=10,
        description="Attempts per request on 429/5xx and network errors",
    )
    recent_blocks_to_scan: int = Field(
        default=1000,
        alias="SCANNER_RECENT_BLOCKS_TO_SCAN",
        ge=0,
        le=100_000,
        description="Transfer-log window used to find tokens the scanner has not indexed yet (0 disables)",
    )

    @field_validator("api_url")
    @classmethod
    def validate_api_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("SCANNER_API_URL must be an HTTP(S) endpoint")
        return v.rstrip("/")


class PriceSettings(BaseSettings):
    """DexScreener price quote settings."""

    model_config = SettingsConfigDict(env_prefix="PRICE_", extra="ignore")

    enabled: bool = Field(
        default=True,
        alias="PRICE_ENABLED",
        description="Attach USD prices to balance reads",
    )
    api_url: str = Field(
        default="https://api.dexscreener.com/latest/dex",
        alias="PRICE_API_URL",
        description="DexScreener API base URL",
    )
    cache_ttl_seconds: float = Field(
        default=300.0,
        alias="PRICE_CACHE_TTL_SECONDS",
        ge=0.0,
        le=86_400.0,
        description="How long a price quote is reused",
    )
    min_liquidity_usd: Decimal = Field(
        default=Decimal("1000"),
        alias="PRICE_MIN_LIQUIDITY_USD",
        description="Minimum pair liquidity (USD) for a pair to be priced from",
    )

    @field_validator("api_url")
    @classmethod
    def validate_api_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("PRICE_API_URL must be an HTTP(S) endpoint")
        return v.rstrip("/")

    @field_validator("min_liquidity_usd")
    @classmethod
    def validate_min_liquidity(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("PRICE_MIN_LIQUIDITY_USD must be >= 0")
        return v


class TrackerSettings(BaseSettings):
    """Balance cache and live watcher settings."""

    model_config = SettingsConfigDict(env_prefix="TRACKER_", extra="ignore")

    reconciliation_interval_seconds: float = Field(
        default=300.0,
        alias="TRACKER_RECONCILIATION_INTERVAL_SECONDS",
        ge=1.0,
        le=86_400.0,
        description="Seconds between reconciliation sweeps",
    )
    max_reconnect_attempts: int = Field(
        default=5,
        alias="TRACKER_MAX_RECONNECT_ATTEMPTS",
        ge=0,
        le=100,
        description="Consecutive failed WebSocket reconnects before the watcher gives up",
    )
    reconnect_base_delay_seconds: float = Field(
        default=1.0,
        alias="TRACKER_RECONNECT_BASE_DELAY_SECONDS",
        gt=0.0,
        le=60.0,
        description="Exponential backoff base delay for reconnects",
    )
    eager_fetch_on_read: bool = Field(
        default=True,
        alias="TRACKER_EAGER_FETCH_ON_READ",
        description="Refresh a cached wallet on read while the watcher is disconnected",
    )
    price_concurrency: int = Field(
        default=8,
        alias="TRACKER_PRICE_CONCURRENCY",
        ge=1,
        le=100,
        description="Maximum concurrent price lookups per read",
    )


class RedisSettings(BaseSettings):
    """Redis connection settings (optional token metadata cache)."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string; unset disables Redis caching",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None or v == "":
            return None
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files.

    Example:
        ```python
        from pulsechain_wallet_tracker.config import get_settings

        settings = get_settings()
        print(settings.pulsechain.rpc_urls)
        print(settings.log_level)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # Nested groups need the same env_file, otherwise they only read the process environment.
    pulsechain: PulseChainSettings = Field(
        default_factory=lambda: PulseChainSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    scanner: ScannerSettings = Field(
        default_factory=lambda: ScannerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    price: PriceSettings = Field(
        default_factory=lambda: PriceSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    tracker: TrackerSettings = Field(
        default_factory=lambda: TrackerSettings(
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
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "pulsechain": {
                "rpc_urls": ",".join(self.pulsechain.rpc_urls),
                "ws_urls": ",".join(self.pulsechain.ws_urls),
                "request_timeout_seconds": str(self.pulsechain.request_timeout_seconds),
                "max_retries": str(self.pulsechain.max_retries),
            },
            "scanner": {
                "api_url": self.scanner.api_url,
                "recent_blocks_to_scan": str(self.scanner.recent_blocks_to_scan),
            },
            "price": {
                "enabled": str(self.price.enabled),
                "api_url": self.price.api_url,
                "min_liquidity_usd": str(self.price.min_liquidity_usd),
            },
            "tracker": {
                "reconciliation_interval_seconds": str(self.tracker.reconciliation_interval_seconds),
                "max_reconnect_attempts": str(self.tracker.max_reconnect_attempts),
                "reconnect_base_delay_seconds": str(self.tracker.reconnect_base_delay_seconds),
                "eager_fetch_on_read": str(self.tracker.eager_fetch_on_read),
            },
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

    Raises:
        ValidationError: If environment variables have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache so the next `get_settings()` reloads."""
    get_settings.cache_clear()
