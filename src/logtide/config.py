"""
Runtime settings.

Loaded once from `LOGTIDE_*` environment variables (and an optional `.env` file)
with pydantic-settings; CLI flags are passed in as overrides.
"""
from __future__ import annotations

from typing import Any, Literal

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .domain.errors import ConfigurationError

# HyperSync endpoints per network; more than one URL means failover candidates
NETWORK_URLS: dict[str, tuple[str, ...]] = {
    "ethereum": ("https://eth.hypersync.xyz",),
    "arbitrum": ("https://arbitrum.hypersync.xyz",),
    "optimism": ("https://optimism.hypersync.xyz",),
    "unichain": ("http://unichain.hypersync.xyz",),
    "megaethTestnet": ("https://megaeth-testnet.hypersync.xyz", "https://6342.rpc.hypersync.xyz"),
}

_LOG_LEVELS = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}


def _split(value: str, sep: str = ",") -> list[str]:
    return [p.strip() for p in value.split(sep) if p.strip()]


class Settings(BaseSettings):
    """Pipeline settings loaded from environment variables."""

    # What to ingest
    preset: str = "last-tap"
    signatures: str = ""  # ';'-separated, only for preset=custom
    contract_addresses: str = ""  # comma-separated; empty = preset default
    start_block: int | None = Field(default=None, ge=0)
    target_address: str | None = None
    token_a: str | None = None
    token_b: str | None = None

    # Source
    network: str | None = None
    endpoints: str = ""  # comma-separated; empty = network default
    source: Literal["hypersync", "rpc"] = "hypersync"
    bearer_token: str | None = Field(default=None, repr=False)
    request_timeout: float = Field(default=30.0, gt=0)
    rpc_block_step: int = Field(default=2_000, gt=0)

    # Sink
    sink: Literal["supabase", "sqlite", "console"] = "console"
    supabase_url: str | None = None
    supabase_service_key: str | None = Field(default=None, repr=False)
    sqlite_path: str = "logtide.db"
    checkpoint_path: str | None = None
    checkpoint_key: str | None = None
    sink_max_attempts: int = Field(default=3, ge=1)
    sink_retry_base_delay: float = Field(default=0.5, ge=0)

    # Loop timing
    poll_interval: float = Field(default=2.0, gt=0)
    progress_every_blocks: int = Field(default=10_000, gt=0)
    failover_delay: float = Field(default=1.0, ge=0)
    reconnect_delay: float = Field(default=5.0, ge=0)
    max_backoff: float = Field(default=300.0, ge=0)
    tip_report_interval: float = Field(default=300.0, ge=0)

    # Status server
    status_enabled: bool = True
    status_host: str = "0.0.0.0"
    status_port: int = Field(default=8080, ge=0, le=65535)

    # Logging
    log_level: str = "INFO"
    log_file: str | None = None
    log_json: bool = False

    model_config = SettingsConfigDict(
        env_prefix="LOGTIDE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.upper()
        if v not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {sorted(_LOG_LEVELS)}")
        return v

    @model_validator(mode="after")
    def validate_sink(self) -> "Settings":
        if self.sink == "supabase" and not (self.supabase_url and self.supabase_service_key):
            raise ValueError("sink=supabase needs LOGTIDE_SUPABASE_URL and LOGTIDE_SUPABASE_SERVICE_KEY")
        if self.max_backoff < self.reconnect_delay:
            raise ValueError("max_backoff must be >= reconnect_delay")
        return self

    def contract_list(self) -> tuple[str, ...]:
        return tuple(_split(self.contract_addresses))

    def signature_list(self) -> list[str]:
        return _split(self.signatures, ";")

    def endpoint_urls(self, default_network: str | None = None) -> list[str]:
        """Explicit endpoints win; otherwise the network map for `network` (or the preset's network)."""
        urls = _split(self.endpoints)
        if urls:
            return urls
        if self.source == "rpc":
            raise ConfigurationError("source=rpc needs explicit LOGTIDE_ENDPOINTS")
        network = self.network or default_network
        if network is None:
            raise ConfigurationError("no endpoints and no network configured")
        try:
            return list(NETWORK_URLS[network])
        except KeyError:
            raise ConfigurationError(
                f"unknown network {network!r}; known: {', '.join(sorted(NETWORK_URLS))}"
            ) from None


def load_settings(**overrides: Any) -> Settings:
    """Build Settings from the environment plus non-None overrides; errors become ConfigurationError."""
    try:
        return Settings(**{k: v for k, v in overrides.items() if v is not None})
    except ValidationError as e:
        problems = "; ".join(f"{'.'.join(map(str, err['loc'])) or 'settings'}: {err['msg']}" for err in e.errors())
        raise ConfigurationError(f"invalid configuration: {problems}") from e
