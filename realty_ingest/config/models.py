"""Pydantic models describing the ingestion engine configuration."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_USER_AGENT = (
    "com.yandex.mobile.realty/6.1.0.10218 (Google sdk_gphone64_x86_64; Android 12)"
)


def _default_request() -> dict[str, Any]:
    return {
        "page": 0,
        "sort": "DATE_DESC",
        "category": "APARTMENT",
        "currency": "RUR",
        "showOnMobile": "YES",
        "priceType": "PER_OFFER",
        "showSimilar": "NO",
        "agents": "NO",
        "pageSize": 20,
        "roomsTotal": ["STUDIO", "1", "2", "3", "PLUS_4"],
    }


class PriceJitterPolicy(str, Enum):
    """When the price window of a segment is re-sampled."""

    PER_CYCLE = "per_cycle"
    PER_START = "per_start"


class CategoryConfig(BaseModel):
    """One category inside a location; becomes a segment."""

    filter_today_only: bool = False
    api_params: dict[str, Any] = Field(default_factory=dict)
    sleep_min_us: int | None = None
    sleep_max_us: int | None = None
    use_proxy: bool = True

    @model_validator(mode="after")
    def _validate_sleep(self) -> "CategoryConfig":
        for value in (self.sleep_min_us, self.sleep_max_us):
            if value is not None and value < 0:
                raise ValueError("sleep bounds must be non-negative")
        if (
            self.sleep_min_us is not None
            and self.sleep_max_us is not None
            and self.sleep_max_us < self.sleep_min_us
        ):
            raise ValueError("sleep_max_us must be >= sleep_min_us")
        return self


class LocationConfig(BaseModel):
    """A geographic region and the categories scraped in it."""

    name: str
    rgid: int
    categories: dict[int, CategoryConfig] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def _non_empty_name(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("location name cannot be empty")
        return value


class ProxyPoolConfig(BaseModel):
    """Optional upstream proxies used for rotation on blocks."""

    model_config = ConfigDict(populate_by_name=True)

    enabled: bool = False
    addresses: list[str] = Field(default_factory=list, alias="list")
    cooldown_seconds: float = 300.0

    @field_validator("addresses", mode="before")
    @classmethod
    def _strip_entries(cls, value: Any) -> list[str]:
        if value in (None, ""):
            return []
        return [str(item).strip() for item in value if str(item).strip()]

    @field_validator("cooldown_seconds")
    @classmethod
    def _positive_cooldown(cls, value: float) -> float:
        if value < 0:
            raise ValueError("cooldown_seconds must be >= 0")
        return value


class BlockPolicyConfig(BaseModel):
    """Signals that classify a response as a block rather than a transient error."""

    status_codes: list[int] = Field(default_factory=lambda: [403, 429])
    body_markers: list[str] = Field(default_factory=lambda: ["captcha"])


class BackoffConfig(BaseModel):
    """Retry pacing for the worker failure path."""

    base_seconds: float = 2.0
    block_base_seconds: float = 1.0
    max_seconds: float = 120.0
    max_consecutive_failures: int = 10

    @model_validator(mode="after")
    def _validate_bounds(self) -> "BackoffConfig":
        if self.base_seconds < 0 or self.block_base_seconds < 0:
            raise ValueError("backoff base values must be >= 0")
        if self.max_seconds < max(self.base_seconds, self.block_base_seconds):
            raise ValueError("backoff max_seconds must be >= base values")
        if self.max_consecutive_failures < 1:
            raise ValueError("max_consecutive_failures must be >= 1")
        return self


class SupervisorConfig(BaseModel):
    """Restart budget and liveness settings."""

    restart_delay_seconds: float = 5.0
    max_restarts: int = 3
    restart_window_minutes: float = 10.0
    health_check_seconds: float = 1.0
    shutdown_timeout_seconds: float = 10.0

    @model_validator(mode="after")
    def _validate_values(self) -> "SupervisorConfig":
        if self.max_restarts < 0:
            raise ValueError("max_restarts must be >= 0")
        if self.health_check_seconds <= 0:
            raise ValueError("health_check_seconds must be > 0")
        if self.restart_window_minutes <= 0:
            raise ValueError("restart_window_minutes must be > 0")
        return self


class RateLimitConfig(BaseModel):
    """Request budget shared by every worker."""

    enabled: bool = False
    requests_per_second: float = 5.0
    burst: int = 5

    @model_validator(mode="after")
    def _validate_rate(self) -> "RateLimitConfig":
        if self.requests_per_second <= 0:
            raise ValueError("requests_per_second must be > 0")
        if self.burst < 1:
            raise ValueError("burst must be >= 1")
        return self


class SinkConfig(BaseModel):
    """Where deduplicated listings are delivered."""

    kind: Literal["sqlite", "mongodb"] = "sqlite"
    path: Path = Field(default=Path("data/listings.db"))
    uri: str = "mongodb://localhost:27017"
    database: str = "realty"
    collection: str = "listings"
    serialize: bool = False
    queue_size: int = 1000
    put_timeout_seconds: float = 5.0

    @field_validator("path", mode="before")
    @classmethod
    def _coerce_path(cls, value: Any) -> Path:
        return Path(value)


class EngineConfig(BaseModel):
    """Complete configuration contract, immutable once the engine starts."""

    api_url: str = "https://api.realty.yandex.net/1.0/offerWithSiteSearch.json"
    card_url: str = "https://api.realty.yandex.net/1.0/cardWithViews.json"
    auth_token: str = ""
    user_agent: str = DEFAULT_USER_AGENT
    source_id: int = 2
    commercial_category_ids: list[int] = Field(default_factory=lambda: [2, 4])
    cache_rotation_minutes: float = 60.0
    sleep_min_us: int = 1_000_000
    sleep_max_us: int = 2_000_000
    request: dict[str, Any] = Field(default_factory=_default_request)
    locations: dict[int, LocationConfig] = Field(default_factory=dict)
    enabled_segments: list[str] | None = None
    proxy: ProxyPoolConfig = Field(default_factory=ProxyPoolConfig)
    block: BlockPolicyConfig = Field(default_factory=BlockPolicyConfig)
    backoff: BackoffConfig = Field(default_factory=BackoffConfig)
    supervisor: SupervisorConfig = Field(default_factory=SupervisorConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    sink: SinkConfig = Field(default_factory=SinkConfig)
    price_step: int = 1000
    price_jitter: PriceJitterPolicy = PriceJitterPolicy.PER_CYCLE
    max_pages: int = 1
    request_timeout: float = 10.0
    fetch_price_history: bool = False
    preload_known_ids: bool = False
    status_interval_seconds: float = 60.0

    @model_validator(mode="after")
    def _validate_engine(self) -> "EngineConfig":
        if self.sleep_min_us < 0 or self.sleep_max_us < self.sleep_min_us:
            raise ValueError("global sleep bounds must satisfy 0 <= sleep_min_us <= sleep_max_us")
        if self.cache_rotation_minutes <= 0:
            raise ValueError("cache_rotation_minutes must be > 0")
        if self.price_step < 1:
            raise ValueError("price_step must be >= 1")
        if self.max_pages < 1:
            raise ValueError("max_pages must be >= 1")
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be > 0")
        return self

    @property
    def proxy_enabled(self) -> bool:
        return self.proxy.enabled and bool(self.proxy.addresses)


__all__ = [
    "BackoffConfig",
    "BlockPolicyConfig",
    "CategoryConfig",
    "DEFAULT_USER_AGENT",
    "EngineConfig",
    "LocationConfig",
    "PriceJitterPolicy",
    "ProxyPoolConfig",
    "RateLimitConfig",
    "SinkConfig",
    "SupervisorConfig",
]
