"""Configuration package exports."""

from .loader import ConfigLocator, ConfigRepository
from .models import (
    BackoffConfig,
    BlockPolicyConfig,
    CategoryConfig,
    EngineConfig,
    LocationConfig,
    PriceJitterPolicy,
    ProxyPoolConfig,
    RateLimitConfig,
    SinkConfig,
    SupervisorConfig,
)

__all__ = [
    "BackoffConfig",
    "BlockPolicyConfig",
    "CategoryConfig",
    "ConfigLocator",
    "ConfigRepository",
    "EngineConfig",
    "LocationConfig",
    "PriceJitterPolicy",
    "ProxyPoolConfig",
    "RateLimitConfig",
    "SinkConfig",
    "SupervisorConfig",
]
