"""Infra layer utilities (storage, proxy pool, rate limit)."""

from .proxy_pool import ProxyHandle, ProxyPool, ProxyState
from .rate_limit import TokenBucket
from .storage import SQLiteManager

__all__ = ["ProxyHandle", "ProxyPool", "ProxyState", "SQLiteManager", "TokenBucket"]
