"""Backoff delays for the worker failure path."""

from __future__ import annotations

from dataclasses import dataclass

from ...config import BackoffConfig


@dataclass(slots=True)
class BackoffPolicy:
    base_seconds: float = 2.0
    block_base_seconds: float = 1.0
    max_seconds: float = 120.0

    @classmethod
    def from_config(cls, config: BackoffConfig) -> "BackoffPolicy":
        return cls(config.base_seconds, config.block_base_seconds, config.max_seconds)

    def transient_delay(self, streak: int) -> float:
        exponent = max(0, streak - 1)
        return min(self.base_seconds * (2**exponent), self.max_seconds)

    def blocked_delay(self, block_streak: int) -> float:
        # first block only pays the short base; repeated blocks grow like transient failures
        if block_streak <= 1:
            return min(self.block_base_seconds, self.max_seconds)
        return min(self.base_seconds * (2 ** (block_streak - 2)), self.max_seconds)

    @property
    def ceiling(self) -> float:
        return self.max_seconds


__all__ = ["BackoffPolicy"]
