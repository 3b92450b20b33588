"""Price window and sleep jitter."""

from __future__ import annotations

import random
from threading import Lock
from typing import Any

from ..config import PriceJitterPolicy
from .catalog import PriceRange, Segment, SegmentKey

MAX_RESAMPLE_ATTEMPTS = 10


class JitterEngine:
    """Sample per-cycle query prices and sleep durations for segments."""

    def __init__(
        self,
        rng: random.Random | None = None,
        price_step: int = 1000,
        policy: PriceJitterPolicy = PriceJitterPolicy.PER_CYCLE,
    ) -> None:
        self.rng = rng or random.Random()
        self.price_step = price_step
        self.policy = policy
        self._fixed: dict[SegmentKey, dict[str, int]] = {}
        self._lock = Lock()

    def sample_price(self, price_range: PriceRange) -> int:
        if price_range.fixed:
            return price_range.low
        steps = (price_range.high - price_range.low) // self.price_step
        return price_range.low + self.rng.randint(0, steps) * self.price_step

    def sample_prices(self, segment: Segment) -> dict[str, int]:
        """Return ``priceMin``/``priceMax`` for one request cycle.

        Both bounds are drawn independently; when both are present the pair is
        redrawn until ``priceMin < priceMax`` and falls back to the outer bounds.
        """

        if self.policy is PriceJitterPolicy.PER_START:
            with self._lock:
                cached = self._fixed.get(segment.key)
            if cached is not None:
                return dict(cached)

        prices: dict[str, int] = {}
        if segment.price_min and segment.price_max:
            for _ in range(MAX_RESAMPLE_ATTEMPTS):
                low = self.sample_price(segment.price_min)
                high = self.sample_price(segment.price_max)
                if low < high:
                    break
            else:
                low, high = segment.price_min.low, segment.price_max.high
            prices = {"priceMin": low, "priceMax": high}
        elif segment.price_min:
            prices = {"priceMin": self.sample_price(segment.price_min)}
        elif segment.price_max:
            prices = {"priceMax": self.sample_price(segment.price_max)}

        if self.policy is PriceJitterPolicy.PER_START:
            with self._lock:
                self._fixed.setdefault(segment.key, dict(prices))
        return prices

    def build_params(self, segment: Segment) -> dict[str, Any]:
        params: dict[str, Any] = dict(segment.params)
        params.update(self.sample_prices(segment))
        return params

    def sleep_seconds(self, segment: Segment) -> float:
        """Uniform integer microseconds in the inclusive bounds, as seconds."""

        return self.rng.randint(segment.sleep_min_us, segment.sleep_max_us) / 1_000_000

    def reset(self, key: SegmentKey) -> None:
        with self._lock:
            self._fixed.pop(key, None)


__all__ = ["JitterEngine", "MAX_RESAMPLE_ATTEMPTS"]
