"""Segment catalog: resolve configuration into immutable (location, category) segments."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Sequence

from ..config import CategoryConfig, EngineConfig, LocationConfig
from ..errors import ConfigurationError

PRICE_KEYS = ("priceMin", "priceMax")


@dataclass(frozen=True, slots=True)
class SegmentKey:
    """Identity of a segment."""

    location_id: int
    category_id: int

    def __str__(self) -> str:
        return f"{self.location_id}:{self.category_id}"

    @classmethod
    def parse(cls, value: str) -> "SegmentKey":
        parts = str(value).split(":")
        if len(parts) != 2:
            raise ConfigurationError(f"Segment selector must look like '<location>:<category>': {value!r}")
        try:
            return cls(int(parts[0]), int(parts[1]))
        except ValueError as exc:
            raise ConfigurationError(f"Segment selector must use integer ids: {value!r}") from exc


@dataclass(frozen=True, slots=True)
class PriceRange:
    """Inclusive bounds a price parameter is sampled from."""

    low: int
    high: int

    @property
    def fixed(self) -> bool:
        return self.low == self.high


@dataclass(frozen=True, slots=True)
class Segment:
    """One unit of work with its merged request parameters."""

    key: SegmentKey
    name: str
    rgid: int
    params: Mapping[str, Any]
    filter_today_only: bool
    sleep_min_us: int
    sleep_max_us: int
    price_min: PriceRange | None = None
    price_max: PriceRange | None = None
    use_proxy: bool = True
    deal_type: str = field(default="unknown")

    @property
    def slug(self) -> str:
        raw = f"{self.key.location_id}-{self.key.category_id}-{self.deal_type}"
        return re.sub(r"[^0-9a-z_-]+", "-", raw.lower()).strip("-")

    def describe(self) -> dict[str, Any]:
        return {
            "segment": str(self.key),
            "name": self.name,
            "rgid": self.rgid,
            "type": self.deal_type,
            "price_min": [self.price_min.low, self.price_min.high] if self.price_min else None,
            "price_max": [self.price_max.low, self.price_max.high] if self.price_max else None,
            "sleep_us": [self.sleep_min_us, self.sleep_max_us],
            "filter_today_only": self.filter_today_only,
        }


def merge_params(base: Mapping[str, Any], overrides: Mapping[str, Any]) -> dict[str, Any]:
    """Merge category overrides over the base request.

    Override keys win; list values replace the base list; ``False`` drops the key.
    """

    merged: dict[str, Any] = {}
    for key, value in {**base, **overrides}.items():
        if value is False:
            continue
        merged[key] = list(value) if isinstance(value, (list, tuple)) else value
    return merged


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({key: _freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(item) for item in value)
    return value


def _price_range(raw: Any, key: str, where: str) -> PriceRange:
    if isinstance(raw, (list, tuple)):
        if len(raw) != 2:
            raise ConfigurationError(f"{where}: {key} expects [low, high], got {raw!r}")
        low, high = raw
    else:
        low = high = raw
    try:
        low_i, high_i = int(low), int(high)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{where}: {key} must be numeric, got {raw!r}") from exc
    if low_i < 0:
        raise ConfigurationError(f"{where}: {key} must be non-negative")
    if low_i > high_i:
        raise ConfigurationError(f"{where}: {key} range is inverted ({low_i} > {high_i})")
    return PriceRange(low_i, high_i)


def build_segment(
    config: EngineConfig,
    location_id: int,
    location: LocationConfig,
    category_id: int,
    category: CategoryConfig,
) -> Segment:
    key = SegmentKey(location_id, category_id)
    where = f"segment {key}"
    params = merge_params(config.request, category.api_params)
    params["rgid"] = location.rgid

    ranges: dict[str, PriceRange] = {}
    for price_key in PRICE_KEYS:
        if price_key in params:
            ranges[price_key] = _price_range(params.pop(price_key), price_key, where)
    price_min = ranges.get("priceMin")
    price_max = ranges.get("priceMax")
    if price_min and price_max and price_min.low >= price_max.high:
        raise ConfigurationError(
            f"{where}: priceMin lower bound {price_min.low} must be below "
            f"priceMax upper bound {price_max.high}"
        )

    sleep_min = category.sleep_min_us if category.sleep_min_us is not None else config.sleep_min_us
    sleep_max = category.sleep_max_us if category.sleep_max_us is not None else config.sleep_max_us
    if sleep_max < sleep_min:
        raise ConfigurationError(f"{where}: sleep bounds are inverted ({sleep_min} > {sleep_max})")

    return Segment(
        key=key,
        name=location.name,
        rgid=location.rgid,
        params=MappingProxyType({k: _freeze(v) for k, v in params.items()}),
        filter_today_only=category.filter_today_only,
        sleep_min_us=sleep_min,
        sleep_max_us=sleep_max,
        price_min=price_min,
        price_max=price_max,
        use_proxy=category.use_proxy,
        deal_type=str(params.get("type", "unknown")),
    )


def _selected_keys(config: EngineConfig, only: Iterable[str] | None) -> set[SegmentKey] | None:
    selectors: Sequence[str] | None = list(only) if only else config.enabled_segments
    if not selectors:
        return None
    keys = {SegmentKey.parse(selector) for selector in selectors}
    for key in keys:
        location = config.locations.get(key.location_id)
        if location is None:
            raise ConfigurationError(f"Segment selector {key} references unknown location {key.location_id}")
        if key.category_id not in location.categories:
            raise ConfigurationError(
                f"Segment selector {key} references unknown category {key.category_id} "
                f"in location {key.location_id}"
            )
    return keys


def resolve_segments(config: EngineConfig, only: Iterable[str] | None = None) -> list[Segment]:
    """Expand configuration into the ordered list of segments to run."""

    selected = _selected_keys(config, only)
    segments: list[Segment] = []
    seen: set[SegmentKey] = set()
    for location_id, location in config.locations.items():
        for category_id, category in location.categories.items():
            key = SegmentKey(location_id, category_id)
            if selected is not None and key not in selected:
                continue
            if key in seen:
                raise ConfigurationError(f"Duplicate segment {key}")
            seen.add(key)
            segments.append(build_segment(config, location_id, location, category_id, category))
    if not segments:
        raise ConfigurationError("No segments configured")
    return segments


__all__ = [
    "PriceRange",
    "Segment",
    "SegmentKey",
    "build_segment",
    "merge_params",
    "resolve_segments",
]
