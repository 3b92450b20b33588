"""Map marketplace offers into listing records."""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Mapping
from zoneinfo import ZoneInfo

MOSCOW_TZ = ZoneInfo("Europe/Moscow")

ROOM_IDS = {"STUDIO": 1, "1": 2, "2": 3, "3": 4}
ROOM_ID_PLUS_4 = 5
ROOM_CODES = {"STUDIO": "studio", "1": "1", "2": "2", "3": "3"}

COMMERCIAL_TYPE_CODES = {
    "OFFICE": "office",
    "RETAIL": "retail",
    "FREE_PURPOSE": "free_purpose",
    "WAREHOUSE": "warehouse",
    "MANUFACTURING": "manufacturing",
    "PUBLIC_CATERING": "public_catering",
    "AUTO_REPAIR": "auto_repair",
    "HOTEL": "hotel",
    "BUSINESS": "business",
}
COMMERCIAL_TYPE_NAMES = {
    "OFFICE": "Офис",
    "RETAIL": "Торговое помещение",
    "FREE_PURPOSE": "Помещение свободного назначения",
    "WAREHOUSE": "Склад",
    "MANUFACTURING": "Производство",
    "PUBLIC_CATERING": "Общепит",
    "AUTO_REPAIR": "Автосервис",
    "HOTEL": "Гостиница",
    "BUSINESS": "Готовый бизнес",
}

METRO_TRANSPORT = {"ON_FOOT": "walk", "ON_TRANSPORT": "public_transport"}
WALKING_SPEED_KMH = 5.0
TRANSPORT_SPEED_KMH = 25.0


@dataclass(slots=True)
class MetroInfo:
    name: str | None = None
    travel_time_min: int | None = None
    travel_type: str | None = None
    distance: str | None = None
    lat: float | None = None
    lng: float | None = None


@dataclass(slots=True)
class ListingRecord:
    """Normalised listing handed to the sink."""

    external_id: str
    source_id: int
    location_id: int
    category_id: int
    discovered_at: str
    title: str
    room_id: int | None = None
    room_code: str | None = None
    address: str | None = None
    city: str | None = None
    street: str | None = None
    house: str | None = None
    price: float | None = None
    square_meters: float | None = None
    floor: int | None = None
    floors_total: int | None = None
    phone: str | None = None
    url: str | None = None
    lat: float | None = None
    lng: float | None = None
    raised: bool = False
    metro: MetroInfo | None = None
    price_history: list[dict[str, int]] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def segment_key(self) -> tuple[int, int]:
        return self.location_id, self.category_id

    def to_dict(self, include_raw: bool = True) -> dict[str, Any]:
        payload = asdict(self)
        if not include_raw:
            payload.pop("raw", None)
        return payload


def _dig(data: Mapping[str, Any], *path: Any) -> Any:
    current: Any = data
    for key in path:
        if isinstance(current, Mapping):
            current = current.get(key)
        elif isinstance(current, list) and isinstance(key, int):
            current = current[key] if -len(current) <= key < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def _to_float(value: Any) -> float | None:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _to_int(value: Any) -> int | None:
    try:
        return int(float(value)) if value is not None else None
    except (TypeError, ValueError):
        return None


def _format_area(value: float) -> str:
    return f"{value:g}"


def offer_id(offer: Mapping[str, Any]) -> str | None:
    value = offer.get("offerId")
    return None if value is None else str(value)


def is_raised(offer: Mapping[str, Any]) -> bool:
    return bool(offer.get("raised")) or bool(offer.get("promoted"))


def clean_phone(phone: str | None) -> str | None:
    """Normalise a phone number to ``7XXXXXXXXXX``."""

    if not phone:
        return None
    digits = re.sub(r"\D", "", str(phone))
    if len(digits) == 10:
        return "7" + digits
    if len(digits) == 11:
        return "7" + digits[1:]
    match = re.search(r"[78](9\d{9})", digits)
    if match:
        return "7" + match.group(1)
    match = re.search(r"(9\d{9})", digits)
    if match:
        return "7" + match.group(1)
    return None


def parse_structured_address(offer: Mapping[str, Any]) -> dict[str, str | None]:
    result: dict[str, str | None] = {"city": None, "street": None, "house": None}
    components = _dig(offer, "location", "structuredAddress", "component") or []
    for component in components:
        if not isinstance(component, Mapping):
            continue
        value = component.get("value") or ""
        if not value:
            continue
        region_type = component.get("regionType") or ""
        if region_type in ("CITY", "CITY_DISTRICT"):
            if result["city"] is None:
                result["city"] = value
        elif region_type == "STREET":
            result["street"] = value
        elif region_type == "HOUSE":
            result["house"] = value
    return result


def room_id_for(offer: Mapping[str, Any], commercial: bool) -> tuple[int | None, str | None]:
    """Return ``(room_id, room_code)``; commercial offers only carry a code."""

    commercial_type = _dig(offer, "commercial", "commercialTypes", 0)
    if commercial_type is not None:
        return None, COMMERCIAL_TYPE_CODES.get(commercial_type)
    if commercial:
        return None, None
    rooms = offer.get("roomsTotal")
    if rooms is None or rooms == "STUDIO":
        return ROOM_IDS["STUDIO"], ROOM_CODES["STUDIO"]
    if rooms == "PLUS_4":
        return ROOM_ID_PLUS_4, "4_plus"
    count = _to_int(rooms)
    if count is None:
        return None, None
    if str(count) in ROOM_IDS:
        return ROOM_IDS[str(count)], ROOM_CODES[str(count)]
    if count >= 4:
        return ROOM_ID_PLUS_4, "4_plus"
    return None, None


def build_title(offer: Mapping[str, Any], square_meters: float | None, commercial: bool) -> str:
    area_suffix = f", {_format_area(square_meters)} м²" if square_meters else ""
    commercial_type = _dig(offer, "commercial", "commercialTypes", 0)
    if commercial_type in COMMERCIAL_TYPE_NAMES:
        return COMMERCIAL_TYPE_NAMES[commercial_type] + area_suffix
    if commercial:
        return "Коммерческая недвижимость" + area_suffix
    rooms = offer.get("roomsTotal")
    if rooms is not None and rooms != "STUDIO":
        label = "4+" if rooms == "PLUS_4" else str(_to_int(rooms) or 0)
        return f"{label}-к. квартира{area_suffix}"
    return "Студия" + area_suffix


def metro_distance(minutes: int, transport: str | None) -> str:
    speed = WALKING_SPEED_KMH if transport == "ON_FOOT" else TRANSPORT_SPEED_KMH
    meters = Decimal(minutes) / 60 * Decimal(str(speed)) * 1000
    if meters >= 1000:
        km = (meters / 1000).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)
        return f"{km.normalize():f}".replace(".", ",") + " км"
    rounded = (meters / 50).quantize(Decimal("1"), rounding=ROUND_HALF_UP) * 50
    return f"{int(rounded)} м"


def extract_metro(offer: Mapping[str, Any]) -> MetroInfo | None:
    location = offer.get("location") or {}
    if not location.get("metroList"):
        return None
    info = location.get("metro") or _dig(location, "metroList", 0)
    if not isinstance(info, Mapping):
        return None
    metro = MetroInfo(
        name=info.get("name") or None,
        lat=_to_float(info.get("latitude")),
        lng=_to_float(info.get("longitude")),
    )
    minutes = _to_int(info.get("timeToMetro"))
    transport = info.get("metroTransport")
    if transport in METRO_TRANSPORT:
        metro.travel_type = METRO_TRANSPORT[transport]
    if minutes is not None and minutes > 0:
        metro.travel_time_min = minutes
        metro.distance = metro_distance(minutes, transport)
    return metro


def parse_timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_today(offer: Mapping[str, Any], now: datetime | None = None) -> bool:
    """True when ``creationDate`` falls on the current Moscow calendar day."""

    created = parse_timestamp(offer.get("creationDate"))
    if created is None:
        return False
    reference = (now or datetime.now(timezone.utc)).astimezone(MOSCOW_TZ)
    return created.astimezone(MOSCOW_TZ).date() == reference.date()


def map_offer(
    offer: Mapping[str, Any],
    location_id: int,
    category_id: int,
    *,
    source_id: int = 2,
    commercial_category_ids: Iterable[int] = (2, 4),
    now: datetime | None = None,
) -> ListingRecord | None:
    """Build a :class:`ListingRecord`; ``None`` when the offer has no id."""

    external_id = offer_id(offer)
    if external_id is None:
        return None
    commercial = category_id in set(commercial_category_ids)
    square_meters = _to_float(_dig(offer, "area", "value"))
    room_id, room_code = room_id_for(offer, commercial)
    address = parse_structured_address(offer)
    discovered = (now or datetime.now(timezone.utc)).isoformat(timespec="seconds")
    return ListingRecord(
        external_id=external_id,
        source_id=source_id,
        location_id=location_id,
        category_id=category_id,
        discovered_at=discovered,
        title=build_title(offer, square_meters, commercial),
        room_id=room_id,
        room_code=room_code,
        address=_dig(offer, "location", "geocoderAddress"),
        city=address["city"],
        street=address["street"],
        house=address["house"],
        price=_to_float(_dig(offer, "price", "value")),
        square_meters=square_meters,
        floor=_to_int(_dig(offer, "floorsOffered", 0)),
        floors_total=_to_int(offer.get("floorsTotal")),
        phone=clean_phone(_dig(offer, "author", "phones", 0)),
        url=offer.get("shareUrl"),
        lat=_to_float(_dig(offer, "location", "latitude")),
        lng=_to_float(_dig(offer, "location", "longitude")),
        raised=is_raised(offer),
        metro=extract_metro(offer),
        raw=dict(offer),
    )


def _price_value(entry: Mapping[str, Any]) -> int:
    value = entry.get("value")
    if value is None:
        value = _dig(entry, "price", "value")
    return _to_int(value) or 0


def build_price_history(prices: list[Mapping[str, Any]]) -> list[dict[str, int]]:
    """Convert oldest-first API entries to ``[{date, price, diff}]`` newest first.

    A single entry carries no change and yields an empty history.
    """

    if len(prices) <= 1:
        return []
    ordered = list(reversed(prices))
    history: list[dict[str, int]] = []
    previous: int | None = None
    for index, entry in enumerate(ordered):
        stamp = parse_timestamp(entry.get("date"))
        date = int(stamp.timestamp()) if stamp else int(datetime.now(timezone.utc).timestamp())
        value = _price_value(entry)
        if index == 0:
            diff = value - _price_value(ordered[1])
        else:
            diff = previous - value if previous is not None else 0
        history.append({"date": date, "price": value, "diff": diff})
        previous = value
    return history


__all__ = [
    "ListingRecord",
    "MetroInfo",
    "build_price_history",
    "build_title",
    "clean_phone",
    "extract_metro",
    "is_raised",
    "is_today",
    "map_offer",
    "metro_distance",
    "offer_id",
    "parse_structured_address",
    "room_id_for",
]
