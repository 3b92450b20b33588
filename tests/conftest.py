"""Shared fixtures: config builders, a recording sink and a mock marketplace API."""

from __future__ import annotations

import json
from typing import Any, Callable, Iterable

import httpx
import pytest

from realty_ingest.config import ConfigLocator, ConfigRepository, EngineConfig
from realty_ingest.engine.mapper import ListingRecord
from realty_ingest.errors import SinkError
from realty_ingest.sinks import BaseSink


def base_payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "auth_token": "test-token",
        "sleep_min_us": 0,
        "sleep_max_us": 0,
        "locations": {
            1: {
                "name": "Москва и область",
                "rgid": 741964,
                "categories": {
                    1: {
                        "api_params": {
                            "type": "RENT",
                            "rentTime": "LARGE",
                            "priceMin": [15000, 25000],
                            "priceMax": [120000, 155000],
                        }
                    }
                },
            }
        },
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def make_config() -> Callable[..., EngineConfig]:
    def _builder(**overrides: Any) -> EngineConfig:
        return EngineConfig.model_validate(base_payload(**overrides))

    return _builder


@pytest.fixture
def temp_config_repository(tmp_path, monkeypatch: pytest.MonkeyPatch) -> Iterable[ConfigRepository]:
    monkeypatch.setenv("REALTY_INGEST_HOME", str(tmp_path))
    locator = ConfigLocator(project_root=tmp_path)
    yield ConfigRepository(locator)


class RecordingSink(BaseSink):
    """In-memory sink; ``fail_times`` makes the next N ingests raise."""

    def __init__(self, fail_times: int = 0, known: Iterable[str] = ()) -> None:
        self.records: list[ListingRecord] = []
        self.fail_times = fail_times
        self.attempts = 0
        self.reconnects = 0
        self.known = list(known)

    def ingest(self, record: ListingRecord) -> None:
        self.attempts += 1
        if self.fail_times > 0:
            self.fail_times -= 1
            raise SinkError("boom")
        self.records.append(record)

    def known_ids(self, location_id: int, category_id: int, since_days: int = 30) -> list[str]:
        return list(self.known)

    def reconnect(self) -> None:
        self.reconnects += 1

    def flush(self) -> None:
        return

    def close(self) -> None:
        return

    @property
    def ids(self) -> list[str]:
        return [record.external_id for record in self.records]


@pytest.fixture
def recording_sink() -> RecordingSink:
    return RecordingSink()


def make_offer(offer_id: str, **extra: Any) -> dict[str, Any]:
    offer: dict[str, Any] = {
        "offerId": offer_id,
        "price": {"value": 50000},
        "area": {"value": 42},
        "roomsTotal": 1,
        "shareUrl": f"https://realty.yandex.ru/offer/{offer_id}",
        "location": {"latitude": 55.75, "longitude": 37.61, "geocoderAddress": "Москва"},
    }
    offer.update(extra)
    return offer


def search_payload(ids: Iterable[str], page: int = 0, total_pages: int = 1) -> dict[str, Any]:
    return {
        "response": {
            "offers": {
                "items": [make_offer(offer_id) for offer_id in ids],
                "pager": {"page": page, "pageSize": 20, "totalPages": total_pages},
            }
        }
    }


class MockApi:
    """Route search requests to canned pages and record every request."""

    def __init__(self, pages: dict[int, dict[str, Any]] | None = None) -> None:
        self.pages = pages or {}
        self.requests: list[httpx.Request] = []
        self.responses: list[httpx.Response] = []

    def queue(self, *responses: httpx.Response) -> None:
        self.responses.extend(responses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.responses:
            return self.responses.pop(0)
        page = int(request.url.params.get("page", 0))
        body = self.pages.get(page, search_payload([], page=page))
        return httpx.Response(200, content=json.dumps(body).encode("utf-8"))

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def mock_api() -> MockApi:
    return MockApi()
