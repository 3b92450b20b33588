"""HTTP client for the marketplace search and card endpoints."""

from __future__ import annotations

from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Mapping
from urllib.parse import urlparse

import httpx
import structlog

from ..config import EngineConfig
from ..errors import TransientFetchError
from ..infra.proxy_pool import ProxyHandle
from .antibot import BlockDetector


@dataclass(slots=True)
class SearchPage:
    """One page of search results."""

    items: list[dict[str, Any]]
    page: int
    has_next: bool
    total_items: int | None = None
    raw: dict[str, Any] = field(repr=False, default_factory=dict)


def _pager_has_next(pager: Mapping[str, Any], page: int, item_count: int, page_size: int | None) -> bool:
    total_pages = pager.get("totalPages")
    if isinstance(total_pages, int):
        return page + 1 < total_pages
    total_items = pager.get("totalItems")
    size = pager.get("pageSize") or page_size
    if isinstance(total_items, int) and size:
        return (page + 1) * int(size) < total_items
    return bool(size) and item_count >= int(size)


class MarketplaceClient:
    """Issue search and card requests, one ``httpx.Client`` per proxy address."""

    def __init__(
        self,
        config: EngineConfig,
        transport: httpx.BaseTransport | None = None,
        detector: BlockDetector | None = None,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.config = config
        self.detector = detector or BlockDetector(config.block.status_codes, config.block.body_markers)
        self.logger = logger or structlog.get_logger("realty_ingest.client")
        self._transport = transport
        self._clients: dict[str | None, httpx.Client] = {}
        self._lock = Lock()

    def headers(self) -> dict[str, str]:
        return {
            "host": urlparse(self.config.api_url).netloc,
            "user-agent": self.config.user_agent,
            "x-authorization": self.config.auth_token,
            "accept-encoding": "gzip",
        }

    def close(self) -> None:
        with self._lock:
            for client in self._clients.values():
                client.close()
            self._clients.clear()

    def fetch_page(
        self,
        params: Mapping[str, Any],
        page: int = 0,
        proxy: ProxyHandle | None = None,
    ) -> SearchPage:
        query = {key: list(value) if isinstance(value, tuple) else value for key, value in params.items()}
        query["page"] = page
        payload = self._get_json(self.config.api_url, query, proxy)
        offers = (payload.get("response") or {}).get("offers") or {}
        items = offers.get("items") or []
        if not isinstance(items, list):
            raise TransientFetchError("Malformed payload: response.offers.items is not a list")
        pager = offers.get("pager") or {}
        page_size = query.get("pageSize")
        return SearchPage(
            items=[item for item in items if isinstance(item, dict)],
            page=page,
            has_next=_pager_has_next(pager, page, len(items), int(page_size) if page_size else None),
            total_items=pager.get("totalItems"),
            raw=payload,
        )

    def fetch_price_history(self, offer_id: str, proxy: ProxyHandle | None = None) -> list[dict[str, Any]]:
        """Return raw price history entries, oldest first as the API sends them."""

        payload = self._get_json(self.config.card_url, {"id": offer_id}, proxy)
        history = ((payload.get("response") or {}).get("history") or {}).get("prices") or []
        return [entry for entry in history if isinstance(entry, dict)]

    # ------------------------------------------------------------------
    def _get_json(self, url: str, params: Mapping[str, Any], proxy: ProxyHandle | None) -> dict[str, Any]:
        client = self._client_for(proxy.address if proxy else None)
        try:
            response = client.get(url, params=params, headers=self.headers())
        except httpx.TimeoutException as exc:
            raise TransientFetchError(f"Timeout requesting {url}") from exc
        except httpx.HTTPError as exc:
            raise TransientFetchError(f"Network error requesting {url}: {exc}") from exc

        error = self.detector.classify(response)
        if error is not None:
            self.logger.warning(
                "fetch_rejected",
                url=url,
                status=response.status_code,
                kind=type(error).__name__,
                proxy=proxy.address if proxy else None,
            )
            raise error
        try:
            payload = response.json()
        except ValueError as exc:
            raise TransientFetchError(f"Invalid JSON from {url}", status_code=response.status_code) from exc
        if not isinstance(payload, dict):
            raise TransientFetchError(f"Unexpected payload type from {url}", status_code=response.status_code)
        return payload

    def _client_for(self, proxy_address: str | None) -> httpx.Client:
        with self._lock:
            client = self._clients.get(proxy_address)
            if client is None:
                kwargs: dict[str, Any] = {"timeout": self.config.request_timeout}
                if self._transport is not None:
                    kwargs["transport"] = self._transport
                elif proxy_address:
                    kwargs["proxy"] = proxy_address
                client = httpx.Client(**kwargs)
                self._clients[proxy_address] = client
            return client


__all__ = ["MarketplaceClient", "SearchPage"]
