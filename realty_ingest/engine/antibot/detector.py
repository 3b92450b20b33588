"""Classify HTTP responses as blocks, transient failures or success."""

from __future__ import annotations

from typing import Iterable

import httpx

from ...errors import BlockedError, FetchError, TransientFetchError


class BlockDetector:
    """Configurable predicate deciding whether a response is an anti-bot block."""

    def __init__(self, status_codes: Iterable[int] = (403, 429), body_markers: Iterable[str] = ("captcha",)) -> None:
        self.status_codes = frozenset(int(code) for code in status_codes)
        self.body_markers = tuple(marker.lower() for marker in body_markers if marker)

    def is_blocked(self, response: httpx.Response) -> bool:
        if response.status_code in self.status_codes:
            return True
        if not self.body_markers:
            return False
        try:
            body = response.text.lower()
        except (httpx.ResponseNotRead, UnicodeDecodeError):
            return False
        return any(marker in body for marker in self.body_markers)

    def classify(self, response: httpx.Response) -> FetchError | None:
        """Return the error a response represents, or ``None`` when it is usable."""

        if self.is_blocked(response):
            return BlockedError(f"Blocked with status {response.status_code}", status_code=response.status_code)
        if response.status_code >= 500:
            return TransientFetchError(
                f"Server error {response.status_code}", status_code=response.status_code
            )
        if not response.is_success:
            return TransientFetchError(
                f"Unexpected status {response.status_code}", status_code=response.status_code
            )
        return None


__all__ = ["BlockDetector"]
