"""Error taxonomy shared by the ingestion engine."""

from __future__ import annotations


class IngestError(Exception):
    """Base class for every engine error."""


class ConfigurationError(IngestError):
    """Invalid configuration; fatal at startup before any worker runs."""


class FetchError(IngestError):
    """Failure talking to the marketplace API."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientFetchError(FetchError):
    """Network timeout, 5xx or malformed payload; retried with backoff."""


class BlockedError(FetchError):
    """Rate-limit or anti-bot signal; handled by rotating the proxy."""


class ProxyPoolExhaustedError(FetchError):
    """Every proxy of an enabled pool is cooling down; no request is sent."""


class SinkError(IngestError):
    """Persistence failure for a single record."""


class WorkerFatalError(IngestError):
    """A worker gave up; the supervisor decides whether to restart it."""


__all__ = [
    "BlockedError",
    "ConfigurationError",
    "FetchError",
    "IngestError",
    "ProxyPoolExhaustedError",
    "SinkError",
    "TransientFetchError",
    "WorkerFatalError",
]
