"""Sink SPI and implementations."""

from __future__ import annotations

from pathlib import Path
from typing import Callable

from ..config import SinkConfig
from .base import BaseSink, QueuedSink
from .mongo_sink import MongoSink
from .sqlite_sink import SQLiteSink


def build_sink(
    config: SinkConfig,
    source_id: int = 2,
    resolve: Callable[[Path], Path] | None = None,
) -> BaseSink:
    """Create the configured sink, wrapped in a :class:`QueuedSink` when requested."""

    if config.kind == "mongodb":
        sink: BaseSink = MongoSink(config.uri, config.database, config.collection, source_id=source_id)
    else:
        path = resolve(config.path) if resolve else config.path
        sink = SQLiteSink(path, source_id=source_id)
    if config.serialize or not sink.thread_safe:
        return QueuedSink(sink, maxsize=config.queue_size, put_timeout=config.put_timeout_seconds)
    return sink


__all__ = ["BaseSink", "MongoSink", "QueuedSink", "SQLiteSink", "build_sink"]
