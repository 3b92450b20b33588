"""MongoDB sink implementation."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from ..engine.mapper import ListingRecord
from ..errors import SinkError
from .base import BaseSink

try:  # noqa: SIM105
    from pymongo import MongoClient
except Exception as exc:  # noqa: BLE001
    MongoClient = None  # type: ignore[assignment]
    _IMPORT_ERROR = exc
else:
    _IMPORT_ERROR = None


class MongoSink(BaseSink):
    """Upsert records into a MongoDB collection."""

    def __init__(self, uri: str, database: str, collection: str, source_id: int = 2) -> None:
        if MongoClient is None:  # pragma: no cover - import guard
            raise RuntimeError(f"pymongo is required for MongoSink: {_IMPORT_ERROR}")
        self.uri = uri
        self.database = database
        self.collection_name = collection
        self.source_id = source_id
        self._connect()

    def _connect(self) -> None:
        self.client = MongoClient(self.uri)
        self.collection = self.client[self.database][self.collection_name]
        self.collection.create_index([("source_id", 1), ("external_id", 1)], unique=True)

    def ingest(self, record: ListingRecord) -> None:
        from pymongo.errors import PyMongoError

        document = record.to_dict()
        selector = {"source_id": record.source_id, "external_id": record.external_id}
        try:
            self.collection.replace_one(selector, document, upsert=True)
        except PyMongoError as exc:
            raise SinkError(f"MongoDB write failed for {record.external_id}: {exc}") from exc

    def known_ids(self, location_id: int, category_id: int, since_days: int = 30) -> list[str]:
        cutoff = (datetime.now(timezone.utc) - timedelta(days=since_days)).isoformat(timespec="seconds")
        cursor = self.collection.find(
            {
                "source_id": self.source_id,
                "location_id": location_id,
                "category_id": category_id,
                "discovered_at": {"$gte": cutoff},
            },
            {"external_id": 1},
        )
        return [doc["external_id"] for doc in cursor]

    def reconnect(self) -> None:
        self.client.close()
        self._connect()

    def flush(self) -> None:
        # MongoDB writes are immediate in default write concern
        return

    def close(self) -> None:
        self.client.close()


__all__ = ["MongoSink"]
