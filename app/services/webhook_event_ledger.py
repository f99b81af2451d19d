from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any

from app.services.meeting_store import MeetingStoreError


class WebhookEventLedger(ABC):
    """Append-only set of platform event ids that were already handled."""

    @abstractmethod
    def record_if_new(self, event_id: str, event_type: str | None) -> bool:
        """Insert ``event_id``; return ``False`` when it was already recorded."""
        raise NotImplementedError


class InMemoryWebhookEventLedger(WebhookEventLedger):
    def __init__(self) -> None:
        self._events: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def record_if_new(self, event_id: str, event_type: str | None) -> bool:
        with self._lock:
            if event_id in self._events:
                return False
            self._events[event_id] = build_webhook_event_document(
                event_id=event_id,
                event_type=event_type,
            )
            return True

    def __contains__(self, event_id: object) -> bool:
        with self._lock:
            return event_id in self._events


class MongoWebhookEventLedger(WebhookEventLedger):
    def __init__(
        self,
        *,
        uri: str,
        db_name: str,
        collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import MongoClient

        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
        )
        # The ledger key is ``_id`` so the primary key index is the dedup gate.
        self._collection = self._client[db_name][collection_name]

    def record_if_new(self, event_id: str, event_type: str | None) -> bool:
        from pymongo.errors import DuplicateKeyError, PyMongoError

        document = build_webhook_event_document(event_id=event_id, event_type=event_type)
        try:
            self._collection.insert_one(document)
        except DuplicateKeyError:
            return False
        except PyMongoError as exc:
            raise MeetingStoreError(f"Unable to record webhook event {event_id}.") from exc
        return True


def create_webhook_event_ledger(
    *,
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_connect_timeout_ms: int,
) -> WebhookEventLedger:
    return _create_webhook_event_ledger_cached(
        store_name=store_name,
        mongodb_uri=mongodb_uri,
        mongodb_db_name=mongodb_db_name,
        mongodb_collection_name=mongodb_collection_name,
        mongodb_connect_timeout_ms=mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_webhook_event_ledger_cached(
    *,
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_connect_timeout_ms: int,
) -> WebhookEventLedger:
    if store_name == "memory":
        return InMemoryWebhookEventLedger()

    if store_name == "mongodb":
        return MongoWebhookEventLedger(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            collection_name=mongodb_collection_name,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    return InMemoryWebhookEventLedger()


def clear_webhook_event_ledger_cache() -> None:
    _create_webhook_event_ledger_cached.cache_clear()


def build_webhook_event_document(*, event_id: str, event_type: str | None) -> dict[str, Any]:
    return {
        "_id": event_id,
        "type": event_type,
        "received_at": datetime.now(UTC),
    }
