from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any


class MeetingStoreError(Exception):
    pass


class MeetingStore(ABC):
    """Durable meeting and agent rows.

    ``transition_status`` is the only write that may move a meeting between
    lifecycle states while webhooks are flowing. It must be a single atomic
    compare-and-swap: the row is updated only if its current status equals
    ``expected_status``, and the updated row is returned (``None`` otherwise).
    """

    @abstractmethod
    def get_meeting(self, meeting_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def get_agent(self, agent_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def transition_status(
        self,
        meeting_id: str,
        *,
        expected_status: str,
        target_status: str,
        updates: Mapping[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def update_fields(self, meeting_id: str, updates: Mapping[str, Any]) -> int:
        raise NotImplementedError

    @abstractmethod
    def save_meeting(self, meeting: Mapping[str, Any]) -> str:
        raise NotImplementedError

    @abstractmethod
    def save_agent(self, agent: Mapping[str, Any]) -> str:
        raise NotImplementedError


class InMemoryMeetingStore(MeetingStore):
    def __init__(self) -> None:
        self._meetings: dict[str, dict[str, Any]] = {}
        self._agents: dict[str, dict[str, Any]] = {}
        # Stands in for the row-level atomicity a database gives a single UPDATE.
        self._lock = threading.Lock()

    def get_meeting(self, meeting_id: str) -> dict[str, Any] | None:
        with self._lock:
            meeting = self._meetings.get(meeting_id)
            return dict(meeting) if meeting else None

    def get_agent(self, agent_id: str) -> dict[str, Any] | None:
        with self._lock:
            agent = self._agents.get(agent_id)
            return dict(agent) if agent else None

    def transition_status(
        self,
        meeting_id: str,
        *,
        expected_status: str,
        target_status: str,
        updates: Mapping[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        with self._lock:
            meeting = self._meetings.get(meeting_id)
            if not meeting or meeting.get("status") != expected_status:
                return None
            meeting.update(dict(updates or {}))
            meeting["status"] = target_status
            meeting["updated_at"] = datetime.now(UTC)
            return dict(meeting)

    def update_fields(self, meeting_id: str, updates: Mapping[str, Any]) -> int:
        with self._lock:
            meeting = self._meetings.get(meeting_id)
            if not meeting:
                return 0
            changes = dict(updates)
            changes.setdefault("updated_at", datetime.now(UTC))
            meeting.update(changes)
            return 1

    def save_meeting(self, meeting: Mapping[str, Any]) -> str:
        document = build_meeting_document(**meeting)
        with self._lock:
            self._meetings[document["_id"]] = document
        return document["_id"]

    def save_agent(self, agent: Mapping[str, Any]) -> str:
        document = build_agent_document(**agent)
        with self._lock:
            self._agents[document["_id"]] = document
        return document["_id"]


class MongoMeetingStore(MeetingStore):
    def __init__(
        self,
        *,
        uri: str,
        db_name: str,
        meetings_collection_name: str,
        agents_collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import ASCENDING, MongoClient, ReturnDocument

        self._return_after = ReturnDocument.AFTER
        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
        )
        database = self._client[db_name]
        self._meetings = database[meetings_collection_name]
        self._agents = database[agents_collection_name]
        self._meetings.create_index([("owner_user_id", ASCENDING)])
        self._meetings.create_index([("status", ASCENDING)])
        self._agents.create_index([("owner_user_id", ASCENDING)])

    def get_meeting(self, meeting_id: str) -> dict[str, Any] | None:
        from pymongo.errors import PyMongoError

        try:
            return self._meetings.find_one({"_id": meeting_id})
        except PyMongoError as exc:
            raise MeetingStoreError(f"Unable to read meeting {meeting_id}.") from exc

    def get_agent(self, agent_id: str) -> dict[str, Any] | None:
        from pymongo.errors import PyMongoError

        try:
            return self._agents.find_one({"_id": agent_id})
        except PyMongoError as exc:
            raise MeetingStoreError(f"Unable to read agent {agent_id}.") from exc

    def transition_status(
        self,
        meeting_id: str,
        *,
        expected_status: str,
        target_status: str,
        updates: Mapping[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        from pymongo.errors import PyMongoError

        changes = dict(updates or {})
        changes["status"] = target_status
        changes["updated_at"] = datetime.now(UTC)
        try:
            return self._meetings.find_one_and_update(
                {"_id": meeting_id, "status": expected_status},
                {"$set": changes},
                return_document=self._return_after,
            )
        except PyMongoError as exc:
            raise MeetingStoreError(
                f"Unable to transition meeting {meeting_id} to {target_status}.",
            ) from exc

    def update_fields(self, meeting_id: str, updates: Mapping[str, Any]) -> int:
        from pymongo.errors import PyMongoError

        changes = dict(updates)
        changes.setdefault("updated_at", datetime.now(UTC))
        try:
            result = self._meetings.update_one({"_id": meeting_id}, {"$set": changes})
        except PyMongoError as exc:
            raise MeetingStoreError(f"Unable to update meeting {meeting_id}.") from exc
        return int(result.matched_count)

    def save_meeting(self, meeting: Mapping[str, Any]) -> str:
        from pymongo.errors import PyMongoError

        document = build_meeting_document(**meeting)
        try:
            self._meetings.replace_one({"_id": document["_id"]}, document, upsert=True)
        except PyMongoError as exc:
            raise MeetingStoreError("Unable to persist meeting.") from exc
        return document["_id"]

    def save_agent(self, agent: Mapping[str, Any]) -> str:
        from pymongo.errors import PyMongoError

        document = build_agent_document(**agent)
        try:
            self._agents.replace_one({"_id": document["_id"]}, document, upsert=True)
        except PyMongoError as exc:
            raise MeetingStoreError("Unable to persist agent.") from exc
        return document["_id"]


def create_meeting_store(
    *,
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_meetings_collection: str,
    mongodb_agents_collection: str,
    mongodb_connect_timeout_ms: int,
) -> MeetingStore:
    return _create_meeting_store_cached(
        store_name=store_name,
        mongodb_uri=mongodb_uri,
        mongodb_db_name=mongodb_db_name,
        mongodb_meetings_collection=mongodb_meetings_collection,
        mongodb_agents_collection=mongodb_agents_collection,
        mongodb_connect_timeout_ms=mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_meeting_store_cached(
    *,
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_meetings_collection: str,
    mongodb_agents_collection: str,
    mongodb_connect_timeout_ms: int,
) -> MeetingStore:
    if store_name == "memory":
        return InMemoryMeetingStore()

    if store_name == "mongodb":
        return MongoMeetingStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            meetings_collection_name=mongodb_meetings_collection,
            agents_collection_name=mongodb_agents_collection,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    return InMemoryMeetingStore()


def clear_meeting_store_cache() -> None:
    _create_meeting_store_cached.cache_clear()


def build_meeting_document(
    *,
    id: str,
    owner_user_id: str,
    agent_id: str,
    name: str | None = None,
    status: str = "upcoming",
    started_at: datetime | None = None,
    ended_at: datetime | None = None,
    transcript_url: str | None = None,
    recording_url: str | None = None,
    transcript_processed: bool = False,
    summary: str | None = None,
) -> dict[str, Any]:
    now = datetime.now(UTC)
    return {
        "_id": id,
        "owner_user_id": owner_user_id,
        "agent_id": agent_id,
        "name": name,
        "status": status,
        "started_at": started_at,
        "ended_at": ended_at,
        "transcript_url": transcript_url,
        "recording_url": recording_url,
        "transcript_processed": transcript_processed,
        "summary": summary,
        "created_at": now,
        "updated_at": now,
    }


def build_agent_document(
    *,
    id: str,
    owner_user_id: str,
    name: str,
    instructions: str | None = None,
) -> dict[str, Any]:
    now = datetime.now(UTC)
    return {
        "_id": id,
        "owner_user_id": owner_user_id,
        "name": name.strip(),
        "instructions": instructions,
        "created_at": now,
        "updated_at": now,
    }
