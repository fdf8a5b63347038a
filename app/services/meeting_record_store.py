from __future__ import annotations

import re
import threading
from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any


class MeetingRecordExistsError(Exception):
    pass


class MeetingRecordStore(ABC):
    @abstractmethod
    def create(self, record: Mapping[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def upsert(self, conference_id: str, values: Mapping[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def get_by_conference_id(self, conference_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def search(
        self,
        *,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        owner_contains: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[dict[str, Any]], int]:
        raise NotImplementedError


class InMemoryMeetingRecordStore(MeetingRecordStore):
    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def create(self, record: Mapping[str, Any]) -> dict[str, Any]:
        document = dict(record)
        conference_id = document["conference_id"]
        with self._lock:
            if conference_id in self._records:
                raise MeetingRecordExistsError(conference_id)
            now = datetime.now(UTC)
            document["created_at"] = now
            document["updated_at"] = now
            self._records[conference_id] = document
            return dict(document)

    def upsert(self, conference_id: str, values: Mapping[str, Any]) -> dict[str, Any]:
        now = datetime.now(UTC)
        with self._lock:
            document = self._records.setdefault(
                conference_id,
                {"conference_id": conference_id, "created_at": now},
            )
            document.update(dict(values))
            document["updated_at"] = now
            return dict(document)

    def get_by_conference_id(self, conference_id: str) -> dict[str, Any] | None:
        with self._lock:
            record = self._records.get(conference_id)
            return dict(record) if record else None

    def search(
        self,
        *,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        owner_contains: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[dict[str, Any]], int]:
        with self._lock:
            items = [dict(record) for record in self._records.values()]

        if date_from is not None and date_to is not None:
            items = [
                record
                for record in items
                if record.get("meeting_date") is not None
                and date_from <= record["meeting_date"] <= date_to
            ]
        if owner_contains:
            needle = owner_contains.lower()
            items = [
                record for record in items if needle in str(record.get("owner_email") or "").lower()
            ]

        # Records without a meeting date sort last.
        items.sort(
            key=lambda record: record.get("meeting_date") or datetime.min.replace(tzinfo=UTC),
            reverse=True,
        )
        return items[offset : offset + limit], len(items)


class MongoMeetingRecordStore(MeetingRecordStore):
    def __init__(
        self,
        *,
        uri: str,
        db_name: str,
        collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument

        self._desc = DESCENDING
        self._return_after = ReturnDocument.AFTER
        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
            tz_aware=True,
        )
        self._collection = self._client[db_name][collection_name]
        self._collection.create_index([("conference_id", ASCENDING)], unique=True)
        self._collection.create_index([("meeting_date", self._desc)])
        self._collection.create_index([("owner_email", ASCENDING)])

    def create(self, record: Mapping[str, Any]) -> dict[str, Any]:
        from pymongo.errors import DuplicateKeyError

        document = dict(record)
        now = datetime.now(UTC)
        document["created_at"] = now
        document["updated_at"] = now
        try:
            self._collection.insert_one(document)
        except DuplicateKeyError as exc:
            raise MeetingRecordExistsError(document["conference_id"]) from exc
        document.pop("_id", None)
        return document

    def upsert(self, conference_id: str, values: Mapping[str, Any]) -> dict[str, Any]:
        now = datetime.now(UTC)
        set_values = {key: value for key, value in values.items() if key != "conference_id"}
        set_values["updated_at"] = now
        return self._collection.find_one_and_update(
            {"conference_id": conference_id},
            {"$set": set_values, "$setOnInsert": {"created_at": now}},
            upsert=True,
            projection={"_id": 0},
            return_document=self._return_after,
        )

    def get_by_conference_id(self, conference_id: str) -> dict[str, Any] | None:
        return self._collection.find_one({"conference_id": conference_id}, {"_id": 0})

    def search(
        self,
        *,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        owner_contains: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[dict[str, Any]], int]:
        query: dict[str, Any] = {}
        if date_from is not None and date_to is not None:
            query["meeting_date"] = {"$gte": date_from, "$lte": date_to}
        if owner_contains:
            query["owner_email"] = {"$regex": re.escape(owner_contains), "$options": "i"}

        cursor = (
            self._collection.find(query, {"_id": 0})
            .sort("meeting_date", self._desc)
            .skip(offset)
            .limit(limit)
        )
        return list(cursor), int(self._collection.count_documents(query))


def create_meeting_record_store(
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_connect_timeout_ms: int,
) -> MeetingRecordStore:
    return _create_meeting_record_store_cached(
        store_name=store_name,
        mongodb_uri=mongodb_uri,
        mongodb_db_name=mongodb_db_name,
        mongodb_collection_name=mongodb_collection_name,
        mongodb_connect_timeout_ms=mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_meeting_record_store_cached(
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_connect_timeout_ms: int,
) -> MeetingRecordStore:
    if store_name == "memory":
        return InMemoryMeetingRecordStore()

    if store_name == "mongodb":
        return MongoMeetingRecordStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            collection_name=mongodb_collection_name,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    raise ValueError(f"Unsupported meeting record store: {store_name}")


def clear_meeting_record_store_cache() -> None:
    _create_meeting_record_store_cached.cache_clear()


def build_meeting_record_document(
    *,
    conference_id: str,
    meeting_title: str,
    start_time: datetime | None,
    end_time: datetime | None,
    owner_email: str,
    recording_url: str | None,
    transcript_url: str | None,
    smart_note_url: str | None,
) -> dict[str, Any]:
    return {
        "conference_id": conference_id,
        "meeting_title": meeting_title,
        "meeting_date": start_time,
        "start_time": start_time,
        "end_time": end_time,
        "owner_email": owner_email,
        "recording_url": recording_url,
        "transcript_url": transcript_url,
        "smart_note_url": smart_note_url,
    }
