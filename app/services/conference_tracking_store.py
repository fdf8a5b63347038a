from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Collection, Mapping
from datetime import UTC, datetime
from enum import Enum
from functools import lru_cache
from typing import Any

from app.schemas.conference import DUE_STATUSES, ConferenceStatus


class ConferenceAlreadyTrackedError(Exception):
    pass


class ConferenceTrackingStore(ABC):
    """Persistence for conference tracking records, keyed by conference id.

    ``update`` with ``expected_statuses`` and ``claim`` are compare-and-set
    operations: they only apply when the stored status is one of the given
    values and return ``None`` otherwise.
    """

    @abstractmethod
    def find_by_conference_id(self, conference_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def create(self, record: Mapping[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def upsert(
        self,
        conference_id: str,
        *,
        on_insert: Mapping[str, Any],
        changes: Mapping[str, Any],
    ) -> tuple[dict[str, Any], bool]:
        raise NotImplementedError

    @abstractmethod
    def update(
        self,
        conference_id: str,
        changes: Mapping[str, Any],
        *,
        expected_statuses: Collection[str] | None = None,
    ) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def set_if_unset(self, conference_id: str, field_name: str, value: Any) -> bool:
        raise NotImplementedError

    @abstractmethod
    def claim(
        self,
        conference_id: str,
        *,
        from_statuses: Collection[str],
        claimed_at: datetime,
        trigger: str,
    ) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def list_due(self, now: datetime, limit: int) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def list_by_status(
        self,
        statuses: Collection[str],
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def list_stale_claims(self, claimed_before: datetime, limit: int) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def count(self, statuses: Collection[str] | None = None) -> int:
        raise NotImplementedError

    @abstractmethod
    def count_by_status(self) -> dict[str, int]:
        raise NotImplementedError


class InMemoryConferenceTrackingStore(ConferenceTrackingStore):
    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def find_by_conference_id(self, conference_id: str) -> dict[str, Any] | None:
        with self._lock:
            record = self._records.get(conference_id)
            return dict(record) if record else None

    def create(self, record: Mapping[str, Any]) -> dict[str, Any]:
        document = _to_document(record)
        conference_id = document["conference_id"]
        with self._lock:
            if conference_id in self._records:
                raise ConferenceAlreadyTrackedError(conference_id)
            now = datetime.now(UTC)
            document.setdefault("created_at", now)
            document["updated_at"] = now
            self._records[conference_id] = document
            return dict(document)

    def upsert(
        self,
        conference_id: str,
        *,
        on_insert: Mapping[str, Any],
        changes: Mapping[str, Any],
    ) -> tuple[dict[str, Any], bool]:
        now = datetime.now(UTC)
        with self._lock:
            existing = self._records.get(conference_id)
            created = existing is None
            if created:
                existing = _to_document(on_insert)
                existing["conference_id"] = conference_id
                existing["created_at"] = now
                self._records[conference_id] = existing
            existing.update(_to_document(changes))
            existing["updated_at"] = now
            return dict(existing), created

    def update(
        self,
        conference_id: str,
        changes: Mapping[str, Any],
        *,
        expected_statuses: Collection[str] | None = None,
    ) -> dict[str, Any] | None:
        with self._lock:
            record = self._records.get(conference_id)
            if record is None:
                return None
            if expected_statuses is not None and record.get("status") not in _values(expected_statuses):
                return None
            record.update(_to_document(changes))
            record["updated_at"] = datetime.now(UTC)
            return dict(record)

    def set_if_unset(self, conference_id: str, field_name: str, value: Any) -> bool:
        with self._lock:
            record = self._records.get(conference_id)
            if record is None or record.get(field_name) is not None:
                return False
            record[field_name] = value
            record["updated_at"] = datetime.now(UTC)
            return True

    def claim(
        self,
        conference_id: str,
        *,
        from_statuses: Collection[str],
        claimed_at: datetime,
        trigger: str,
    ) -> dict[str, Any] | None:
        with self._lock:
            record = self._records.get(conference_id)
            if record is None or record.get("status") not in _values(from_statuses):
                return None
            record["status"] = ConferenceStatus.processing.value
            record["claimed_at"] = claimed_at
            record["last_trigger"] = _to_value(trigger)
            record["dispatch_attempts"] = int(record.get("dispatch_attempts") or 0) + 1
            record["updated_at"] = datetime.now(UTC)
            return dict(record)

    def list_due(self, now: datetime, limit: int) -> list[dict[str, Any]]:
        due_statuses = _values(DUE_STATUSES)
        with self._lock:
            candidates = [
                dict(record)
                for record in self._records.values()
                if record.get("status") in due_statuses
                and record.get("processed_at") is None
                and record["timeout_at"] <= now
                and (record.get("next_retry_at") is None or record["next_retry_at"] <= now)
            ]
        candidates.sort(key=lambda record: record["timeout_at"])
        return candidates[:limit]

    def list_by_status(
        self,
        statuses: Collection[str],
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        wanted = _values(statuses)
        with self._lock:
            items = [dict(record) for record in self._records.values() if record.get("status") in wanted]
        items.sort(key=lambda record: record["first_event_at"], reverse=True)
        if limit is not None:
            return items[:limit]
        return items

    def list_stale_claims(self, claimed_before: datetime, limit: int) -> list[dict[str, Any]]:
        with self._lock:
            items = [
                dict(record)
                for record in self._records.values()
                if record.get("status") == ConferenceStatus.processing.value
                and record.get("claimed_at") is not None
                and record["claimed_at"] <= claimed_before
            ]
        return items[:limit]

    def count(self, statuses: Collection[str] | None = None) -> int:
        with self._lock:
            if statuses is None:
                return len(self._records)
            wanted = _values(statuses)
            return sum(1 for record in self._records.values() if record.get("status") in wanted)

    def count_by_status(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        with self._lock:
            for record in self._records.values():
                status = str(record.get("status"))
                counts[status] = counts.get(status, 0) + 1
        return counts


class MongoConferenceTrackingStore(ConferenceTrackingStore):
    def __init__(
        self,
        uri: str,
        db_name: str,
        collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument

        self._asc = ASCENDING
        self._desc = DESCENDING
        self._return_after = ReturnDocument.AFTER
        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
            tz_aware=True,
        )
        self._collection = self._client[db_name][collection_name]
        self._collection.create_index([("conference_id", self._asc)], unique=True)
        self._collection.create_index([("status", self._asc), ("timeout_at", self._asc)])
        self._collection.create_index([("status", self._asc), ("first_event_at", self._desc)])

    def find_by_conference_id(self, conference_id: str) -> dict[str, Any] | None:
        return self._collection.find_one({"conference_id": conference_id}, {"_id": 0})

    def create(self, record: Mapping[str, Any]) -> dict[str, Any]:
        from pymongo.errors import DuplicateKeyError

        document = _to_document(record)
        now = datetime.now(UTC)
        document.setdefault("created_at", now)
        document["updated_at"] = now
        try:
            self._collection.insert_one(document)
        except DuplicateKeyError as exc:
            raise ConferenceAlreadyTrackedError(document["conference_id"]) from exc
        document.pop("_id", None)
        return document

    def upsert(
        self,
        conference_id: str,
        *,
        on_insert: Mapping[str, Any],
        changes: Mapping[str, Any],
    ) -> tuple[dict[str, Any], bool]:
        from pymongo.errors import DuplicateKeyError

        now = datetime.now(UTC)
        set_values = _to_document(changes)
        set_values["updated_at"] = now
        insert_values = {
            key: value
            for key, value in _to_document(on_insert).items()
            if key not in set_values and key != "conference_id"
        }
        insert_values["created_at"] = now
        update = {"$set": set_values, "$setOnInsert": insert_values}
        try:
            result = self._collection.update_one({"conference_id": conference_id}, update, upsert=True)
        except DuplicateKeyError:
            # Concurrent first events: the other writer inserted, ours becomes an update.
            result = self._collection.update_one({"conference_id": conference_id}, update, upsert=True)
        document = self.find_by_conference_id(conference_id)
        if document is None:
            raise ConferenceAlreadyTrackedError(f"Upsert lost record for {conference_id}.")
        return document, result.upserted_id is not None

    def update(
        self,
        conference_id: str,
        changes: Mapping[str, Any],
        *,
        expected_statuses: Collection[str] | None = None,
    ) -> dict[str, Any] | None:
        query: dict[str, Any] = {"conference_id": conference_id}
        if expected_statuses is not None:
            query["status"] = {"$in": sorted(_values(expected_statuses))}
        set_values = _to_document(changes)
        set_values["updated_at"] = datetime.now(UTC)
        return self._collection.find_one_and_update(
            query,
            {"$set": set_values},
            projection={"_id": 0},
            return_document=self._return_after,
        )

    def set_if_unset(self, conference_id: str, field_name: str, value: Any) -> bool:
        result = self._collection.update_one(
            {"conference_id": conference_id, field_name: None},
            {"$set": {field_name: _to_value(value), "updated_at": datetime.now(UTC)}},
        )
        return result.modified_count > 0

    def claim(
        self,
        conference_id: str,
        *,
        from_statuses: Collection[str],
        claimed_at: datetime,
        trigger: str,
    ) -> dict[str, Any] | None:
        return self._collection.find_one_and_update(
            {"conference_id": conference_id, "status": {"$in": sorted(_values(from_statuses))}},
            {
                "$set": {
                    "status": ConferenceStatus.processing.value,
                    "claimed_at": claimed_at,
                    "last_trigger": _to_value(trigger),
                    "updated_at": datetime.now(UTC),
                },
                "$inc": {"dispatch_attempts": 1},
            },
            projection={"_id": 0},
            return_document=self._return_after,
        )

    def list_due(self, now: datetime, limit: int) -> list[dict[str, Any]]:
        cursor = (
            self._collection.find(
                {
                    "status": {"$in": sorted(_values(DUE_STATUSES))},
                    "timeout_at": {"$lte": now},
                    "processed_at": None,
                    "$or": [{"next_retry_at": None}, {"next_retry_at": {"$lte": now}}],
                },
                {"_id": 0},
            )
            .sort("timeout_at", self._asc)
            .limit(limit)
        )
        return list(cursor)

    def list_by_status(
        self,
        statuses: Collection[str],
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        cursor = self._collection.find(
            {"status": {"$in": sorted(_values(statuses))}},
            {"_id": 0},
        ).sort("first_event_at", self._desc)
        if limit is not None:
            cursor = cursor.limit(limit)
        return list(cursor)

    def list_stale_claims(self, claimed_before: datetime, limit: int) -> list[dict[str, Any]]:
        cursor = self._collection.find(
            {
                "status": ConferenceStatus.processing.value,
                "claimed_at": {"$lte": claimed_before},
            },
            {"_id": 0},
        ).limit(limit)
        return list(cursor)

    def count(self, statuses: Collection[str] | None = None) -> int:
        if statuses is None:
            return int(self._collection.count_documents({}))
        return int(self._collection.count_documents({"status": {"$in": sorted(_values(statuses))}}))

    def count_by_status(self) -> dict[str, int]:
        pipeline = [{"$group": {"_id": "$status", "count": {"$sum": 1}}}]
        return {str(row["_id"]): int(row["count"]) for row in self._collection.aggregate(pipeline)}


def create_conference_tracking_store(
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_connect_timeout_ms: int,
) -> ConferenceTrackingStore:
    return _create_conference_tracking_store_cached(
        store_name=store_name,
        mongodb_uri=mongodb_uri,
        mongodb_db_name=mongodb_db_name,
        mongodb_collection_name=mongodb_collection_name,
        mongodb_connect_timeout_ms=mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_conference_tracking_store_cached(
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_connect_timeout_ms: int,
) -> ConferenceTrackingStore:
    if store_name == "memory":
        return InMemoryConferenceTrackingStore()

    if store_name == "mongodb":
        return MongoConferenceTrackingStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            collection_name=mongodb_collection_name,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    raise ValueError(f"Unsupported conference store: {store_name}")


def clear_conference_tracking_store_cache() -> None:
    _create_conference_tracking_store_cached.cache_clear()


def _to_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def _to_document(values: Mapping[str, Any]) -> dict[str, Any]:
    return {key: _to_value(value) for key, value in values.items()}


def _values(statuses: Collection[str]) -> set[str]:
    return {str(_to_value(status)) for status in statuses}
