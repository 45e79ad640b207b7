"""
Repository for audit log entries in the document store.

Entries are append-only: the only removal path is delete_older_than(),
used by retention cleanup. Datetimes are written as naive UTC and handed
back as timezone-aware UTC.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING
from pymongo.collection import Collection

import document_store
from time_utils import ensure_utc, to_naive_utc

logger = logging.getLogger(__name__)

SORTABLE_FIELDS = ("created_at", "action", "task_id", "user_id")


@dataclass
class LogFilters:
    action: Optional[str] = None
    task_id: Optional[int] = None
    user_id: Optional[int] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    sort_by: str = "created_at"
    sort_order: str = "desc"

    def applied(self) -> Dict[str, Any]:
        result = {}
        for key in ("action", "task_id", "user_id", "start_date", "end_date"):
            value = getattr(self, key)
            if value is not None:
                result[key] = ensure_utc(value).isoformat() if isinstance(value, datetime) else value
        return result

    def to_query(self) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        if self.action:
            query["action"] = self.action
        if self.task_id is not None:
            query["task_id"] = self.task_id
        if self.user_id is not None:
            query["user_id"] = self.user_id
        if self.start_date or self.end_date:
            window = {}
            if self.start_date:
                window["$gte"] = to_naive_utc(self.start_date)
            if self.end_date:
                window["$lte"] = to_naive_utc(self.end_date)
            query["created_at"] = window
        return query


def serialize_log(document: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a raw document into the API representation."""
    return {
        "id": str(document["_id"]),
        "task_id": document.get("task_id"),
        "action": document.get("action"),
        "old_data": document.get("old_data"),
        "new_data": document.get("new_data"),
        "changes": document.get("changes"),
        "user_id": document.get("user_id"),
        "user_name": document.get("user_name"),
        "description": document.get("description"),
        "created_at": ensure_utc(document.get("created_at")),
    }


class LogRepository:
    """Repository for TaskLog operations."""

    def __init__(self, collection: Collection):
        self.collection = collection

    def _sort(self, sort_by: str, sort_order: str) -> List[tuple]:
        field = sort_by if sort_by in SORTABLE_FIELDS else "created_at"
        direction = ASCENDING if sort_order == "asc" else DESCENDING
        # _id breaks ties so pages never overlap
        return [(field, direction), ("_id", direction)]

    def create(self, entry: Dict[str, Any]) -> Dict[str, Any]:
        document = dict(entry)
        document["created_at"] = to_naive_utc(document.get("created_at"))
        result = self.collection.insert_one(document)
        document["_id"] = result.inserted_id
        logger.debug(f"Inserted log {result.inserted_id} for task {document.get('task_id')}")
        return serialize_log(document)

    def find_by_id(self, log_id: str) -> Optional[Dict[str, Any]]:
        document = self.collection.find_one({"_id": ObjectId(log_id)})
        return serialize_log(document) if document else None

    def find_by_task(self, task_id: int, limit: int = 50) -> List[Dict[str, Any]]:
        cursor = self.collection.find({"task_id": task_id}).sort(self._sort("created_at", "desc")).limit(limit)
        return [serialize_log(doc) for doc in cursor]

    def find_recent(self, limit: int = 100) -> List[Dict[str, Any]]:
        cursor = self.collection.find({}).sort(self._sort("created_at", "desc")).limit(limit)
        return [serialize_log(doc) for doc in cursor]

    def find_with_filters(self, filters: LogFilters, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        cursor = (
            self.collection.find(filters.to_query())
            .sort(self._sort(filters.sort_by, filters.sort_order))
            .skip(offset)
            .limit(limit)
        )
        return [serialize_log(doc) for doc in cursor]

    def count_with_filters(self, filters: LogFilters) -> int:
        return self.collection.count_documents(filters.to_query())

    def count_by_action(self, action: Optional[str] = None) -> int:
        return self.collection.count_documents({"action": action} if action else {})

    def counts_by_action(self, filters: Optional[LogFilters] = None) -> Dict[str, int]:
        """Return {action: count} for the entries matching filters."""
        pipeline = [
            {"$match": filters.to_query() if filters else {}},
            {"$group": {"_id": "$action", "count": {"$sum": 1}}},
        ]
        counts = {row["_id"]: row["count"] for row in self.collection.aggregate(pipeline)}
        return dict(sorted(counts.items()))

    def counts_by_day(self, filters: Optional[LogFilters] = None) -> Dict[str, int]:
        """Return {YYYY-MM-DD: count} (UTC days) for the entries matching filters."""
        pipeline = [
            {"$match": filters.to_query() if filters else {}},
            {"$match": {"created_at": {"$ne": None}}},
            {"$project": {"day": {"$dateToString": {"format": "%Y-%m-%d", "date": "$created_at"}}}},
            {"$group": {"_id": "$day", "count": {"$sum": 1}}},
        ]
        counts = {row["_id"]: row["count"] for row in self.collection.aggregate(pipeline)}
        return dict(sorted(counts.items()))

    def delete_older_than(self, cutoff: datetime) -> int:
        result = self.collection.delete_many({"created_at": {"$lt": to_naive_utc(cutoff)}})
        logger.info(f"Deleted {result.deleted_count} log entries older than {cutoff.isoformat()}")
        return result.deleted_count

    def ping(self) -> Dict[str, Any]:
        return document_store.ping(self.collection)
