"""Conversation state storage with an optimistic per-conversation lock.

A record is keyed by ``(senderId, pageId)``. ``get_or_create_and_lock`` takes
the lock with one ``find_one_and_update`` that only matches an expired lock
and upserts otherwise. When the lock is held, the upsert collides with the
unique index and the duplicate-key error becomes ``StateLockedError``.
``save_state`` writes the state back and releases the lock.

When the unique index could not be created, the upsert may insert a second
record for the same key. After a lock that returned a fresh record the store
re-reads every record of the key, deletes the duplicates that were just
created or are abandoned, and raises the same ``StateLockedError``. Two
workers inserting within the same millisecond can both lose their record;
callers retry either way.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Mapping, Optional

from pymongo import ReturnDocument
from pymongo.collection import Collection
from pymongo.errors import DuplicateKeyError

from ...core.logging_utils import log_event
from ...core.pagination import (
    Page,
    SkipCursor,
    WatermarkCursor,
    decode_cursor_as,
    encode_cursor,
)
from ...core.time_utils import datetime_to_ms, ms_to_datetime, now_ms
from .collection import IndexKeys, ProvisionedCollection
from .database import MongoDatabase
from .errors import StateLockedError

STATE_INDEX = "senderId_1_pageId_1"
LAST_INTERACTION_INDEX = "lastInteraction_1"
SEARCH_INDEX = "search-text"
NAME_INDEX = "name_1"

DEFAULT_LOCK_TIMEOUT_MS = 300
SEARCH_FIELDS = ("senderId", "name")
HIDDEN_FIELDS = ("_id", "lock", "off", "lastSendError", "score")
NEWEST_FIRST = [("lastInteraction", -1)]


def _public_state(doc: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in doc.items() if key not in HIDDEN_FIELDS}


def _watermark(doc: Mapping[str, Any]) -> int:
    value = doc.get("lastInteraction")
    if isinstance(value, datetime):
        return datetime_to_ms(value)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return 0


class StateStore:
    def __init__(
        self,
        database: MongoDatabase,
        collection_name: str = "states",
        *,
        lock_timeout_ms: int = DEFAULT_LOCK_TIMEOUT_MS,
        log_collisions_as_errors: bool = False,
        wait_for_indexes: bool = True,
        logger: Optional[logging.Logger] = None,
        now_fn: Callable[[], int] = now_ms,
    ) -> None:
        self._logger = logger or logging.getLogger(__name__)
        self._collection = ProvisionedCollection(
            database,
            collection_name,
            wait_for_indexes=wait_for_indexes,
            logger=self._logger,
        )
        self._dialect = database.dialect
        self._lock_timeout_ms = lock_timeout_ms
        self.log_collisions_as_errors = log_collisions_as_errors
        self._now = now_fn

        self._collection.add_index(
            {"senderId": 1, "pageId": 1}, name=STATE_INDEX, unique=True
        )
        self._collection.add_index(
            {"lastInteraction": self._dialect.index_direction},
            name=LAST_INTERACTION_INDEX,
        )
        if self._dialect.supports_text_search:
            self._collection.add_index({"$**": "text"}, name=SEARCH_INDEX)
        else:
            self._collection.add_index({"name": 1}, name=NAME_INDEX)

    @property
    def collection(self) -> ProvisionedCollection:
        return self._collection

    def add_index(self, keys: IndexKeys, *, name: str, unique: bool = False) -> None:
        self._collection.add_index(keys, name=name, unique=unique)

    async def get_state(self, sender_id: str, page_id: str) -> Optional[dict[str, Any]]:
        collection = await self._collection.get()
        degraded = self._collection.unique_index_unavailable
        return await self._collection.run(
            self._get_state_sync, collection, sender_id, page_id, degraded
        )

    async def get_or_create_and_lock(
        self,
        sender_id: str,
        page_id: str,
        default_state: Optional[dict[str, Any]] = None,
        timeout_ms: Optional[int] = None,
    ) -> dict[str, Any]:
        """Load the conversation state and lock it.

        Raises ``StateLockedError`` (``code == 11000``) while another holder's
        lock is younger than ``timeout_ms``.
        """
        timeout = self._lock_timeout_ms if timeout_ms is None else timeout_ms
        collection = await self._collection.get()
        degraded = self._collection.unique_index_unavailable
        now = self._now()
        expired_before = now - timeout
        try:
            doc = await self._collection.run(
                self._lock_sync,
                collection,
                sender_id,
                page_id,
                {} if default_state is None else default_state,
                now,
                expired_before,
                degraded,
            )
        except DuplicateKeyError as exc:
            raise StateLockedError(sender_id, page_id) from exc

        if degraded and not doc.get("lastInteraction"):
            await self._collection.run(
                self._resolve_duplicates_sync,
                collection,
                sender_id,
                page_id,
                doc,
                now,
                expired_before,
            )
        return doc

    async def save_state(self, record: dict[str, Any]) -> dict[str, Any]:
        record["lock"] = 0
        collection = await self._collection.get()
        degraded = self._collection.unique_index_unavailable
        await self._collection.run(self._save_sync, collection, record, degraded)
        return record

    async def get_states(
        self,
        condition: Optional[Mapping[str, Any]] = None,
        limit: int = 20,
        cursor: Optional[str] = None,
    ) -> Page[dict[str, Any]]:
        """List states, newest interaction first, or by a search term.

        ``condition["search"]`` switches to relevance order (text score on
        MongoDB, a prefix match on ``senderId``/``name`` on Cosmos) and the
        continuation becomes a skip offset instead of a watermark.
        """
        search = (condition or {}).get("search")
        searching = isinstance(search, str)
        query: dict[str, Any] = {}
        skip = 0
        projection: Optional[dict[str, Any]] = None
        if searching:
            position = decode_cursor_as(cursor, SkipCursor)
            if isinstance(position, SkipCursor):
                skip = position.offset
            query.update(self._dialect.search_condition(search, SEARCH_FIELDS))
            projection = self._dialect.search_projection()
            sort = self._dialect.search_sort()
        else:
            position = decode_cursor_as(cursor, WatermarkCursor)
            if isinstance(position, WatermarkCursor):
                query["lastInteraction"] = {"$lte": ms_to_datetime(position.timestamp_ms)}
            sort = NEWEST_FIRST

        collection = await self._collection.get(for_read=True)
        docs = await self._collection.run(
            self._find_sync, collection, query, projection, sort, skip, limit + 1
        )

        next_cursor = None
        if len(docs) > limit:
            if searching:
                next_cursor = encode_cursor(SkipCursor(skip + limit))
            else:
                next_cursor = encode_cursor(WatermarkCursor(_watermark(docs[-1])))
            docs = docs[:limit]
        return Page(data=[_public_state(doc) for doc in docs], next_cursor=next_cursor)

    def _get_state_sync(
        self, collection: Collection, sender_id: str, page_id: str, degraded: bool
    ) -> Optional[dict[str, Any]]:
        return collection.find_one(
            {"senderId": sender_id, "pageId": page_id},
            {"_id": 0},
            sort=NEWEST_FIRST if degraded else None,
        )

    def _lock_sync(
        self,
        collection: Collection,
        sender_id: str,
        page_id: str,
        default_state: dict[str, Any],
        now: int,
        expired_before: int,
        degraded: bool,
    ) -> dict[str, Any]:
        doc = collection.find_one_and_update(
            {
                "senderId": sender_id,
                "pageId": page_id,
                "lock": {"$lte": expired_before},
            },
            {
                "$setOnInsert": {
                    "state": default_state,
                    "lastSendError": None,
                    "off": False,
                },
                "$set": {"lock": now},
            },
            sort=NEWEST_FIRST if degraded else None,
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        doc = dict(doc or {})
        doc.pop("_id", None)
        return doc

    def _resolve_duplicates_sync(
        self,
        collection: Collection,
        sender_id: str,
        page_id: str,
        locked: dict[str, Any],
        now: int,
        expired_before: int,
    ) -> None:
        existing = list(
            collection.find({"senderId": sender_id, "pageId": page_id}).sort(NEWEST_FIRST)
        )
        if len(existing) <= 1:
            log_event(
                self._logger,
                logging.DEBUG,
                "state.unique_workaround.ok",
                sender_id=sender_id,
                page_id=page_id,
            )
            return

        stale = [
            doc["_id"]
            for doc in existing
            if not doc.get("lastInteraction")
            and (doc.get("lock") == now or (doc.get("lock") or 0) <= expired_before)
        ]
        log_event(
            self._logger,
            logging.ERROR if self.log_collisions_as_errors else logging.INFO,
            "state.unique_workaround.detected",
            sender_id=sender_id,
            page_id=page_id,
            records=len(existing),
            removed=[str(item) for item in stale],
            lock=locked.get("lock"),
        )
        if stale:
            collection.delete_many({"_id": {"$in": stale}})
        raise StateLockedError(sender_id, page_id)

    def _save_sync(
        self, collection: Collection, record: dict[str, Any], degraded: bool
    ) -> None:
        values = {key: value for key, value in record.items() if key != "_id"}
        key = {"senderId": record.get("senderId"), "pageId": record.get("pageId")}
        if degraded:
            collection.find_one_and_update(
                key, {"$set": values}, sort=NEWEST_FIRST, upsert=True
            )
        else:
            collection.update_one(key, {"$set": values}, upsert=True)

    def _find_sync(
        self,
        collection: Collection,
        query: dict[str, Any],
        projection: Optional[dict[str, Any]],
        sort: Optional[list[tuple[str, Any]]],
        skip: int,
        limit: int,
    ) -> list[dict[str, Any]]:
        cursor = collection.find(query, projection)
        if sort:
            cursor = cursor.sort(sort)
        return list(cursor.skip(skip).limit(limit))


__all__ = ["StateStore"]
