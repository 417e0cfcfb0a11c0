from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, Optional, Sequence

from bson.errors import BSONError
from pymongo.collection import Collection
from pymongo.errors import PyMongoError

from ...core.exceptions import BotStorageError, StorageNetworkError
from ...core.logging_utils import log_event
from ...core.signing import Signer
from ...core.time_utils import now_ms
from .collection import ProvisionedCollection
from .database import MongoDatabase

PAGE_SENDER_TIMESTAMP_INDEX = "pageId_1_senderId_1_timestamp_-1"


class ChatLogStore:
    """Conversation transcripts, optionally signed one entry at a time."""

    def __init__(
        self,
        database: MongoDatabase,
        collection_name: str = "chatlogs",
        *,
        secret: Optional[str] = None,
        mute_errors: bool = True,
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
        self._signer = Signer(secret)
        self.mute_errors = mute_errors
        self._now = now_fn

        self._collection.add_index(
            {"pageId": 1, "senderId": 1, "timestamp": -1},
            name=PAGE_SENDER_TIMESTAMP_INDEX,
        )
        if not database.dialect.supports_text_search:
            self._collection.add_index({"timestamp": 1}, name="timestamp_1")
            self._collection.add_index({"senderId": 1}, name="senderId_1")

    @property
    def collection(self) -> ProvisionedCollection:
        return self._collection

    async def log(
        self,
        sender_id: str,
        responses: Optional[Sequence[Any]] = None,
        request: Optional[Mapping[str, Any]] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> dict[str, Any]:
        entry = {
            "senderId": sender_id,
            "request": dict(request or {}),
            "responses": list(responses or []),
            **dict(metadata or {}),
        }
        return await self._store(entry)

    async def error(
        self,
        err: Any,
        sender_id: str,
        responses: Optional[Sequence[Any]] = None,
        request: Optional[Mapping[str, Any]] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> dict[str, Any]:
        entry = {
            "senderId": sender_id,
            "request": dict(request or {}),
            "responses": list(responses or []),
            "err": str(err),
            **dict(metadata or {}),
        }
        return await self._store(entry)

    async def get_interactions(
        self,
        sender_id: str,
        page_id: Optional[str],
        limit: int = 10,
        end_at: Optional[int] = None,
        start_at: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """Interactions in chronological order; both bounds are inclusive.

        Without bounds, or with ``end_at``, the newest ``limit`` entries up to
        the bound are returned. With only ``start_at`` the oldest ``limit``
        entries from that point on are returned.
        """
        query: dict[str, Any] = {"senderId": sender_id, "pageId": page_id}
        forward = start_at is not None and end_at is None
        bounds: dict[str, Any] = {}
        if start_at is not None:
            bounds["$gte"] = start_at
        if end_at is not None:
            bounds["$lte"] = end_at
        if bounds:
            query["timestamp"] = bounds

        collection = await self._collection.get(for_read=True)
        docs = await self._collection.run(
            self._find_sync, collection, query, 1 if forward else -1, limit
        )
        if not forward:
            docs.reverse()

        entries = []
        for doc in docs:
            signature = doc.pop("sign", None)
            ok: Optional[bool] = None
            if self._signer.enabled:
                ok = bool(self._signer.verify(doc, signature))
                if not ok:
                    log_event(
                        self._logger,
                        logging.ERROR,
                        "chat_log.signature_mismatch",
                        sender_id=doc.get("senderId"),
                        page_id=doc.get("pageId"),
                        timestamp=doc.get("timestamp"),
                    )
            doc["ok"] = ok
            entries.append(doc)
        return entries

    async def _store(self, entry: dict[str, Any]) -> dict[str, Any]:
        if not entry.get("timestamp"):
            entry["timestamp"] = entry["request"].get("timestamp") or self._now()
        entry.setdefault("pageId", None)
        try:
            collection = await self._collection.get()
            document = dict(entry)
            if self._signer.enabled:
                document["sign"] = self._signer.sign(document)
            await self._collection.run(collection.insert_one, document)
        except StorageNetworkError:
            raise
        except (PyMongoError, BSONError, BotStorageError) as exc:
            log_event(
                self._logger,
                logging.ERROR,
                "chat_log.store_failed",
                sender_id=entry.get("senderId"),
                page_id=entry.get("pageId"),
                exc=exc,
            )
            if not self.mute_errors:
                raise
        return entry

    def _find_sync(
        self, collection: Collection, query: dict[str, Any], direction: int, limit: int
    ) -> list[dict[str, Any]]:
        return list(
            collection.find(query, {"_id": 0}).sort([("timestamp", direction)]).limit(limit)
        )


__all__ = ["ChatLogStore"]
