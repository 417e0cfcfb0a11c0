"""Notification campaigns, subscriptions and the delivery task queue.

Tasks are identified by the database id and de-duplicated by
``(campaignId, senderId, pageId, sent)``. A task is due while its ``enqueue``
timestamp is in the past; ``pop_tasks`` claims due tasks one at a time by
moving ``enqueue`` to ``MAX_TS`` in a single conditional update, so a task is
handed to exactly one consumer. Delivery and read receipts only fill fields
that are still unset, which keeps watermark updates idempotent.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence, Union

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.collection import Collection

from ...core.pagination import IdCursor, Page, decode_cursor_as, encode_cursor
from ...core.time_utils import MAX_TS, now_ms
from .collection import ProvisionedCollection
from .database import MongoDatabase
from .documents import (
    coerce_object_id,
    expand_object_to_set,
    id_to_str,
    map_generic_document,
    strip_id,
)

TASK_KEY = ("campaignId", "senderId", "pageId", "sent")
# counters owned by the queue itself
TASK_MANAGED_FIELDS = ("id", "_id", "ups", "insEnqueue")
WATERMARK_EVENTS = ("read", "delivery")
WRITE_BATCH_SIZE = 999

Task = dict[str, Any]
Campaign = dict[str, Any]


def subscriptions_condition(
    include: Sequence[str], exclude: Sequence[str], page_id: Optional[str] = None
) -> dict[str, Any]:
    condition: dict[str, Any] = {}
    subs: dict[str, Any] = {}
    if include:
        subs["$in"] = list(include)
    if exclude:
        subs["$nin"] = list(exclude)
    if subs:
        condition["subs"] = subs
    if page_id is not None:
        condition["pageId"] = page_id
    return condition


class NotificationStore:
    def __init__(
        self,
        database: MongoDatabase,
        collections_prefix: str = "",
        *,
        wait_for_indexes: bool = True,
        logger: Optional[logging.Logger] = None,
        now_fn: Callable[[], int] = now_ms,
    ) -> None:
        self._logger = logger or logging.getLogger(__name__)
        self._dialect = database.dialect
        self._now = now_fn

        self.tasks_collection = f"{collections_prefix}notification-tasks"
        self.campaigns_collection = f"{collections_prefix}notification-campaigns"
        self.subscriptions_collection = f"{collections_prefix}notification-subscribtions"

        self._tasks = ProvisionedCollection(
            database, self.tasks_collection, wait_for_indexes=wait_for_indexes, logger=self._logger
        )
        self._tasks.add_index(
            {"pageId": 1, "senderId": 1, "campaignId": 1, "sent": -1},
            name="pageId_1_senderId_1_campaignId_1_sent_-1",
            unique=True,
        )
        self._tasks.add_index({"enqueue": 1}, name="enqueue_1")
        self._tasks.add_index(
            {"pageId": 1, "senderId": 1, "sent": -1, "read": 1},
            name="pageId_1_senderId_1_sent_-1_read_1",
        )
        self._tasks.add_index(
            {"pageId": 1, "senderId": 1, "sent": -1, "delivery": 1},
            name="pageId_1_senderId_1_sent_-1_delivery_1",
        )
        self._tasks.add_index(
            {"campaignId": 1, "leaved": -1, "reaction": -1},
            name="campaignId_1_leaved_-1_reaction_-1",
        )
        if not self._dialect.supports_text_search:
            self._tasks.add_index({"sent": 1}, name="sent_1")

        self._campaigns = ProvisionedCollection(
            database,
            self.campaigns_collection,
            wait_for_indexes=wait_for_indexes,
            logger=self._logger,
        )
        self._campaigns.add_index({"id": 1}, name="id_1", unique=True)
        self._campaigns.add_index(
            {"active": -1, "startAt": -1}, name="active_-1_startAt_-1"
        )

        self._subscriptions = ProvisionedCollection(
            database,
            self.subscriptions_collection,
            wait_for_indexes=wait_for_indexes,
            logger=self._logger,
        )
        self._subscriptions.add_index(
            {"pageId": 1, "senderId": 1}, name="pageId_1_senderId_1", unique=True
        )
        self._subscriptions.add_index({"subs": 1, "pageId": 1}, name="subs_1_pageId_1")

    @property
    def collections(self) -> tuple[ProvisionedCollection, ...]:
        return (self._tasks, self._campaigns, self._subscriptions)

    async def preheat(self) -> None:
        """Open all collections and finish index reconciliation up front."""
        await asyncio.gather(
            *(collection.get(for_read=True) for collection in self.collections)
        )

    # Tasks

    async def push_tasks(self, tasks: Iterable[Mapping[str, Any]]) -> list[Task]:
        """Upsert tasks by their de-duplication key.

        Every task is returned with its ``id`` and effective ``insEnqueue``.
        A task that was already queued with the same first enqueue time is
        reported one millisecond later so it is not picked up twice at once.
        A task that disappeared between the upsert and the re-read is
        reported with ``id=None`` and ``insEnqueue=-1``.
        """
        batch = [dict(task) for task in tasks]
        if not batch:
            return []
        collection = await self._tasks.get()
        results: list[Task] = []
        for start in range(0, len(batch), WRITE_BATCH_SIZE):
            chunk = batch[start : start + WRITE_BATCH_SIZE]
            results.extend(await self._tasks.run(self._push_tasks_sync, collection, chunk))
        return results

    async def pop_tasks(self, limit: int, until: Optional[int] = None) -> list[Task]:
        due = self._now() if until is None else until
        collection = await self._tasks.get()
        popped: list[Task] = []
        while len(popped) < limit:
            doc = await self._tasks.run(self._claim_task_sync, collection, due)
            if doc is None:
                break
            popped.append(map_generic_document(doc))
        return popped

    async def get_task_by_id(self, task_id: str) -> Optional[Task]:
        collection = await self._tasks.get(for_read=True)
        doc = await self._tasks.run(
            collection.find_one, {"_id": coerce_object_id(task_id)}
        )
        return map_generic_document(doc)

    async def update_task(self, task_id: str, data: Mapping[str, Any]) -> Optional[Task]:
        """Apply ``data`` to a task; ``delivery`` and ``read`` are only set once."""
        collection = await self._tasks.get()
        doc = await self._tasks.run(
            self._update_task_sync, collection, coerce_object_id(task_id), dict(data)
        )
        return map_generic_document(doc)

    async def get_sent_task(
        self, page_id: str, sender_id: str, campaign_id: str
    ) -> Optional[Task]:
        collection = await self._tasks.get(for_read=True)
        doc = await self._tasks.run(
            collection.find_one,
            {
                "pageId": page_id,
                "senderId": sender_id,
                "campaignId": campaign_id,
                "sent": {"$gte": 1},
            },
            sort=[("sent", -1)],
        )
        return map_generic_document(doc)

    async def get_sent_campaign_ids(
        self, page_id: str, sender_id: str, campaign_ids: Sequence[str]
    ) -> list[str]:
        collection = await self._tasks.get(for_read=True)
        condition = {
            "pageId": page_id,
            "senderId": sender_id,
            "campaignId": {"$in": list(campaign_ids)},
            "sent": {"$gte": 1},
        }
        return await self._tasks.run(
            self._dialect.distinct, collection, "campaignId", condition
        )

    async def update_tasks_by_watermark(
        self,
        sender_id: str,
        page_id: str,
        watermark: int,
        event_type: str,
        ts: Optional[int] = None,
    ) -> list[Task]:
        """Mark every task sent up to ``watermark`` as read or delivered.

        Tasks that already carry the event keep their original timestamp, so
        replaying the same receipt changes nothing and returns an empty list.
        """
        if event_type not in WATERMARK_EVENTS:
            raise ValueError(
                f"event_type must be one of {', '.join(WATERMARK_EVENTS)}, got {event_type!r}"
            )
        stamp = self._now() if ts is None else ts
        collection = await self._tasks.get()
        docs = await self._tasks.run(
            self._watermark_sync, collection, sender_id, page_id, watermark, event_type, stamp
        )
        return [map_generic_document(doc) for doc in docs]

    async def get_unsuccessful_subscribers_by_campaign(
        self,
        campaign_id: str,
        sent_without_reaction: bool = False,
        page_id: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        condition: dict[str, Any] = {"campaignId": campaign_id, "leaved": None}
        if page_id:
            condition["pageId"] = page_id
        if sent_without_reaction:
            condition["reaction"] = False
        else:
            condition["leaved"] = {"$gt": 0}
        collection = await self._tasks.get(for_read=True)
        return await self._tasks.run(
            self._find_chunked_sync,
            collection,
            condition,
            {"_id": 0, "senderId": 1, "pageId": 1},
        )

    # Campaigns

    async def upsert_campaign(
        self, campaign: Mapping[str, Any], update: Optional[Mapping[str, Any]] = None
    ) -> Campaign:
        collection = await self._campaigns.get()
        doc = await self._campaigns.run(
            self._upsert_campaign_sync, collection, dict(campaign), dict(update or {})
        )
        return strip_id(doc)

    async def remove_campaign(self, campaign_id: str) -> None:
        collection = await self._campaigns.get()
        await self._campaigns.run(collection.delete_one, {"id": campaign_id})

    async def increment_campaign(
        self, campaign_id: str, increment: Optional[Mapping[str, int]] = None
    ) -> None:
        if not increment:
            return
        collection = await self._campaigns.get()
        await self._campaigns.run(
            collection.update_one, {"id": campaign_id}, {"$inc": dict(increment)}
        )

    async def update_campaign(
        self, campaign_id: str, data: Mapping[str, Any]
    ) -> Optional[Campaign]:
        collection = await self._campaigns.get()
        doc = await self._campaigns.run(
            collection.find_one_and_update,
            {"id": campaign_id},
            {"$set": dict(data)},
            return_document=ReturnDocument.AFTER,
        )
        return strip_id(doc)

    async def pop_campaign(self, now: Optional[int] = None) -> Optional[Campaign]:
        """Claim one active campaign that is due; returns it as it was before."""
        due = self._now() if now is None else now
        collection = await self._campaigns.get()
        doc = await self._campaigns.run(
            collection.find_one_and_update,
            {"startAt": {"$ne": None, "$lte": due}, "active": True},
            {"$set": {"startAt": None}},
            return_document=ReturnDocument.BEFORE,
        )
        return strip_id(doc)

    async def get_campaign_by_id(self, campaign_id: str) -> Optional[Campaign]:
        collection = await self._campaigns.get(for_read=True)
        doc = await self._campaigns.run(collection.find_one, {"id": campaign_id})
        return strip_id(doc)

    async def get_campaigns_by_ids(self, campaign_ids: Sequence[str]) -> list[Campaign]:
        if not campaign_ids:
            return []
        collection = await self._campaigns.get(for_read=True)
        docs = await self._campaigns.run(
            self._find_sync,
            collection,
            {"id": {"$in": list(campaign_ids)}},
            None,
            None,
            len(campaign_ids),
        )
        return [strip_id(doc) for doc in docs]

    async def get_campaigns(
        self,
        condition: Optional[Mapping[str, Any]] = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> Page[Campaign]:
        query = dict(condition or {})
        position = decode_cursor_as(cursor, IdCursor)
        if isinstance(position, IdCursor):
            query["_id"] = {"$lt": coerce_object_id(position.value)}
        collection = await self._campaigns.get(for_read=True)
        docs = await self._campaigns.run(
            self._find_sync,
            collection,
            query,
            None,
            [("_id", -1)],
            limit + 1 if limit else None,
        )
        next_cursor = None
        if limit and len(docs) > limit:
            docs = docs[:limit]
            next_cursor = encode_cursor(IdCursor(str(id_to_str(docs[-1]["_id"]))))
        return Page(data=[strip_id(doc) for doc in docs], next_cursor=next_cursor)

    # Subscriptions

    async def batch_subscribe(
        self,
        subscriptions: Iterable[Mapping[str, Any]],
        only_to_known: bool = False,
    ) -> None:
        """Add (or with ``remove`` set, drop) tags for many subscribers.

        With ``only_to_known`` unknown subscribers are not created.
        """
        pending = [dict(item) for item in subscriptions if item.get("tags")]
        if not pending:
            return
        collection = await self._subscriptions.get()
        for start in range(0, len(pending), WRITE_BATCH_SIZE):
            await self._subscriptions.run(
                self._subscribe_sync,
                collection,
                pending[start : start + WRITE_BATCH_SIZE],
                only_to_known,
            )

    async def subscribe(
        self,
        sender_ids: Union[str, Sequence[str]],
        page_id: str,
        tag: str,
        only_to_known: Optional[bool] = None,
    ) -> None:
        ids = [sender_ids] if isinstance(sender_ids, str) else list(sender_ids)
        await self.batch_subscribe(
            [{"senderId": sender_id, "pageId": page_id, "tags": [tag]} for sender_id in ids],
            bool(only_to_known),
        )

    async def unsubscribe(
        self, sender_id: str, page_id: str, tag: Optional[str] = None
    ) -> list[str]:
        """Remove one tag, or the whole subscription when ``tag`` is None.

        Returns the removed tags. A subscription left without tags is deleted.
        """
        collection = await self._subscriptions.get()
        return await self._subscriptions.run(
            self._unsubscribe_sync, collection, sender_id, page_id, tag
        )

    async def get_subscriptions_count(
        self,
        include: Sequence[str],
        exclude: Sequence[str],
        page_id: Optional[str] = None,
    ) -> int:
        collection = await self._subscriptions.get(for_read=True)
        return await self._subscriptions.run(
            collection.count_documents,
            subscriptions_condition(include, exclude, page_id),
        )

    async def get_subscriptions(
        self,
        include: Sequence[str],
        exclude: Sequence[str],
        limit: Optional[int] = None,
        page_id: Optional[str] = None,
        cursor: Optional[str] = None,
    ) -> Page[dict[str, Any]]:
        condition = subscriptions_condition(include, exclude, page_id)
        position = decode_cursor_as(cursor, IdCursor)
        if isinstance(position, IdCursor):
            condition["_id"] = {"$gt": coerce_object_id(position.value)}
        projection: dict[str, Any] = {"_id": 1, "pageId": 1, "senderId": 1}
        if include:
            projection.update({f"meta.{tag}": 1 for tag in include})
        else:
            projection["meta"] = 1

        collection = await self._subscriptions.get(for_read=True)
        docs = await self._subscriptions.run(
            self._find_chunked_sync,
            collection,
            condition,
            projection,
            [("_id", 1)],
            limit + 1 if limit else None,
        )
        next_cursor = None
        if limit and len(docs) > limit:
            docs = docs[:limit]
            next_cursor = encode_cursor(IdCursor(str(id_to_str(docs[-1]["_id"]))))
        data = []
        for doc in docs:
            item = {"senderId": doc.get("senderId"), "pageId": doc.get("pageId")}
            if doc.get("meta") is not None:
                item["meta"] = doc["meta"]
            data.append(item)
        return Page(data=data, next_cursor=next_cursor)

    async def get_sender_subscriptions(
        self, sender_id: str, page_id: str
    ) -> list[dict[str, Any]]:
        collection = await self._subscriptions.get(for_read=True)
        doc = await self._subscriptions.run(
            collection.find_one,
            {"senderId": sender_id, "pageId": page_id},
            {"_id": 0, "subs": 1, "meta": 1},
        )
        if not doc:
            return []
        meta = doc.get("meta") or {}
        return [{"tag": tag, "meta": meta.get(tag) or {}} for tag in doc.get("subs") or []]

    async def get_sender_subscription_tags(self, sender_id: str, page_id: str) -> list[str]:
        subscriptions = await self.get_sender_subscriptions(sender_id, page_id)
        return [item["tag"] for item in subscriptions]

    async def get_tags(self, page_id: Optional[str] = None) -> list[dict[str, Any]]:
        """Subscriber count per tag, most popular first."""
        pipeline: list[dict[str, Any]] = [
            {"$project": {"subs": 1}},
            {"$unwind": "$subs"},
            {"$group": {"_id": "$subs", "subscriptions": {"$sum": 1}}},
            {"$sort": {"subscriptions": -1}},
        ]
        if page_id:
            pipeline.insert(0, {"$match": {"pageId": page_id}})
        collection = await self._subscriptions.get(for_read=True)
        rows = await self._subscriptions.run(self._aggregate_sync, collection, pipeline)
        return [{"tag": row["_id"], "subscriptions": row["subscriptions"]} for row in rows]

    # Driver calls, run on the database worker pool

    def _push_tasks_sync(self, collection: Collection, tasks: list[Task]) -> list[Task]:
        results = []
        for task in tasks:
            key = {field: task.get(field) for field in TASK_KEY}
            values = {
                field: value
                for field, value in task.items()
                if field not in TASK_KEY and field not in TASK_MANAGED_FIELDS
            }
            enqueue = task.get("enqueue")
            update: dict[str, Any] = {
                "$inc": {"ups": 1},
                "$min": {"insEnqueue": enqueue},
            }
            if values:
                update["$set"] = values
            result = collection.update_one(key, update, upsert=True)
            if result.upserted_id is not None:
                results.append(
                    {**task, "id": id_to_str(result.upserted_id), "insEnqueue": enqueue}
                )
                continue

            found = collection.find_one(
                key, {"_id": 1, "insEnqueue": 1, "enqueue": 1, "ups": 1}
            )
            if found is None:
                # popped and removed between the upsert and this read
                results.append({**task, "id": None, "insEnqueue": -1, "enqueue": enqueue})
                continue
            effective = found.get("enqueue")
            if (
                found.get("insEnqueue") == effective
                and effective != MAX_TS
                and found.get("ups") != 1
            ):
                effective += 1
            results.append(
                {
                    **task,
                    "id": id_to_str(found["_id"]),
                    "insEnqueue": found.get("insEnqueue"),
                    "enqueue": effective,
                }
            )
        return results

    def _claim_task_sync(self, collection: Collection, until: int) -> Optional[Task]:
        return collection.find_one_and_update(
            {"enqueue": {"$lte": until}},
            {"$set": {"enqueue": MAX_TS, "insEnqueue": MAX_TS, "ups": 0}},
            sort=[("enqueue", 1)],
            return_document=ReturnDocument.AFTER,
        )

    def _update_task_sync(
        self, collection: Collection, task_id: Any, data: dict[str, Any]
    ) -> Optional[Task]:
        for field in WATERMARK_EVENTS:
            if field in data:
                collection.update_one(
                    {"_id": task_id, field: None}, {"$set": {field: data.pop(field)}}
                )
        if data:
            return collection.find_one_and_update(
                {"_id": task_id},
                {"$set": data},
                return_document=ReturnDocument.AFTER,
            )
        return collection.find_one({"_id": task_id})

    def _watermark_sync(
        self,
        collection: Collection,
        sender_id: str,
        page_id: str,
        watermark: int,
        event_type: str,
        stamp: int,
    ) -> list[Task]:
        candidates = collection.find(
            {
                "senderId": sender_id,
                "pageId": page_id,
                "sent": {"$lte": watermark},
                event_type: None,
            },
            {"_id": 1},
        )
        updated = []
        for candidate in list(candidates):
            doc = collection.find_one_and_update(
                {"_id": candidate["_id"], event_type: None},
                {"$set": {event_type: stamp}},
                return_document=ReturnDocument.AFTER,
            )
            if doc is not None:
                updated.append(doc)
        return updated

    def _upsert_campaign_sync(
        self,
        collection: Collection,
        campaign: dict[str, Any],
        update: dict[str, Any],
    ) -> dict[str, Any]:
        campaign_id = campaign.get("id")
        if not campaign_id:
            object_id = ObjectId()
            campaign.pop("id", None)
            doc = {**campaign, **update, "_id": object_id, "id": str(object_id)}
            collection.insert_one(doc)
            return doc

        on_insert = {
            key: value
            for key, value in campaign.items()
            if key != "id" and key not in update
        }
        operations: dict[str, Any] = {}
        if on_insert:
            operations["$setOnInsert"] = on_insert
        if update:
            operations["$set"] = update
        if not operations:
            operations["$set"] = {"id": campaign_id}
        return collection.find_one_and_update(
            {"id": campaign_id},
            operations,
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )

    def _subscribe_sync(
        self,
        collection: Collection,
        subscriptions: list[dict[str, Any]],
        only_to_known: bool,
    ) -> None:
        for item in subscriptions:
            tags = list(item["tags"])
            remove = bool(item.get("remove"))
            if remove:
                update: dict[str, Any] = {
                    "$pullAll": {"subs": tags},
                    "$set": {f"meta.{tag}": {} for tag in tags},
                }
            else:
                update = {"$addToSet": {"subs": {"$each": tags}}}
                meta = item.get("meta")
                if meta:
                    update["$set"] = expand_object_to_set("meta", meta)
            collection.update_one(
                {"senderId": item.get("senderId"), "pageId": item.get("pageId")},
                update,
                upsert=not remove and not only_to_known,
            )

    def _unsubscribe_sync(
        self,
        collection: Collection,
        sender_id: str,
        page_id: str,
        tag: Optional[str],
    ) -> list[str]:
        removed: list[str] = []
        remove_all = tag is None
        if tag is not None:
            doc = collection.find_one_and_update(
                {"pageId": page_id, "senderId": sender_id, "subs": tag},
                {"$pull": {"subs": tag}},
                return_document=ReturnDocument.AFTER,
            )
            if doc is None:
                return []
            removed.append(tag)
            remove_all = not doc.get("subs")
        if remove_all:
            doc = collection.find_one_and_delete({"pageId": page_id, "senderId": sender_id})
            if doc is not None:
                removed.extend(doc.get("subs") or [])
        return removed

    def _find_sync(
        self,
        collection: Collection,
        condition: dict[str, Any],
        projection: Optional[dict[str, Any]],
        sort: Optional[list[tuple[str, Any]]],
        limit: Optional[int],
    ) -> list[dict[str, Any]]:
        cursor = collection.find(condition, projection)
        if sort:
            cursor = cursor.sort(sort)
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)

    def _find_chunked_sync(
        self,
        collection: Collection,
        condition: dict[str, Any],
        projection: Optional[dict[str, Any]],
        sort: Optional[list[tuple[str, Any]]] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """Read up to ``limit`` rows in requests no larger than the row cap."""
        chunk = self._dialect.chunk_size(limit)
        if chunk is None:
            return self._find_sync(collection, condition, projection, sort, limit)
        rows: list[dict[str, Any]] = []
        skip = 0
        while True:
            cursor = collection.find(condition, projection)
            if sort:
                cursor = cursor.sort(sort)
            batch = list(cursor.skip(skip).limit(chunk))
            rows.extend(batch)
            if len(batch) < chunk or (limit is not None and len(rows) >= limit):
                break
            skip += chunk
        return rows if limit is None else rows[:limit]

    def _aggregate_sync(
        self, collection: Collection, pipeline: list[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        return list(collection.aggregate(pipeline))


__all__ = ["NotificationStore", "subscriptions_condition"]
