from __future__ import annotations

import asyncio

import pytest

from botstorage.core.exceptions import InvalidCursorError
from botstorage.core.pagination import SkipCursor, encode_cursor
from botstorage.core.time_utils import MAX_TS
from botstorage.integrations.mongodb.notifications import (
    NotificationStore,
    subscriptions_condition,
)

NOW = 1_700_000_000_000


@pytest.fixture
def store(database) -> NotificationStore:
    return NotificationStore(database, now_fn=lambda: NOW)


def _task(sender_id: str, enqueue: int, campaign_id: str = "c1", **extra) -> dict:
    return {
        "campaignId": campaign_id,
        "senderId": sender_id,
        "pageId": "p1",
        "sent": None,
        "enqueue": enqueue,
        **extra,
    }


def test_subscriptions_condition() -> None:
    assert subscriptions_condition([], []) == {}
    assert subscriptions_condition(["a"], ["b"], "p1") == {
        "subs": {"$in": ["a"], "$nin": ["b"]},
        "pageId": "p1",
    }


def test_collection_names_use_prefix(database) -> None:
    store = NotificationStore(database, "bot1-")
    assert store.tasks_collection == "bot1-notification-tasks"
    assert store.campaigns_collection == "bot1-notification-campaigns"
    assert store.subscriptions_collection == "bot1-notification-subscribtions"


@pytest.mark.anyio
async def test_preheat_provisions_every_collection(store, raw_db) -> None:
    await store.preheat()
    names = {index["name"] for index in raw_db["notification-tasks"].list_indexes()}
    assert "pageId_1_senderId_1_campaignId_1_sent_-1" in names
    assert "enqueue_1" in names
    campaign_indexes = {
        index["name"] for index in raw_db["notification-campaigns"].list_indexes()
    }
    assert "id_1" in campaign_indexes


class TestPushTasks:
    @pytest.mark.anyio
    async def test_new_tasks_get_identity_and_first_enqueue(self, store):
        pushed = await store.push_tasks([_task("u1", NOW - 10), _task("u2", NOW - 5)])

        assert [task["senderId"] for task in pushed] == ["u1", "u2"]
        assert all(task["id"] for task in pushed)
        assert [task["insEnqueue"] for task in pushed] == [NOW - 10, NOW - 5]

    @pytest.mark.anyio
    async def test_repeated_push_does_not_duplicate(self, store, raw_db):
        [first] = await store.push_tasks([_task("u1", NOW - 10)])
        [second] = await store.push_tasks([_task("u1", NOW - 10)])

        assert second["id"] == first["id"]
        assert raw_db["notification-tasks"].count_documents({}) == 1
        # a duplicate pending push is reported one millisecond later
        assert second["insEnqueue"] == NOW - 10
        assert second["enqueue"] == NOW - 9

    @pytest.mark.anyio
    async def test_earliest_enqueue_is_kept(self, store, raw_db):
        await store.push_tasks([_task("u1", NOW - 10)])
        [merged] = await store.push_tasks([_task("u1", NOW - 50)])

        assert merged["insEnqueue"] == NOW - 50
        stored = raw_db["notification-tasks"].find_one({"senderId": "u1"})
        assert stored["insEnqueue"] == NOW - 50
        assert stored["ups"] == 2

    @pytest.mark.anyio
    async def test_push_after_claim_requeues_without_bump(self, store):
        [first] = await store.push_tasks([_task("u1", NOW - 10)])
        [claimed] = await store.pop_tasks(1)
        assert claimed["id"] == first["id"]

        [requeued] = await store.push_tasks([_task("u1", NOW - 3)])

        assert requeued["id"] == first["id"]
        assert requeued["insEnqueue"] == NOW - 3
        assert requeued["enqueue"] == NOW - 3

    @pytest.mark.anyio
    async def test_empty_push(self, store):
        assert await store.push_tasks([]) == []


class TestPopTasks:
    @pytest.mark.anyio
    async def test_pops_due_tasks_in_enqueue_order(self, store):
        await store.push_tasks(
            [_task("late", NOW + 1000), _task("b", NOW - 5), _task("a", NOW - 10)]
        )

        popped = await store.pop_tasks(10)

        assert [task["senderId"] for task in popped] == ["a", "b"]
        assert all(task["enqueue"] == MAX_TS for task in popped)
        assert all(task["insEnqueue"] == MAX_TS for task in popped)
        assert all(task["ups"] == 0 for task in popped)
        assert all("_id" not in task and task["id"] for task in popped)
        assert await store.pop_tasks(10) == []

        later = await store.pop_tasks(10, until=NOW + 1000)
        assert [task["senderId"] for task in later] == ["late"]

    @pytest.mark.anyio
    async def test_limit_is_respected(self, store):
        await store.push_tasks([_task(f"u{index}", NOW - index) for index in range(5)])
        assert len(await store.pop_tasks(2)) == 2
        assert len(await store.pop_tasks(10)) == 3

    @pytest.mark.anyio
    async def test_concurrent_poppers_never_share_a_task(self, store):
        pushed = await store.push_tasks(
            [_task(f"u{index}", NOW - index) for index in range(6)]
        )

        left, right = await asyncio.gather(store.pop_tasks(6), store.pop_tasks(6))

        ids = [task["id"] for task in left + right]
        assert len(ids) == len(set(ids))
        assert set(ids) == {task["id"] for task in pushed}


class TestTaskUpdates:
    @pytest.mark.anyio
    async def test_update_task_never_overwrites_receipts(self, store):
        [task] = await store.push_tasks([_task("u1", NOW - 10)])

        updated = await store.update_task(task["id"], {"delivery": 100, "sent": 50})
        assert updated["delivery"] == 100
        assert updated["sent"] == 50

        again = await store.update_task(task["id"], {"delivery": 999, "read": 200})
        assert again["delivery"] == 100
        assert again["read"] == 200

        fetched = await store.get_task_by_id(task["id"])
        assert fetched["id"] == task["id"]
        assert fetched["read"] == 200

    @pytest.mark.anyio
    async def test_unknown_task(self, store):
        assert await store.update_task("5f0000000000000000000000", {"sent": 1}) is None
        assert await store.update_task("missing", {"read": 1}) is None
        assert await store.get_task_by_id("missing") is None

    @pytest.mark.anyio
    async def test_watermark_updates_are_idempotent(self, store):
        pushed = await store.push_tasks(
            [
                _task("u1", NOW, campaign_id="c1"),
                _task("u1", NOW, campaign_id="c2"),
                _task("u1", NOW, campaign_id="c3"),
            ]
        )
        for task, sent in zip(pushed, (10, 20, 30)):
            await store.update_task(task["id"], {"sent": sent})

        read = await store.update_tasks_by_watermark("u1", "p1", 25, "read", ts=500)
        assert sorted(task["campaignId"] for task in read) == ["c1", "c2"]
        assert all(task["read"] == 500 for task in read)

        assert await store.update_tasks_by_watermark("u1", "p1", 25, "read", ts=600) == []

        delivered = await store.update_tasks_by_watermark("u1", "p1", 30, "delivery")
        assert sorted(task["campaignId"] for task in delivered) == ["c1", "c2", "c3"]
        assert all(task["delivery"] == NOW for task in delivered)

    @pytest.mark.anyio
    async def test_watermark_rejects_unknown_event(self, store):
        with pytest.raises(ValueError):
            await store.update_tasks_by_watermark("u1", "p1", 25, "click")

    @pytest.mark.anyio
    async def test_sent_lookups(self, store):
        pushed = await store.push_tasks(
            [
                _task("u1", NOW, campaign_id="c1"),
                _task("u1", NOW, campaign_id="c2"),
                _task("u1", NOW, campaign_id="c3"),
            ]
        )
        await store.update_task(pushed[0]["id"], {"sent": 10})
        await store.update_task(pushed[1]["id"], {"sent": 20})

        sent = await store.get_sent_task("p1", "u1", "c2")
        assert sent["id"] == pushed[1]["id"]
        assert await store.get_sent_task("p1", "u1", "c3") is None
        assert sorted(
            await store.get_sent_campaign_ids("p1", "u1", ["c1", "c2", "c3"])
        ) == ["c1", "c2"]

    @pytest.mark.anyio
    async def test_unsuccessful_subscribers(self, store):
        pushed = await store.push_tasks(
            [_task("left", NOW), _task("ignored", NOW), _task("reacted", NOW)]
        )
        await store.update_task(pushed[0]["id"], {"sent": 1, "leaved": 5})
        await store.update_task(pushed[1]["id"], {"sent": 1, "reaction": False})
        await store.update_task(pushed[2]["id"], {"sent": 1, "reaction": True})

        assert await store.get_unsuccessful_subscribers_by_campaign("c1") == [
            {"senderId": "left", "pageId": "p1"}
        ]
        assert await store.get_unsuccessful_subscribers_by_campaign(
            "c1", sent_without_reaction=True
        ) == [{"senderId": "ignored", "pageId": "p1"}]
        assert await store.get_unsuccessful_subscribers_by_campaign("c1", page_id="p2") == []


class TestCampaigns:
    @pytest.mark.anyio
    async def test_upsert_without_id_generates_one(self, store):
        campaign = await store.upsert_campaign({"name": "Welcome", "active": False})
        assert campaign["id"]
        assert "_id" not in campaign
        assert (await store.get_campaign_by_id(campaign["id"]))["name"] == "Welcome"

    @pytest.mark.anyio
    async def test_upsert_with_id_inserts_then_merges(self, store):
        created = await store.upsert_campaign(
            {"id": "welcome", "name": "Welcome", "sent": 0}, {"active": True}
        )
        assert created == {"id": "welcome", "name": "Welcome", "sent": 0, "active": True}

        merged = await store.upsert_campaign(
            {"id": "welcome", "name": "Ignored on update", "sent": 5},
            {"name": "Renamed"},
        )
        assert merged["name"] == "Renamed"
        assert merged["sent"] == 0
        assert merged["active"] is True

        unchanged = await store.upsert_campaign({"id": "welcome"})
        assert unchanged["name"] == "Renamed"

    @pytest.mark.anyio
    async def test_counters_and_updates(self, store):
        await store.upsert_campaign({"id": "c1", "sent": 0, "failed": 0})

        await store.increment_campaign("c1", {"sent": 2, "failed": 1})
        await store.increment_campaign("c1", {})
        updated = await store.update_campaign("c1", {"name": "Promo"})

        assert updated["sent"] == 2
        assert updated["failed"] == 1
        assert updated["name"] == "Promo"
        assert await store.update_campaign("missing", {"name": "x"}) is None

        await store.remove_campaign("c1")
        assert await store.get_campaign_by_id("c1") is None

    @pytest.mark.anyio
    async def test_pop_campaign_claims_due_active_campaign_once(self, store):
        await store.upsert_campaign({"id": "due", "active": True, "startAt": NOW - 1})
        await store.upsert_campaign({"id": "future", "active": True, "startAt": NOW + 1})
        await store.upsert_campaign({"id": "inactive", "active": False, "startAt": NOW - 1})

        popped = await store.pop_campaign()

        assert popped["id"] == "due"
        assert popped["startAt"] == NOW - 1
        assert (await store.get_campaign_by_id("due"))["startAt"] is None
        assert await store.pop_campaign() is None
        assert (await store.pop_campaign(NOW + 1))["id"] == "future"

    @pytest.mark.anyio
    async def test_campaign_listing(self, store):
        for name in ("a", "b", "c"):
            await store.upsert_campaign({"id": name, "kind": "promo"})
        await store.upsert_campaign({"id": "d", "kind": "other"})

        by_ids = await store.get_campaigns_by_ids(["a", "c", "zzz"])
        assert sorted(campaign["id"] for campaign in by_ids) == ["a", "c"]
        assert await store.get_campaigns_by_ids([]) == []

        first = await store.get_campaigns({"kind": "promo"}, limit=2)
        assert [campaign["id"] for campaign in first.data] == ["c", "b"]
        assert first.next_cursor is not None

        second = await store.get_campaigns(
            {"kind": "promo"}, limit=2, cursor=first.next_cursor
        )
        assert [campaign["id"] for campaign in second.data] == ["a"]
        assert second.next_cursor is None

        everything = await store.get_campaigns()
        assert len(everything.data) == 4

        with pytest.raises(InvalidCursorError):
            await store.get_campaigns(cursor=encode_cursor(SkipCursor(1)))


class TestSubscriptions:
    @pytest.mark.anyio
    async def test_subscribe_count_and_tags(self, store):
        await store.subscribe(["s1", "s2"], "p1", "news")
        await store.subscribe("s1", "p1", "sport")
        await store.batch_subscribe(
            [
                {
                    "senderId": "s3",
                    "pageId": "p1",
                    "tags": ["news"],
                    "meta": {"news": {"lang": "en"}},
                }
            ]
        )
        await store.subscribe("s4", "p2", "news")

        assert await store.get_subscriptions_count(["news"], []) == 4
        assert await store.get_subscriptions_count(["news"], [], "p1") == 3
        assert await store.get_subscriptions_count(["news"], ["sport"], "p1") == 2
        assert await store.get_sender_subscription_tags("s1", "p1") == ["news", "sport"]
        assert await store.get_sender_subscriptions("s3", "p1") == [
            {"tag": "news", "meta": {"lang": "en"}}
        ]
        assert await store.get_sender_subscriptions("nobody", "p1") == []
        assert await store.get_tags("p1") == [
            {"tag": "news", "subscriptions": 3},
            {"tag": "sport", "subscriptions": 1},
        ]

    @pytest.mark.anyio
    async def test_subscribing_twice_keeps_tags_unique(self, store):
        await store.subscribe("s1", "p1", "news")
        await store.subscribe("s1", "p1", "news")
        assert await store.get_sender_subscription_tags("s1", "p1") == ["news"]

    @pytest.mark.anyio
    async def test_only_to_known_does_not_create_subscribers(self, store):
        await store.subscribe("ghost", "p1", "news", only_to_known=True)
        assert await store.get_sender_subscription_tags("ghost", "p1") == []

        await store.subscribe("s1", "p1", "news")
        await store.subscribe("s1", "p1", "sport", only_to_known=True)
        assert await store.get_sender_subscription_tags("s1", "p1") == ["news", "sport"]

    @pytest.mark.anyio
    async def test_batch_remove(self, store):
        await store.subscribe("s1", "p1", "news")
        await store.subscribe("s1", "p1", "sport")
        await store.batch_subscribe(
            [{"senderId": "s1", "pageId": "p1", "tags": ["news"], "remove": True}]
        )
        assert await store.get_sender_subscription_tags("s1", "p1") == ["sport"]

    @pytest.mark.anyio
    async def test_unsubscribe(self, store):
        await store.subscribe("s1", "p1", "news")
        await store.subscribe("s1", "p1", "sport")
        await store.subscribe("s2", "p1", "news")

        assert await store.unsubscribe("s1", "p1", "sport") == ["sport"]
        assert await store.unsubscribe("s1", "p1", "sport") == []
        assert await store.unsubscribe("s1", "p1", "news") == ["news"]
        assert await store.get_sender_subscriptions("s1", "p1") == []
        assert await store.unsubscribe("s2", "p1") == ["news"]
        assert await store.get_subscriptions_count([], []) == 0

    @pytest.mark.anyio
    async def test_get_subscriptions_pages_by_id(self, store):
        for index in range(5):
            await store.batch_subscribe(
                [
                    {
                        "senderId": f"s{index}",
                        "pageId": "p1",
                        "tags": ["news", "sport"],
                        "meta": {"news": {"n": index}, "sport": {"n": -index}},
                    }
                ]
            )

        first = await store.get_subscriptions(["news"], [], limit=3)
        assert [item["senderId"] for item in first.data] == ["s0", "s1", "s2"]
        assert first.data[1]["meta"] == {"news": {"n": 1}}
        assert first.next_cursor is not None

        second = await store.get_subscriptions(
            ["news"], [], limit=3, cursor=first.next_cursor
        )
        assert [item["senderId"] for item in second.data] == ["s3", "s4"]
        assert second.next_cursor is None

        everything = await store.get_subscriptions([], ["sport"])
        assert everything.data == []


@pytest.mark.anyio
async def test_cosmos_reads_are_chunked(cosmos_database) -> None:
    store = NotificationStore(cosmos_database, now_fn=lambda: NOW)
    for index in range(3):
        await store.subscribe(f"s{index}", "p1", "news")

    page = await store.get_subscriptions(["news"], [], limit=2)
    assert [item["senderId"] for item in page.data] == ["s0", "s1"]
    assert page.next_cursor is not None
    rest = await store.get_subscriptions(["news"], [], cursor=page.next_cursor)
    assert [item["senderId"] for item in rest.data] == ["s2"]
