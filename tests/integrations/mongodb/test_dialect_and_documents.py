from __future__ import annotations

import re

import pytest
from bson import ObjectId
from pymongo.errors import OperationFailure

from botstorage.core.exceptions import StorageConfigError
from botstorage.integrations.mongodb.dialect import (
    COSMOS,
    MONGODB,
    escape_regex,
    resolve_dialect,
)
from botstorage.integrations.mongodb.documents import (
    coerce_object_id,
    expand_object_to_set,
    map_generic_document,
    strip_id,
)


class _NoDistinct:
    """Collection double whose engine lacks ``distinct``."""

    def __init__(self, docs):
        self.docs = docs

    def distinct(self, key, condition):
        raise OperationFailure("distinct is not supported")

    def find(self, condition, projection):
        return iter(self.docs)


def test_resolve_dialect() -> None:
    assert resolve_dialect(None) is MONGODB
    assert resolve_dialect(" Cosmos ") is COSMOS
    with pytest.raises(StorageConfigError, match="Unknown database dialect"):
        resolve_dialect("sqlite")


def test_dialect_differences() -> None:
    assert MONGODB.index_direction == -1
    assert COSMOS.index_direction == 1
    assert MONGODB.supports_text_search
    assert not COSMOS.supports_text_search
    assert MONGODB.search_condition("bob", ["name"]) == {"$text": {"$search": "bob"}}
    assert COSMOS.search_projection() is None
    assert COSMOS.search_sort() is None


def test_mongodb_search_ranks_by_text_score() -> None:
    condition = MONGODB.search_condition("al", ["senderId", "name"])
    assert condition == {"$text": {"$search": "al"}}
    assert MONGODB.search_projection() == {"score": {"$meta": "textScore"}}
    assert MONGODB.search_sort() == [("score", {"$meta": "textScore"})]


def test_cosmos_search_is_an_escaped_prefix_match() -> None:
    condition = COSMOS.search_condition("a.b(c", ["senderId", "name"])
    assert condition == {
        "$or": [
            {"senderId": {"$regex": r"^a\.b\(c"}},
            {"name": {"$regex": r"^a\.b\(c"}},
        ]
    }


def test_escape_regex_matches_literally() -> None:
    value = "1+1=[2]? {x}|$^/\\"
    assert re.fullmatch(escape_regex(value), value)


def test_chunk_size_honours_row_cap() -> None:
    assert MONGODB.chunk_size(None) is None
    assert MONGODB.chunk_size(5000) == 5000
    assert COSMOS.chunk_size(None) == 999
    assert COSMOS.chunk_size(10) == 10
    assert COSMOS.chunk_size(5000) == 999


def test_distinct_falls_back_to_scan() -> None:
    collection = _NoDistinct(
        [{"campaignId": "b"}, {"campaignId": "a"}, {"campaignId": "b"}]
    )
    assert MONGODB.distinct(collection, "campaignId", {}) == ["b", "a"]


def test_cosmos_creates_missing_collections(raw_db) -> None:
    assert "created" not in raw_db.list_collection_names()
    COSMOS.open_collection(raw_db, "created")
    assert "created" in raw_db.list_collection_names()
    # a second open finds the existing collection
    assert COSMOS.open_collection(raw_db, "created").name == "created"


def test_expand_object_to_set() -> None:
    meta = {"news": {"lang": "en", "topics": ["a"]}, "sport": 1}
    assert expand_object_to_set("meta", meta) == {
        "meta.news": {"lang": "en", "topics": ["a"]},
        "meta.sport": 1,
    }
    assert expand_object_to_set("meta", meta, nested=True) == {
        "meta.news.lang": "en",
        "meta.news.topics": ["a"],
        "meta.sport": 1,
    }
    assert expand_object_to_set("meta", {}) == {"meta": {}}
    assert expand_object_to_set(None, {"a": 1}) == {"a": 1}


def test_generic_document_mapping() -> None:
    object_id = ObjectId()
    doc = {"_id": object_id, "name": "x"}
    assert map_generic_document(doc) == {"id": str(object_id), "name": "x"}
    assert doc == {"_id": object_id, "name": "x"}
    assert map_generic_document(None) is None
    assert strip_id({"_id": 1, "a": 2}) == {"a": 2}
    assert coerce_object_id(str(object_id)) == object_id
    assert coerce_object_id("not-an-id") == "not-an-id"
