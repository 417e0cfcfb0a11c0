"""Backend variants.

Plain MongoDB and the Cosmos flavour of the wire protocol differ in a handful
of places: collections must be created explicitly, text indexes are missing,
single-field indexes are ascending only and a request returns at most 999
rows. Each difference is a method or attribute of a ``Dialect`` resolved once
when the storage is built.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import CollectionInvalid, OperationFailure

from ...core.exceptions import StorageConfigError

_REGEX_SPECIAL = re.compile(r"[-/\\^$*+?.()|\[\]{}]")


def escape_regex(value: str) -> str:
    return _REGEX_SPECIAL.sub(lambda match: "\\" + match.group(0), value)


@dataclass(frozen=True)
class Dialect:
    name: str = "mongodb"
    index_direction: int = -1
    row_cap: Optional[int] = None
    supports_text_search: bool = True

    def open_collection(self, db: Database, name: str) -> Collection:
        return db[name]

    def search_condition(self, term: str, fields: Iterable[str]) -> dict[str, Any]:
        return {"$text": {"$search": term}}

    def search_projection(self) -> Optional[dict[str, Any]]:
        return {"score": {"$meta": "textScore"}}

    def search_sort(self) -> Optional[list[tuple[str, Any]]]:
        return [("score", {"$meta": "textScore"})]

    def chunk_size(self, wanted: Optional[int] = None) -> Optional[int]:
        """Rows to request at once, honouring the per-request cap."""
        if self.row_cap is None:
            return wanted
        if wanted is None:
            return self.row_cap
        return min(wanted, self.row_cap)

    def distinct(
        self, collection: Collection, key: str, condition: dict[str, Any]
    ) -> list[Any]:
        try:
            return list(collection.distinct(key, condition))
        except OperationFailure:
            seen: list[Any] = []
            for doc in collection.find(condition, {key: 1, "_id": 0}):
                value = doc.get(key)
                if value not in seen:
                    seen.append(value)
            return seen


class MongoDialect(Dialect):
    pass


@dataclass(frozen=True)
class CosmosDialect(Dialect):
    name: str = "cosmos"
    index_direction: int = 1
    row_cap: Optional[int] = 999
    supports_text_search: bool = False

    def open_collection(self, db: Database, name: str) -> Collection:
        if name in db.list_collection_names():
            return db[name]
        try:
            return db.create_collection(name)
        except (CollectionInvalid, OperationFailure):
            # created concurrently by another process
            return db[name]

    def search_condition(self, term: str, fields: Iterable[str]) -> dict[str, Any]:
        regex = f"^{escape_regex(term)}"
        return {"$or": [{field: {"$regex": regex}} for field in fields]}

    def search_projection(self) -> Optional[dict[str, Any]]:
        return None

    def search_sort(self) -> Optional[list[tuple[str, Any]]]:
        return None


MONGODB = MongoDialect()
COSMOS = CosmosDialect()

_DIALECTS = {MONGODB.name: MONGODB, COSMOS.name: COSMOS}


def resolve_dialect(name: Optional[str]) -> Dialect:
    key = (name or MONGODB.name).strip().lower()
    dialect = _DIALECTS.get(key)
    if dialect is None:
        raise StorageConfigError(
            f"Unknown database dialect {name!r}; expected one of: {', '.join(_DIALECTS)}"
        )
    return dialect


__all__ = [
    "COSMOS",
    "CosmosDialect",
    "Dialect",
    "MONGODB",
    "MongoDialect",
    "escape_regex",
    "resolve_dialect",
]
