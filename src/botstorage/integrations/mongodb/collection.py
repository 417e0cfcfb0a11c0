"""Lazily provisioned collections.

A ``ProvisionedCollection`` is declared with its indexes and fixture documents
when an adapter is constructed and reconciled against the database on first
use:

1. the collection is opened (or created, depending on the dialect),
2. indexes that are present but not declared are dropped (``_id_`` is kept),
3. declared indexes that are missing are created,
4. fixtures are inserted when an index was created or the collection was
   empty; duplicates are ignored.

Opening and reconciling each run once per instance. Concurrent first callers
await the same in-flight task. Drop or create failures are logged and
swallowed; a unique index that cannot be created is remembered in the shared
``HealthMonitor`` so dependent adapters can switch to their degraded paths.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Sequence, Union

from pymongo.collection import Collection
from pymongo.errors import DuplicateKeyError, PyMongoError

from ...core.exceptions import BotStorageError, StorageConfigError
from ...core.logging_utils import log_event
from .database import MongoDatabase

IndexKeys = Union[Mapping[str, Any], Sequence[tuple[str, Any]]]

PRIMARY_INDEX = "_id_"


@dataclass(frozen=True)
class IndexSpec:
    keys: tuple[tuple[str, Any], ...]
    name: str
    unique: bool = False

    def options(self) -> dict[str, Any]:
        options: dict[str, Any] = {"name": self.name}
        if self.unique:
            options["unique"] = True
        return options


def _normalize_keys(keys: IndexKeys) -> tuple[tuple[str, Any], ...]:
    items = keys.items() if isinstance(keys, Mapping) else keys
    normalized = tuple((str(field), direction) for field, direction in items)
    if not normalized:
        raise StorageConfigError("Index specification must name at least one field")
    return normalized


def _index_names(collection: Collection) -> list[str]:
    return [index["name"] for index in collection.list_indexes()]


def _is_empty(collection: Collection) -> bool:
    return collection.find_one({}, {"_id": 1}) is None


class ProvisionedCollection:
    def __init__(
        self,
        database: MongoDatabase,
        name: str,
        *,
        wait_for_indexes: bool = True,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if not name:
            raise StorageConfigError("Collection name must be non-empty")
        self._database = database
        self.name = name
        self.wait_for_indexes = wait_for_indexes
        self._logger = logger or database.logger
        self._indexes: list[IndexSpec] = []
        self._fixtures: list[dict[str, Any]] = []
        self._collection: Optional[Collection] = None
        self._open_task: Optional[asyncio.Future[Collection]] = None
        self._reconcile_task: Optional[asyncio.Future[None]] = None

    @property
    def database(self) -> MongoDatabase:
        return self._database

    @property
    def resolved(self) -> bool:
        return self._collection is not None or self._open_task is not None

    def add_index(self, keys: IndexKeys, *, name: str, unique: bool = False) -> IndexSpec:
        if not name:
            raise StorageConfigError("`name` is missing in index specification")
        self._ensure_mutable()
        if any(spec.name == name for spec in self._indexes):
            raise StorageConfigError(f"Index {name!r} is already declared on {self.name}")
        spec = IndexSpec(keys=_normalize_keys(keys), name=name, unique=unique)
        self._indexes.append(spec)
        return spec

    def add_fixture(self, document: Mapping[str, Any]) -> None:
        if "_id" not in document:
            raise StorageConfigError(f"Fixture for {self.name} must carry an `_id`")
        self._ensure_mutable()
        self._fixtures.append(dict(document))

    @property
    def unique_index_unavailable(self) -> bool:
        return self._database.monitor.unique_index_unavailable(self._registry_key())

    async def get(self, *, for_read: bool = False) -> Collection:
        collection = await self._open()
        reconcile = self._reconciliation(collection)
        if for_read or self.wait_for_indexes:
            await asyncio.shield(reconcile)
        return collection

    async def run(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return await self._database.run(func, *args, **kwargs)

    async def drop(self) -> None:
        collection = await self._open()
        if self._reconcile_task is not None and not self._reconcile_task.done():
            await asyncio.shield(self._reconcile_task)
        await self.run(collection.drop)
        self._collection = None
        self._open_task = None
        self._reconcile_task = None

    def _ensure_mutable(self) -> None:
        if self.resolved:
            raise StorageConfigError(
                f"Collection {self.name} is already provisioned; declare indexes and "
                "fixtures before first use"
            )

    def _registry_key(self) -> str:
        if self._collection is not None:
            return self._collection.full_name
        return self.name

    async def _open(self) -> Collection:
        if self._collection is not None:
            return self._collection
        if self._open_task is None:
            self._open_task = asyncio.ensure_future(self._open_collection())
        task = self._open_task
        try:
            collection = await asyncio.shield(task)
        except Exception:
            if self._open_task is task:
                self._open_task = None
            raise
        self._collection = collection
        return collection

    async def _open_collection(self) -> Collection:
        db = await self._database.get()
        return await self.run(self._database.dialect.open_collection, db, self.name)

    def _reconciliation(self, collection: Collection) -> asyncio.Future[None]:
        if self._reconcile_task is None:
            self._reconcile_task = asyncio.ensure_future(self._reconcile(collection))
        return self._reconcile_task

    async def _reconcile(self, collection: Collection) -> None:
        try:
            present = await self.run(_index_names, collection)
        except (PyMongoError, BotStorageError):
            present = []
        try:
            was_empty = await self.run(_is_empty, collection)
        except (PyMongoError, BotStorageError):
            was_empty = False

        declared = {spec.name for spec in self._indexes}
        for name in present:
            if name == PRIMARY_INDEX or name in declared:
                continue
            await self._drop_index(collection, name)

        created = 0
        for spec in self._indexes:
            if spec.name in present:
                continue
            if await self._create_index(collection, spec):
                created += 1

        if self._fixtures and (created or was_empty):
            await self._insert_fixtures(collection)

    async def _drop_index(self, collection: Collection, name: str) -> None:
        try:
            await self.run(collection.drop_index, name)
        except (PyMongoError, BotStorageError) as exc:
            log_event(
                self._logger,
                logging.ERROR,
                "storage.index.drop_failed",
                collection=self.name,
                index=name,
                exc=exc,
            )
            return
        log_event(
            self._logger,
            logging.INFO,
            "storage.index.dropped",
            collection=self.name,
            index=name,
        )

    async def _create_index(self, collection: Collection, spec: IndexSpec) -> bool:
        try:
            await self.run(collection.create_index, list(spec.keys), **spec.options())
        except (PyMongoError, BotStorageError) as exc:
            log_event(
                self._logger,
                logging.ERROR,
                "storage.index.create_failed",
                collection=self.name,
                index=spec.name,
                unique=spec.unique,
                exc=exc,
            )
            if spec.unique:
                self._database.monitor.mark_unique_index_unavailable(
                    collection.full_name, spec.name
                )
                log_event(
                    self._logger,
                    logging.ERROR,
                    "storage.unique_index.unavailable",
                    collection=self.name,
                    index=spec.name,
                )
            return False
        log_event(
            self._logger,
            logging.INFO,
            "storage.index.created",
            collection=self.name,
            index=spec.name,
        )
        return True

    async def _insert_fixtures(self, collection: Collection) -> None:
        for fixture in self._fixtures:
            try:
                await self.run(collection.insert_one, dict(fixture))
            except DuplicateKeyError:
                continue
            except (PyMongoError, BotStorageError) as exc:
                log_event(
                    self._logger,
                    logging.ERROR,
                    "storage.fixture.insert_failed",
                    collection=self.name,
                    fixture_id=fixture["_id"],
                    exc=exc,
                )
                continue
            log_event(
                self._logger,
                logging.DEBUG,
                "storage.fixture.inserted",
                collection=self.name,
                fixture_id=fixture["_id"],
            )


__all__ = ["IndexKeys", "IndexSpec", "ProvisionedCollection"]
