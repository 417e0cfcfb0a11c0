from __future__ import annotations

import asyncio
import functools
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional

from pymongo import MongoClient
from pymongo.database import Database
from pymongo.errors import ConnectionFailure

from ...core.exceptions import StorageConfigError, StorageNetworkError
from ...core.health import HealthMonitor
from .dialect import MONGODB, Dialect

DatabaseFactory = Callable[[], Database]


class MongoDatabase:
    """Blocking driver handle plus the worker pool every adapter runs on.

    ``pymongo`` is synchronous, so each driver call is shipped to a thread
    pool and awaited. Connection-class failures are tallied in the shared
    ``HealthMonitor`` and re-raised as ``StorageNetworkError``.
    """

    def __init__(
        self,
        database: Optional[Database] = None,
        *,
        factory: Optional[DatabaseFactory] = None,
        dialect: Dialect = MONGODB,
        monitor: Optional[HealthMonitor] = None,
        max_workers: int = 8,
        client: Optional[MongoClient] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if database is None and factory is None:
            raise StorageConfigError("Either a database or a database factory is required")
        self._database = database
        self._factory = factory
        self._database_task: Optional[asyncio.Future[Database]] = None
        self.dialect = dialect
        self.monitor = monitor or HealthMonitor()
        self._client = client
        self._logger = logger or logging.getLogger(__name__)
        self._executor = ThreadPoolExecutor(
            max_workers=max(max_workers, 1), thread_name_prefix="botstorage-mongo"
        )
        self._closed = False

    @property
    def logger(self) -> logging.Logger:
        return self._logger

    async def run(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        if self._closed:
            raise StorageConfigError("Database handle is closed")
        loop = asyncio.get_running_loop()
        call = functools.partial(func, *args, **kwargs)
        try:
            return await loop.run_in_executor(self._executor, call)
        except ConnectionFailure as exc:
            self.monitor.record_failure("network", exc)
            raise StorageNetworkError(f"Database unreachable: {exc}") from exc

    async def get(self) -> Database:
        if self._database is not None:
            return self._database
        if self._database_task is None:
            assert self._factory is not None
            self._database_task = asyncio.ensure_future(self.run(self._factory))
        task = self._database_task
        try:
            database = await asyncio.shield(task)
        except Exception:
            if self._database_task is task:
                self._database_task = None
            raise
        self._database = database
        return database

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._executor.shutdown(wait=True)
        if self._client is not None:
            self._client.close()


__all__ = ["DatabaseFactory", "MongoDatabase"]
