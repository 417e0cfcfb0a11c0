from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from pymongo import MongoClient

from ...core.config import StorageConfig
from ...core.exceptions import StorageConfigError
from ...core.health import HealthMonitor
from .audit_log import AuditLogStore
from .chat_log import ChatLogStore
from .database import MongoDatabase
from .dialect import resolve_dialect
from .notifications import NotificationStore
from .state_store import StateStore

logger = logging.getLogger("botstorage.integrations.mongodb")

ClientFactory = Callable[..., Any]


def connect(
    config: StorageConfig,
    *,
    monitor: Optional[HealthMonitor] = None,
    client_factory: ClientFactory = MongoClient,
) -> MongoDatabase:
    """Create a client for ``config.mongo_uri`` and wrap the configured database.

    The client connects lazily; the first driver call reports an unreachable
    server as ``StorageNetworkError``.
    """
    if not config.mongo_uri:
        raise StorageConfigError(
            "storage.mongo_uri is required (or set the variable named by storage.mongo_uri_env)"
        )
    client = client_factory(
        config.mongo_uri,
        serverSelectionTimeoutMS=config.server_selection_timeout_ms,
        connectTimeoutMS=config.connect_timeout_ms,
    )
    return MongoDatabase(
        client[config.database],
        dialect=resolve_dialect(config.dialect),
        monitor=monitor or HealthMonitor(config.health, logger=logger),
        max_workers=config.max_workers,
        client=client,
        logger=logger,
    )


@dataclass
class BotStorage:
    database: MongoDatabase
    states: StateStore
    audit_log: AuditLogStore
    chat_log: ChatLogStore
    notifications: NotificationStore

    @property
    def monitor(self) -> HealthMonitor:
        return self.database.monitor

    def close(self) -> None:
        self.database.close()


def build_storage(
    config: StorageConfig, *, database: Optional[MongoDatabase] = None
) -> BotStorage:
    """Build every adapter over one shared database handle and health monitor."""
    db = database or connect(config)
    names = config.collections
    wait = config.wait_for_indexes
    return BotStorage(
        database=db,
        states=StateStore(
            db,
            names.states,
            lock_timeout_ms=config.state.lock_timeout_ms,
            log_collisions_as_errors=config.state.log_collisions_as_errors,
            wait_for_indexes=wait,
        ),
        audit_log=AuditLogStore(
            db,
            names.audit_log,
            secret=config.audit_log.secret,
            jwt_verifier=config.audit_log.jwt_secret,
            default_workspace=config.audit_log.default_workspace,
            max_retries=config.audit_log.max_retries,
            mute_errors=config.audit_log.mute_errors,
            wait_for_indexes=wait,
        ),
        chat_log=ChatLogStore(
            db,
            names.chat_logs,
            secret=config.chat_log.secret,
            mute_errors=config.chat_log.mute_errors,
            wait_for_indexes=wait,
        ),
        notifications=NotificationStore(
            db, names.notifications_prefix, wait_for_indexes=wait
        ),
    )


__all__ = ["BotStorage", "build_storage", "connect"]
