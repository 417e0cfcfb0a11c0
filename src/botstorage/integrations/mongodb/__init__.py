from .audit_log import (
    LEVEL_CRITICAL,
    LEVEL_DEBUG,
    LEVEL_IMPORTANT,
    TYPE_ERROR,
    TYPE_INFO,
    TYPE_WARN,
    AuditLogStore,
)
from .chat_log import ChatLogStore
from .collection import IndexSpec, ProvisionedCollection
from .database import MongoDatabase
from .dialect import COSMOS, MONGODB, CosmosDialect, Dialect, MongoDialect, resolve_dialect
from .errors import AuditLogStoreError, SequenceConflictError, StateLockedError
from .factory import BotStorage, build_storage, connect
from .notifications import NotificationStore
from .state_store import StateStore

__all__ = [
    "AuditLogStore",
    "AuditLogStoreError",
    "BotStorage",
    "COSMOS",
    "ChatLogStore",
    "CosmosDialect",
    "Dialect",
    "IndexSpec",
    "LEVEL_CRITICAL",
    "LEVEL_DEBUG",
    "LEVEL_IMPORTANT",
    "MONGODB",
    "MongoDatabase",
    "MongoDialect",
    "NotificationStore",
    "ProvisionedCollection",
    "SequenceConflictError",
    "StateLockedError",
    "StateStore",
    "TYPE_ERROR",
    "TYPE_INFO",
    "TYPE_WARN",
    "build_storage",
    "connect",
    "resolve_dialect",
]
