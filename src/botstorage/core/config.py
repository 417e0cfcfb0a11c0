from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from dotenv import load_dotenv

from .exceptions import StorageConfigError
from .health import HealthMonitorConfig

logger = logging.getLogger("botstorage.core.config")

CONFIG_SECTION = "storage"
DEFAULT_MONGO_URI_ENV = "BOTSTORAGE_MONGO_URI"
DEFAULT_AUDIT_SECRET_ENV = "BOTSTORAGE_AUDIT_SECRET"
DEFAULT_AUDIT_JWT_SECRET_ENV = "BOTSTORAGE_AUDIT_JWT_SECRET"
DEFAULT_CHAT_LOG_SECRET_ENV = "BOTSTORAGE_CHATLOG_SECRET"
DEFAULT_DATABASE = "chatbot"
DEFAULT_DIALECT = "mongodb"
DIALECT_OPTIONS = ("mongodb", "cosmos")
DEFAULT_MAX_WORKERS = 8
DEFAULT_TIMEOUT_MS = 5000
DEFAULT_LOCK_TIMEOUT_MS = 300
DEFAULT_WORKSPACE = "0"
DEFAULT_AUDIT_MAX_RETRIES = 4


def _section(raw: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = raw.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise StorageConfigError(f"{CONFIG_SECTION}.{key} must be a mapping")
    return value


def _int(cfg: Mapping[str, Any], key: str, default: int, *, path: str, minimum: int) -> int:
    value = cfg.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise StorageConfigError(f"{path}.{key} must be an integer")
    if value < minimum:
        raise StorageConfigError(f"{path}.{key} must be >= {minimum}")
    return value


def _bool(cfg: Mapping[str, Any], key: str, default: bool, *, path: str) -> bool:
    value = cfg.get(key, default)
    if not isinstance(value, bool):
        raise StorageConfigError(f"{path}.{key} must be a boolean")
    return value


def _str(
    cfg: Mapping[str, Any],
    key: str,
    default: Optional[str],
    *,
    path: str,
    allow_empty: bool = False,
) -> Optional[str]:
    value = cfg.get(key, default)
    if value is None:
        return None
    if not isinstance(value, str):
        raise StorageConfigError(f"{path}.{key} must be a string")
    value = value.strip()
    if not value and not allow_empty:
        raise StorageConfigError(f"{path}.{key} must be non-empty")
    return value


def _env(name: Optional[str]) -> Optional[str]:
    if not name:
        return None
    value = os.environ.get(name)
    return value if value else None


@dataclass(frozen=True)
class CollectionNames:
    states: str = "states"
    audit_log: str = "auditlog"
    chat_logs: str = "chatlogs"
    notifications_prefix: str = ""


@dataclass(frozen=True)
class StateStoreConfig:
    lock_timeout_ms: int = DEFAULT_LOCK_TIMEOUT_MS
    log_collisions_as_errors: bool = False


@dataclass(frozen=True)
class AuditLogConfig:
    secret: Optional[str] = None
    jwt_secret: Optional[str] = None
    default_workspace: str = DEFAULT_WORKSPACE
    max_retries: int = DEFAULT_AUDIT_MAX_RETRIES
    mute_errors: bool = True


@dataclass(frozen=True)
class ChatLogConfig:
    secret: Optional[str] = None
    mute_errors: bool = True


@dataclass(frozen=True)
class StorageConfig:
    mongo_uri: Optional[str]
    database: str = DEFAULT_DATABASE
    dialect: str = DEFAULT_DIALECT
    max_workers: int = DEFAULT_MAX_WORKERS
    server_selection_timeout_ms: int = DEFAULT_TIMEOUT_MS
    connect_timeout_ms: int = DEFAULT_TIMEOUT_MS
    wait_for_indexes: bool = True
    collections: CollectionNames = field(default_factory=CollectionNames)
    state: StateStoreConfig = field(default_factory=StateStoreConfig)
    audit_log: AuditLogConfig = field(default_factory=AuditLogConfig)
    chat_log: ChatLogConfig = field(default_factory=ChatLogConfig)
    health: HealthMonitorConfig = field(default_factory=HealthMonitorConfig)

    @classmethod
    def from_raw(cls, raw: Optional[Mapping[str, Any]]) -> "StorageConfig":
        cfg: Mapping[str, Any] = raw if isinstance(raw, Mapping) else {}
        path = CONFIG_SECTION

        mongo_uri_env = _str(cfg, "mongo_uri_env", DEFAULT_MONGO_URI_ENV, path=path)
        mongo_uri = _env(mongo_uri_env) or _str(cfg, "mongo_uri", None, path=path)

        dialect = str(_str(cfg, "dialect", DEFAULT_DIALECT, path=path)).lower()
        if dialect not in DIALECT_OPTIONS:
            raise StorageConfigError(
                f"{path}.dialect must be one of: {', '.join(DIALECT_OPTIONS)}"
            )

        collections_cfg = _section(cfg, "collections")
        collections_path = f"{path}.collections"
        collections = CollectionNames(
            states=str(_str(collections_cfg, "states", "states", path=collections_path)),
            audit_log=str(
                _str(collections_cfg, "audit_log", "auditlog", path=collections_path)
            ),
            chat_logs=str(
                _str(collections_cfg, "chat_logs", "chatlogs", path=collections_path)
            ),
            notifications_prefix=str(
                _str(
                    collections_cfg,
                    "notifications_prefix",
                    "",
                    path=collections_path,
                    allow_empty=True,
                )
            ),
        )

        state_cfg = _section(cfg, "state")
        state = StateStoreConfig(
            lock_timeout_ms=_int(
                state_cfg,
                "lock_timeout_ms",
                DEFAULT_LOCK_TIMEOUT_MS,
                path=f"{path}.state",
                minimum=0,
            ),
            log_collisions_as_errors=_bool(
                state_cfg, "log_collisions_as_errors", False, path=f"{path}.state"
            ),
        )

        audit_cfg = _section(cfg, "audit_log")
        audit_path = f"{path}.audit_log"
        audit_log = AuditLogConfig(
            secret=_env(
                _str(audit_cfg, "secret_env", DEFAULT_AUDIT_SECRET_ENV, path=audit_path)
            ),
            jwt_secret=_env(
                _str(
                    audit_cfg,
                    "jwt_secret_env",
                    DEFAULT_AUDIT_JWT_SECRET_ENV,
                    path=audit_path,
                )
            ),
            default_workspace=str(
                _str(audit_cfg, "default_workspace", DEFAULT_WORKSPACE, path=audit_path)
            ),
            max_retries=_int(
                audit_cfg,
                "max_retries",
                DEFAULT_AUDIT_MAX_RETRIES,
                path=audit_path,
                minimum=1,
            ),
            mute_errors=_bool(audit_cfg, "mute_errors", True, path=audit_path),
        )

        chat_cfg = _section(cfg, "chat_log")
        chat_path = f"{path}.chat_log"
        chat_log = ChatLogConfig(
            secret=_env(
                _str(chat_cfg, "secret_env", DEFAULT_CHAT_LOG_SECRET_ENV, path=chat_path)
            ),
            mute_errors=_bool(chat_cfg, "mute_errors", True, path=chat_path),
        )

        return cls(
            mongo_uri=mongo_uri,
            database=str(_str(cfg, "database", DEFAULT_DATABASE, path=path)),
            dialect=dialect,
            max_workers=_int(cfg, "max_workers", DEFAULT_MAX_WORKERS, path=path, minimum=1),
            server_selection_timeout_ms=_int(
                cfg,
                "server_selection_timeout_ms",
                DEFAULT_TIMEOUT_MS,
                path=path,
                minimum=1,
            ),
            connect_timeout_ms=_int(
                cfg, "connect_timeout_ms", DEFAULT_TIMEOUT_MS, path=path, minimum=1
            ),
            wait_for_indexes=_bool(cfg, "wait_for_indexes", True, path=path),
            collections=collections,
            state=state,
            audit_log=audit_log,
            chat_log=chat_log,
            health=HealthMonitorConfig.from_raw(_section(cfg, "health")),
        )


def load_storage_config(path: Path) -> StorageConfig:
    """Load the ``storage`` section of a YAML file.

    A ``.env`` file next to the config is loaded first so that secrets and the
    connection string can stay out of the YAML. Variables already present in
    the environment win.
    """
    dotenv_path = path.parent / ".env"
    if dotenv_path.exists():
        load_dotenv(dotenv_path, override=False)
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except OSError as exc:
        raise StorageConfigError(f"Unable to read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise StorageConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise StorageConfigError(f"Config file {path} must contain a mapping")
    section = data.get(CONFIG_SECTION, {})
    if section is not None and not isinstance(section, Mapping):
        raise StorageConfigError(f"{CONFIG_SECTION} must be a mapping")
    logger.debug("Loaded storage config from %s", path)
    return StorageConfig.from_raw(section or {})


__all__ = [
    "AuditLogConfig",
    "ChatLogConfig",
    "CollectionNames",
    "StateStoreConfig",
    "StorageConfig",
    "load_storage_config",
]
