"""Tamper-evident audit log.

Entries of a workspace (``wid``) carry a gap-free sequence number ``seq`` and
a signature chained to the previous entry's signature. Sequence numbers are
claimed optimistically: a writer reads the newest entry, inserts ``seq + 1``
and lets the unique ``(wid, seq)`` index reject it when another writer was
faster, in which case the write is retried with a growing, jittered back-off.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

import jwt
from bson.errors import BSONError
from pymongo.collection import Collection
from pymongo.errors import DuplicateKeyError, PyMongoError
from tenacity import RetryError

from ...core.exceptions import BotStorageError, StorageNetworkError
from ...core.logging_utils import log_event
from ...core.retry import SleepFn, conflict_retrying
from ...core.signing import Signer
from ...core.time_utils import utc_now
from .collection import ProvisionedCollection
from .database import MongoDatabase
from .errors import AuditLogStoreError, SequenceConflictError

LEVEL_CRITICAL = "Critical"
LEVEL_IMPORTANT = "Important"
LEVEL_DEBUG = "Debug"

TYPE_ERROR = "Error"
TYPE_WARN = "Warn"
TYPE_INFO = "Info"

DEFAULT_WORKSPACE = "0"
DEFAULT_MAX_RETRIES = 4
DEFAULT_EVENT_TYPE = "audit"

SEQUENCE_INDEX = "wid_1_seq_-1"

JwtVerifier = Callable[[str, str, Mapping[str, Any]], Awaitable[bool]]
AuditLogCallback = Callable[[dict[str, Any]], Awaitable[Any]]


def secret_jwt_verifier(secret: str) -> JwtVerifier:
    """Verify that an HS256 token was issued for the claimed user id."""

    async def verify(token: str, user_id: str, user: Mapping[str, Any]) -> bool:
        try:
            claims = jwt.decode(token, secret, algorithms=["HS256"])
        except jwt.PyJWTError:
            return False
        return claims.get("id") == user_id

    return verify


def _bson_date(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


class AuditLogStore:
    LEVEL_CRITICAL = LEVEL_CRITICAL
    LEVEL_IMPORTANT = LEVEL_IMPORTANT
    LEVEL_DEBUG = LEVEL_DEBUG

    TYPE_ERROR = TYPE_ERROR
    TYPE_WARN = TYPE_WARN
    TYPE_INFO = TYPE_INFO

    def __init__(
        self,
        database: MongoDatabase,
        collection_name: str = "auditlog",
        *,
        secret: Optional[str] = None,
        jwt_verifier: Union[str, JwtVerifier, None] = None,
        default_workspace: str = DEFAULT_WORKSPACE,
        max_retries: int = DEFAULT_MAX_RETRIES,
        mute_errors: bool = True,
        callback: Optional[AuditLogCallback] = None,
        wait_for_indexes: bool = True,
        logger: Optional[logging.Logger] = None,
        sleep_fn: Optional[SleepFn] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._logger = logger or logging.getLogger(__name__)
        self._collection = ProvisionedCollection(
            database,
            collection_name,
            wait_for_indexes=wait_for_indexes,
            logger=self._logger,
        )
        self._signer = Signer(secret)
        if isinstance(jwt_verifier, str):
            self._jwt_verify: Optional[JwtVerifier] = secret_jwt_verifier(jwt_verifier)
        else:
            self._jwt_verify = jwt_verifier
        self.default_workspace = default_workspace
        self.max_retries = max_retries
        self.mute_errors = mute_errors
        self.callback = callback
        self._sleep = sleep_fn
        self._clock = clock

        self._collection.add_index({"wid": 1, "seq": -1}, name=SEQUENCE_INDEX, unique=True)
        if database.dialect.supports_text_search:
            self._collection.add_index({"wid": 1, "date": -1}, name="wid_1_date_-1")
        else:
            self._collection.add_index({"wid": 1}, name="wid_1")
            self._collection.add_index({"seq": -1}, name="seq_-1")

    @property
    def collection(self) -> ProvisionedCollection:
        return self._collection

    async def log(
        self,
        event: Mapping[str, Any],
        user: Optional[Mapping[str, Any]] = None,
        meta: Optional[Mapping[str, Any]] = None,
        workspace_id: Optional[str] = None,
        type: str = TYPE_INFO,
        level: str = LEVEL_IMPORTANT,
        date: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Append an entry and return it as stored (with ``seq`` and ``delta``).

        Raises ``AuditLogStoreError`` when the sequence could not be claimed
        within ``max_retries`` attempts. Other storage errors are logged and
        swallowed while ``mute_errors`` is set; network errors always raise.
        """
        rest = dict(event)
        event_type = rest.pop("type", DEFAULT_EVENT_TYPE)
        entry: dict[str, Any] = {
            "date": _bson_date(date or self._clock()),
            "eventType": event_type,
            **rest,
            "level": level,
            "meta": dict(meta or {}),
            "type": type,
            "user": dict(user or {}),
            "wid": workspace_id or self.default_workspace,
        }
        stored = await self._store_with_retry(entry)
        if self.callback is not None:
            try:
                await self.callback(stored)
            except Exception as exc:
                log_event(
                    self._logger,
                    logging.ERROR,
                    "audit_log.callback_failed",
                    wid=stored.get("wid"),
                    seq=stored.get("seq"),
                    exc=exc,
                )
        return stored

    async def list(
        self,
        workspace_id: Optional[str] = None,
        from_sequence: Optional[int] = None,
        limit: int = 40,
    ) -> list[dict[str, Any]]:
        """Entries newest first, each with ``ok`` telling whether it verified.

        ``from_sequence`` pages backwards: only entries with a lower ``seq``
        are returned. ``ok`` is ``None`` when no secret is configured.
        """
        query: dict[str, Any] = {"wid": workspace_id or self.default_workspace}
        if from_sequence is not None:
            query["seq"] = {"$lt": from_sequence}
        collection = await self._collection.get(for_read=True)
        docs = await self._collection.run(self._list_sync, collection, query, limit + 1)

        entries: list[dict[str, Any]] = []
        for index, doc in enumerate(docs[:limit]):
            entry = dict(doc)
            signature = entry.pop("sign", None)
            ok: Optional[bool] = None
            if self._signer.enabled:
                previous = docs[index + 1].get("sign") if index + 1 < len(docs) else None
                ok = bool(self._signer.verify(entry, signature, previous))
                if not ok:
                    log_event(
                        self._logger,
                        logging.ERROR,
                        "audit_log.signature_mismatch",
                        wid=entry.get("wid"),
                        seq=entry.get("seq"),
                    )
            entry["ok"] = ok
            entries.append(entry)

        if self._jwt_verify is not None:
            for entry in entries:
                user = entry.get("user") or {}
                if not user.get("id") or not user.get("jwt"):
                    continue
                checked = await self._jwt_verify(user["jwt"], user["id"], user)
                entry["ok"] = entry["ok"] is not False and bool(checked)
        return entries

    async def _store_with_retry(self, entry: dict[str, Any]) -> dict[str, Any]:
        retrying = conflict_retrying(
            self.max_retries, sleep=self._sleep, logger=self._logger
        )
        started = time.monotonic()
        try:
            async for attempt in retrying:
                with attempt:
                    entry["delta"] = int((time.monotonic() - started) * 1000)
                    await self._store(entry)
        except RetryError as exc:
            log_event(
                self._logger,
                logging.CRITICAL,
                "audit_log.store_failed",
                wid=entry.get("wid"),
                attempts=self.max_retries,
                exc=exc.last_attempt.exception(),
            )
            raise AuditLogStoreError(
                "AuditLog: cannot store log due to max-retries", entry=dict(entry)
            ) from exc.last_attempt.exception()
        except StorageNetworkError:
            raise
        except (PyMongoError, BSONError, BotStorageError) as exc:
            if not self.mute_errors:
                raise
            log_event(
                self._logger,
                logging.ERROR,
                "audit_log.store_failed",
                wid=entry.get("wid"),
                exc=exc,
            )
        return dict(entry)

    async def _store(self, entry: dict[str, Any]) -> None:
        collection = await self._collection.get()
        previous = await self._collection.run(
            self._previous_sync, collection, entry["wid"]
        )
        entry["seq"] = previous["seq"] + 1 if previous else 0
        document = dict(entry)
        document["sign"] = self._signer.sign(
            document, previous.get("sign") if previous else None
        )
        try:
            await self._collection.run(self._insert_sync, collection, document)
        except DuplicateKeyError as exc:
            log_event(
                self._logger,
                logging.DEBUG,
                "audit_log.sequence_conflict",
                wid=entry["wid"],
                seq=entry["seq"],
            )
            raise SequenceConflictError(entry["wid"], entry["seq"]) from exc

    def _previous_sync(
        self, collection: Collection, workspace_id: str
    ) -> Optional[dict[str, Any]]:
        return collection.find_one(
            {"wid": workspace_id},
            {"seq": 1, "sign": 1, "_id": 0},
            sort=[("seq", -1)],
        )

    def _insert_sync(self, collection: Collection, document: dict[str, Any]) -> None:
        collection.insert_one(document)

    def _list_sync(
        self, collection: Collection, query: dict[str, Any], limit: int
    ) -> list[dict[str, Any]]:
        return list(
            collection.find(query, {"_id": 0}).sort([("seq", -1)]).limit(limit)
        )


__all__ = [
    "AuditLogCallback",
    "AuditLogStore",
    "JwtVerifier",
    "LEVEL_CRITICAL",
    "LEVEL_DEBUG",
    "LEVEL_IMPORTANT",
    "TYPE_ERROR",
    "TYPE_INFO",
    "TYPE_WARN",
    "secret_jwt_verifier",
]
