"""Canonical document signing.

A document is reduced to a canonical form (sorted keys, excluded volatile
fields, dates as ISO-8601 strings, containers copied) and signed with
HMAC-SHA3-224. Passing the previous entry's signature chains the entries: a
change to any stored entry invalidates its own signature and the signature of
the entry that follows it.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
from datetime import date, datetime, timezone
from typing import Any, Iterable, Mapping, Optional

DEFAULT_EXCLUDED_FIELDS = ("_id", "sign")


def _iso(value: date) -> str:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value.strftime("%Y-%m-%dT%H:%M:%S.") + (
            f"{value.microsecond // 1000:03d}Z"
        )
    return value.isoformat()


def _canonical_value(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return _iso(value)
    if isinstance(value, Mapping):
        return {
            str(key): _canonical_value(value[key])
            for key in sorted(value, key=str)
        }
    if isinstance(value, (list, tuple)):
        return [_canonical_value(item) for item in value]
    return value


def canonicalize(
    document: Mapping[str, Any],
    exclude: Iterable[str] = DEFAULT_EXCLUDED_FIELDS,
) -> dict[str, Any]:
    excluded = set(exclude)
    return {
        str(key): _canonical_value(document[key])
        for key in sorted(document, key=str)
        if key not in excluded
    }


def serialize(canonical: Mapping[str, Any]) -> bytes:
    return json.dumps(
        canonical,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    ).encode("utf-8")


def sign(
    canonical: Mapping[str, Any],
    secret: str,
    previous: Optional[str] = None,
) -> str:
    digest = hmac.new(secret.encode("utf-8"), digestmod=hashlib.sha3_224)
    digest.update(serialize(canonical))
    if previous:
        digest.update(previous.encode("utf-8"))
    return base64.b64encode(digest.digest()).decode("ascii")


def verify(
    document: Mapping[str, Any],
    secret: str,
    signature: Optional[str],
    previous: Optional[str] = None,
) -> bool:
    if not isinstance(signature, str):
        return False
    expected = sign(canonicalize(document), secret, previous)
    return hmac.compare_digest(expected, signature)


class Signer:
    """Signing capability shared by adapters that persist signed documents.

    Without a secret nothing is signed and verification reports ``None``
    (unknown) rather than a failure.
    """

    def __init__(self, secret: Optional[str] = None) -> None:
        self._secret = secret or None

    @property
    def enabled(self) -> bool:
        return self._secret is not None

    def sign(
        self, document: Mapping[str, Any], previous: Optional[str] = None
    ) -> Optional[str]:
        if self._secret is None:
            return None
        return sign(canonicalize(document), self._secret, previous)

    def verify(
        self,
        document: Mapping[str, Any],
        signature: Optional[str],
        previous: Optional[str] = None,
    ) -> Optional[bool]:
        if self._secret is None:
            return None
        return verify(document, self._secret, signature, previous)


__all__ = [
    "DEFAULT_EXCLUDED_FIELDS",
    "Signer",
    "canonicalize",
    "serialize",
    "sign",
    "verify",
]
