from __future__ import annotations

from typing import Any, Mapping, Optional

from bson import ObjectId


def coerce_object_id(value: Any) -> Any:
    """Turn a 24-char hex string into an ``ObjectId``; leave anything else alone."""
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return value


def id_to_str(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    return value


def map_generic_document(doc: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    """Replace the database ``_id`` with a string ``id``."""
    if doc is None:
        return None
    doc = dict(doc)
    doc["id"] = id_to_str(doc.pop("_id", None))
    return doc


def strip_id(doc: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    if doc is None:
        return None
    doc = dict(doc)
    doc.pop("_id", None)
    return doc


def expand_object_to_set(
    attr: Optional[str],
    obj: Any,
    nested: bool = False,
    _out: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """Flatten ``obj`` into dotted ``$set`` paths under ``attr``.

    With ``nested=False`` only the first level of ``obj`` is expanded, so
    ``expand_object_to_set("meta", {"a": {"b": 1}})`` gives
    ``{"meta.a": {"b": 1}}``. With ``nested=True`` every mapping is expanded
    down to its leaves. Lists are treated as values.
    """
    out: dict[str, Any] = {} if _out is None else _out
    if isinstance(obj, Mapping) and obj:
        for key, value in obj.items():
            path = f"{attr}.{key}" if attr else str(key)
            if nested and isinstance(value, Mapping):
                expand_object_to_set(path, value, True, out)
            else:
                out[path] = value
    elif attr:
        out[attr] = obj
    return out


__all__ = [
    "coerce_object_id",
    "expand_object_to_set",
    "id_to_str",
    "map_generic_document",
    "strip_id",
]
