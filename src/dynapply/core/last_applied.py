"""
Last-applied snapshot stored on the object itself.

The desired state written by the previous apply is kept as compact JSON in
`metadata.annotations[<key>]`, so the engine holds no state between calls.
A snapshot must be sanitized (its own annotation removed) before it is stored,
otherwise every apply would nest the previous snapshot inside the new one.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from .apply import SerializationFailure

log = logging.getLogger("dynapply.last_applied")

DEFAULT_ANNOTATION_KEY = "dynapply.io/last-applied-configuration"


def object_ref(obj: Dict[str, Any]) -> str:
    """Render `apiVersion:kind:namespace:name` for messages."""
    meta = obj.get("metadata") or {}
    if not isinstance(meta, dict):
        meta = {}
    parts = (obj.get("apiVersion"), obj.get("kind"), meta.get("namespace"), meta.get("name"))
    return ":".join("" if p is None else str(p) for p in parts)


def _annotations(obj: Dict[str, Any]) -> Dict[str, Any]:
    meta = obj.get("metadata")
    if not isinstance(meta, dict):
        return {}
    ann = meta.get("annotations")
    return ann if isinstance(ann, dict) else {}


def set_last_applied(
    obj: Dict[str, Any],
    last_applied: Optional[Dict[str, Any]],
    key: str = DEFAULT_ANNOTATION_KEY,
) -> None:
    """Store `last_applied` on `obj` under annotation `key`. No-op when empty."""
    if not last_applied:
        return

    try:
        raw = json.dumps(last_applied, sort_keys=True, separators=(",", ":"), allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise SerializationFailure(
            f"{object_ref(obj)}: failed to marshal last applied config against annotation {key!r}: {exc}"
        ) from exc

    meta = obj.get("metadata")
    if not isinstance(meta, dict):
        meta = obj["metadata"] = {}
    ann = meta.get("annotations")
    if not isinstance(ann, dict):
        ann = meta["annotations"] = {}
    ann[key] = raw

    log.debug("%s: annotation %r set (%d bytes)", object_ref(obj), key, len(raw))


def get_last_applied(obj: Dict[str, Any], key: str = DEFAULT_ANNOTATION_KEY) -> Optional[Dict[str, Any]]:
    """
    Return the last-applied snapshot of `obj`, or None when nothing was applied yet.

    Raises SerializationFailure if the annotation does not hold a JSON object.
    """
    raw = _annotations(obj).get(key)
    if raw is None or raw == "":
        return None
    if not isinstance(raw, str):
        raise SerializationFailure(
            f"{object_ref(obj)}: annotation {key!r} must be a string, got {type(raw).__name__}"
        )

    try:
        data = json.loads(raw)
    except ValueError as exc:
        raise SerializationFailure(
            f"{object_ref(obj)}: failed to unmarshal last applied config against annotation {key!r}: {exc}"
        ) from exc
    if not isinstance(data, dict):
        raise SerializationFailure(
            f"{object_ref(obj)}: last applied config against annotation {key!r} is not an object"
        )
    return data


def sanitize_last_applied(doc: Optional[Dict[str, Any]], key: str = DEFAULT_ANNOTATION_KEY) -> None:
    """Remove the last-applied annotation itself from `doc`, in place."""
    if not doc:
        return
    _annotations(doc).pop(key, None)
