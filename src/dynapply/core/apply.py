"""
Client-side, type-agnostic substitute for `kubectl apply`.

Given the observed object, the last-applied snapshot and the desired object,
compute the object to write back:

- fields removed between last-applied and desired are retracted
- fields present in desired are added/updated recursively
- fields nobody applied (set by other actors) are preserved
- lists of objects sharing a conventional identity field ("list maps") are
  merged element-wise; every other list is replaced by desired

No schema is used; only `KNOWN_MERGE_KEYS` is interpreted.
"""

from __future__ import annotations

import copy
import json
import logging
from typing import Any, Dict, Iterable, List, Optional

log = logging.getLogger("dynapply.apply")

Document = Any
ObjectDoc = Dict[str, Any]
ListDoc = List[Any]


# =========================
# Exceptions
# =========================

class ApplyError(Exception):
    """Base error for merge and last-applied issues."""


class ShapeMismatch(ApplyError):
    """Raised when last_applied/desired do not have the shape of the destination."""

    def __init__(self, side: str, path: str, expected: str, got: Any) -> None:
        self.side = side
        self.path = path
        self.expected = expected
        self.got = type(got).__name__
        super().__init__(f"{side}{path}: expecting {expected}, got {self.got}")


class SerializationFailure(ApplyError):
    """Raised when a last-applied snapshot cannot be encoded or decoded."""


# =========================
# Merge keys (allow-list)
# =========================

# Order is precedence: the first name shared by every object wins.
# status is never merged this way; controllers own it entirely.
KNOWN_MERGE_KEYS = (
    "containerPort",
    "port",
    "name",
    "uid",
    "ip",
)


def detect_list_map_key(*lists: Optional[Iterable[Any]]) -> Optional[str]:
    """
    Guess whether a field is a list map, given every known value of the field.

    Returns the identity key name, or None if any item is not an object or
    no allow-listed key is common to all objects.
    """
    common: Optional[set] = None
    for items in lists:
        for item in items or ():
            if not isinstance(item, dict):
                return None
            if common is None:
                common = set(item.keys())
            else:
                common.intersection_update(item)

    if not common:
        return None
    for key in KNOWN_MERGE_KEYS:
        if key in common:
            return key
    return None


def string_merge_key(value: Any) -> str:
    """Canonical text form of a merge key value; strings are kept as-is."""
    if isinstance(value, str):
        return value
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


# =========================
# Recursive merge
# =========================

def merge(path: str, destination: Any, last_applied: Any, desired: Any) -> Any:
    """
    Find the diff from last_applied to desired and apply it to destination.

    Returns the replacement value for destination. Never called for a field
    desired does not contain.
    """
    log.debug("merge field %r", path)

    if isinstance(destination, dict):
        if last_applied is not None and not isinstance(last_applied, dict):
            raise ShapeMismatch("last_applied", path, "mapping", last_applied)
        if desired is not None and not isinstance(desired, dict):
            raise ShapeMismatch("desired", path, "mapping", desired)
        return merge_object(path, destination, last_applied or {}, desired or {})

    if isinstance(destination, list):
        if last_applied is not None and not isinstance(last_applied, list):
            raise ShapeMismatch("last_applied", path, "list", last_applied)
        if desired is not None and not isinstance(desired, list):
            raise ShapeMismatch("desired", path, "list", desired)
        return merge_array(path, destination, last_applied or [], desired)

    # Scalar or missing destination: desired wins outright.
    return copy.deepcopy(desired)


def merge_object(path: str, destination: ObjectDoc, last_applied: ObjectDoc, desired: ObjectDoc) -> ObjectDoc:
    # Retract what we applied before but no longer want.
    for key in last_applied:
        if key not in desired and key in destination:
            log.debug("%s: delete key %r", path or "<root>", key)
            del destination[key]

    for key, des_val in desired.items():
        destination[key] = merge(f"{path}[{key}]", destination.get(key), last_applied.get(key), des_val)

    return destination


def merge_array(path: str, destination: ListDoc, last_applied: ListDoc, desired: Optional[ListDoc]) -> Optional[ListDoc]:
    merge_key = detect_list_map_key(destination, last_applied, desired)
    if merge_key:
        log.debug("%s: merging as list map keyed by %r", path, merge_key)
        return merge_list_map(path, merge_key, destination, last_applied, desired or [])

    # Plain list: replace.
    return copy.deepcopy(desired)


def _list_map(merge_key: str, items: ListDoc) -> ObjectDoc:
    # Later items win on duplicate keys.
    return {string_merge_key(item.get(merge_key)): item for item in items}


def merge_list_map(
    path: str,
    merge_key: str,
    destination: ListDoc,
    last_applied: ListDoc,
    desired: ListDoc,
) -> ListDoc:
    """
    Merge lists of objects as maps keyed by `merge_key`.

    Output order: surviving destination items in destination order, then
    new desired items in desired order.
    """
    dest_map = _list_map(merge_key, destination)
    merge_object(path, dest_map, _list_map(merge_key, last_applied), _list_map(merge_key, desired))

    out: ListDoc = []
    added = set()
    for source in (destination, desired):
        for item in source:
            key = string_merge_key(item.get(merge_key))
            if key in dest_map and key not in added:
                out.append(dest_map[key])
                added.add(key)
    return out


# =========================
# Public API
# =========================

def apply_merge(observed: ObjectDoc, last_applied: Optional[ObjectDoc], desired: ObjectDoc) -> ObjectDoc:
    """
    Return a copy of `observed` with the changes from `last_applied` to
    `desired` applied. Inputs are left untouched.

    Raises ShapeMismatch when a field's shape conflicts with observed.
    """
    destination = copy.deepcopy(observed)
    return merge("", destination, last_applied, desired)
