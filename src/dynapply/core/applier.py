from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .apply import ApplyError, apply_merge
from .last_applied import (
    DEFAULT_ANNOTATION_KEY,
    get_last_applied,
    object_ref,
    sanitize_last_applied,
    set_last_applied,
)

Obj = Dict[str, Any]
NaturalKey = Tuple[Any, ...]


@dataclass(frozen=True)
class ApplyResult:
    index: int
    ref: str
    status: str
    obj: Optional[Obj] = None
    error: str = ""


def natural_key(obj: Obj) -> NaturalKey:
    meta = obj.get("metadata")
    if not isinstance(meta, dict):
        meta = {}
    return (obj.get("apiVersion"), obj.get("kind"), meta.get("namespace"), meta.get("name"))


class ObjectApplier:
    """
    One apply step per object: read last-applied from observed, merge desired
    into observed, record desired as the new last-applied.

    The caller persists the returned objects and serializes applies per object.
    """

    def __init__(
        self,
        *,
        annotation_key: str = DEFAULT_ANNOTATION_KEY,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self.annotation_key = annotation_key
        self.log = logger or logging.getLogger("dynapply.applier")

    def apply_one(self, observed: Optional[Obj], desired: Obj) -> Tuple[str, Obj]:
        """Return (status, object to write). Raises ApplyError on merge/snapshot failures."""
        # A hook may echo back the observed annotations.
        last = copy.deepcopy(desired)
        sanitize_last_applied(last, self.annotation_key)

        if observed is None:
            new_obj = copy.deepcopy(last)
            set_last_applied(new_obj, last, self.annotation_key)
            return "CREATED", new_obj

        previous = get_last_applied(observed, self.annotation_key)
        merged = apply_merge(observed, previous, last)
        set_last_applied(merged, last, self.annotation_key)

        if merged == observed:
            return "UNCHANGED", merged
        return "UPDATED", merged

    @staticmethod
    def _index_observed(items: Iterable[Obj]) -> Dict[NaturalKey, Obj]:
        index: Dict[NaturalKey, Obj] = {}
        for it in items:
            index[natural_key(it)] = it
        return index

    def _normalize_observed(self, items: Iterable[Any]) -> List[Obj]:
        out: List[Obj] = []
        for idx, it in enumerate(items):
            if isinstance(it, dict):
                out.append(it)
            else:
                self.log.warning("Ignoring observed item #%d: not an object (%s)", idx, type(it).__name__)
        return out

    def apply(
        self,
        observed_items: Iterable[Obj],
        desired_items: Iterable[Obj],
    ) -> Tuple[List[ApplyResult], Dict[str, int]]:
        observed_index = self._index_observed(self._normalize_observed(observed_items))
        self.log.debug("Indexed %d observed object(s)", len(observed_index))

        results: List[ApplyResult] = []
        counts: Dict[str, int] = {}

        for idx, desired in enumerate(desired_items):
            ref = ""
            try:
                if not isinstance(desired, dict):
                    raise ApplyError(f"desired item #{idx} is not an object")
                ref = object_ref(desired)
                status, obj = self.apply_one(observed_index.get(natural_key(desired)), desired)
                self._append(results, counts, ApplyResult(idx, ref, status, obj=obj))
                self.log.info("%s: %s", ref, status)
            except ApplyError as e:
                self._append(results, counts, ApplyResult(idx, ref, "ERROR", error=str(e)))
                self.log.error("%s: apply error: %s", ref, e)
            except Exception as e:
                self._append(results, counts, ApplyResult(idx, ref, "EXCEPTION", error=str(e)))
                self.log.exception("%s: apply exception: %s", ref, e)

        return results, counts

    @staticmethod
    def _append(results: List[ApplyResult], counts: Dict[str, int], res: ApplyResult) -> None:
        results.append(res)
        counts[res.status] = counts.get(res.status, 0) + 1
