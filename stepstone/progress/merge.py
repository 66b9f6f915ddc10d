"""Merge-on-write rules for progress snapshots.

Every backend funnels writes through :func:`merge_snapshot`, a pure function
of the stored snapshot and the incoming partial update:

* a terminal snapshot (done, errored, cancelled) is returned unchanged;
* ``progress`` takes the maximum of stored and incoming values;
* ``sources`` is the union of both lists keyed by URL, first occurrence wins;
* ``metadata`` is shallow merged, incoming keys override;
* every other field takes the incoming value when it is present and
  non-empty, otherwise the stored value is kept.

Applying the same update twice yields the same snapshot as applying it once.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Mapping, Optional

from .models import ProgressSnapshot, ProgressUpdate, Source

_SCALAR_FIELDS = ("status", "title", "topic", "result", "summary", "error")


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def merge_sources(existing: Iterable[Source], incoming: Iterable[Source]) -> list[Source]:
    """Union two source lists by URL, keeping first-seen order."""
    merged: list[Source] = []
    seen: set[str] = set()
    for source in (*existing, *incoming):
        if not source.url or source.url in seen:
            continue
        seen.add(source.url)
        merged.append(source)
    return merged


def coerce_update(
    update: ProgressUpdate | Mapping[str, Any] | None, fields: Mapping[str, Any]
) -> ProgressUpdate:
    """Build a :class:`ProgressUpdate` from a model, a mapping and/or kwargs."""
    if isinstance(update, ProgressUpdate):
        base = update.model_dump(exclude_unset=True)
    else:
        base = dict(update or {})
    return ProgressUpdate.model_validate({**base, **fields})


def merge_snapshot(
    existing: ProgressSnapshot,
    update: ProgressUpdate,
    updated_at: Optional[datetime] = None,
) -> ProgressSnapshot:
    """Return ``existing`` with ``update`` applied.

    The stored object is never mutated. When ``existing`` is terminal the
    very same object is returned so callers can detect the no-op by identity.
    """
    if existing.is_terminal:
        return existing

    values = existing.model_dump()
    for name in _SCALAR_FIELDS:
        incoming = getattr(update, name)
        if not _is_empty(incoming):
            values[name] = incoming

    if update.progress is not None:
        values["progress"] = max(existing.progress, update.progress)
    values["sources"] = merge_sources(existing.sources, update.sources or [])
    if update.metadata:
        values["metadata"] = {**existing.metadata, **update.metadata}
    if updated_at is not None:
        values["updated_at"] = updated_at

    return ProgressSnapshot.model_validate(values)
