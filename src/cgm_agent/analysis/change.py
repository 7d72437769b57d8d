"""Change detection between two statistics snapshots."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

DEFAULT_EPSILON = 0.01


def has_changed(
    old: BaseModel | None,
    new: BaseModel | None,
    epsilon: float = DEFAULT_EPSILON,
) -> bool:
    """Return ``True`` when *new* differs materially from *old*.

    Works for both :class:`WindowStats` and :class:`RangeStats`.

    * both ``None`` → unchanged; exactly one ``None`` → changed
    * different ``count`` → changed, whatever *epsilon* is
    * a field present in one snapshot and absent in the other → changed
    * numeric fields → changed when they differ by more than *epsilon*
    * datetime fields → changed when not equal
    """
    if old is None and new is None:
        return False
    if old is None or new is None:
        return True
    if getattr(old, "count", None) != getattr(new, "count", None):
        return True

    for name in type(new).model_fields:
        if name == "count":
            continue
        a = getattr(old, name, None)
        b = getattr(new, name, None)
        if a is None and b is None:
            continue
        if a is None or b is None:
            return True
        if isinstance(a, datetime) or isinstance(b, datetime):
            if a != b:
                return True
            continue
        if abs(a - b) > epsilon:
            return True
    return False
