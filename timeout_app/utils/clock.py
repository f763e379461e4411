"""Timestamp helpers. Documents store timestamps as ISO-8601 UTC strings."""
from datetime import datetime, timezone
from typing import Callable
from pydantic import TypeAdapter

Clock = Callable[[], datetime]

# Same serializer ``DocumentModel.to_document`` uses, so partial updates and
# whole documents render UTC identically (``...T09:00:00Z``)
_DATETIME = TypeAdapter(datetime)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return _DATETIME.dump_python(value.astimezone(timezone.utc), mode="json")


def minutes_between(start: datetime, end: datetime) -> int:
    """Whole minutes elapsed from ``start`` to ``end`` (floored)."""
    return int((end - start).total_seconds() // 60)
