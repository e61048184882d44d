"""Clock abstraction and timestamp helpers."""

from __future__ import annotations

import datetime as _dt
from typing import Optional, Union

EPOCH = _dt.datetime(1970, 1, 1, tzinfo=_dt.timezone.utc)


class Clock:
    """Source of the current time. Injected wherever TTL or age logic runs."""

    def now(self) -> _dt.datetime:
        raise NotImplementedError


class SystemClock(Clock):
    def now(self) -> _dt.datetime:
        return _dt.datetime.now(_dt.timezone.utc)


class FixedClock(Clock):
    """Clock frozen at a given instant; `advance` moves it forward."""

    def __init__(self, instant: _dt.datetime) -> None:
        self._instant = ensure_aware(instant)

    def now(self) -> _dt.datetime:
        return self._instant

    def advance(self, **delta: float) -> None:
        self._instant = self._instant + _dt.timedelta(**delta)


def ensure_aware(value: _dt.datetime) -> _dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=_dt.timezone.utc)
    return value


def parse_timestamp(value: Union[str, _dt.datetime, None], default: Optional[_dt.datetime] = None) -> Optional[_dt.datetime]:
    """Parse an ISO-8601 string (``Z`` suffix allowed) into an aware datetime."""
    if value is None or value == "":
        return default
    if isinstance(value, _dt.datetime):
        return ensure_aware(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return ensure_aware(_dt.datetime.fromisoformat(text))
    except ValueError:
        return default


def format_timestamp(value: _dt.datetime) -> str:
    return ensure_aware(value).astimezone(_dt.timezone.utc).isoformat().replace("+00:00", "Z")
