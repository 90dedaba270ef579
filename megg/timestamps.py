"""Normalisation of the timestamp shapes found in inspection data.

Machines have written creation times as ISO strings, epoch seconds, epoch
milliseconds and vendor timestamp wrappers (``{"seconds": ..,
"nanoseconds": ..}``).  Every record passes through :func:`normalize_timestamp`
at the fetch boundary so that the rest of the pipeline only ever compares
timezone-aware UTC ``datetime`` values.
"""

from __future__ import annotations

import math
from datetime import date, datetime, time, timezone
from typing import Any, Mapping

POLICY_REJECT = "reject"
POLICY_NOW = "now"
TIMESTAMP_POLICIES = (POLICY_REJECT, POLICY_NOW)

# Numbers at or above this are epoch milliseconds (1e11 seconds is year 5138).
_MILLISECONDS_THRESHOLD = 1e11


class InvalidTimestampError(ValueError):
    """Raised when a stored timestamp cannot be interpreted."""

    def __init__(self, value: Any, reason: str = "unrecognised timestamp"):
        self.value = value
        self.reason = reason
        super().__init__(f"{reason}: {value!r}")


def _from_epoch(number: float, original: Any) -> datetime:
    if math.isnan(number) or math.isinf(number):
        raise InvalidTimestampError(original, "non-finite epoch value")
    seconds = number / 1000.0 if abs(number) >= _MILLISECONDS_THRESHOLD else number
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as exc:
        raise InvalidTimestampError(original, "epoch value out of range") from exc


def _from_wrapper(value: Mapping[str, Any] | Any, original: Any) -> datetime:
    if isinstance(value, Mapping):
        seconds = value.get("seconds", value.get("_seconds"))
        nanos = value.get("nanoseconds", value.get("_nanoseconds")) or 0
    else:
        seconds = getattr(value, "seconds", None)
        nanos = getattr(value, "nanoseconds", 0) or 0
    if isinstance(seconds, bool) or not isinstance(seconds, (int, float)):
        raise InvalidTimestampError(original, "timestamp wrapper without seconds")
    if isinstance(nanos, bool) or not isinstance(nanos, (int, float)):
        nanos = 0
    return _from_epoch(float(seconds) + float(nanos) / 1e9, original)


def _from_text(text: str, original: Any) -> datetime:
    candidate = text.strip()
    if not candidate:
        raise InvalidTimestampError(original, "empty timestamp")

    # Eight digits are a basic ISO date (YYYYMMDD), never epoch seconds.
    if len(candidate) == 8 and candidate.isdigit():
        try:
            parsed = datetime.strptime(candidate, "%Y%m%d")
        except ValueError as exc:
            raise InvalidTimestampError(original, "invalid compact date") from exc
        return parsed.replace(tzinfo=timezone.utc)

    try:
        number = float(candidate)
    except ValueError:
        number = None
    if number is not None:
        return _from_epoch(number, original)

    if candidate.endswith(("Z", "z")):
        candidate = candidate[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError as exc:
        raise InvalidTimestampError(original, "unparseable timestamp string") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _parse(value: Any) -> datetime:
    if value is None:
        raise InvalidTimestampError(value, "missing timestamp")
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    if isinstance(value, bool):
        raise InvalidTimestampError(value, "boolean is not a timestamp")
    if isinstance(value, (int, float)):
        return _from_epoch(float(value), value)
    if isinstance(value, str):
        return _from_text(value, value)
    if isinstance(value, Mapping) or hasattr(value, "seconds"):
        return _from_wrapper(value, value)
    to_datetime = getattr(value, "to_datetime", None)
    if callable(to_datetime):
        return _parse(to_datetime())
    raise InvalidTimestampError(value)


def normalize_timestamp(
    value: Any,
    *,
    policy: str = POLICY_REJECT,
    now: datetime | None = None,
) -> datetime:
    """Return ``value`` as a timezone-aware UTC ``datetime``.

    Args:
        value: Any stored timestamp shape.
        policy: ``"reject"`` raises :class:`InvalidTimestampError` for values
            that cannot be interpreted.  ``"now"`` substitutes the current
            instant, matching how older dashboards displayed such records.
        now: Instant used by the ``"now"`` policy; defaults to the wall clock.
    """

    if policy not in TIMESTAMP_POLICIES:
        raise ValueError(f"Unknown timestamp policy: {policy}")
    try:
        return _parse(value)
    except InvalidTimestampError:
        if policy == POLICY_NOW:
            return now or datetime.now(timezone.utc)
        raise


def coerce_policy(value: str | None) -> str:
    """Return a valid timestamp policy for a configuration value."""

    normalized = (value or "").strip().lower()
    if normalized in TIMESTAMP_POLICIES:
        return normalized
    return POLICY_REJECT
