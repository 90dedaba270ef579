"""Aggregation helpers for the inspection dashboards.

Every function in this module is a pure transformation over records that have
already been normalised by :mod:`megg.db`: dictionaries with a UTC
``created_at`` datetime plus ``quality``/``size``/``weight`` fields.  Calling
any of them twice with the same input returns equal output.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Mapping, Sequence

from megg.cancellation import CancellationToken, check

QUALITY_CATEGORIES: tuple[str, ...] = ("good", "dirty", "cracked", "bad")
SIZE_CATEGORIES: tuple[str, ...] = ("small", "medium", "large", "defect")

# Sorting machines report a finer grade than the dashboards display.
SIZE_ALIASES: dict[str, str] = {
    "too_small": "small",
    "small": "small",
    "medium": "medium",
    "large": "large",
    "extra_large": "large",
    "xl": "large",
    "too_large": "large",
    "jumbo": "large",
    "defect": "defect",
}

TIME_FILTERS: dict[str, timedelta] = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
}
DEFAULT_TIME_FILTER = "24h"

UNKNOWN_CATEGORY = "unknown"


def round_half_up(value: float, places: int = 0) -> float | int:
    """Round ``value`` the way reports print it (``0.5`` rounds away from zero)."""

    quantum = Decimal(1).scaleb(-places)
    rounded = Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP)
    if places <= 0:
        return int(rounded)
    return float(rounded)


def normalize_quality(value: Any) -> str:
    text = str(value or "").strip().lower()
    return text or UNKNOWN_CATEGORY


def normalize_size(value: Any) -> str:
    text = str(value or "").strip().lower().replace(" ", "_").replace("-", "_")
    if not text:
        return UNKNOWN_CATEGORY
    return SIZE_ALIASES.get(text, text)


@dataclass(frozen=True)
class TimeWindow:
    """Half-open interval ``[start, end)`` of UTC instants."""

    start: datetime
    end: datetime

    def __post_init__(self):
        if self.end < self.start:
            raise ValueError("TimeWindow end must not precede start")

    @classmethod
    def from_filter(cls, name: str | None, now: datetime | None = None) -> "TimeWindow":
        span = TIME_FILTERS.get(name or DEFAULT_TIME_FILTER)
        if span is None:
            raise ValueError(f"Unknown time filter: {name}")
        end = now or datetime.now(timezone.utc)
        return cls(end - span, end)

    @classmethod
    def for_day(cls, day: date, tz: tzinfo) -> "TimeWindow":
        start = datetime.combine(day, time.min, tzinfo=tz).astimezone(timezone.utc)
        end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
        return cls(start, end.astimezone(timezone.utc))

    @classmethod
    def trailing_days(cls, days: int, tz: tzinfo, now: datetime | None = None) -> "TimeWindow":
        """Return the ``days`` local calendar days ending with today."""

        current = (now or datetime.now(timezone.utc)).astimezone(tz).date()
        first = cls.for_day(current - timedelta(days=days - 1), tz)
        last = cls.for_day(current, tz)
        return cls(first.start, last.end)

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @property
    def hours(self) -> float:
        return self.duration.total_seconds() / 3600.0

    @property
    def latest(self) -> datetime:
        """Last representable instant inside the window."""
        return max(self.start, self.end - timedelta(microseconds=1))

    def previous(self) -> "TimeWindow":
        return TimeWindow(self.start - self.duration, self.start)

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant < self.end

    def local_days(self, tz: tzinfo) -> list[date]:
        first = self.start.astimezone(tz).date()
        last = (self.end - timedelta(microseconds=1)).astimezone(tz).date()
        days = []
        while first <= last:
            days.append(first)
            first += timedelta(days=1)
        return days

    def to_dict(self) -> dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass(frozen=True)
class DerivedMetric:
    """Aggregated view over one window of records."""

    total: int = 0
    counts: Mapping[str, int] = field(default_factory=dict)
    percentages: Mapping[str, int] = field(default_factory=dict)
    most_common: str | None = None
    most_common_count: int = 0
    rate_per_hour: float = 0
    trend: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "counts": dict(self.counts),
            "percentages": dict(self.percentages),
            "mostCommon": (
                {"type": self.most_common, "count": self.most_common_count}
                if self.most_common
                else None
            ),
            "ratePerHour": self.rate_per_hour,
            "trend": self.trend,
        }


def _ordered_categories(seen: Iterable[str], priority: Sequence[str]) -> list[str]:
    known = [name for name in priority if name in seen]
    extra = sorted(name for name in seen if name not in priority)
    return known + extra


def category_counts(
    records: Iterable[Mapping[str, Any]],
    field_name: str,
    categories: Sequence[str] = (),
    *,
    include_empty: bool = True,
    cancel: CancellationToken | None = None,
) -> dict[str, int]:
    """Count ``records`` by ``field_name``.

    Known ``categories`` come first in their declared order (with zero counts
    when ``include_empty``), followed by any other labels alphabetically.
    """

    tally: Counter[str] = Counter()
    for record in records:
        check(cancel)
        tally[str(record.get(field_name) or UNKNOWN_CATEGORY)] += 1

    seen = set(tally)
    if include_empty:
        seen.update(categories)
    return {name: tally.get(name, 0) for name in _ordered_categories(seen, categories)}


def percentages(counts: Mapping[str, int], total: int | None = None) -> dict[str, int]:
    """Return whole-number percentages; all zero when ``total`` is zero."""

    if total is None:
        total = sum(counts.values())
    if total <= 0:
        return {name: 0 for name in counts}
    return {name: round_half_up(count / total * 100) for name, count in counts.items()}


def most_common(
    counts: Mapping[str, int],
    priority: Sequence[str] = (),
    *,
    exclude: Iterable[str] = (),
) -> tuple[str | None, int]:
    """Return the label with the strictly highest count.

    Ties go to the label listed first in ``priority``; labels outside the
    priority list rank after it alphabetically.  Labels in ``exclude`` are
    only considered when no other label has a non-zero count.
    """

    excluded = set(exclude)

    def rank(name: str) -> tuple[int, int, str]:
        position = priority.index(name) if name in priority else len(priority)
        return (-counts[name], position, name)

    candidates = [name for name, count in counts.items() if count > 0]
    preferred = [name for name in candidates if name not in excluded]
    pool = preferred or candidates
    if not pool:
        return None, 0
    winner = min(pool, key=rank)
    return winner, counts[winner]


def rate_per_hour(total: int, hours: float, places: int = 0) -> float | int:
    return round_half_up(total / max(hours, 1), places)


def trend_percentage(current: int, previous: int, places: int = 1) -> float | None:
    """Return the period-over-period change, or ``None`` without a baseline."""

    if previous <= 0:
        return None
    return round_half_up((current - previous) / previous * 100, places)


def summarize(
    records: Sequence[Mapping[str, Any]],
    *,
    field_name: str = "quality",
    categories: Sequence[str] = QUALITY_CATEGORIES,
    window: TimeWindow | None = None,
    previous_total: int | None = None,
    exclude_from_most_common: Iterable[str] = (),
    rate_places: int = 0,
    cancel: CancellationToken | None = None,
) -> DerivedMetric:
    counts = category_counts(records, field_name, categories, cancel=cancel)
    total = len(records)
    label, label_count = most_common(
        counts, categories, exclude=exclude_from_most_common
    )
    hours = window.hours if window is not None else 24
    return DerivedMetric(
        total=total,
        counts=counts,
        percentages=percentages(counts, total),
        most_common=label,
        most_common_count=label_count,
        rate_per_hour=rate_per_hour(total, hours, rate_places),
        trend=(
            trend_percentage(total, previous_total)
            if previous_total is not None
            else None
        ),
    )


def format_hour(hour: int) -> str:
    suffix = "PM" if hour >= 12 else "AM"
    return f"{hour % 12 or 12} {suffix}"


def hourly_distribution(
    records: Iterable[Mapping[str, Any]],
    tz: tzinfo,
    *,
    field_name: str = "quality",
    categories: Sequence[str] = QUALITY_CATEGORIES,
    cancel: CancellationToken | None = None,
) -> list[dict[str, Any]]:
    """Return 24 hour-of-day buckets with per-category counts."""

    buckets = [
        {"hour": hour, "label": format_hour(hour), "total": 0, **{name: 0 for name in categories}}
        for hour in range(24)
    ]
    for record in records:
        check(cancel)
        bucket = buckets[record["created_at"].astimezone(tz).hour]
        bucket["total"] += 1
        label = record.get(field_name)
        if label in categories:
            bucket[label] += 1
    return buckets


def peak_hour(
    records: Iterable[Mapping[str, Any]], tz: tzinfo, span_hours: int = 2
) -> str:
    """Return the busiest hour as a ``"9 AM-11 AM"`` style label."""

    buckets = hourly_distribution(records, tz, categories=())
    busiest = max(buckets, key=lambda bucket: (bucket["total"], -bucket["hour"]))
    if busiest["total"] == 0:
        return "N/A"
    start = busiest["hour"]
    return f"{format_hour(start)}-{format_hour((start + span_hours) % 24)}"


def daily_distribution(
    records: Iterable[Mapping[str, Any]],
    window: TimeWindow,
    tz: tzinfo,
    *,
    field_name: str = "quality",
    categories: Sequence[str] = QUALITY_CATEGORIES,
) -> list[dict[str, Any]]:
    """Return one bucket per local calendar day covered by ``window``."""

    buckets = {
        day: {"date": day.isoformat(), "label": day.strftime("%b %d"), "total": 0, **{name: 0 for name in categories}}
        for day in window.local_days(tz)
    }
    for record in records:
        bucket = buckets.get(record["created_at"].astimezone(tz).date())
        if bucket is None:
            continue
        bucket["total"] += 1
        label = record.get(field_name)
        if label in categories:
            bucket[label] += 1
    return list(buckets.values())


def daily_average(records: Iterable[Mapping[str, Any]], tz: tzinfo) -> float:
    """Average records per day, counting only days that have records."""

    per_day = Counter(record["created_at"].astimezone(tz).date() for record in records)
    if not per_day:
        return 0
    return round_half_up(sum(per_day.values()) / len(per_day), 1)


def average_weight(records: Iterable[Mapping[str, Any]]) -> float:
    weights = []
    for record in records:
        value = record.get("weight")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        weights.append(float(value))
    if not weights:
        return 0
    return round_half_up(sum(weights) / len(weights), 2)


# Batch documents carry a stats snapshot with camelCase counters.
_BATCH_QUALITY_KEYS = {
    "good": "goodEggs",
    "dirty": "dirtyEggs",
    "cracked": "crackedEggs",
    "bad": "badEggs",
}
_BATCH_SIZE_KEYS = {
    "small": "smallEggs",
    "medium": "mediumEggs",
    "large": "largeEggs",
}


def _as_count(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        return max(int(value or 0), 0)
    except (TypeError, ValueError):
        return 0


def batch_counts(batch: Mapping[str, Any]) -> tuple[dict[str, int], dict[str, int], int]:
    """Return quality counts, size counts and total for a batch document."""

    stats = batch.get("stats") or {}
    legacy = batch.get("defect_counts") or {}
    quality = {
        name: _as_count(stats.get(key, legacy.get(name)))
        for name, key in _BATCH_QUALITY_KEYS.items()
    }
    for name, value in legacy.items():
        if name not in quality:
            quality[str(name)] = _as_count(value)
    sizes = {name: _as_count(stats.get(key)) for name, key in _BATCH_SIZE_KEYS.items()}
    total = _as_count(stats.get("totalEggs", batch.get("total_count")))
    if not total:
        total = sum(quality.values())
    return quality, sizes, total


def _clock(value: datetime, tz: tzinfo) -> str:
    return value.astimezone(tz).strftime("%I:%M:%S %p").lstrip("0")


def _time_range(first: datetime | None, last: datetime | None, tz: tzinfo) -> str:
    if first is None:
        return "N/A"
    return f"{_clock(first, tz)} - {_clock(last or first, tz)}"


def summarize_batch(batch: Mapping[str, Any], tz: tzinfo = timezone.utc) -> dict[str, Any]:
    quality, sizes, total = batch_counts(batch)
    defects = {name: count for name, count in quality.items() if name != "good"}
    defect_total = sum(defects.values())
    primary, primary_count = most_common(defects, QUALITY_CATEGORIES)
    common_size, common_size_count = most_common(sizes, SIZE_CATEGORIES)
    created = batch.get("created_at")
    updated = batch.get("updated_at")
    return {
        "id": batch.get("id"),
        "machineId": batch.get("machine_id"),
        "status": batch.get("status"),
        "createdAt": _isoformat(batch.get("created_at")),
        "updatedAt": _isoformat(batch.get("updated_at")),
        "total": total,
        "qualityCounts": quality,
        "sizeCounts": sizes,
        "defectCount": defect_total,
        "defectPercentage": (
            round_half_up(defect_total / total * 100, 1) if total else 0
        ),
        "primaryDefect": primary,
        "primaryDefectShare": (
            round_half_up(primary_count / defect_total * 100, 1) if defect_total else 0
        ),
        "uniqueDefectTypes": sum(1 for count in defects.values() if count > 0),
        "mostCommonSize": common_size,
        "mostCommonSizeCount": common_size_count,
        "timeRange": _time_range(
            created if isinstance(created, datetime) else None,
            updated if isinstance(updated, datetime) else None,
            tz,
        ),
    }


def batches_overview(batches: Sequence[Mapping[str, Any]], tz: tzinfo) -> dict[str, Any]:
    """Roll a sequence of batch documents up into a single overview."""

    totals: Counter[str] = Counter()
    size_totals: Counter[str] = Counter()
    eggs = 0
    defect_types: set[str] = set()
    created = [batch["created_at"] for batch in batches if isinstance(batch.get("created_at"), datetime)]
    for batch in batches:
        quality, sizes, total = batch_counts(batch)
        eggs += total
        totals.update(quality)
        size_totals.update(sizes)
        defect_types.update(name for name, count in quality.items() if name != "good" and count > 0)

    defect_total = sum(count for name, count in totals.items() if name != "good")
    size_counts = {name: size_totals.get(name, 0) for name in _BATCH_SIZE_KEYS}
    common_size, _count = most_common(size_counts, SIZE_CATEGORIES)
    return {
        "batchCount": len(batches),
        "totalEggs": eggs,
        "totalDefects": defect_total,
        "uniqueDefectTypes": len(defect_types),
        "qualityCounts": dict(totals),
        "sizeCounts": size_counts,
        "mostCommonSize": common_size,
        "timeRange": _time_range(min(created), max(created), tz) if created else "N/A",
    }


def _isoformat(value: Any) -> str | None:
    if isinstance(value, datetime):
        return value.isoformat()
    return value if value is None else str(value)
