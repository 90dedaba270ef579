"""Dashboard views built from fetched records.

Each ``*_view`` function resolves the caller's scope, fetches the full window
of records and aggregates it.  Failures never propagate as exceptions: the
payload carries zeroed metrics plus a ``message`` describing the problem, the
same shape the dashboards render as a banner.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Callable

from megg import db
from megg.cancellation import CancellationToken
from megg.main import charts
from megg.main import exporters
from megg.metrics import (
    QUALITY_CATEGORIES,
    SIZE_CATEGORIES,
    TimeWindow,
    average_weight,
    batches_overview,
    daily_average,
    daily_distribution,
    hourly_distribution,
    peak_hour,
    summarize,
    summarize_batch,
)


@dataclass(frozen=True)
class HistoryKind:
    """How one history dashboard groups and labels its records."""

    name: str
    label: str
    field_name: str
    categories: tuple[str, ...]
    legacy_kind: str
    exclude_from_most_common: tuple[str, ...] = ()


HISTORY_KINDS: dict[str, HistoryKind] = {
    "defect": HistoryKind(
        "defect", "Defect", "quality", QUALITY_CATEGORIES, "defect_log", ("good",)
    ),
    "sort": HistoryKind("sort", "Sort", "size", SIZE_CATEGORIES, "sort_log"),
}

SOURCES = ("inspection", "legacy")
EXPORT_VIEWS = ("logs", "statistics", "daily-summary", "batches")


def load_records(
    kind: HistoryKind,
    user_id: str | None,
    window: TimeWindow | None,
    *,
    source: str = "inspection",
    now: datetime | None = None,
    cancel: CancellationToken | None = None,
) -> db.FetchResult:
    """Fetch ``kind`` records owned by ``user_id``.

    Inspection records are scoped by the user's account identifier; the legacy
    log tables are scoped by the machines linked to the profile.  ``now`` is
    the request instant, used for records whose timestamps cannot be read.
    """

    if source == "legacy":
        scope = db.resolve_linked_machines(user_id)
        return db.fetch_records(kind.legacy_kind, scope, window, cancel=cancel, now=now)
    account_id = db.resolve_account_id(user_id)
    return db.fetch_records("inspection", account_id, window, cancel=cancel, now=now)


def _base_payload(result: db.FetchResult) -> dict[str, Any]:
    payload: dict[str, Any] = {"rejected": len(result.rejected)}
    if result.error:
        payload["message"] = result.error
    elif result.rejected:
        payload["message"] = (
            f"{len(result.rejected)} records were skipped because their "
            "timestamps could not be read."
        )
    return payload


def serialize_record(record: dict, tz: tzinfo) -> dict[str, Any]:
    created = record["created_at"]
    return {
        "id": record.get("id"),
        "batchId": record.get("batch_id"),
        "machineId": record.get("machine_id"),
        "quality": record.get("quality"),
        "size": record.get("size"),
        "weight": record.get("weight"),
        "confidence": record.get("confidence"),
        "imageId": record.get("image_id"),
        "timestamp": created.isoformat(),
        "displayTime": created.astimezone(tz).strftime("%Y-%m-%d %I:%M:%S %p"),
    }


# ---------------------------------------------------------------------------
# Logs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LogFilters:
    day: str | None = None
    batch: str | None = None
    category: str | None = None
    search: str | None = None
    range_name: str | None = None

    def window(self, tz: tzinfo, now: datetime) -> TimeWindow | None:
        if self.day:
            return TimeWindow.for_day(datetime.strptime(self.day, "%Y-%m-%d").date(), tz)
        if self.range_name:
            return TimeWindow.from_filter(self.range_name, now)
        return None


def filter_records(records: list[dict], kind: HistoryKind, filters: LogFilters) -> list[dict]:
    selected = records
    if filters.batch:
        selected = [record for record in selected if record.get("batch_id") == filters.batch]
    if filters.category:
        wanted = filters.category.lower()
        selected = [record for record in selected if record.get(kind.field_name) == wanted]
    if filters.search:
        needle = filters.search.casefold()
        selected = [
            record
            for record in selected
            if any(
                needle in str(record.get(key) or "").casefold()
                for key in ("id", "batch_id", "machine_id", kind.field_name)
            )
        ]
    return selected


def logs_view(
    kind: HistoryKind,
    user_id: str | None,
    filters: LogFilters,
    *,
    tz: tzinfo,
    page: int = 1,
    page_size: int = 25,
    source: str = "inspection",
    now: datetime | None = None,
    cancel: CancellationToken | None = None,
) -> tuple[dict[str, Any], list[dict]]:
    """Return the paginated log payload and the full filtered record list."""

    now = now or datetime.now(timezone.utc)
    result = load_records(
        kind, user_id, filters.window(tz, now), source=source, now=now, cancel=cancel
    )
    newest_first = list(reversed(result.rows))
    selected = filter_records(newest_first, kind, filters)
    metric = summarize(
        selected,
        field_name=kind.field_name,
        categories=kind.categories,
        exclude_from_most_common=kind.exclude_from_most_common,
        cancel=cancel,
    )
    pagination = db.paginate(selected, page, page_size)
    payload = _base_payload(result)
    payload.update(
        {
            "items": [serialize_record(record, tz) for record in pagination.pop("items")],
            "pagination": pagination,
            "counts": dict(metric.counts),
            "percentages": dict(metric.percentages),
            "filters": {
                "batches": sorted({r["batch_id"] for r in result.rows if r.get("batch_id")}),
                "categories": list(kind.categories),
            },
        }
    )
    return payload, selected


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


def statistics_view(
    kind: HistoryKind,
    user_id: str | None,
    range_name: str | None,
    *,
    source: str = "inspection",
    now: datetime | None = None,
    cancel: CancellationToken | None = None,
) -> dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    window = TimeWindow.from_filter(range_name, now)
    previous = window.previous()
    result = load_records(
        kind, user_id, TimeWindow(previous.start, window.end),
        source=source, now=now, cancel=cancel,
    )
    current_rows = [record for record in result.rows if window.contains(record["created_at"])]
    previous_total = len(result.rows) - len(current_rows)
    metric = summarize(
        current_rows,
        field_name=kind.field_name,
        categories=kind.categories,
        window=window,
        previous_total=previous_total,
        exclude_from_most_common=kind.exclude_from_most_common,
        cancel=cancel,
    )
    payload = _base_payload(result)
    payload.update(
        {
            "range": range_name or "24h",
            "window": window.to_dict(),
            "previousTotal": previous_total,
            "metric": metric.to_dict(),
        }
    )
    if kind.name == "sort":
        payload["averageWeight"] = average_weight(current_rows)
    return payload


# ---------------------------------------------------------------------------
# Daily summary
# ---------------------------------------------------------------------------


def daily_summary_view(
    kind: HistoryKind,
    user_id: str | None,
    *,
    tz: tzinfo,
    source: str = "inspection",
    now: datetime | None = None,
    cancel: CancellationToken | None = None,
) -> dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    local_today = now.astimezone(tz).date()
    today = TimeWindow.for_day(local_today, tz)
    yesterday = TimeWindow.for_day(local_today - timedelta(days=1), tz)
    week = TimeWindow.trailing_days(7, tz, now)

    result = load_records(
        kind, user_id, TimeWindow(min(week.start, yesterday.start), today.end),
        source=source, now=now, cancel=cancel,
    )
    today_rows = [r for r in result.rows if today.contains(r["created_at"])]
    yesterday_total = sum(1 for r in result.rows if yesterday.contains(r["created_at"]))
    week_rows = [r for r in result.rows if week.contains(r["created_at"])]

    elapsed = TimeWindow(today.start, max(min(now, today.end), today.start))
    metric = summarize(
        today_rows,
        field_name=kind.field_name,
        categories=kind.categories,
        window=elapsed,
        previous_total=yesterday_total,
        exclude_from_most_common=kind.exclude_from_most_common,
        rate_places=1,
        cancel=cancel,
    )
    payload = _base_payload(result)
    payload.update(
        {
            "date": local_today.isoformat(),
            "metric": metric.to_dict(),
            "yesterdayTotal": yesterday_total,
            "weekTotal": len(week_rows),
            "dailyAverage": daily_average(week_rows, tz),
            "peakHour": peak_hour(today_rows, tz),
            "hourly": hourly_distribution(
                today_rows, tz, field_name=kind.field_name, categories=kind.categories, cancel=cancel
            ),
        }
    )
    if kind.name == "sort":
        payload["averageWeight"] = average_weight(today_rows)
    return payload


# ---------------------------------------------------------------------------
# Batches and overview
# ---------------------------------------------------------------------------


def batches_view(
    kind: HistoryKind,
    user_id: str | None,
    *,
    tz: tzinfo,
    page: int = 1,
    page_size: int = 10,
    now: datetime | None = None,
    cancel: CancellationToken | None = None,
) -> dict[str, Any]:
    """Return the batch review page.

    Items carry both the defect and the size summary of each batch; ``kind``
    tells the dashboard which of the two to lead with.
    """

    account_id = db.resolve_account_id(user_id)
    result = db.fetch_records("batch", account_id, cancel=cancel, now=now)
    newest_first = list(reversed(result.rows))
    pagination = db.paginate(newest_first, page, page_size)
    payload = _base_payload(result)
    payload.update(
        {
            "kind": kind.name,
            "items": [summarize_batch(batch, tz) for batch in pagination.pop("items")],
            "pagination": pagination,
            "overview": batches_overview(result.rows, tz),
        }
    )
    return payload


def overview_view(
    user_id: str | None,
    *,
    tz: tzinfo,
    days: int = 7,
    now: datetime | None = None,
    cancel: CancellationToken | None = None,
) -> dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    window = TimeWindow.trailing_days(days, tz, now)
    account_id = db.resolve_account_id(user_id)
    result = db.fetch_records("inspection", account_id, window, cancel=cancel, now=now)
    quality = summarize(result.rows, field_name="quality", categories=QUALITY_CATEGORIES,
                        window=window, exclude_from_most_common=("good",), cancel=cancel)
    sizes = summarize(result.rows, field_name="size", categories=SIZE_CATEGORIES,
                      window=window, cancel=cancel)
    payload = _base_payload(result)
    payload.update(
        {
            "window": window.to_dict(),
            "quality": quality.to_dict(),
            "sizes": sizes.to_dict(),
            "averageWeight": average_weight(result.rows),
            "daily": daily_distribution(result.rows, window, tz),
        }
    )
    return payload


# ---------------------------------------------------------------------------
# Exports
# ---------------------------------------------------------------------------


def _metric_rows(kind: HistoryKind, payload: dict[str, Any]) -> list[tuple[str, Any]]:
    metric = payload["metric"]
    rows: list[tuple[str, Any]] = [("Total", metric["total"])]
    for name in metric["counts"]:
        rows.append(
            (f"{name.title()}", f"{metric['counts'][name]} ({metric['percentages'][name]}%)")
        )
    most_common = metric["mostCommon"]
    rows.append(("Most Common", most_common["type"].title() if most_common else "N/A"))
    rows.append(("Rate Per Hour", metric["ratePerHour"]))
    trend = metric["trend"]
    rows.append(("Trend", "N/A" if trend is None else f"{trend:+.1f}%"))
    if "averageWeight" in payload:
        rows.append(("Average Weight (g)", payload["averageWeight"]))
    return rows


def build_export(
    kind: HistoryKind,
    view: str,
    user_id: str | None,
    *,
    tz: tzinfo,
    fmt: str,
    args: dict[str, Any],
    fetch_image: Callable[[dict], bytes] | None = None,
    now: datetime | None = None,
    cancel: CancellationToken | None = None,
) -> tuple[exporters.ReportTable, Callable[[Any], None] | None]:
    """Return the table and optional PNG chart drawer for an export request."""

    now = now or datetime.now(timezone.utc)
    generated_at = now.astimezone(tz)
    source = args.get("source") or "inspection"
    title_prefix = f"{kind.label} History"

    if view == "logs":
        filters = LogFilters(
            day=args.get("date"),
            batch=args.get("batch"),
            category=args.get("category"),
            search=args.get("search"),
            range_name=args.get("range"),
        )
        payload, records = logs_view(
            kind, user_id, filters, tz=tz, source=source, now=now, cancel=cancel
        )
        images = None
        if fetch_image is not None and fmt in ("pdf", "docx"):
            images = exporters.collect_record_images(records, fetch_image, cancel=cancel)
        summary = [("Total Records", len(records))]
        summary.extend(
            (name.title(), f"{count} ({payload['percentages'][name]}%)")
            for name, count in payload["counts"].items()
        )
        table = exporters.record_table(
            records,
            kind.name,
            title=f"{kind.label} Log Report",
            tz=tz,
            generated_at=generated_at,
            summary=summary,
            images=images,
        )
        return table, None

    if view == "statistics":
        payload = statistics_view(
            kind, user_id, args.get("range"), source=source, now=now, cancel=cancel
        )
        counts = payload["metric"]["counts"]
        title = f"{title_prefix} Statistics ({payload['range']})"
        chart = charts.category_chart(counts, "Distribution") if fmt in ("pdf", "docx") else None
        table = exporters.metrics_table(
            _metric_rows(kind, payload), title=title, generated_at=generated_at, chart_png=chart
        )
        return table, lambda ax: charts.draw_category_chart(ax, counts, "Distribution")

    if view == "daily-summary":
        payload = daily_summary_view(kind, user_id, tz=tz, source=source, now=now, cancel=cancel)
        rows = _metric_rows(kind, payload)
        rows.extend(
            [
                ("Yesterday Total", payload["yesterdayTotal"]),
                ("Week Total", payload["weekTotal"]),
                ("Daily Average", payload["dailyAverage"]),
                ("Peak Hour", payload["peakHour"]),
            ]
        )
        hourly = payload["hourly"]
        chart = (
            charts.hourly_chart(hourly, kind.categories, "Hourly Distribution")
            if fmt in ("pdf", "docx")
            else None
        )
        table = exporters.metrics_table(
            rows,
            title=f"{title_prefix} Daily Summary",
            subtitle=payload["date"],
            generated_at=generated_at,
            chart_png=chart,
        )
        return table, lambda ax: charts.draw_hourly_chart(
            ax, hourly, kind.categories, "Hourly Distribution"
        )

    if view == "batches":
        payload = batches_view(
            kind, user_id, tz=tz, page=1, page_size=10_000, now=now, cancel=cancel
        )
        overview = payload["overview"]
        summary: list[tuple[str, Any]] = [
            ("Batches", overview["batchCount"]),
            ("Total Eggs", overview["totalEggs"]),
        ]
        if kind.name == "sort":
            summary.extend(
                (name.title(), count) for name, count in overview["sizeCounts"].items()
            )
            most_common_size = overview["mostCommonSize"]
            summary.append(
                ("Most Common Size", most_common_size.title() if most_common_size else "N/A")
            )
        else:
            summary.extend(
                [
                    ("Total Defects", overview["totalDefects"]),
                    ("Unique Defect Types", overview["uniqueDefectTypes"]),
                ]
            )
        summary.append(("Time Range", overview["timeRange"]))
        table = exporters.batch_table(
            payload["items"],
            kind.name,
            title=f"{title_prefix} Batch Review",
            tz=tz,
            generated_at=generated_at,
            summary=summary,
        )
        return table, None

    raise exporters.ExportError(f"Unknown report view: {view}")
