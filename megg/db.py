from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Tuple
import math

import requests
from flask import current_app

from config.supabase_schema import column_name, table_name, to_supabase_payload
from megg.cancellation import CancellationToken, OperationCancelled, check
from megg.metrics import TimeWindow, normalize_quality, normalize_size
from megg.timestamps import (
    InvalidTimestampError,
    coerce_policy,
    normalize_timestamp,
)

PAGE_SIZE = 1000
IMAGE_FETCH_TIMEOUT = 10


def _get_client():
    """Return the configured Supabase client."""
    return current_app.config["SUPABASE"]


def _ensure_supabase_client() -> Tuple[Any, str | None]:
    """Return the configured Supabase client or an explanatory error.

    Returns:
        tuple: (client, error). When Supabase is unavailable the client will be
        ``None`` and ``error`` will contain a message explaining the failure.
    """

    supabase = current_app.config.get("SUPABASE")
    if not supabase or not hasattr(supabase, "table"):
        return None, (
            "Supabase client is not configured. Set SUPABASE_URL and SUPABASE_"
            "SERVICE_KEY to enable the inspection dashboards."
        )
    return supabase, None


def _safe_number(value):
    """Return ``value`` as a float when possible, otherwise ``None``."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip().replace(",", "")
        if text.endswith("%"):
            text = text[:-1]
        if not text:
            return None
        try:
            number = float(text)
        except (TypeError, ValueError):
            return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


# Canonical field -> legacy spellings still present in older documents.
_RECORD_ALIAS_MAP: dict[str, tuple[str, ...]] = {
    "account_id": ("accountId",),
    "batch_id": ("batchId", "batch_number", "batchNumber"),
    "machine_id": ("machineId",),
    "created_at": ("createdAt", "timestamp"),
    "updated_at": ("updatedAt",),
    "quality": ("defect_type", "defectType"),
    "confidence": ("confidence_score", "confidenceScore"),
    "image_id": ("imageId",),
    "image_url": ("imageUrl",),
    "id": ("eggId",),
}


def _apply_aliases(row: dict, mapping: dict[str, tuple[str, ...]]) -> dict:
    """Fill canonical keys from the first populated legacy spelling."""

    for target, sources in mapping.items():
        if row.get(target) not in (None, ""):
            continue
        for source in sources:
            value = row.get(source)
            if value not in (None, ""):
                row[target] = value
                break
    return row


@dataclass(frozen=True)
class RecordSource:
    table: str
    scope_column: str
    timestamp_column: str
    scoped_by_machine: bool = False


RECORD_SOURCES: dict[str, RecordSource] = {
    "inspection": RecordSource("eggs", "account_id", "created_at"),
    "batch": RecordSource("batches", "account_id", "created_at"),
    "defect_log": RecordSource("defect_logs", "machine_id", "timestamp", True),
    "sort_log": RecordSource("weight_logs", "machine_id", "timestamp", True),
}


@dataclass(frozen=True)
class FetchResult:
    """Rows returned by :func:`fetch_records`.

    ``rejected`` lists documents whose timestamps could not be interpreted so
    callers can report them as data-quality issues.
    """

    rows: list[dict] = field(default_factory=list)
    rejected: list[dict] = field(default_factory=list)
    error: str | None = None


def _timestamp_policy() -> str:
    return coerce_policy(current_app.config.get("INVALID_TIMESTAMP_POLICY"))


def _normalize_record(row: dict, kind: str, policy: str, now: datetime) -> dict:
    record = _apply_aliases(dict(row), _RECORD_ALIAS_MAP)
    record["raw_timestamp"] = record.get("created_at")
    record["created_at"] = normalize_timestamp(
        record.get("created_at"), policy=policy, now=now
    )
    if kind == "batch":
        if record.get("updated_at") not in (None, ""):
            try:
                record["updated_at"] = normalize_timestamp(record["updated_at"])
            except InvalidTimestampError:
                record["updated_at"] = None
        return record

    if "quality" in record:
        record["quality"] = normalize_quality(record.get("quality"))
    if "size" in record:
        record["size"] = normalize_size(record.get("size"))
    record["weight"] = _safe_number(record.get("weight"))
    record["confidence"] = _safe_number(record.get("confidence"))
    return record


def _fetch_paginated_rows(
    source: RecordSource,
    scope: str | list[str],
    *,
    cancel: CancellationToken | None = None,
    page_size: int = PAGE_SIZE,
) -> list[dict]:
    """Fetch every scoped row from ``source`` in ``page_size`` chunks.

    Supabase caps responses to 1,000 rows by default, so the query is repeated
    with an advancing ``range`` until a short page is returned.
    """

    if page_size <= 0:
        raise ValueError("page_size must be greater than zero")

    supabase = _get_client()
    rows: list[dict] = []
    offset = 0
    scope_column = column_name(source.table, source.scope_column)
    order_column = column_name(source.table, source.timestamp_column)

    while True:
        check(cancel)
        query = supabase.table(table_name(source.table)).select("*")
        if source.scoped_by_machine:
            query = query.in_(scope_column, list(scope))
        else:
            query = query.eq(scope_column, scope)
        query = query.order(order_column).range(offset, offset + page_size - 1)

        batch = query.execute().data or []
        rows.extend(batch)
        if len(batch) < page_size:
            break
        offset += page_size

    return rows


def fetch_records(
    kind: str,
    scope: str | Iterable[str] | None,
    window: TimeWindow | None = None,
    *,
    cancel: CancellationToken | None = None,
    policy: str | None = None,
    now: datetime | None = None,
) -> FetchResult:
    """Return records of ``kind`` owned by ``scope`` within ``window``.

    ``scope`` is an account identifier for inspection and batch data, or the
    list of linked machine identifiers for the legacy log tables.  An empty
    scope returns an empty result without querying.  Timestamps are
    normalised to UTC and the window is applied after fetching, so the
    returned rows always satisfy ``window.start <= created_at < window.end``.
    Under the ``now`` policy unreadable timestamps become ``now``, which
    callers pass so the substituted instant falls inside their window.
    """

    source = RECORD_SOURCES.get(kind)
    if source is None:
        raise ValueError(f"Unknown record kind: {kind}")

    if source.scoped_by_machine:
        scope = [machine for machine in (scope or []) if machine]
    if not scope:
        return FetchResult()

    _client, error = _ensure_supabase_client()
    if error:
        return FetchResult(error=error)

    try:
        raw_rows = _fetch_paginated_rows(source, scope, cancel=cancel)
    except OperationCancelled:
        raise
    except Exception as exc:  # pragma: no cover - network errors
        current_app.logger.error("Failed to fetch %s records: %s", kind, exc)
        return FetchResult(error=f"Failed to fetch {kind.replace('_', ' ')} records: {exc}")

    policy = policy or _timestamp_policy()
    now = now or datetime.now(timezone.utc)
    if window is not None and now == window.end:
        # Rolling windows end at the request instant.
        now = window.latest
    rows: list[dict] = []
    rejected: list[dict] = []
    for raw in raw_rows:
        check(cancel)
        if not isinstance(raw, dict):
            continue
        try:
            record = _normalize_record(raw, kind, policy, now)
        except InvalidTimestampError as exc:
            rejected.append(
                {"id": raw.get("id"), "value": repr(exc.value), "reason": exc.reason}
            )
            continue
        if window is None or window.contains(record["created_at"]):
            rows.append(record)

    if rejected:
        current_app.logger.warning(
            "Skipped %d %s records with invalid timestamps", len(rejected), kind
        )
    rows.sort(key=lambda record: record["created_at"])
    return FetchResult(rows=rows, rejected=rejected)


def paginate(rows: list, page: int = 1, page_size: int = 25) -> dict[str, Any]:
    """Slice ``rows`` for on-screen tables; aggregation never uses this."""

    page_size = max(int(page_size or 1), 1)
    total_pages = max(math.ceil(len(rows) / page_size), 1)
    page = min(max(int(page or 1), 1), total_pages)
    start = (page - 1) * page_size
    return {
        "items": rows[start:start + page_size],
        "page": page,
        "pageSize": page_size,
        "totalItems": len(rows),
        "totalPages": total_pages,
    }


# ---------------------------------------------------------------------------
# Users and account scoping
# ---------------------------------------------------------------------------


def _first_row(response) -> dict | None:
    data = response.data or []
    if isinstance(data, dict):
        return data
    return data[0] if data else None


def fetch_user(user_id: str) -> tuple[dict | None, str | None]:
    """Return the ``users`` row for ``user_id``."""

    supabase, error = _ensure_supabase_client()
    if error:
        return None, error
    try:
        response = (
            supabase.table(table_name("users"))
            .select("*")
            .eq(column_name("users", "id"), user_id)
            .limit(1)
            .execute()
        )
        return _first_row(response), None
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to fetch user: {exc}"


def fetch_user_by(field_name: str, value: str) -> tuple[dict | None, str | None]:
    """Return the first user whose ``field_name`` equals ``value``."""

    supabase, error = _ensure_supabase_client()
    if error:
        return None, error
    try:
        response = (
            supabase.table(table_name("users"))
            .select("*")
            .eq(column_name("users", field_name), value)
            .limit(1)
            .execute()
        )
        return _first_row(response), None
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to look up user: {exc}"


def insert_user(record: dict) -> tuple[dict | None, str | None]:
    supabase, error = _ensure_supabase_client()
    if error:
        return None, error

    payload = dict(record)
    now = datetime.now(timezone.utc).isoformat()
    payload.setdefault("created_at", now)
    payload.setdefault("updated_at", now)
    try:
        response = (
            supabase.table(table_name("users"))
            .insert(to_supabase_payload("users", payload))
            .execute()
        )
        return _first_row(response), None
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to create user: {exc}"


def update_user(user_id: str, changes: dict) -> tuple[dict | None, str | None]:
    """Apply ``changes`` to the single ``users`` row owned by ``user_id``."""

    supabase, error = _ensure_supabase_client()
    if error:
        return None, error

    payload = dict(changes)
    payload["updated_at"] = datetime.now(timezone.utc).isoformat()
    try:
        response = (
            supabase.table(table_name("users"))
            .update(to_supabase_payload("users", payload))
            .eq(column_name("users", "id"), user_id)
            .execute()
        )
        return _first_row(response), None
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to update user: {exc}"


def account_id_exists(account_id: str) -> tuple[bool, str | None]:
    user, error = fetch_user_by("account_id", account_id)
    if error:
        return False, error
    return user is not None, None


def resolve_account_id(user_id: str | None) -> str | None:
    """Return the account identifier linked to ``user_id``.

    Missing users, profiles without an account and lookup failures all return
    ``None`` so dashboards render an empty state instead of an error.
    """

    if not user_id:
        current_app.logger.warning("No authenticated user; account scope is empty")
        return None
    user, error = fetch_user(user_id)
    if error:
        current_app.logger.warning("Account lookup failed for %s: %s", user_id, error)
        return None
    if not user:
        current_app.logger.warning("Profile not found for user %s", user_id)
        return None
    account_id = user.get("account_id") or user.get("accountId")
    if not account_id:
        current_app.logger.warning("User %s has no linked account", user_id)
        return None
    return account_id


def resolve_linked_machines(user_id: str | None) -> list[str]:
    """Return the machine identifiers linked to ``user_id``'s profile."""

    if not user_id:
        return []
    user, error = fetch_user(user_id)
    if error or not user:
        if error:
            current_app.logger.warning("Machine lookup failed for %s: %s", user_id, error)
        return []
    machines = user.get("linked_machines") or user.get("linkedMachines") or []
    if not isinstance(machines, list):
        return []
    return [str(machine) for machine in machines if machine]


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

DEFAULT_NOTIFICATION_SETTINGS = {
    "notifications_enabled": True,
    "email_notifications": True,
    "in_app_notifications": True,
    "push_notifications_enabled": False,
}


def fetch_notification_settings(user_id: str) -> tuple[dict, str | None]:
    """Return notification preferences for ``user_id`` with defaults applied."""

    settings = dict(DEFAULT_NOTIFICATION_SETTINGS)
    supabase, error = _ensure_supabase_client()
    if error:
        return settings, error
    try:
        response = (
            supabase.table(table_name("notification_settings"))
            .select("*")
            .eq(column_name("notification_settings", "user_id"), user_id)
            .limit(1)
            .execute()
        )
    except Exception as exc:  # pragma: no cover - network errors
        return settings, f"Failed to fetch notification settings: {exc}"

    row = _first_row(response) or {}
    for key in DEFAULT_NOTIFICATION_SETTINGS:
        if isinstance(row.get(key), bool):
            settings[key] = row[key]
    return settings, None


def save_notification_settings(user_id: str, settings: dict) -> tuple[dict | None, str | None]:
    supabase, error = _ensure_supabase_client()
    if error:
        return None, error

    payload = {key: bool(settings[key]) for key in DEFAULT_NOTIFICATION_SETTINGS if key in settings}
    payload["user_id"] = user_id
    payload["updated_at"] = datetime.now(timezone.utc).isoformat()
    try:
        response = (
            supabase.table(table_name("notification_settings"))
            .upsert(to_supabase_payload("notification_settings", payload))
            .execute()
        )
        return _first_row(response) or payload, None
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to save notification settings: {exc}"


def insert_notification(
    user_id: str, title: str, message: str, kind: str = "info"
) -> tuple[dict | None, str | None]:
    supabase, error = _ensure_supabase_client()
    if error:
        return None, error

    payload = {
        "user_id": user_id,
        "title": title,
        "message": message,
        "type": kind,
        "read": False,
        "created_at": datetime.now(timezone.utc).isoformat(),
    }
    try:
        response = (
            supabase.table(table_name("notifications"))
            .insert(to_supabase_payload("notifications", payload))
            .execute()
        )
        return _first_row(response), None
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to create notification: {exc}"


def fetch_notifications(user_id: str, limit: int = 20) -> tuple[list[dict] | None, str | None]:
    supabase, error = _ensure_supabase_client()
    if error:
        return None, error
    try:
        response = (
            supabase.table(table_name("notifications"))
            .select("*")
            .eq(column_name("notifications", "user_id"), user_id)
            .order(column_name("notifications", "created_at"), desc=True)
            .limit(limit)
            .execute()
        )
        return response.data or [], None
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to fetch notifications: {exc}"


def save_fcm_token(user_id: str, token: str) -> tuple[dict | None, str | None]:
    """Remember the push token registered by one of the user's browsers."""

    supabase, error = _ensure_supabase_client()
    if error:
        return None, error
    payload = {
        "user_id": user_id,
        "token": token,
        "updated_at": datetime.now(timezone.utc).isoformat(),
    }
    try:
        response = (
            supabase.table(table_name("fcm_tokens"))
            .upsert(to_supabase_payload("fcm_tokens", payload))
            .execute()
        )
        return _first_row(response) or payload, None
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to save push token: {exc}"


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


def _storage_bucket():
    supabase, error = _ensure_supabase_client()
    if error:
        raise RuntimeError(error)
    return supabase.storage.from_(current_app.config.get("STORAGE_BUCKET", "megg"))


def record_image_path(record: dict) -> str | None:
    batch_id = record.get("batch_id")
    image_id = record.get("image_id")
    if not batch_id or not image_id:
        return None
    return f"images/{batch_id}/{image_id}"


def fetch_record_image(record: dict) -> bytes:
    """Return the image bytes attached to ``record``.

    Raises ``LookupError`` when the record has no image and propagates storage
    or network failures; exporters turn those into per-record placeholders.
    """

    url = record.get("image_url")
    if isinstance(url, str) and url.startswith(("http://", "https://")):
        response = requests.get(url, timeout=IMAGE_FETCH_TIMEOUT)
        response.raise_for_status()
        return response.content

    path = record_image_path(record)
    if not path:
        raise LookupError("record has no image")
    return _storage_bucket().download(path)


def upload_profile_image(
    user_id: str, data: bytes, content_type: str
) -> tuple[str | None, str | None]:
    """Store ``data`` at ``profile-images/{user_id}`` and return its public URL."""

    path = f"profile-images/{user_id}"
    try:
        bucket = _storage_bucket()
        bucket.upload(
            path,
            data,
            {"content-type": content_type, "upsert": "true"},
        )
        return bucket.get_public_url(path), None
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to upload profile image: {exc}"


# ---------------------------------------------------------------------------
# Development seeding
# ---------------------------------------------------------------------------


def insert_seed_documents(batch: dict, eggs: list[dict]) -> tuple[int, str | None]:
    """Write one batch and its eggs; returns the number of eggs written."""

    supabase, error = _ensure_supabase_client()
    if error:
        return 0, error
    try:
        supabase.table(table_name("batches")).upsert(
            to_supabase_payload("batches", batch)
        ).execute()
        supabase.table(table_name("eggs")).upsert(
            [to_supabase_payload("eggs", egg) for egg in eggs]
        ).execute()
    except Exception as exc:  # pragma: no cover - network errors
        return 0, f"Failed to seed inspection data: {exc}"
    return len(eggs), None
