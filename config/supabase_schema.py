"""Centralised Supabase table and column configuration.

The dashboard reads inspection data written by the sorting machines and keeps
its own user, notification and device tables in Supabase.  Each table name and
column identifier used by the code base is defined here so that deployments
can adjust naming conventions (for example the camelCase collections
carried over from an earlier document store) without modifying application logic.  When a
mapping for a particular table or column is not present the helper functions
fall back to the identifier supplied by the caller.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping


@dataclass(frozen=True)
class SupabaseTable:
    """Configuration for a Supabase table."""

    name: str
    columns: Mapping[str, str] = field(default_factory=dict)


# Default table and column mappings. These act as fallbacks if no environment
# overrides are supplied.
_DEFAULT_SUPABASE_SCHEMA: Dict[str, SupabaseTable] = {
    "users": SupabaseTable(
        name="users",
        columns={
            "id": "id",
            "account_id": "account_id",
            "username": "username",
            "full_name": "full_name",
            "email": "email",
            "phone": "phone",
            "address": "address",
            "password_hash": "password_hash",
            "verified": "verified",
            "verification_otp": "verification_otp",
            "otp_expiry": "otp_expiry",
            "reset_token_hash": "reset_token_hash",
            "reset_token_expiry": "reset_token_expiry",
            "linked_machines": "linked_machines",
            "profile_image_url": "profile_image_url",
            "created_at": "created_at",
            "updated_at": "updated_at",
            "last_login": "last_login",
        },
    ),
    "eggs": SupabaseTable(
        name="eggs",
        columns={
            "id": "id",
            "account_id": "account_id",
            "batch_id": "batch_id",
            "machine_id": "machine_id",
            "quality": "quality",
            "size": "size",
            "weight": "weight",
            "confidence": "confidence",
            "image_id": "image_id",
            "image_url": "image_url",
            "created_at": "created_at",
        },
    ),
    "batches": SupabaseTable(
        name="batches",
        columns={
            "id": "id",
            "account_id": "account_id",
            "machine_id": "machine_id",
            "status": "status",
            "stats": "stats",
            "created_at": "created_at",
            "updated_at": "updated_at",
        },
    ),
    "defect_logs": SupabaseTable(
        name="defect_logs",
        columns={
            "id": "id",
            "machine_id": "machine_id",
            "batch_id": "batch_id",
            "defect_type": "defect_type",
            "confidence_score": "confidence_score",
            "image_id": "image_id",
            "timestamp": "timestamp",
        },
    ),
    "weight_logs": SupabaseTable(
        name="weight_logs",
        columns={
            "id": "id",
            "machine_id": "machine_id",
            "batch_id": "batch_id",
            "size": "size",
            "weight": "weight",
            "timestamp": "timestamp",
        },
    ),
    "notification_settings": SupabaseTable(
        name="notification_settings",
        columns={
            "user_id": "user_id",
            "notifications_enabled": "notifications_enabled",
            "email_notifications": "email_notifications",
            "in_app_notifications": "in_app_notifications",
            "push_notifications_enabled": "push_notifications_enabled",
            "updated_at": "updated_at",
        },
    ),
    "notifications": SupabaseTable(
        name="notifications",
        columns={
            "id": "id",
            "user_id": "user_id",
            "title": "title",
            "message": "message",
            "type": "type",
            "read": "read",
            "created_at": "created_at",
        },
    ),
    "fcm_tokens": SupabaseTable(
        name="fcm_tokens",
        columns={
            "user_id": "user_id",
            "token": "token",
            "updated_at": "updated_at",
        },
    ),
}


def _normalise_columns(columns: Any) -> Dict[str, str]:
    """Return a string-to-string column mapping from ``columns``."""

    if not isinstance(columns, Mapping):
        return {}
    return {
        str(logical): str(actual)
        for logical, actual in columns.items()
        if isinstance(logical, str) and isinstance(actual, str)
    }


def _load_schema_from_env() -> Dict[str, SupabaseTable]:
    """Build the Supabase schema from environment overrides."""

    schema = dict(_DEFAULT_SUPABASE_SCHEMA)

    raw_schema = os.getenv("SUPABASE_SCHEMA_JSON")
    if not raw_schema:
        return schema

    try:
        parsed = json.loads(raw_schema)
    except json.JSONDecodeError:
        return schema

    if not isinstance(parsed, Mapping):
        return schema

    for identifier, entry in parsed.items():
        if not isinstance(identifier, str) or not isinstance(entry, Mapping):
            continue

        name = entry.get("name")
        if not isinstance(name, str) or not name:
            continue

        columns = _normalise_columns(entry.get("columns", {}))
        schema[identifier] = SupabaseTable(name=name, columns=columns)

    return schema


SUPABASE_SCHEMA: Dict[str, SupabaseTable] = _load_schema_from_env()


def table_name(identifier: str) -> str:
    """Return the configured Supabase table name for ``identifier``."""

    table = SUPABASE_SCHEMA.get(identifier)
    if table:
        return table.name
    return identifier


def column_name(table_identifier: str, column_identifier: str) -> str:
    """Return the configured column name for ``table_identifier``."""

    table = SUPABASE_SCHEMA.get(table_identifier)
    if table and column_identifier in table.columns:
        return table.columns[column_identifier]
    return column_identifier


def table_columns(table_identifier: str) -> Mapping[str, str]:
    """Return the configured column mapping for ``table_identifier``."""

    table = SUPABASE_SCHEMA.get(table_identifier)
    if table:
        return table.columns
    return {}


def to_supabase_payload(
    table_identifier: str, payload: Mapping[str, Any]
) -> Dict[str, Any]:
    """Return ``payload`` with keys mapped to Supabase column names."""

    columns = table_columns(table_identifier)
    if not columns:
        return dict(payload)
    return {columns.get(key, key): value for key, value in payload.items()}
