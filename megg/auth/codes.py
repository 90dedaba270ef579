"""Account identifiers, password-reset tokens and email verification codes."""

from __future__ import annotations

import hashlib
import hmac
import re
import secrets
import time
from datetime import datetime, timedelta, timezone
from typing import Callable

ACCOUNT_ID_PATTERN = re.compile(r"^MEGG-\d{6}$")
ACCOUNT_ID_ATTEMPTS = 50

RESET_TOKEN_TTL = timedelta(hours=1)
OTP_TTL = timedelta(minutes=15)
OTP_LENGTH = 6


class AccountIdUnavailable(RuntimeError):
    """Raised when no unused account identifier could be found."""


def generate_account_id() -> str:
    return f"MEGG-{secrets.randbelow(1_000_000):06d}"


def validate_account_id(account_id: str | None) -> bool:
    return bool(account_id) and bool(ACCOUNT_ID_PATTERN.match(account_id))


def generate_unique_account_id(
    exists: Callable[[str], bool],
    *,
    attempts: int = ACCOUNT_ID_ATTEMPTS,
    clock: Callable[[], float] = time.time,
) -> str:
    """Return an account identifier for which ``exists`` is false.

    Random identifiers are tried first; after ``attempts`` collisions the last
    six digits of the current millisecond timestamp are used instead.
    """

    for _ in range(attempts):
        candidate = generate_account_id()
        if not exists(candidate):
            return candidate

    fallback = f"MEGG-{str(int(clock() * 1000))[-6:]}"
    if exists(fallback):
        raise AccountIdUnavailable("Unable to generate unique account ID after all attempts")
    return fallback


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_reset_token(now: datetime | None = None) -> tuple[str, str, datetime]:
    """Return ``(token, token_hash, expires_at)``; only the hash is stored."""

    token = secrets.token_hex(32)
    expires_at = (now or datetime.now(timezone.utc)) + RESET_TOKEN_TTL
    return token, hash_token(token), expires_at


def _as_datetime(value) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str) and value:
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def is_expired(expires_at, now: datetime | None = None) -> bool:
    expiry = _as_datetime(expires_at)
    if expiry is None:
        return True
    return (now or datetime.now(timezone.utc)) >= expiry


def verify_reset_token(token: str, stored_hash: str | None, expires_at, now: datetime | None = None) -> bool:
    if not token or not stored_hash or is_expired(expires_at, now):
        return False
    return hmac.compare_digest(hash_token(token), stored_hash)


def generate_otp(now: datetime | None = None) -> tuple[str, datetime]:
    code = "".join(secrets.choice("0123456789") for _ in range(OTP_LENGTH))
    return code, (now or datetime.now(timezone.utc)) + OTP_TTL


def verify_otp(submitted: str, stored: str | None, expires_at, now: datetime | None = None) -> bool:
    submitted = (submitted or "").strip()
    if len(submitted) != OTP_LENGTH or not submitted.isdigit() or not stored:
        return False
    if is_expired(expires_at, now):
        return False
    return hmac.compare_digest(submitted, str(stored))
