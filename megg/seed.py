"""Sample inspection data for development databases."""

from __future__ import annotations

import random
import string
from datetime import datetime, timezone

SEED_BATCH_ID = "B-971318-0001"
SEED_ACCOUNT_ID = "MEGG-971318"

WEIGHT_RANGES: dict[str, tuple[float, float]] = {
    "small": (35.0, 42.99),
    "medium": (43.0, 50.99),
    "large": (51.0, 58.0),
}

# quality -> number of eggs at each size (small, medium, large)
SEED_PLAN: dict[str, tuple[int, int, int]] = {
    "bad": (2, 2, 1),
    "dirty": (3, 3, 2),
    "good": (5, 5, 3),
}

_ID_ALPHABET = string.ascii_lowercase + string.digits


def _egg_id(rng: random.Random) -> str:
    return "".join(rng.choice(_ID_ALPHABET) for _ in range(8))


def _weight(size: str, rng: random.Random) -> float:
    low, high = WEIGHT_RANGES[size]
    return rng.randint(int(low * 10), int(high * 10)) / 10


def build_seed_documents(
    account_id: str = SEED_ACCOUNT_ID,
    batch_id: str = SEED_BATCH_ID,
    *,
    rng: random.Random | None = None,
    now: datetime | None = None,
) -> tuple[dict, list[dict]]:
    """Return a batch document and its 26 egg documents."""

    rng = rng or random.Random()
    created = (now or datetime.now(timezone.utc)).isoformat()
    eggs: list[dict] = []
    for quality, per_size in SEED_PLAN.items():
        for size, count in zip(("small", "medium", "large"), per_size):
            for _ in range(count):
                eggs.append(
                    {
                        "id": _egg_id(rng),
                        "account_id": account_id,
                        "batch_id": batch_id,
                        "quality": quality,
                        "size": size,
                        "weight": _weight(size, rng),
                        "created_at": created,
                    }
                )

    def tally(key: str, value: str) -> int:
        return sum(1 for egg in eggs if egg[key] == value)

    batch = {
        "id": batch_id,
        "account_id": account_id,
        "status": "ready",
        "created_at": created,
        "updated_at": created,
        "stats": {
            "goodEggs": tally("quality", "good"),
            "dirtyEggs": tally("quality", "dirty"),
            "crackedEggs": tally("quality", "cracked"),
            "badEggs": tally("quality", "bad"),
            "smallEggs": tally("size", "small"),
            "mediumEggs": tally("size", "medium"),
            "largeEggs": tally("size", "large"),
            "totalEggs": len(eggs),
        },
    }
    return batch, eggs
