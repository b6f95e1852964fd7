from __future__ import annotations

from datetime import UTC, datetime
from typing import Iterable

from .models import StoredBackup

MAX_STATUS_HISTORY = 200

_EPOCH = datetime.min.replace(tzinfo=UTC)


def backup_key(namespace: str, name: str) -> tuple[str, str]:
    return namespace, name


def merge_and_normalize(
    existing: Iterable[StoredBackup],
    new: Iterable[StoredBackup] = (),
    removed: Iterable[tuple[str, str]] = (),
    *,
    limit: int = MAX_STATUS_HISTORY,
) -> list[StoredBackup]:
    """Deduplicate by (namespace, name), sort newest first and cap the history.

    Records in ``new`` replace existing records with the same key. Ties on
    timestamp are broken by namespace and then name, both descending, so the
    output does not depend on input order.
    """
    merged: dict[tuple[str, str], StoredBackup] = {}
    for stored in existing:
        merged[backup_key(stored.namespace, stored.name)] = stored
    for stored in new:
        merged[backup_key(stored.namespace, stored.name)] = stored
    for key in removed:
        merged.pop(key, None)

    ordered = sorted(merged.values(), key=_sort_key, reverse=True)
    return ordered[: max(0, limit)]


def _sort_key(stored: StoredBackup) -> tuple[datetime, str, str]:
    return stored.timestamp or _EPOCH, stored.namespace, stored.name
