from __future__ import annotations

from datetime import UTC, datetime, timedelta

from nerdy_backup_operator.ledger import MAX_STATUS_HISTORY, backup_key, merge_and_normalize
from nerdy_backup_operator.models import BACKUP_STATUS_COMPLETED, BACKUP_STATUS_RUNNING, StoredBackup

BASE = datetime(2026, 1, 1, tzinfo=UTC)


def _stored(name: str, *, namespace: str = "apps", minutes: int = 0, status: str = BACKUP_STATUS_RUNNING) -> StoredBackup:
    return StoredBackup(
        name=name,
        namespace=namespace,
        timestamp=BASE + timedelta(minutes=minutes),
        pvc_name="data",
        status=status,
    )


def test_merge_and_normalize_with_205_records_keeps_newest_200() -> None:
    existing = [_stored(f"backup-{index:03d}", minutes=index) for index in range(205)]

    merged = merge_and_normalize(existing)

    assert len(merged) == MAX_STATUS_HISTORY
    assert merged[0].name == "backup-204"
    assert merged[-1].name == "backup-005"


def test_merge_and_normalize_with_duplicate_key_prefers_new_record() -> None:
    existing = [_stored("backup-a", minutes=1)]
    new = [_stored("backup-a", minutes=5, status=BACKUP_STATUS_COMPLETED)]

    merged = merge_and_normalize(existing, new)

    assert merged == [new[0]]


def test_merge_and_normalize_treats_same_name_in_other_namespace_as_distinct() -> None:
    merged = merge_and_normalize([_stored("backup-a", namespace="apps")], [_stored("backup-a", namespace="db")])

    assert [(item.namespace, item.name) for item in merged] == [("db", "backup-a"), ("apps", "backup-a")]


def test_merge_and_normalize_drops_removed_keys() -> None:
    existing = [_stored("backup-a", minutes=1), _stored("backup-b", minutes=2)]

    merged = merge_and_normalize(existing, removed=[backup_key("apps", "backup-a")])

    assert [item.name for item in merged] == ["backup-b"]


def test_merge_and_normalize_is_independent_of_input_order() -> None:
    records = [
        _stored("backup-a", minutes=3),
        _stored("backup-b", minutes=3),
        _stored("backup-c", namespace="db", minutes=3),
        StoredBackup(name="backup-untimed", namespace="apps"),
    ]

    forward = merge_and_normalize(records)
    backward = merge_and_normalize(list(reversed(records)))

    assert forward == backward
    assert [item.name for item in forward] == ["backup-c", "backup-b", "backup-a", "backup-untimed"]


def test_merge_and_normalize_does_not_mutate_inputs() -> None:
    existing = [_stored("backup-b", minutes=1), _stored("backup-a", minutes=2)]
    snapshot = list(existing)

    merge_and_normalize(existing, [_stored("backup-c", minutes=3)])

    assert existing == snapshot
