from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

from nerdy_backup_operator.models import (
    BACKUP_STATUS_RUNNING,
    BackupPolicy,
    BackupPolicyStatus,
    Condition,
    StoredBackup,
    format_timestamp,
    parse_timestamp,
)


def _policy_document() -> dict:
    return {
        "apiVersion": "backup.nerdy.io/v1alpha1",
        "kind": "BackupPolicy",
        "metadata": {"name": "nightly", "namespace": "apps", "uid": "uid-1"},
        "spec": {
            "schedule": " 0 2 * * * ",
            "strategy": "External",
            "selector": {"matchLabels": {"backup": "true"}},
            "namespaces": ["db", " ", "web"],
            "retention": {"maxBackups": 7, "maxAge": "168h"},
            "destination": {"type": "S3", "url": "s3://backups/cluster-a", "credentialsSecret": "s3-creds"},
            "restore": {"namespace": "restore", "selector": {"matchLabels": {"restore": "true"}}},
        },
        "status": {
            "phase": "Active",
            "lastBackupTime": "2026-03-01T02:00:00Z",
            "backupCount": 1,
            "storedBackups": [
                {"name": "nightly-db-20260301-020000", "namespace": "db", "pvcName": "db", "status": "Completed"}
            ],
            "conditions": [{"type": "Ready", "status": "True", "reason": "BackupSucceeded", "message": "ok"}],
        },
    }


def test_parse_timestamp_accepts_z_suffix_and_naive_values() -> None:
    assert parse_timestamp("2026-03-01T02:00:00Z") == datetime(2026, 3, 1, 2, 0, tzinfo=UTC)
    assert parse_timestamp("2026-03-01T02:00:00") == datetime(2026, 3, 1, 2, 0, tzinfo=UTC)
    assert parse_timestamp(datetime(2026, 3, 1, 4, 0, tzinfo=timezone(timedelta(hours=2)))) == datetime(
        2026, 3, 1, 2, 0, tzinfo=UTC
    )


def test_parse_timestamp_with_empty_or_invalid_value_returns_none() -> None:
    assert parse_timestamp(None) is None
    assert parse_timestamp("") is None
    assert parse_timestamp("yesterday") is None


def test_format_timestamp_renders_utc_seconds_with_z_suffix() -> None:
    value = datetime(2026, 3, 1, 4, 0, 5, 123456, tzinfo=timezone(timedelta(hours=2)))

    assert format_timestamp(value) == "2026-03-01T02:00:05Z"
    assert format_timestamp(None) is None


def test_backup_policy_from_dict_normalizes_spec_fields() -> None:
    policy = BackupPolicy.from_dict(_policy_document())

    assert policy.name == "nightly"
    assert policy.api_version == "backup.nerdy.io/v1alpha1"
    assert policy.spec.schedule == "0 2 * * *"
    assert policy.spec.strategy == "external"
    assert policy.spec.namespaces == ("db", "web")
    assert policy.spec.retention.max_backups == 7
    assert policy.spec.destination.type == "s3"
    assert policy.spec.destination.credentials_secret == "s3-creds"
    assert policy.spec.restore.match_labels == {"restore": "true"}
    assert policy.status.backup_count == 1
    assert policy.status.stored_backups[0].pvc_name == "db"
    assert policy.status.ready_condition() is not None


def test_backup_policy_from_dict_with_minimal_document_uses_defaults() -> None:
    policy = BackupPolicy.from_dict({"metadata": {"name": "bare", "namespace": "apps"}})

    assert policy.spec.schedule == ""
    assert policy.spec.match_labels == {}
    assert policy.status.phase == ""
    assert policy.status.stored_backups == ()
    assert policy.status.ready_condition() is None


def test_stored_backup_without_status_defaults_to_running() -> None:
    assert StoredBackup.from_dict({"name": "job", "namespace": "apps"}).status == BACKUP_STATUS_RUNNING


def test_status_to_dict_uses_camel_case_keys() -> None:
    status = BackupPolicyStatus(
        phase="Active",
        next_run_time=datetime(2026, 3, 2, 2, 0, tzinfo=UTC),
        backup_count=1,
        stored_backups=(
            StoredBackup(
                name="nightly-db-20260301-020000",
                namespace="db",
                timestamp=datetime(2026, 3, 1, 2, 0, tzinfo=UTC),
                pvc_name="db",
                status="Completed",
                strategy="snapshot",
            ),
        ),
        conditions=(Condition(type="Ready", status="True", reason="BackupSucceeded", message="ok"),),
    )

    document = status.to_dict()

    assert document["nextRunTime"] == "2026-03-02T02:00:00Z"
    assert document["lastBackupTime"] is None
    assert document["storedBackups"][0]["pvcName"] == "db"
    assert document["storedBackups"][0]["timestamp"] == "2026-03-01T02:00:00Z"
    assert document["conditions"][0]["lastTransitionTime"] is None
    assert BackupPolicyStatus.from_dict(document) == status
