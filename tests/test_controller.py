from __future__ import annotations

from datetime import UTC, datetime, timedelta
from types import SimpleNamespace
from unittest.mock import Mock

import pytest

from nerdy_backup_operator import controller as controller_module
from nerdy_backup_operator.config import OperatorConfig
from nerdy_backup_operator.controller import PolicyReconciler, with_phase
from nerdy_backup_operator.k8s import KubernetesApiError, KubernetesClients
from nerdy_backup_operator.models import (
    BACKUP_STATUS_COMPLETED,
    BACKUP_STATUS_RUNNING,
    PHASE_ACTIVE,
    PHASE_ERROR,
    BackupPolicy,
    BackupPolicySpec,
    BackupPolicyStatus,
    BackupResult,
    Condition,
    StoredBackup,
    Target,
)
from nerdy_backup_operator.strategy import BackupStrategy, BackupStrategyError

NOW = datetime(2026, 3, 1, 12, 2, 30, tzinfo=UTC)


class FakeStrategy(BackupStrategy):
    def __init__(
        self,
        *,
        name: str = "snapshot",
        failing: set[str] | None = None,
        expired: list[StoredBackup] | None = None,
    ) -> None:
        self.name = name
        self.failing = failing or set()
        self.expired = expired or []
        self.prepared: list[str] = []
        self.backed_up: list[str] = []
        self.cleaned: list[str] = []

    def prepare(self, target: Target, policy: BackupPolicy) -> None:
        self.prepared.append(target.name)

    def backup(self, target: Target, policy: BackupPolicy) -> BackupResult:
        if target.name in self.failing:
            raise BackupStrategyError(f"cannot back up {target.name}")
        self.backed_up.append(target.name)
        name = f"{policy.name}-{target.name}-20260301-120230"
        return BackupResult(name=name, location=f"{target.namespace}/{name}", timestamp=NOW, size="1Gi")

    def list_backups(self, target: Target, policy: BackupPolicy) -> list[StoredBackup]:
        return []

    def delete_backup(self, record: StoredBackup, policy: BackupPolicy) -> None:
        return None

    def cleanup(self, target: Target, policy: BackupPolicy) -> list[StoredBackup]:
        self.cleaned.append(target.name)
        return [record for record in self.expired if record.pvc_name == target.name]


@pytest.fixture
def env(monkeypatch: pytest.MonkeyPatch) -> SimpleNamespace:
    state = SimpleNamespace(
        writes=[],
        targets=[Target(namespace="apps", name="db-data", capacity="1Gi")],
        jobs={},
        snapshots={},
        snapshot_namespaces=[],
        busy=False,
        strategy=FakeStrategy(),
    )

    def _patch_status(clients: object, policy: BackupPolicy, status: BackupPolicyStatus) -> None:
        state.writes.append(status)

    monkeypatch.setattr(controller_module, "patch_backup_policy_status", _patch_status)
    monkeypatch.setattr(controller_module, "find_targets", lambda clients, policy: list(state.targets))
    monkeypatch.setattr(controller_module, "list_policy_jobs", lambda clients, policy, namespaces: dict(state.jobs))

    def _list_snapshots(clients: object, policy: BackupPolicy, namespaces: list[str]) -> dict:
        state.snapshot_namespaces.append(list(namespaces))
        return dict(state.snapshots)

    monkeypatch.setattr(controller_module, "list_policy_snapshots", _list_snapshots)
    monkeypatch.setattr(controller_module, "cleanup_stale_executions", lambda clients, policy, config, now: 0)
    monkeypatch.setattr(controller_module, "has_active_runs", lambda clients, policy, targets: state.busy)
    monkeypatch.setattr(
        controller_module,
        "get_backup_strategy",
        lambda policy, clients, config, backend_factory: state.strategy,
    )
    return state


def _clients() -> KubernetesClients:
    return KubernetesClients(api_client=Mock(), core_api=Mock(), batch_api=Mock(), custom_objects_api=Mock())


def _reconciler(now: datetime = NOW) -> PolicyReconciler:
    return PolicyReconciler(_clients(), OperatorConfig(), clock=lambda: now)


def _policy(*, schedule: str = "*/5 * * * *", status: BackupPolicyStatus | None = None, **spec: object) -> BackupPolicy:
    return BackupPolicy(
        name="nightly",
        namespace="apps",
        uid="policy-uid",
        spec=BackupPolicySpec(schedule=schedule, **spec),
        status=status or BackupPolicyStatus(),
    )


def _job(*, succeeded: int | None = None, completion_time: datetime | None = None) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(name="nightly-db-data-1", namespace="apps"),
        status=SimpleNamespace(active=None, succeeded=succeeded, failed=None, completion_time=completion_time),
    )


def test_first_pass_dispatches_backup_and_records_running_entry(env: SimpleNamespace) -> None:
    result = _reconciler().reconcile_policy(_policy())

    assert env.strategy.prepared == ["db-data"]
    assert env.strategy.backed_up == ["db-data"]
    status = env.writes[-1]
    assert status.phase == PHASE_ACTIVE
    assert status.backup_count == 1
    assert status.stored_backups[0].status == BACKUP_STATUS_RUNNING
    assert status.stored_backups[0].pvc_name == "db-data"
    assert status.stored_backups[0].strategy == "snapshot"
    assert status.next_run_time == datetime(2026, 3, 1, 12, 5, tzinfo=UTC)
    assert status.ready_condition().message == "Backup completed successfully"
    assert result.requeue_after == timedelta(seconds=150)
    assert result.error is None


def test_completed_job_moves_record_to_completed_and_advances_schedule(env: SimpleNamespace) -> None:
    completed_at = datetime(2026, 3, 1, 11, 47, tzinfo=UTC)
    running = StoredBackup(
        name="nightly-db-data-1",
        namespace="apps",
        timestamp=datetime(2026, 3, 1, 11, 45, tzinfo=UTC),
        pvc_name="db-data",
        status=BACKUP_STATUS_RUNNING,
    )
    env.jobs = {("apps", "nightly-db-data-1"): _job(succeeded=1, completion_time=completed_at)}
    env.busy = True

    _reconciler().reconcile_policy(_policy(status=BackupPolicyStatus(stored_backups=(running,))))

    lifecycle_write = env.writes[0]
    assert lifecycle_write.stored_backups[0].status == BACKUP_STATUS_COMPLETED
    assert lifecycle_write.last_backup_time == completed_at
    assert lifecycle_write.next_run_time == datetime(2026, 3, 1, 11, 50, tzinfo=UTC)


def test_external_strategy_with_empty_destination_type_sets_error_phase(monkeypatch: pytest.MonkeyPatch, env: SimpleNamespace) -> None:
    from nerdy_backup_operator.strategy import get_backup_strategy

    monkeypatch.setattr(controller_module, "get_backup_strategy", get_backup_strategy)

    result = _reconciler().reconcile_policy(_policy(strategy="external"))

    status = env.writes[-1]
    assert status.phase == PHASE_ERROR
    assert "destination type is required for external strategy" in status.ready_condition().message
    assert status.ready_condition().status == "False"
    assert result.requeue_after == timedelta(seconds=60)
    assert result.error is not None


def test_no_matching_targets_keeps_policy_active(env: SimpleNamespace) -> None:
    env.targets = []

    result = _reconciler().reconcile_policy(_policy())

    assert env.writes[-1].phase == PHASE_ACTIVE
    assert env.writes[-1].ready_condition().message == "No PVCs found matching selector"
    assert result.requeue_after == timedelta(seconds=300)
    assert env.strategy.backed_up == []


def test_pass_before_next_run_time_waits_until_then(env: SimpleNamespace) -> None:
    upcoming = NOW + timedelta(minutes=2)

    result = _reconciler().reconcile_policy(_policy(status=BackupPolicyStatus(next_run_time=upcoming)))

    assert env.strategy.backed_up == []
    assert env.writes[-1].ready_condition().message == "Next backup at 2026-03-01T12:04:30Z"
    assert result.requeue_after == timedelta(minutes=2)


def test_active_jobs_block_new_run(env: SimpleNamespace) -> None:
    env.busy = True

    result = _reconciler().reconcile_policy(_policy())

    assert env.strategy.backed_up == []
    assert env.writes[-1].ready_condition().message == "Previous backup Jobs are still running"
    assert result.requeue_after == timedelta(seconds=60)


def test_guard_failure_sets_error_phase(monkeypatch: pytest.MonkeyPatch, env: SimpleNamespace) -> None:
    def _raise(clients: object, policy: object, targets: object) -> bool:
        raise KubernetesApiError("list failed", status=500)

    monkeypatch.setattr(controller_module, "has_active_runs", _raise)

    result = _reconciler().reconcile_policy(_policy())

    assert env.writes[-1].phase == PHASE_ERROR
    assert env.strategy.backed_up == []
    assert result.requeue_after == timedelta(seconds=60)


def test_partial_failure_counts_errors_and_still_runs_cleanup_for_every_target(env: SimpleNamespace) -> None:
    env.targets = [Target(namespace="apps", name="db-data"), Target(namespace="apps", name="logs")]
    env.strategy = FakeStrategy(failing={"logs"})

    result = _reconciler().reconcile_policy(_policy())

    status = env.writes[-1]
    assert status.phase == PHASE_ERROR
    assert status.ready_condition().message == "Backup completed with 1 errors"
    assert [record.pvc_name for record in status.stored_backups] == ["db-data"]
    assert env.strategy.cleaned == ["db-data", "logs"]
    assert result.requeue_after == timedelta(seconds=60)


def test_retention_deletions_are_removed_from_ledger(env: SimpleNamespace) -> None:
    expired = StoredBackup(
        name="nightly-db-data-old",
        namespace="apps",
        timestamp=NOW - timedelta(days=3),
        pvc_name="db-data",
        status=BACKUP_STATUS_COMPLETED,
    )
    kept = StoredBackup(
        name="nightly-db-data-recent",
        namespace="apps",
        timestamp=NOW - timedelta(days=1),
        pvc_name="db-data",
        status=BACKUP_STATUS_COMPLETED,
    )
    env.strategy = FakeStrategy(expired=[expired])
    status = BackupPolicyStatus(last_backup_time=NOW - timedelta(days=1), stored_backups=(kept, expired))

    _reconciler().reconcile_policy(_policy(status=status))

    names = [record.name for record in env.writes[-1].stored_backups]
    assert names == ["nightly-db-data-20260301-120230", "nightly-db-data-recent"]
    assert env.writes[-1].backup_count == 2


def test_invalid_schedule_sets_error_but_still_runs_on_hourly_fallback(env: SimpleNamespace) -> None:
    result = _reconciler().reconcile_policy(_policy(schedule="every day at noon"))

    status = env.writes[-1]
    assert env.strategy.backed_up == ["db-data"]
    assert status.phase == PHASE_ERROR
    assert "falling back to hourly" in status.ready_condition().message
    assert status.next_run_time == NOW + timedelta(hours=1)
    assert result.requeue_after == timedelta(seconds=60)


def test_status_write_failure_is_logged_not_raised(monkeypatch: pytest.MonkeyPatch, env: SimpleNamespace) -> None:
    def _fail(clients: object, policy: object, status: object) -> None:
        raise KubernetesApiError("conflict", status=409)

    monkeypatch.setattr(controller_module, "patch_backup_policy_status", _fail)

    result = _reconciler().reconcile_policy(_policy())

    assert result.error is None
    assert result.requeue_after == timedelta(seconds=150)


def test_unexpected_exception_becomes_error_result(monkeypatch: pytest.MonkeyPatch, env: SimpleNamespace) -> None:
    def _boom(clients: object, policy: object) -> list[Target]:
        raise RuntimeError("unexpected")

    monkeypatch.setattr(controller_module, "find_targets", _boom)

    result = _reconciler().reconcile_policy(_policy())

    assert result.error == "unexpected"
    assert result.requeue_after == timedelta(seconds=60)


def test_reconcile_with_deleted_policy_returns_without_requeue(monkeypatch: pytest.MonkeyPatch, env: SimpleNamespace) -> None:
    monkeypatch.setattr(controller_module, "read_backup_policy", lambda clients, namespace, name: None)

    result = _reconciler().reconcile("apps", "gone")

    assert result.requeue_after is None
    assert result.error is None


def test_with_phase_keeps_transition_time_while_ready_status_is_unchanged() -> None:
    earlier = NOW - timedelta(hours=5)
    status = BackupPolicyStatus(
        conditions=(Condition(type="Ready", status="True", reason="Scheduled", message="old", last_transition_time=earlier),)
    )

    same = with_phase(status, PHASE_ACTIVE, "BackupSucceeded", "Backup completed successfully", NOW)
    flipped = with_phase(status, PHASE_ERROR, "BackupFailed", "Backup completed with 1 errors", NOW)

    assert same.ready_condition().last_transition_time == earlier
    assert same.ready_condition().message == "Backup completed successfully"
    assert flipped.ready_condition().last_transition_time == NOW
    assert len(flipped.conditions) == 1


def test_dispatched_job_is_polled_before_its_ttl_and_completion_is_recorded(env: SimpleNamespace) -> None:
    env.strategy = FakeStrategy(name="external")

    first = _reconciler().reconcile_policy(_policy(schedule=""))

    dispatched = env.writes[-1]
    assert dispatched.stored_backups[0].strategy == "external"
    assert dispatched.stored_backups[0].status == BACKUP_STATUS_RUNNING
    assert first.requeue_after == timedelta(seconds=60)

    completed_at = NOW + timedelta(seconds=40)
    env.jobs = {
        ("apps", "nightly-db-data-20260301-120230"): SimpleNamespace(
            metadata=SimpleNamespace(name="nightly-db-data-20260301-120230", namespace="apps"),
            status=SimpleNamespace(active=None, succeeded=1, failed=None, completion_time=completed_at),
        )
    }

    second = _reconciler(NOW + first.requeue_after).reconcile_policy(_policy(schedule="", status=dispatched))

    recorded = env.writes[-1]
    assert recorded.stored_backups[0].status == BACKUP_STATUS_COMPLETED
    assert recorded.last_backup_time == completed_at
    assert recorded.next_run_time == completed_at + timedelta(hours=1)
    assert second.requeue_after == timedelta(minutes=59, seconds=40)


def test_running_snapshot_records_are_completed_from_snapshot_readiness(env: SimpleNamespace) -> None:
    ready_at = datetime(2026, 3, 1, 11, 51, tzinfo=UTC)
    running = StoredBackup(
        name="nightly-db-data-20260301-115000",
        namespace="apps",
        timestamp=datetime(2026, 3, 1, 11, 50, tzinfo=UTC),
        pvc_name="db-data",
        status=BACKUP_STATUS_RUNNING,
        strategy="snapshot",
    )
    env.snapshots = {
        ("apps", running.name): StoredBackup(
            name=running.name,
            namespace="apps",
            timestamp=ready_at,
            pvc_name="db-data",
            size="10Gi",
            status=BACKUP_STATUS_COMPLETED,
            strategy="snapshot",
        )
    }

    _reconciler().reconcile_policy(_policy(status=BackupPolicyStatus(stored_backups=(running,))))

    assert env.snapshot_namespaces == [["apps"]]
    lifecycle_write = env.writes[0]
    assert lifecycle_write.stored_backups[0].status == BACKUP_STATUS_COMPLETED
    assert lifecycle_write.stored_backups[0].size == "10Gi"
    assert lifecycle_write.last_backup_time == ready_at


def test_target_resolution_failure_sets_error_phase(monkeypatch: pytest.MonkeyPatch, env: SimpleNamespace) -> None:
    def _fail(clients: object, policy: object) -> list[Target]:
        raise KubernetesApiError("PVC listing failed in every namespace", status=403)

    monkeypatch.setattr(controller_module, "find_targets", _fail)

    result = _reconciler().reconcile_policy(_policy())

    assert env.writes[-1].phase == PHASE_ERROR
    assert "failed to find PVCs" in env.writes[-1].ready_condition().message
    assert env.strategy.backed_up == []
    assert result.requeue_after == timedelta(seconds=60)
