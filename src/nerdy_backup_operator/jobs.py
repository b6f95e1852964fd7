from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime, timedelta
import logging
from typing import Any, Iterable, Mapping

from .config import OperatorConfig
from .k8s import KubernetesApiError, KubernetesClients, delete_job, list_jobs, unique_namespaces
from .models import (
    BACKUP_STATUS_COMPLETED,
    BACKUP_STATUS_FAILED,
    BACKUP_STATUS_RUNNING,
    BackupPolicy,
    BackupPolicyStatus,
    StoredBackup,
    Target,
    parse_timestamp,
)
from .schedule import next_run_or_fallback
from .strategy import STRATEGY_SNAPSHOT, policy_labels

logger = logging.getLogger(__name__)

JobKey = tuple[str, str]

_EPOCH = datetime.min.replace(tzinfo=UTC)


def policy_job_labels(policy: BackupPolicy) -> dict[str, str]:
    return policy_labels(policy)


def execution_namespaces(policy: BackupPolicy, targets: Iterable[Target] = ()) -> list[str]:
    return unique_namespaces(
        [policy.namespace],
        policy.spec.namespaces,
        (stored.namespace for stored in policy.status.stored_backups),
        (target.namespace for target in targets),
    )


def list_policy_jobs(clients: KubernetesClients, policy: BackupPolicy, namespaces: Iterable[str]) -> dict[JobKey, Any]:
    labels = policy_job_labels(policy)
    jobs: dict[JobKey, Any] = {}
    for namespace in namespaces:
        try:
            items = list_jobs(clients, namespace, labels)
        except KubernetesApiError as error:
            logger.error(
                "Failed to list backup Jobs in %s for %s/%s: %s", namespace, policy.namespace, policy.name, error
            )
            continue
        for job in items:
            metadata = job.metadata
            jobs[(metadata.namespace or namespace, metadata.name)] = job
    return jobs


def has_active_runs(clients: KubernetesClients, policy: BackupPolicy, targets: Iterable[Target]) -> bool:
    """Return True while any Job owned by ``policy`` has not reached a terminal state.

    Listing failures propagate so the caller does not start an overlapping run
    on incomplete information.
    """
    namespaces = unique_namespaces(
        [policy.namespace],
        policy.spec.namespaces,
        (target.namespace for target in targets),
    )
    labels = policy_job_labels(policy)
    for namespace in namespaces:
        for job in list_jobs(clients, namespace, labels):
            if is_job_active(job):
                logger.info("Backup Job %s/%s is still running", namespace, job.metadata.name)
                return True
    return False


def is_job_active(job: Any) -> bool:
    status = job.status
    if status is None:
        return True
    if (status.active or 0) > 0:
        return True
    return not (status.succeeded or status.failed or status.completion_time)


def reconcile_executions(
    status: BackupPolicyStatus,
    jobs: Mapping[JobKey, Any],
    schedule: str,
) -> tuple[BackupPolicyStatus, bool]:
    changed = False
    latest_completion: datetime | None = None
    updated_records: list[StoredBackup] = []

    for stored in status.stored_backups:
        job = jobs.get((stored.namespace, stored.name))
        if stored.status != BACKUP_STATUS_RUNNING or job is None or job.status is None:
            updated_records.append(stored)
            continue

        job_status = job.status
        if (job_status.succeeded or 0) > 0:
            completed_at = parse_timestamp(job_status.completion_time) or stored.timestamp
            stored = replace(stored, status=BACKUP_STATUS_COMPLETED, timestamp=completed_at)
            if completed_at is not None and (latest_completion is None or completed_at > latest_completion):
                latest_completion = completed_at
            logger.info("Backup %s/%s completed", stored.namespace, stored.name)
            changed = True
        elif (job_status.failed or 0) > 0 and not job_status.active:
            stored = replace(stored, status=BACKUP_STATUS_FAILED)
            logger.warning("Backup %s/%s failed", stored.namespace, stored.name)
            changed = True
        updated_records.append(stored)

    if not changed:
        return status, False
    return _with_records(status, updated_records, latest_completion, schedule), True


def reconcile_snapshot_records(
    status: BackupPolicyStatus,
    snapshots: Mapping[JobKey, StoredBackup],
    schedule: str,
) -> tuple[BackupPolicyStatus, bool]:
    """Carry VolumeSnapshot readiness into Running snapshot records of the ledger.

    ``snapshots`` maps (namespace, name) to the record observed in the cluster.
    A ready snapshot completes its record at the snapshot creation time; a
    snapshot reporting an error fails it.
    """
    changed = False
    latest_completion: datetime | None = None
    updated_records: list[StoredBackup] = []

    for stored in status.stored_backups:
        observed = snapshots.get((stored.namespace, stored.name))
        if stored.status != BACKUP_STATUS_RUNNING or stored.strategy != STRATEGY_SNAPSHOT or observed is None:
            updated_records.append(stored)
            continue

        if observed.status == BACKUP_STATUS_COMPLETED:
            completed_at = observed.timestamp or stored.timestamp
            stored = replace(
                stored,
                status=BACKUP_STATUS_COMPLETED,
                timestamp=completed_at,
                size=observed.size or stored.size,
            )
            if completed_at is not None and (latest_completion is None or completed_at > latest_completion):
                latest_completion = completed_at
            logger.info("Snapshot %s/%s is ready", stored.namespace, stored.name)
            changed = True
        elif observed.status == BACKUP_STATUS_FAILED:
            stored = replace(stored, status=BACKUP_STATUS_FAILED)
            logger.warning("Snapshot %s/%s failed", stored.namespace, stored.name)
            changed = True
        updated_records.append(stored)

    if not changed:
        return status, False
    return _with_records(status, updated_records, latest_completion, schedule), True


def has_pending_executions(status: BackupPolicyStatus, now: datetime, window: timedelta) -> bool:
    """Return True while a Job-backed record dispatched within ``window`` is still Running."""
    for stored in status.stored_backups:
        if stored.status != BACKUP_STATUS_RUNNING or stored.strategy == STRATEGY_SNAPSHOT:
            continue
        if stored.timestamp is not None and now - stored.timestamp <= window:
            return True
    return False


def _with_records(
    status: BackupPolicyStatus,
    records: list[StoredBackup],
    latest_completion: datetime | None,
    schedule: str,
) -> BackupPolicyStatus:
    updated = replace(status, stored_backups=tuple(records))
    if latest_completion is None:
        return updated
    last_backup = latest_completion
    if status.last_backup_time is not None and status.last_backup_time > last_backup:
        last_backup = status.last_backup_time
    upcoming, error = next_run_or_fallback(schedule, last_backup)
    if error is not None:
        logger.warning("%s; using hourly fallback", error)
    return replace(updated, last_backup_time=last_backup, next_run_time=upcoming)


def cleanup_stale_executions(
    clients: KubernetesClients,
    policy: BackupPolicy,
    config: OperatorConfig,
    now: datetime,
    namespaces: Iterable[str] | None = None,
) -> int:
    labels = policy_job_labels(policy)
    deleted = 0
    for namespace in namespaces if namespaces is not None else execution_namespaces(policy):
        try:
            items = list_jobs(clients, namespace, labels)
        except KubernetesApiError as error:
            logger.error("Failed to list backup Jobs in %s for cleanup: %s", namespace, error)
            continue

        completed, failed, running = partition_jobs(items)
        stale = []
        completed.sort(key=lambda job: _job_time(job, "completion_time"), reverse=True)
        stale.extend(completed[config.successful_jobs_history_limit :])
        failed.sort(key=lambda job: _job_time(job, "start_time"), reverse=True)
        stale.extend(failed[config.failed_jobs_history_limit :])
        for job in running:
            started = parse_timestamp(job.status.start_time) if job.status else None
            if started is not None and now - started > config.stuck_job_timeout:
                logger.warning(
                    "Backup Job %s/%s has been running since %s; deleting it as stuck",
                    namespace,
                    job.metadata.name,
                    started.isoformat(),
                )
                stale.append(job)

        for job in stale:
            try:
                delete_job(clients, namespace, job.metadata.name)
            except KubernetesApiError as error:
                logger.error("Failed to delete backup Job %s/%s: %s", namespace, job.metadata.name, error)
                continue
            deleted += 1

    if deleted:
        logger.info("Deleted %d stale backup Job(s) for %s/%s", deleted, policy.namespace, policy.name)
    return deleted


def partition_jobs(jobs: Iterable[Any]) -> tuple[list[Any], list[Any], list[Any]]:
    completed: list[Any] = []
    failed: list[Any] = []
    running: list[Any] = []
    for job in jobs:
        status = job.status
        if status is not None and (status.succeeded or 0) > 0:
            completed.append(job)
        elif status is not None and (status.failed or 0) > 0 and not status.active:
            failed.append(job)
        else:
            running.append(job)
    return completed, failed, running


def _job_time(job: Any, attribute: str) -> datetime:
    value = getattr(job.status, attribute, None) if job.status else None
    return parse_timestamp(value) or parse_timestamp(job.metadata.creation_timestamp) or _EPOCH
