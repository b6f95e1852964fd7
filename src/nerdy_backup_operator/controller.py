from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
import logging
from typing import Callable

from .config import OperatorConfig
from .jobs import (
    cleanup_stale_executions,
    execution_namespaces,
    has_active_runs,
    has_pending_executions,
    list_policy_jobs,
    reconcile_executions,
    reconcile_snapshot_records,
)
from .k8s import KubernetesApiError, KubernetesClients, find_targets, patch_backup_policy_status, read_backup_policy
from .ledger import backup_key, merge_and_normalize
from .models import (
    BACKUP_STATUS_RUNNING,
    CONDITION_READY,
    PHASE_ACTIVE,
    PHASE_ERROR,
    BackupPolicy,
    BackupPolicyStatus,
    Condition,
    ReconcileResult,
    StoredBackup,
    format_timestamp,
    utc_now,
)
from .schedule import next_run_or_fallback, should_run_now
from .snapshot import list_policy_snapshots
from .storage import StorageError, new_backend
from .strategy import STRATEGY_SNAPSHOT, BackendFactory, BackupStrategyError, get_backup_strategy

logger = logging.getLogger(__name__)

MIN_REQUEUE = timedelta(seconds=1)

REASON_BACKUP_SUCCEEDED = "BackupSucceeded"
REASON_BACKUP_FAILED = "BackupFailed"
REASON_SCHEDULED = "Scheduled"
REASON_INVALID_SCHEDULE = "InvalidSchedule"
REASON_STRATEGY_ERROR = "StrategyError"
REASON_TARGETS_FAILED = "TargetResolutionFailed"
REASON_NO_TARGETS = "NoTargets"
REASON_JOBS_ACTIVE = "JobsActive"
REASON_GUARD_FAILED = "ConcurrencyCheckFailed"


class PolicyReconciler:
    """Runs one level-triggered reconciliation pass for a BackupPolicy.

    A pass keeps no state between invocations: everything it needs comes from
    the policy object and the Jobs and snapshots labeled with its identity.
    """

    def __init__(
        self,
        clients: KubernetesClients,
        config: OperatorConfig,
        *,
        backend_factory: BackendFactory = new_backend,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.clients = clients
        self.config = config
        self.backend_factory = backend_factory
        self.clock = clock

    def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        try:
            policy = read_backup_policy(self.clients, namespace, name)
        except KubernetesApiError as error:
            logger.error("Failed to read BackupPolicy %s/%s: %s", namespace, name, error)
            return ReconcileResult(requeue_after=self.config.requeue_after_error, error=str(error))
        if policy is None:
            logger.info("BackupPolicy %s/%s no longer exists", namespace, name)
            return ReconcileResult()
        return self.reconcile_policy(policy)

    def reconcile_policy(self, policy: BackupPolicy) -> ReconcileResult:
        try:
            return self._reconcile(policy)
        except Exception as error:  # pylint: disable=broad-except
            logger.exception("Unexpected failure reconciling BackupPolicy %s/%s", policy.namespace, policy.name)
            return ReconcileResult(requeue_after=self.config.requeue_after_error, error=str(error))

    def _reconcile(self, policy: BackupPolicy) -> ReconcileResult:
        now = self.clock()
        schedule = policy.spec.schedule
        logger.debug("Reconciling BackupPolicy %s/%s", policy.namespace, policy.name)

        policy = self._reconcile_lifecycle(policy, now)
        status = policy.status

        try:
            strategy = get_backup_strategy(policy, self.clients, self.config, self.backend_factory)
        except BackupStrategyError as error:
            message = f"failed to get backup strategy: {error}"
            logger.error("BackupPolicy %s/%s: %s", policy.namespace, policy.name, message)
            return self._error(policy, status, now, REASON_STRATEGY_ERROR, message)

        try:
            targets = find_targets(self.clients, policy)
        except KubernetesApiError as error:
            message = f"failed to find PVCs: {error}"
            return self._error(policy, status, now, REASON_TARGETS_FAILED, message)

        if not targets:
            logger.info("No PVCs match BackupPolicy %s/%s", policy.namespace, policy.name)
            return self._finish(
                policy,
                status,
                now,
                PHASE_ACTIVE,
                REASON_NO_TARGETS,
                "No PVCs found matching selector",
                self.config.requeue_after_success,
            )

        decision = should_run_now(status, schedule, now)
        if decision.error is not None:
            logger.warning("BackupPolicy %s/%s: %s", policy.namespace, policy.name, decision.error)
        if not decision.run:
            status = replace(status, next_run_time=decision.next_run)
            if decision.error is not None:
                return self._finish(
                    policy,
                    status,
                    now,
                    PHASE_ERROR,
                    REASON_INVALID_SCHEDULE,
                    f"{decision.error}; falling back to hourly",
                    self.config.requeue_after_error,
                    error=str(decision.error),
                )
            return self._finish(
                policy,
                status,
                now,
                PHASE_ACTIVE,
                REASON_SCHEDULED,
                f"Next backup at {format_timestamp(decision.next_run)}",
                decision.next_run - now,
            )

        try:
            busy = has_active_runs(self.clients, policy, targets)
        except KubernetesApiError as error:
            message = f"failed to check for running backup Jobs: {error}"
            return self._error(policy, status, now, REASON_GUARD_FAILED, message)
        if busy:
            return self._finish(
                policy,
                status,
                now,
                PHASE_ACTIVE,
                REASON_JOBS_ACTIVE,
                "Previous backup Jobs are still running",
                self.config.requeue_while_job_active,
            )

        logger.info(
            "Starting %s backup for BackupPolicy %s/%s over %d PVC(s)",
            strategy.name,
            policy.namespace,
            policy.name,
            len(targets),
        )
        new_records: list[StoredBackup] = []
        removed: list[tuple[str, str]] = []
        failures = 0
        for target in targets:
            try:
                strategy.prepare(target, policy)
                result = strategy.backup(target, policy)
            except (BackupStrategyError, KubernetesApiError, StorageError) as error:
                failures += 1
                logger.error("Backup of PVC %s/%s failed: %s", target.namespace, target.name, error)
            else:
                new_records.append(
                    StoredBackup(
                        name=result.name,
                        namespace=target.namespace,
                        timestamp=result.timestamp,
                        pvc_name=target.name,
                        size=result.size,
                        location=result.location,
                        status=BACKUP_STATUS_RUNNING,
                        strategy=strategy.name,
                    )
                )

            try:
                deleted = strategy.cleanup(target, policy)
            except (BackupStrategyError, KubernetesApiError, StorageError) as error:
                logger.warning("Retention cleanup for PVC %s/%s failed: %s", target.namespace, target.name, error)
                continue
            removed.extend(backup_key(record.namespace, record.name) for record in deleted)

        stored_backups = merge_and_normalize(status.stored_backups, new_records, removed)
        upcoming, schedule_error = next_run_or_fallback(schedule, now)
        status = replace(
            status,
            stored_backups=tuple(stored_backups),
            backup_count=len(stored_backups),
            next_run_time=upcoming,
        )

        if failures:
            message = f"Backup completed with {failures} errors"
            return self._error(policy, status, now, REASON_BACKUP_FAILED, message)
        if schedule_error is not None:
            return self._finish(
                policy,
                status,
                now,
                PHASE_ERROR,
                REASON_INVALID_SCHEDULE,
                f"{schedule_error}; falling back to hourly",
                self.config.requeue_after_error,
                error=str(schedule_error),
            )
        return self._finish(
            policy,
            status,
            now,
            PHASE_ACTIVE,
            REASON_BACKUP_SUCCEEDED,
            "Backup completed successfully",
            upcoming - now,
        )

    def _reconcile_lifecycle(self, policy: BackupPolicy, now: datetime) -> BackupPolicy:
        jobs = list_policy_jobs(self.clients, policy, execution_namespaces(policy))
        status, changed = reconcile_executions(policy.status, jobs, policy.spec.schedule)

        snapshot_namespaces = sorted(
            {
                stored.namespace
                for stored in status.stored_backups
                if stored.status == BACKUP_STATUS_RUNNING and stored.strategy == STRATEGY_SNAPSHOT
            }
        )
        if snapshot_namespaces:
            snapshots = list_policy_snapshots(self.clients, policy, snapshot_namespaces)
            status, snapshots_changed = reconcile_snapshot_records(status, snapshots, policy.spec.schedule)
            changed = changed or snapshots_changed

        if changed:
            self._write_status(policy, status)
            policy = replace(policy, status=status)
        cleanup_stale_executions(self.clients, policy, self.config, now)
        return policy

    def _finish(
        self,
        policy: BackupPolicy,
        status: BackupPolicyStatus,
        now: datetime,
        phase: str,
        reason: str,
        message: str,
        requeue_after: timedelta,
        *,
        error: str | None = None,
    ) -> ReconcileResult:
        status = with_phase(status, phase, reason, message, now)
        if status != policy.status:
            self._write_status(policy, status)
        if has_pending_executions(status, now, self.config.stuck_job_timeout):
            # Finished Jobs are garbage collected after their TTL, so poll before that.
            requeue_after = min(requeue_after, self.config.requeue_while_job_active)
        return ReconcileResult(requeue_after=max(requeue_after, MIN_REQUEUE), error=error)

    def _error(
        self, policy: BackupPolicy, status: BackupPolicyStatus, now: datetime, reason: str, message: str
    ) -> ReconcileResult:
        return self._finish(
            policy, status, now, PHASE_ERROR, reason, message, self.config.requeue_after_error, error=message
        )

    def _write_status(self, policy: BackupPolicy, status: BackupPolicyStatus) -> None:
        try:
            patch_backup_policy_status(self.clients, policy, status)
        except KubernetesApiError as error:
            logger.error("Failed to update status of BackupPolicy %s/%s: %s", policy.namespace, policy.name, error)


def with_phase(status: BackupPolicyStatus, phase: str, reason: str, message: str, now: datetime) -> BackupPolicyStatus:
    ready_status = "True" if phase == PHASE_ACTIVE else "False"
    previous = status.ready_condition()
    transition_time = now
    if previous is not None and previous.status == ready_status and previous.last_transition_time is not None:
        transition_time = previous.last_transition_time

    ready = Condition(
        type=CONDITION_READY,
        status=ready_status,
        reason=reason,
        message=message,
        last_transition_time=transition_time,
    )
    if previous is None:
        conditions = (*status.conditions, ready)
    else:
        conditions = tuple(ready if condition.type == CONDITION_READY else condition for condition in status.conditions)
    return replace(status, phase=phase, conditions=conditions)
