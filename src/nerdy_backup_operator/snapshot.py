from __future__ import annotations

from datetime import UTC, datetime
import logging
from typing import Any, Callable, Iterable

from .config import OperatorConfig
from .k8s import (
    SNAPSHOT_GROUP,
    SNAPSHOT_VERSION,
    KubernetesApiError,
    KubernetesClients,
    create_volume_snapshot,
    delete_volume_snapshot,
    list_volume_snapshots,
)
from .models import (
    BACKUP_STATUS_COMPLETED,
    BACKUP_STATUS_FAILED,
    BACKUP_STATUS_RUNNING,
    BackupPolicy,
    BackupResult,
    StoredBackup,
    Target,
    parse_timestamp,
    utc_now,
)
from .strategy import (
    LABEL_POLICY,
    LABEL_POLICY_NAMESPACE,
    LABEL_PVC,
    LABEL_STRATEGY,
    STRATEGY_SNAPSHOT,
    BackupStrategy,
    BackupStrategyError,
    backup_name,
    owner_reference_for,
    policy_labels,
    select_expired,
    target_labels,
)

logger = logging.getLogger(__name__)


class SnapshotStrategy(BackupStrategy):
    """Point-in-time backups through CSI VolumeSnapshots in the PVC's namespace."""

    name = STRATEGY_SNAPSHOT

    def __init__(
        self,
        *,
        clients: KubernetesClients,
        config: OperatorConfig,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.clients = clients
        self.config = config
        self.clock = clock

    def backup(self, target: Target, policy: BackupPolicy) -> BackupResult:
        now = self.clock()
        snapshot_name = backup_name(policy.name, target.name, now)
        logger.info("Creating VolumeSnapshot %s/%s for PVC %s", target.namespace, snapshot_name, target.name)

        body = build_volume_snapshot(snapshot_name, target, policy)
        try:
            create_volume_snapshot(self.clients, target.namespace, body)
        except KubernetesApiError as error:
            raise BackupStrategyError(
                f"failed to create VolumeSnapshot {target.namespace}/{snapshot_name}: {error}"
            ) from error

        return BackupResult(
            name=snapshot_name,
            location=f"{target.namespace}/{snapshot_name}",
            timestamp=now,
            size=target.capacity or "0",
            metadata={
                "namespace": target.namespace,
                "pvc": target.name,
                "strategy": STRATEGY_SNAPSHOT,
            },
        )

    def list_backups(self, target: Target, policy: BackupPolicy) -> list[StoredBackup]:
        selector = {
            LABEL_POLICY: policy.name,
            LABEL_POLICY_NAMESPACE: policy.namespace,
            LABEL_PVC: target.name,
            LABEL_STRATEGY: STRATEGY_SNAPSHOT,
        }
        try:
            items = list_volume_snapshots(self.clients, target.namespace, selector)
        except KubernetesApiError as error:
            raise BackupStrategyError(
                f"failed to list VolumeSnapshots for pvc {target.namespace}/{target.name}: {error}"
            ) from error

        backups = [snapshot_to_stored_backup(item, target) for item in items]
        backups.sort(key=lambda item: (item.timestamp or datetime.min.replace(tzinfo=UTC), item.name), reverse=True)
        return backups

    def delete_backup(self, record: StoredBackup, policy: BackupPolicy) -> None:
        try:
            delete_volume_snapshot(self.clients, record.namespace, record.name)
        except KubernetesApiError as error:
            raise BackupStrategyError(
                f"failed to delete VolumeSnapshot {record.namespace}/{record.name}: {error}"
            ) from error

    def cleanup(self, target: Target, policy: BackupPolicy) -> list[StoredBackup]:
        backups = self.list_backups(target, policy)
        if not backups:
            return []

        deleted: list[StoredBackup] = []
        for record in select_expired(backups, policy.spec.retention, self.clock()):
            try:
                self.delete_backup(record, policy)
            except BackupStrategyError as error:
                logger.error("Failed to delete expired snapshot %s/%s: %s", record.namespace, record.name, error)
                continue
            deleted.append(record)

        if deleted:
            logger.info(
                "Snapshot cleanup for PVC %s/%s deleted %d snapshot(s)", target.namespace, target.name, len(deleted)
            )
        return deleted


def list_policy_snapshots(
    clients: KubernetesClients, policy: BackupPolicy, namespaces: Iterable[str]
) -> dict[tuple[str, str], StoredBackup]:
    selector = {**policy_labels(policy), LABEL_STRATEGY: STRATEGY_SNAPSHOT}
    observed: dict[tuple[str, str], StoredBackup] = {}
    for namespace in namespaces:
        try:
            items = list_volume_snapshots(clients, namespace, selector)
        except KubernetesApiError as error:
            logger.error(
                "Failed to list VolumeSnapshots in %s for %s/%s: %s", namespace, policy.namespace, policy.name, error
            )
            continue
        for item in items:
            labels = (item.get("metadata") or {}).get("labels") or {}
            record = snapshot_to_stored_backup(item, Target(namespace=namespace, name=labels.get(LABEL_PVC, "")))
            observed[(record.namespace, record.name)] = record
    return observed


def build_volume_snapshot(snapshot_name: str, target: Target, policy: BackupPolicy) -> dict[str, Any]:
    metadata: dict[str, Any] = {
        "name": snapshot_name,
        "namespace": target.namespace,
        "labels": target_labels(policy, target, STRATEGY_SNAPSHOT),
    }
    owner_reference = owner_reference_for(policy, target.namespace)
    if owner_reference is not None:
        metadata["ownerReferences"] = [owner_reference]

    return {
        "apiVersion": f"{SNAPSHOT_GROUP}/{SNAPSHOT_VERSION}",
        "kind": "VolumeSnapshot",
        "metadata": metadata,
        "spec": {
            "source": {
                "persistentVolumeClaimName": target.name,
            },
        },
    }


def snapshot_to_stored_backup(item: dict[str, Any], target: Target) -> StoredBackup:
    metadata = item.get("metadata") or {}
    status = item.get("status") or {}
    namespace = metadata.get("namespace") or target.namespace
    name = metadata.get("name") or ""

    record_status = BACKUP_STATUS_RUNNING
    if status.get("error"):
        record_status = BACKUP_STATUS_FAILED
    elif status.get("readyToUse") is True:
        record_status = BACKUP_STATUS_COMPLETED

    timestamp = _creation_time(status.get("creationTime")) or parse_timestamp(metadata.get("creationTimestamp"))

    return StoredBackup(
        name=name,
        namespace=namespace,
        timestamp=timestamp,
        pvc_name=target.name,
        size=str(status.get("restoreSize") or ""),
        location=f"{namespace}/{name}",
        status=record_status,
        strategy=STRATEGY_SNAPSHOT,
    )


def _creation_time(value: Any) -> datetime | None:
    if isinstance(value, dict):
        try:
            seconds = int(float(value.get("seconds") or 0))
            nanos = int(float(value.get("nanos") or 0))
        except (TypeError, ValueError):
            return None
        if seconds == 0 and nanos == 0:
            return None
        return datetime.fromtimestamp(seconds + nanos / 1_000_000_000, tz=UTC)
    return parse_timestamp(value)
