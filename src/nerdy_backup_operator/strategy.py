from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
import logging
import re
from typing import Callable, Iterable

from .config import OperatorConfig
from .k8s import KubernetesApiError, KubernetesClients, decode_secret_data, read_secret
from .models import BackupPolicy, BackupResult, Retention, StoredBackup, Target
from .storage import StorageBackend, StorageConfig, StorageError, new_backend, parse_nfs_url, parse_s3_url

logger = logging.getLogger(__name__)

LABEL_PREFIX = "backup.nerdy.io"
LABEL_POLICY = f"{LABEL_PREFIX}/policy"
LABEL_PVC = f"{LABEL_PREFIX}/pvc"
LABEL_STRATEGY = f"{LABEL_PREFIX}/strategy"
LABEL_POLICY_NAMESPACE = f"{LABEL_PREFIX}/policy-namespace"
LABEL_MANAGED = f"{LABEL_PREFIX}/managed"
LABEL_SOURCE_NAMESPACE = f"{LABEL_PREFIX}/source-namespace"
LABEL_JOB = f"{LABEL_PREFIX}/job"

STRATEGY_SNAPSHOT = "snapshot"
STRATEGY_EXTERNAL = "external"
DEFAULT_STRATEGY = STRATEGY_SNAPSHOT
SUPPORTED_STRATEGIES = (STRATEGY_SNAPSHOT, STRATEGY_EXTERNAL)

_DURATION_PATTERN = re.compile(r"(\d+(?:\.\d+)?)(ms|w|d|h|m|s)")
_DURATION_UNITS = {
    "w": timedelta(weeks=1),
    "d": timedelta(days=1),
    "h": timedelta(hours=1),
    "m": timedelta(minutes=1),
    "s": timedelta(seconds=1),
    "ms": timedelta(milliseconds=1),
}

BackendFactory = Callable[[StorageConfig], StorageBackend]


class BackupStrategyError(RuntimeError):
    """Raised when a strategy cannot be resolved or cannot dispatch a backup."""


class BackupStrategy(ABC):
    name: str = ""

    def prepare(self, target: Target, policy: BackupPolicy) -> None:
        """Make per-target preconditions true before ``backup`` runs."""

    @abstractmethod
    def backup(self, target: Target, policy: BackupPolicy) -> BackupResult: ...

    @abstractmethod
    def list_backups(self, target: Target, policy: BackupPolicy) -> list[StoredBackup]: ...

    @abstractmethod
    def delete_backup(self, record: StoredBackup, policy: BackupPolicy) -> None: ...

    @abstractmethod
    def cleanup(self, target: Target, policy: BackupPolicy) -> list[StoredBackup]:
        """Enforce retention for ``target`` and return the records that were deleted."""

    def restore(self, record: StoredBackup, target: Target) -> None:
        raise NotImplementedError(f"{self.name} restore not yet implemented")


def policy_labels(policy: BackupPolicy) -> dict[str, str]:
    return {
        LABEL_POLICY: policy.name,
        LABEL_POLICY_NAMESPACE: policy.namespace,
    }


def target_labels(policy: BackupPolicy, target: Target, strategy: str) -> dict[str, str]:
    return {
        **policy_labels(policy),
        LABEL_PVC: target.name,
        LABEL_STRATEGY: strategy,
    }


def backup_name(policy_name: str, target_name: str, now: datetime) -> str:
    return sanitize_dns_label(f"{policy_name}-{target_name}-{now.strftime('%Y%m%d-%H%M%S')}", max_length=63)


def sanitize_dns_label(value: str, max_length: int) -> str:
    lowered = value.lower()
    normalized = re.sub(r"[^a-z0-9-]", "-", lowered).strip("-")
    normalized = re.sub(r"-+", "-", normalized)
    if len(normalized) > max_length:
        # Keep the timestamp suffix so names stay unique per run.
        suffix = normalized[-15:]
        head = normalized[: max_length - len(suffix) - 1].rstrip("-")
        normalized = f"{head}-{suffix}" if head else suffix
    return normalized or "backup"


def owner_reference_for(policy: BackupPolicy, dependent_namespace: str) -> dict[str, object] | None:
    # Owner references cannot cross namespaces.
    if policy.namespace != dependent_namespace or not policy.uid:
        return None
    return {
        "apiVersion": policy.api_version,
        "kind": policy.kind,
        "name": policy.name,
        "uid": policy.uid,
        "controller": True,
        "blockOwnerDeletion": True,
    }


def parse_duration(value: str) -> timedelta:
    cleaned = value.strip().lower()
    if not cleaned:
        raise ValueError("duration is empty")
    position = 0
    total = timedelta()
    for match in _DURATION_PATTERN.finditer(cleaned):
        if match.start() != position:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position != len(cleaned):
        raise ValueError(f"invalid duration: {value!r} (use units like 720h, 30d, 1h30m)")
    return total


def select_expired(records: Iterable[StoredBackup], retention: Retention, now: datetime) -> list[StoredBackup]:
    ordered = sorted(records, key=_newest_first_key, reverse=True)

    max_age: timedelta | None = None
    if retention.max_age:
        try:
            max_age = parse_duration(retention.max_age)
        except ValueError as error:
            logger.error("Ignoring retention maxAge %r: %s", retention.max_age, error)

    expired: list[StoredBackup] = []
    for index, record in enumerate(ordered):
        exceeds_count = retention.max_backups > 0 and index >= retention.max_backups
        exceeds_age = max_age is not None and record.timestamp is not None and now - record.timestamp > max_age
        if exceeds_count or exceeds_age:
            expired.append(record)
    return expired


def _newest_first_key(record: StoredBackup) -> tuple[float, str]:
    return (record.timestamp.timestamp() if record.timestamp else float("-inf"), record.name)


def get_backup_strategy(
    policy: BackupPolicy,
    clients: KubernetesClients,
    config: OperatorConfig,
    backend_factory: BackendFactory = new_backend,
) -> BackupStrategy:
    # The variants import this module.
    from .external import ExternalStrategy
    from .snapshot import SnapshotStrategy

    strategy = policy.spec.strategy or DEFAULT_STRATEGY
    if strategy == STRATEGY_SNAPSHOT:
        return SnapshotStrategy(clients=clients, config=config)
    if strategy == STRATEGY_EXTERNAL:
        storage_config = build_storage_config(policy, clients, config)
        try:
            backend = backend_factory(storage_config)
        except StorageError as error:
            raise BackupStrategyError(f"failed to get storage backend: {error}") from error
        return ExternalStrategy(clients=clients, config=config, backend=backend, storage_config=storage_config)
    raise BackupStrategyError(f"unknown backup strategy: {strategy} (supported: {', '.join(SUPPORTED_STRATEGIES)})")


def build_storage_config(policy: BackupPolicy, clients: KubernetesClients, config: OperatorConfig) -> StorageConfig:
    destination = policy.spec.destination
    if not destination.type:
        raise BackupStrategyError("destination type is required for external strategy")

    bucket = ""
    prefix = ""
    endpoint = destination.endpoint
    if destination.type == "s3":
        bucket, prefix = parse_s3_url(destination.url)
        if not bucket:
            raise BackupStrategyError("destination URL must include bucket name for S3 backend")
    elif destination.type == "nfs":
        server, _ = parse_nfs_url(destination.url)
        if not server:
            raise BackupStrategyError("destination URL must include the NFS server (nfs://server/export/path)")
        endpoint = endpoint or server
    else:
        raise BackupStrategyError(f"unsupported external destination type: {destination.type}")

    credentials: dict[str, str] = {}
    if destination.credentials_secret:
        try:
            secret = read_secret(clients, policy.namespace, destination.credentials_secret)
        except KubernetesApiError as error:
            raise BackupStrategyError(f"failed to get credentials secret: {error}") from error
        if secret is None:
            raise BackupStrategyError(
                f"credentials secret {policy.namespace}/{destination.credentials_secret} does not exist"
            )
        credentials = decode_secret_data(secret)

    return StorageConfig(
        type=destination.type,
        endpoint=endpoint or credentials.get("endpoint", ""),
        bucket=bucket,
        prefix=prefix,
        access_key=credentials.get("access-key", ""),
        secret_key=credentials.get("secret-key", ""),
        region=credentials.get("region", ""),
        storage_class=destination.storage_class,
        mount_path=config.nfs_mount_path,
    )
