from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

PHASE_ACTIVE = "Active"
PHASE_ERROR = "Error"
PHASE_SUSPENDED = "Suspended"

BACKUP_STATUS_RUNNING = "Running"
BACKUP_STATUS_COMPLETED = "Completed"
BACKUP_STATUS_FAILED = "Failed"

CONDITION_READY = "Ready"


def utc_now() -> datetime:
    return datetime.now(tz=UTC).replace(microsecond=0)


def parse_timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).strip())
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(UTC).replace(microsecond=0).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class Retention:
    max_backups: int = 0
    max_age: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Retention:
        data = data or {}
        return cls(
            max_backups=int(data.get("maxBackups") or 0),
            max_age=str(data.get("maxAge") or "").strip(),
        )


@dataclass(frozen=True)
class Destination:
    type: str = ""
    url: str = ""
    endpoint: str = ""
    credentials_secret: str = ""
    storage_class: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Destination:
        data = data or {}
        return cls(
            type=str(data.get("type") or "").strip().lower(),
            url=str(data.get("url") or "").strip(),
            endpoint=str(data.get("endpoint") or "").strip(),
            credentials_secret=str(data.get("credentialsSecret") or "").strip(),
            storage_class=str(data.get("storageClass") or "").strip(),
        )


@dataclass(frozen=True)
class RestoreDefaults:
    namespace: str = ""
    match_labels: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> RestoreDefaults:
        data = data or {}
        selector = data.get("selector") or {}
        return cls(
            namespace=str(data.get("namespace") or ""),
            match_labels=dict(selector.get("matchLabels") or {}),
        )


@dataclass(frozen=True)
class BackupPolicySpec:
    schedule: str = ""
    strategy: str = ""
    match_labels: dict[str, str] = field(default_factory=dict)
    namespaces: tuple[str, ...] = ()
    retention: Retention = field(default_factory=Retention)
    destination: Destination = field(default_factory=Destination)
    restore: RestoreDefaults = field(default_factory=RestoreDefaults)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> BackupPolicySpec:
        data = data or {}
        selector = data.get("selector") or {}
        namespaces = tuple(
            namespace.strip() for namespace in data.get("namespaces") or [] if namespace and namespace.strip()
        )
        return cls(
            schedule=str(data.get("schedule") or "").strip(),
            strategy=str(data.get("strategy") or "").strip().lower(),
            match_labels=dict(selector.get("matchLabels") or {}),
            namespaces=namespaces,
            retention=Retention.from_dict(data.get("retention")),
            destination=Destination.from_dict(data.get("destination")),
            restore=RestoreDefaults.from_dict(data.get("restore")),
        )


@dataclass(frozen=True)
class StoredBackup:
    name: str
    namespace: str
    timestamp: datetime | None = None
    pvc_name: str = ""
    size: str = ""
    location: str = ""
    status: str = BACKUP_STATUS_RUNNING
    strategy: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StoredBackup:
        return cls(
            name=str(data.get("name") or ""),
            namespace=str(data.get("namespace") or ""),
            timestamp=parse_timestamp(data.get("timestamp")),
            pvc_name=str(data.get("pvcName") or ""),
            size=str(data.get("size") or ""),
            location=str(data.get("location") or ""),
            status=str(data.get("status") or BACKUP_STATUS_RUNNING),
            strategy=str(data.get("strategy") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "timestamp": format_timestamp(self.timestamp),
            "pvcName": self.pvc_name,
            "namespace": self.namespace,
            "size": self.size,
            "location": self.location,
            "status": self.status,
            "strategy": self.strategy,
        }


@dataclass(frozen=True)
class Condition:
    type: str
    status: str
    reason: str
    message: str
    last_transition_time: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Condition:
        return cls(
            type=str(data.get("type") or ""),
            status=str(data.get("status") or "Unknown"),
            reason=str(data.get("reason") or ""),
            message=str(data.get("message") or ""),
            last_transition_time=parse_timestamp(data.get("lastTransitionTime")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
            "lastTransitionTime": format_timestamp(self.last_transition_time),
        }


@dataclass(frozen=True)
class BackupPolicyStatus:
    phase: str = ""
    last_backup_time: datetime | None = None
    next_run_time: datetime | None = None
    backup_count: int = 0
    stored_backups: tuple[StoredBackup, ...] = ()
    conditions: tuple[Condition, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> BackupPolicyStatus:
        data = data or {}
        return cls(
            phase=str(data.get("phase") or ""),
            last_backup_time=parse_timestamp(data.get("lastBackupTime")),
            next_run_time=parse_timestamp(data.get("nextRunTime")),
            backup_count=int(data.get("backupCount") or 0),
            stored_backups=tuple(StoredBackup.from_dict(item) for item in data.get("storedBackups") or []),
            conditions=tuple(Condition.from_dict(item) for item in data.get("conditions") or []),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "lastBackupTime": format_timestamp(self.last_backup_time),
            "nextRunTime": format_timestamp(self.next_run_time),
            "backupCount": self.backup_count,
            "storedBackups": [stored.to_dict() for stored in self.stored_backups],
            "conditions": [condition.to_dict() for condition in self.conditions],
        }

    def ready_condition(self) -> Condition | None:
        for condition in self.conditions:
            if condition.type == CONDITION_READY:
                return condition
        return None


@dataclass(frozen=True)
class BackupPolicy:
    name: str
    namespace: str
    spec: BackupPolicySpec = field(default_factory=BackupPolicySpec)
    status: BackupPolicyStatus = field(default_factory=BackupPolicyStatus)
    uid: str = ""
    api_version: str = ""
    kind: str = "BackupPolicy"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackupPolicy:
        metadata = data.get("metadata") or {}
        return cls(
            name=str(metadata.get("name") or ""),
            namespace=str(metadata.get("namespace") or ""),
            uid=str(metadata.get("uid") or ""),
            api_version=str(data.get("apiVersion") or ""),
            kind=str(data.get("kind") or "BackupPolicy"),
            spec=BackupPolicySpec.from_dict(data.get("spec")),
            status=BackupPolicyStatus.from_dict(data.get("status")),
        )


@dataclass(frozen=True)
class Target:
    namespace: str
    name: str
    uid: str = ""
    capacity: str | None = None
    labels: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class BackupResult:
    name: str
    location: str
    timestamp: datetime
    size: str = "0"
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ReconcileResult:
    requeue_after: timedelta | None = None
    error: str | None = None
