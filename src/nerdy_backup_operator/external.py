from __future__ import annotations

from datetime import UTC, datetime
import logging
import posixpath
from typing import Callable

from kubernetes import client

from .config import OperatorConfig
from .k8s import KubernetesApiError, KubernetesClients, create_job, create_secret, read_secret
from .models import BACKUP_STATUS_COMPLETED, BackupPolicy, BackupResult, StoredBackup, Target, utc_now
from .storage import StorageBackend, StorageConfig, StorageError, parse_nfs_url
from .strategy import (
    LABEL_JOB,
    LABEL_MANAGED,
    LABEL_POLICY,
    LABEL_SOURCE_NAMESPACE,
    STRATEGY_EXTERNAL,
    BackupStrategy,
    BackupStrategyError,
    backup_name,
    owner_reference_for,
    target_labels,
)

logger = logging.getLogger(__name__)

DATA_MOUNT_PATH = "/data"
NFS_REPOSITORY_MOUNT_PATH = "/repository"
SNAPSHOTS_DIRECTORY = "snapshots"

CONTAINER_REQUESTS = {"cpu": "250m", "memory": "256Mi"}
CONTAINER_LIMITS = {"cpu": "1", "memory": "512Mi"}

# restic reads RESTIC_REPOSITORY and RESTIC_PASSWORD from the environment.
BACKUP_SCRIPT = """set -eu
echo "Starting backup ${BACKUP_NAME}" >&2
restic cat config >/dev/null 2>&1 || restic init
restic backup /data \\
  --host "${RESTIC_HOST}" \\
  --tag "policy:${RESTIC_TAG_POLICY}" \\
  --tag "pvc:${RESTIC_TAG_PVC}" \\
  --tag "namespace:${RESTIC_TAG_NAMESPACE}"

FORGET_ARGS=""
if [ -n "${RETENTION_MAX_BACKUPS:-}" ]; then
  FORGET_ARGS="$FORGET_ARGS --keep-last ${RETENTION_MAX_BACKUPS}"
fi
if [ -n "${RETENTION_MAX_AGE:-}" ]; then
  FORGET_ARGS="$FORGET_ARGS --keep-within ${RETENTION_MAX_AGE}"
fi
if [ -n "$FORGET_ARGS" ]; then
  restic forget --host "${RESTIC_HOST}" $FORGET_ARGS --prune
fi
"""


class ExternalStrategy(BackupStrategy):
    """Archives PVC data with restic into an S3 or NFS repository from a one-shot Job."""

    name = STRATEGY_EXTERNAL

    def __init__(
        self,
        *,
        clients: KubernetesClients,
        config: OperatorConfig,
        backend: StorageBackend,
        storage_config: StorageConfig,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.clients = clients
        self.config = config
        self.backend = backend
        self.storage_config = storage_config
        self.clock = clock

    def prepare(self, target: Target, policy: BackupPolicy) -> None:
        self.ensure_credentials_secret(target.namespace, policy)

    def backup(self, target: Target, policy: BackupPolicy) -> BackupResult:
        repository = self.repository_url(policy, target)
        now = self.clock()
        job_name = backup_name(policy.name, target.name, now)
        logger.info(
            "Creating backup Job %s/%s for PVC %s (repository %s)",
            target.namespace,
            job_name,
            target.name,
            repository,
        )

        job = self.build_backup_job(job_name, target, policy, repository)
        try:
            create_job(self.clients, target.namespace, job)
        except KubernetesApiError as error:
            raise BackupStrategyError(f"failed to create backup Job {target.namespace}/{job_name}: {error}") from error

        return BackupResult(
            name=job_name,
            location=repository,
            timestamp=now,
            size=target.capacity or "0",
            metadata={
                "pvc": target.name,
                "namespace": target.namespace,
                "strategy": STRATEGY_EXTERNAL,
                "repository": repository,
                "destination": policy.spec.destination.type,
            },
        )

    def list_backups(self, target: Target, policy: BackupPolicy) -> list[StoredBackup]:
        repository = self.repository_url(policy, target)
        prefix = f"{self.repository_path(policy, target)}/{SNAPSHOTS_DIRECTORY}/"
        try:
            objects = self.backend.list(prefix, include_metadata=False)
        except StorageError as error:
            raise BackupStrategyError(
                f"failed to list restic snapshots for pvc {target.namespace}/{target.name}: {error}"
            ) from error

        backups = [
            StoredBackup(
                name=item.name,
                namespace=target.namespace,
                timestamp=item.modified_time,
                pvc_name=target.name,
                size=str(item.size),
                location=f"{repository}/{SNAPSHOTS_DIRECTORY}/{item.name}",
                status=BACKUP_STATUS_COMPLETED,
                strategy=STRATEGY_EXTERNAL,
            )
            for item in objects
        ]
        backups.sort(key=lambda item: (item.timestamp or datetime.min.replace(tzinfo=UTC), item.name), reverse=True)
        return backups

    def delete_backup(self, record: StoredBackup, policy: BackupPolicy) -> None:
        if not record.location:
            return
        object_path = self.object_path(record.location)
        if object_path is None:
            logger.info(
                "Backup %s/%s points at a whole repository; retention there is handled by restic in the backup Job",
                record.namespace,
                record.name,
            )
            return
        try:
            self.backend.delete(object_path)
        except StorageError as error:
            raise BackupStrategyError(f"failed to delete backup object {record.location}: {error}") from error

    def cleanup(self, target: Target, policy: BackupPolicy) -> list[StoredBackup]:
        logger.debug(
            "Cleanup for PVC %s/%s is handled by restic forget inside the backup Job", target.namespace, target.name
        )
        return []

    def ensure_credentials_secret(self, target_namespace: str, policy: BackupPolicy) -> None:
        secret_name = policy.spec.destination.credentials_secret
        if not secret_name or target_namespace == policy.namespace:
            return

        try:
            if read_secret(self.clients, target_namespace, secret_name) is not None:
                return
            source = read_secret(self.clients, policy.namespace, secret_name)
        except KubernetesApiError as error:
            raise BackupStrategyError(
                f"failed to check credentials secret for namespace {target_namespace}: {error}"
            ) from error
        if source is None:
            raise BackupStrategyError(f"credentials secret {policy.namespace}/{secret_name} does not exist")

        copy = client.V1Secret(
            metadata=client.V1ObjectMeta(
                name=secret_name,
                namespace=target_namespace,
                labels={
                    LABEL_MANAGED: "true",
                    LABEL_POLICY: policy.name,
                    LABEL_SOURCE_NAMESPACE: policy.namespace,
                },
            ),
            data=source.data,
            type=source.type,
        )
        try:
            created = create_secret(self.clients, target_namespace, copy)
        except KubernetesApiError as error:
            raise BackupStrategyError(
                f"failed to copy credentials secret to namespace {target_namespace}: {error}"
            ) from error
        if created:
            logger.info("Copied credentials secret %s from %s into %s", secret_name, policy.namespace, target_namespace)

    def repository_path(self, policy: BackupPolicy, target: Target) -> str:
        return posixpath.join(policy.name, target.namespace, target.name)

    def repository_root(self) -> str:
        if self.storage_config.type == "s3":
            endpoint = self.storage_config.endpoint.rstrip("/")
            root = f"s3:{endpoint}/{self.storage_config.bucket}" if endpoint else f"s3:{self.storage_config.bucket}"
            prefix = self.storage_config.prefix.strip("/")
            return f"{root}/{prefix}" if prefix else root
        if self.storage_config.type == "nfs":
            return NFS_REPOSITORY_MOUNT_PATH
        raise BackupStrategyError(f"unsupported external destination type: {self.storage_config.type}")

    def repository_url(self, policy: BackupPolicy, target: Target) -> str:
        return f"{self.repository_root()}/{self.repository_path(policy, target)}"

    def object_path(self, location: str) -> str | None:
        """Map a recorded location to a backend path, or None for repository-level records."""
        root = f"{self.repository_root()}/"
        if not location.startswith(root):
            return None
        relative = location[len(root) :].strip("/")
        parts = relative.split("/")
        if SNAPSHOTS_DIRECTORY not in parts[:-1]:
            return None
        return relative

    def build_backup_job(self, job_name: str, target: Target, policy: BackupPolicy, repository: str) -> client.V1Job:
        labels = target_labels(policy, target, STRATEGY_EXTERNAL)

        volumes = [
            client.V1Volume(
                name="data",
                persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(
                    claim_name=target.name,
                    read_only=True,
                ),
            )
        ]
        volume_mounts = [client.V1VolumeMount(name="data", mount_path=DATA_MOUNT_PATH, read_only=True)]
        if self.storage_config.type == "nfs":
            server, export_path = parse_nfs_url(policy.spec.destination.url)
            volumes.append(
                client.V1Volume(
                    name="repository",
                    nfs=client.V1NFSVolumeSource(server=server, path=export_path),
                )
            )
            volume_mounts.append(client.V1VolumeMount(name="repository", mount_path=NFS_REPOSITORY_MOUNT_PATH))

        owner_references = None
        owner_reference = owner_reference_for(policy, target.namespace)
        if owner_reference is not None:
            owner_references = [
                client.V1OwnerReference(
                    api_version=owner_reference["apiVersion"],
                    kind=owner_reference["kind"],
                    name=owner_reference["name"],
                    uid=owner_reference["uid"],
                    controller=True,
                    block_owner_deletion=True,
                )
            ]

        return client.V1Job(
            api_version="batch/v1",
            kind="Job",
            metadata=client.V1ObjectMeta(
                name=job_name,
                namespace=target.namespace,
                labels=labels,
                owner_references=owner_references,
            ),
            spec=client.V1JobSpec(
                backoff_limit=self.config.job_backoff_limit,
                ttl_seconds_after_finished=self.config.job_ttl_seconds_after_finished,
                active_deadline_seconds=self.config.job_active_deadline_seconds,
                template=client.V1PodTemplateSpec(
                    metadata=client.V1ObjectMeta(labels={**labels, LABEL_JOB: job_name}),
                    spec=client.V1PodSpec(
                        restart_policy="OnFailure",
                        containers=[
                            client.V1Container(
                                name="backup",
                                image=self.config.backup_image,
                                command=["/bin/sh", "-c", BACKUP_SCRIPT],
                                env=self.build_backup_env(job_name, target, policy, repository),
                                volume_mounts=volume_mounts,
                                resources=client.V1ResourceRequirements(
                                    requests=dict(CONTAINER_REQUESTS),
                                    limits=dict(CONTAINER_LIMITS),
                                ),
                            )
                        ],
                        volumes=volumes,
                    ),
                ),
            ),
        )

    def build_backup_env(
        self,
        job_name: str,
        target: Target,
        policy: BackupPolicy,
        repository: str,
    ) -> list[client.V1EnvVar]:
        destination = policy.spec.destination
        retention = policy.spec.retention
        env = [
            client.V1EnvVar(name="BACKUP_NAME", value=job_name),
            client.V1EnvVar(name="RESTIC_REPOSITORY", value=repository),
            client.V1EnvVar(name="RESTIC_HOST", value=target.namespace),
            client.V1EnvVar(name="RESTIC_TAG_POLICY", value=policy.name),
            client.V1EnvVar(name="RESTIC_TAG_PVC", value=target.name),
            client.V1EnvVar(name="RESTIC_TAG_NAMESPACE", value=target.namespace),
        ]

        if retention.max_backups > 0:
            env.append(client.V1EnvVar(name="RETENTION_MAX_BACKUPS", value=str(retention.max_backups)))
        if retention.max_age:
            env.append(client.V1EnvVar(name="RETENTION_MAX_AGE", value=retention.max_age))

        if destination.credentials_secret:
            secret_keys = [("RESTIC_PASSWORD", "restic-password", False)]
            if self.storage_config.type == "s3":
                secret_keys = [
                    ("AWS_ACCESS_KEY_ID", "access-key", False),
                    ("AWS_SECRET_ACCESS_KEY", "secret-key", False),
                    *secret_keys,
                    ("AWS_DEFAULT_REGION", "region", True),
                ]
            for env_name, secret_key, optional in secret_keys:
                env.append(
                    client.V1EnvVar(
                        name=env_name,
                        value_from=client.V1EnvVarSource(
                            secret_key_ref=client.V1SecretKeySelector(
                                name=destination.credentials_secret,
                                key=secret_key,
                                optional=optional or None,
                            )
                        ),
                    )
                )

        if self.storage_config.type == "s3":
            env.append(client.V1EnvVar(name="AWS_S3_FORCE_PATH_STYLE", value="true"))
            endpoint = self.storage_config.endpoint.rstrip("/")
            if endpoint:
                env.append(client.V1EnvVar(name="AWS_ENDPOINT_URL", value=endpoint))
                env.append(client.V1EnvVar(name="AWS_S3_ENDPOINT", value=endpoint))

        return env
