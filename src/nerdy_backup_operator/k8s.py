from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import base64
import logging
import os
import tempfile
from typing import Any, Callable, Iterable, TypeVar

from kubernetes import client, config
from kubernetes.client import ApiException

from .models import BackupPolicy, BackupPolicyStatus, Target

logger = logging.getLogger(__name__)

POLICY_GROUP = "backup.nerdy.io"
POLICY_VERSION = "v1alpha1"
POLICY_PLURAL = "backuppolicies"

SNAPSHOT_GROUP = "snapshot.storage.k8s.io"
SNAPSHOT_VERSION = "v1"
SNAPSHOT_PLURAL = "volumesnapshots"

DEFAULT_REQUEST_TIMEOUT_SECONDS = 20
T = TypeVar("T")


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api
    batch_api: client.BatchV1Api
    custom_objects_api: client.CustomObjectsApi
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


class KubernetesApiError(RuntimeError):
    """Raised when a Kubernetes API call fails; keeps the HTTP status when known."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status

    @property
    def not_found(self) -> bool:
        return self.status == 404

    @property
    def conflict(self) -> bool:
        return self.status == 409


def persist_kubeconfig_content(kubeconfig_content: str) -> str:
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as handle:
        handle.write(kubeconfig_content)
        path = Path(handle.name)
    os.chmod(path, 0o600)
    return str(path)


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> KubernetesClients:
    if request_timeout_seconds <= 0:
        raise ValueError("request_timeout_seconds must be positive")

    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        if in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=expanded, context=context)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            _format_authentication_error(
                in_cluster=in_cluster,
                kubeconfig_path=expanded,
                context=context,
                error=error,
            )
        ) from error

    api_client = client.ApiClient()
    return KubernetesClients(
        api_client=api_client,
        core_api=client.CoreV1Api(api_client),
        batch_api=client.BatchV1Api(api_client),
        custom_objects_api=client.CustomObjectsApi(api_client),
        request_timeout_seconds=request_timeout_seconds,
    )


def list_context_names(kubeconfig_path: str | None = None) -> list[str]:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        contexts, _ = config.list_kube_config_contexts(config_file=expanded)
    except Exception as error:  # pylint: disable=broad-except
        reason = str(error).strip() or error.__class__.__name__
        source = expanded or "default kubeconfig search path"
        raise KubernetesAuthenticationError(
            f"Unable to list kubeconfig contexts from '{source}': {reason}. "
            "Verify the kubeconfig path is readable and valid."
        ) from error
    if not contexts:
        return []
    return sorted(context["name"] for context in contexts)


def label_selector(labels: dict[str, str] | None) -> str:
    return ",".join(f"{key}={value}" for key, value in sorted((labels or {}).items()))


def list_backup_policies(clients: KubernetesClients, *, namespace: str | None = None) -> list[BackupPolicy]:
    if namespace:
        response = _api_call(
            operation=f"list BackupPolicies in namespace '{namespace}'",
            hint="Confirm the BackupPolicy CRD is installed and RBAC allows list on backuppolicies.",
            func=lambda: clients.custom_objects_api.list_namespaced_custom_object(
                group=POLICY_GROUP,
                version=POLICY_VERSION,
                namespace=namespace,
                plural=POLICY_PLURAL,
                _request_timeout=clients.request_timeout_seconds,
            ),
        )
    else:
        response = _api_call(
            operation="list BackupPolicies across all namespaces",
            hint="Confirm the BackupPolicy CRD is installed and RBAC allows cluster-wide list on backuppolicies.",
            func=lambda: clients.custom_objects_api.list_cluster_custom_object(
                group=POLICY_GROUP,
                version=POLICY_VERSION,
                plural=POLICY_PLURAL,
                _request_timeout=clients.request_timeout_seconds,
            ),
        )

    policies = [BackupPolicy.from_dict(item) for item in response.get("items") or []]
    policies.sort(key=lambda item: (item.namespace, item.name))
    return policies


def read_backup_policy(clients: KubernetesClients, namespace: str, name: str) -> BackupPolicy | None:
    try:
        body = _api_call(
            operation=f"read BackupPolicy '{namespace}/{name}'",
            hint="Verify RBAC allows get on backuppolicies.",
            func=lambda: clients.custom_objects_api.get_namespaced_custom_object(
                group=POLICY_GROUP,
                version=POLICY_VERSION,
                namespace=namespace,
                plural=POLICY_PLURAL,
                name=name,
                _request_timeout=clients.request_timeout_seconds,
            ),
        )
    except KubernetesApiError as error:
        if error.not_found:
            return None
        raise
    return BackupPolicy.from_dict(body)


def patch_backup_policy_status(clients: KubernetesClients, policy: BackupPolicy, status: BackupPolicyStatus) -> None:
    _api_call(
        operation=f"update status of BackupPolicy '{policy.namespace}/{policy.name}'",
        hint="Verify RBAC allows patch on backuppolicies/status.",
        func=lambda: clients.custom_objects_api.patch_namespaced_custom_object_status(
            group=POLICY_GROUP,
            version=POLICY_VERSION,
            namespace=policy.namespace,
            plural=POLICY_PLURAL,
            name=policy.name,
            body={"status": status.to_dict()},
            _request_timeout=clients.request_timeout_seconds,
        ),
    )


def policy_namespaces(policy: BackupPolicy) -> list[str]:
    return list(policy.spec.namespaces) if policy.spec.namespaces else [policy.namespace]


def find_targets(clients: KubernetesClients, policy: BackupPolicy) -> list[Target]:
    selector = label_selector(policy.spec.match_labels)
    namespaces = policy_namespaces(policy)
    targets: list[Target] = []
    failures: list[KubernetesApiError] = []
    for namespace in namespaces:
        try:
            items = _api_call(
                operation=f"list PVCs in namespace '{namespace}'",
                hint="Check namespace spelling, API reachability, and RBAC verbs for persistentvolumeclaims.",
                func=lambda namespace=namespace: clients.core_api.list_namespaced_persistent_volume_claim(
                    namespace=namespace,
                    label_selector=selector or None,
                    _request_timeout=clients.request_timeout_seconds,
                ).items,
            )
        except KubernetesApiError as error:
            logger.error(
                "Skipping namespace %s while resolving targets for %s/%s: %s",
                namespace,
                policy.namespace,
                policy.name,
                error,
            )
            failures.append(error)
            continue

        for pvc in items or []:
            targets.append(_target_from_pvc(pvc, namespace))

    if namespaces and len(failures) == len(namespaces):
        raise KubernetesApiError(
            f"PVC listing failed in every namespace of BackupPolicy "
            f"'{policy.namespace}/{policy.name}': {failures[-1]}",
            status=failures[-1].status,
        )

    targets.sort(key=lambda item: (item.namespace, item.name))
    return targets


def _target_from_pvc(pvc: Any, fallback_namespace: str) -> Target:
    metadata = pvc.metadata
    capacity = None
    if pvc.status and pvc.status.capacity:
        capacity = pvc.status.capacity.get("storage")
    return Target(
        namespace=metadata.namespace or fallback_namespace,
        name=metadata.name or "",
        uid=metadata.uid or "",
        capacity=capacity,
        labels=dict(metadata.labels or {}),
    )


def list_jobs(clients: KubernetesClients, namespace: str, labels: dict[str, str]) -> list[client.V1Job]:
    return list(
        _api_call(
            operation=f"list backup Jobs in namespace '{namespace}'",
            hint="Verify RBAC allows list on batch/jobs.",
            func=lambda: clients.batch_api.list_namespaced_job(
                namespace=namespace,
                label_selector=label_selector(labels),
                _request_timeout=clients.request_timeout_seconds,
            ).items,
        )
        or []
    )


def create_job(clients: KubernetesClients, namespace: str, job: client.V1Job) -> None:
    _api_call(
        operation=f"create backup Job '{namespace}/{job.metadata.name}'",
        hint="Verify RBAC allows create on batch/jobs and the namespace exists.",
        func=lambda: clients.batch_api.create_namespaced_job(
            namespace=namespace,
            body=job,
            _request_timeout=clients.request_timeout_seconds,
        ),
    )


def delete_job(clients: KubernetesClients, namespace: str, name: str) -> None:
    try:
        _api_call(
            operation=f"delete backup Job '{namespace}/{name}'",
            hint="Verify RBAC allows delete on batch/jobs.",
            func=lambda: clients.batch_api.delete_namespaced_job(
                name=name,
                namespace=namespace,
                body=client.V1DeleteOptions(propagation_policy="Background"),
                _request_timeout=clients.request_timeout_seconds,
            ),
        )
    except KubernetesApiError as error:
        if not error.not_found:
            raise


def create_volume_snapshot(clients: KubernetesClients, namespace: str, body: dict[str, Any]) -> None:
    _api_call(
        operation=f"create VolumeSnapshot '{namespace}/{body['metadata']['name']}'",
        hint="Confirm the snapshot CRDs are installed and RBAC allows create on volumesnapshots.",
        func=lambda: clients.custom_objects_api.create_namespaced_custom_object(
            group=SNAPSHOT_GROUP,
            version=SNAPSHOT_VERSION,
            namespace=namespace,
            plural=SNAPSHOT_PLURAL,
            body=body,
            _request_timeout=clients.request_timeout_seconds,
        ),
    )


def list_volume_snapshots(clients: KubernetesClients, namespace: str, labels: dict[str, str]) -> list[dict[str, Any]]:
    response = _api_call(
        operation=f"list VolumeSnapshots in namespace '{namespace}'",
        hint="Confirm the snapshot CRDs are installed and RBAC allows list on volumesnapshots.",
        func=lambda: clients.custom_objects_api.list_namespaced_custom_object(
            group=SNAPSHOT_GROUP,
            version=SNAPSHOT_VERSION,
            namespace=namespace,
            plural=SNAPSHOT_PLURAL,
            label_selector=label_selector(labels),
            _request_timeout=clients.request_timeout_seconds,
        ),
    )
    return list(response.get("items") or [])


def delete_volume_snapshot(clients: KubernetesClients, namespace: str, name: str) -> None:
    try:
        _api_call(
            operation=f"delete VolumeSnapshot '{namespace}/{name}'",
            hint="Verify RBAC allows delete on volumesnapshots.",
            func=lambda: clients.custom_objects_api.delete_namespaced_custom_object(
                group=SNAPSHOT_GROUP,
                version=SNAPSHOT_VERSION,
                namespace=namespace,
                plural=SNAPSHOT_PLURAL,
                name=name,
                _request_timeout=clients.request_timeout_seconds,
            ),
        )
    except KubernetesApiError as error:
        if not error.not_found:
            raise


def read_secret(clients: KubernetesClients, namespace: str, name: str) -> client.V1Secret | None:
    try:
        return _api_call(
            operation=f"read Secret '{namespace}/{name}'",
            hint="Verify the Secret exists and RBAC allows get on secrets.",
            func=lambda: clients.core_api.read_namespaced_secret(
                name=name,
                namespace=namespace,
                _request_timeout=clients.request_timeout_seconds,
            ),
        )
    except KubernetesApiError as error:
        if error.not_found:
            return None
        raise


def create_secret(clients: KubernetesClients, namespace: str, secret: client.V1Secret) -> bool:
    """Create ``secret`` and return False when it already exists."""
    try:
        _api_call(
            operation=f"create Secret '{namespace}/{secret.metadata.name}'",
            hint="Verify RBAC allows create on secrets in the target namespace.",
            func=lambda: clients.core_api.create_namespaced_secret(
                namespace=namespace,
                body=secret,
                _request_timeout=clients.request_timeout_seconds,
            ),
        )
    except KubernetesApiError as error:
        if error.conflict:
            return False
        raise
    return True


def decode_secret_data(secret: client.V1Secret | None) -> dict[str, str]:
    if secret is None:
        return {}
    decoded: dict[str, str] = {}
    for key, value in (secret.data or {}).items():
        if value is None:
            continue
        decoded[key] = base64.b64decode(value).decode("utf-8")
    for key, value in (getattr(secret, "string_data", None) or {}).items():
        decoded.setdefault(key, value)
    return decoded


def _api_call(*, operation: str, hint: str, func: Callable[[], T]) -> T:
    try:
        return func()
    except ApiException as error:
        raise KubernetesApiError(
            _format_api_exception_message(
                operation=operation,
                hint=hint,
                error=error,
            ),
            status=error.status,
        ) from error
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesApiError(f"Kubernetes API call failed while trying to {operation}: {error}. {hint}") from error


def _format_api_exception_message(*, operation: str, hint: str, error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return (
        f"Kubernetes API call failed while trying to {operation}: "
        f"API status {status} ({reason}). {hint}"
    )


def unique_namespaces(*groups: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    for group in groups:
        seen.update(namespace for namespace in group if namespace)
    return sorted(seen)


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if kubeconfig_path is None:
        return None
    stripped = kubeconfig_path.strip()
    if not stripped:
        return None
    return str(Path(stripped).expanduser())


def _format_authentication_error(
    *,
    in_cluster: bool,
    kubeconfig_path: str | None,
    context: str | None,
    error: Exception,
) -> str:
    reason = str(error).strip() or error.__class__.__name__
    if in_cluster:
        return (
            "Kubernetes authentication setup failed while loading in-cluster service account credentials: "
            f"{reason}. Ensure the pod has a mounted service account token and Kubernetes service host "
            "environment variables."
        )

    kubeconfig_source = kubeconfig_path or "default kubeconfig search path"
    context_message = f" with context '{context}'" if context else ""
    return (
        "Kubernetes authentication setup failed while loading kubeconfig "
        f"from '{kubeconfig_source}'{context_message}: {reason}. "
        "Verify the kubeconfig path and context are valid."
    )
