from __future__ import annotations

from pathlib import Path
from typing import Any
import os

import streamlit as st
import yaml

from nerdy_backup_operator.config import OperatorConfig
from nerdy_backup_operator.controller import PolicyReconciler
from nerdy_backup_operator.k8s import (
    KubernetesApiError,
    KubernetesAuthenticationError,
    list_backup_policies,
    list_context_names,
    load_kubernetes_clients,
    persist_kubeconfig_content,
)
from nerdy_backup_operator.models import (
    BACKUP_STATUS_COMPLETED,
    BACKUP_STATUS_FAILED,
    BACKUP_STATUS_RUNNING,
    PHASE_ACTIVE,
    PHASE_ERROR,
    BackupPolicy,
    ReconcileResult,
    format_timestamp,
)

_AUTH_MODE_USE_KUBECONFIG_PATH = "Use kubeconfig path"
_AUTH_MODE_PASTE_KUBECONFIG = "Paste kubeconfig"
_AUTH_MODE_IN_CLUSTER = "In-cluster service account"

_PHASE_HINTS = {
    PHASE_ERROR: "Check the Ready condition message, the destination settings, and the credentials Secret.",
    PHASE_ACTIVE: "No follow-up action required.",
}


def _initialize_state() -> None:
    defaults = {
        "connected": False,
        "connection": {},
        "clients": None,
        "policies": [],
        "last_reconcile": None,
    }
    for key, value in defaults.items():
        if key not in st.session_state:
            st.session_state[key] = value


def _build_policy_rows(policies: list[BackupPolicy]) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    for policy in policies:
        status = policy.status
        ready = status.ready_condition()
        rows.append(
            {
                "namespace": policy.namespace,
                "policy": policy.name,
                "strategy": policy.spec.strategy or "snapshot",
                "schedule": policy.spec.schedule or "hourly (default)",
                "phase": status.phase or "Pending",
                "last_backup": format_timestamp(status.last_backup_time) or "never",
                "next_run": format_timestamp(status.next_run_time) or "unscheduled",
                "backups": str(status.backup_count),
                "message": ready.message if ready else "",
            }
        )
    return rows


def _build_ledger_rows(policy: BackupPolicy) -> list[dict[str, str]]:
    return [
        {
            "name": stored.name,
            "namespace": stored.namespace,
            "pvc": stored.pvc_name,
            "status": stored.status,
            "timestamp": format_timestamp(stored.timestamp) or "unknown",
            "size": stored.size or "unknown",
            "location": stored.location,
            "strategy": stored.strategy,
        }
        for stored in policy.status.stored_backups
    ]


def _build_condition_rows(policy: BackupPolicy) -> list[dict[str, str]]:
    return [
        {
            "type": condition.type,
            "status": condition.status,
            "reason": condition.reason,
            "message": condition.message,
            "last_transition_time": format_timestamp(condition.last_transition_time) or "",
        }
        for condition in policy.status.conditions
    ]


def _summarize_ledger(policy: BackupPolicy) -> dict[str, int]:
    summary = {BACKUP_STATUS_COMPLETED: 0, BACKUP_STATUS_RUNNING: 0, BACKUP_STATUS_FAILED: 0}
    for stored in policy.status.stored_backups:
        summary[stored.status] = summary.get(stored.status, 0) + 1
    return summary


def _spec_document(policy: BackupPolicy) -> str:
    spec = policy.spec
    document: dict[str, Any] = {
        "schedule": spec.schedule,
        "strategy": spec.strategy,
        "selector": {"matchLabels": dict(spec.match_labels)},
        "namespaces": list(spec.namespaces),
        "retention": {"maxBackups": spec.retention.max_backups, "maxAge": spec.retention.max_age},
        "destination": {
            "type": spec.destination.type,
            "url": spec.destination.url,
            "endpoint": spec.destination.endpoint,
            "credentialsSecret": spec.destination.credentials_secret,
            "storageClass": spec.destination.storage_class,
        },
        "restore": {
            "namespace": spec.restore.namespace,
            "selector": {"matchLabels": dict(spec.restore.match_labels)},
        },
    }
    return yaml.safe_dump(document, sort_keys=False)


def _label_for_policy(policy: BackupPolicy) -> str:
    return f"{policy.namespace}/{policy.name} | phase={policy.status.phase or 'Pending'}"


def _describe_reconcile_result(result: ReconcileResult) -> str:
    if result.error:
        return f"Reconcile finished with an error: {result.error}"
    if result.requeue_after is None:
        return "Reconcile finished; the policy no longer exists."
    return f"Reconcile finished; next pass in {int(result.requeue_after.total_seconds())}s."


def _phase_hint(phase: str) -> str:
    return _PHASE_HINTS.get(phase, "Waiting for the first reconciliation pass.")


def _context_options(*, auth_mode: str, kubeconfig_path_input: str) -> list[str]:
    if auth_mode != _AUTH_MODE_USE_KUBECONFIG_PATH or _validate_kubeconfig_path_input(kubeconfig_path_input):
        return []
    try:
        return list_context_names(kubeconfig_path_input)
    except KubernetesAuthenticationError:
        return []


def _validate_connection_inputs(
    *,
    auth_mode: str,
    kubeconfig_path_input: str,
    kubeconfig_text_input: str,
) -> str | None:
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        return _validate_kubeconfig_path_input(kubeconfig_path_input)

    if auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
        kubeconfig_text = kubeconfig_text_input.strip()
        if not kubeconfig_text:
            return "Paste kubeconfig content before connecting."
        return _validate_kubeconfig_content(
            kubeconfig_content=kubeconfig_text,
            source_label="Pasted kubeconfig",
        )

    if auth_mode == _AUTH_MODE_IN_CLUSTER and not _is_incluster_service_account_environment():
        return (
            "In-cluster service account mode requires Kubernetes pod environment variables and the "
            "service-account token mount."
        )

    return None


def _default_auth_mode() -> str:
    configured_default = os.getenv("NBO_DEFAULT_AUTH_MODE", "").strip().lower()
    if configured_default in {"kubeconfig", "kubeconfig_path", "path"}:
        return _AUTH_MODE_USE_KUBECONFIG_PATH
    if configured_default in {"paste", "pasted", "kubeconfig_text"}:
        return _AUTH_MODE_PASTE_KUBECONFIG
    if configured_default in {"in-cluster", "in_cluster", "serviceaccount", "service-account"}:
        return _AUTH_MODE_IN_CLUSTER

    if _is_incluster_service_account_environment():
        return _AUTH_MODE_IN_CLUSTER

    return _AUTH_MODE_USE_KUBECONFIG_PATH


def _is_incluster_service_account_environment() -> bool:
    return bool(
        os.getenv("KUBERNETES_SERVICE_HOST")
        and Path("/var/run/secrets/kubernetes.io/serviceaccount/token").exists()
    )


def _validate_kubeconfig_path_input(kubeconfig_path_input: str) -> str | None:
    path_value = kubeconfig_path_input.strip()
    if not path_value:
        return "Kubeconfig path is required when using kubeconfig path authentication."

    expanded_path = Path(path_value).expanduser()
    if not expanded_path.is_file():
        return f"Kubeconfig path must point to an existing file: {expanded_path}"

    try:
        kubeconfig_content = expanded_path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        return f"Kubeconfig path must reference a UTF-8 text file: {expanded_path}"
    except OSError as error:
        return f"Unable to read kubeconfig path {expanded_path}: {error}"

    return _validate_kubeconfig_content(
        kubeconfig_content=kubeconfig_content,
        source_label=f"Kubeconfig file '{expanded_path}'",
    )


def _validate_kubeconfig_content(*, kubeconfig_content: str, source_label: str) -> str | None:
    try:
        parsed = yaml.safe_load(kubeconfig_content)
    except yaml.YAMLError as error:
        return f"{source_label} must be valid YAML: {error.__class__.__name__}."

    if not isinstance(parsed, dict):
        return f"{source_label} must be a YAML mapping."

    missing_fields = [field for field in ("apiVersion", "clusters", "contexts", "users") if field not in parsed]
    if missing_fields:
        return f"{source_label} is missing required field(s): {', '.join(missing_fields)}."

    for list_field in ("clusters", "contexts", "users"):
        values = parsed.get(list_field)
        if not isinstance(values, list) or not values:
            return f"{source_label} must include at least one '{list_field}' entry."

    return None


def main() -> None:
    st.set_page_config(page_title="Nerdy Backup Operator", layout="wide")
    _initialize_state()
    config = OperatorConfig()

    st.title("Nerdy Backup Operator")
    st.caption("Inspect BackupPolicy schedules, their backup ledgers, and trigger an on-demand pass.")

    st.sidebar.header("Cluster Connection")
    auth_options = [_AUTH_MODE_USE_KUBECONFIG_PATH, _AUTH_MODE_PASTE_KUBECONFIG, _AUTH_MODE_IN_CLUSTER]
    auth_mode = st.sidebar.radio(
        "Authentication",
        options=auth_options,
        index=auth_options.index(_default_auth_mode()),
    )
    kubeconfig_path_input = "~/.kube/config"
    kubeconfig_text_input = ""
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        kubeconfig_path_input = st.sidebar.text_input("Kubeconfig path", value="~/.kube/config")
    elif auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
        kubeconfig_text_input = st.sidebar.text_area("Kubeconfig content", height=220)

    context_options = _context_options(auth_mode=auth_mode, kubeconfig_path_input=kubeconfig_path_input)
    if context_options:
        context = st.sidebar.selectbox("Kubernetes context", options=["", *context_options])
    else:
        context = st.sidebar.text_input("Kubernetes context (optional)", value="")

    if st.sidebar.button("Connect", type="primary"):
        connection_error = _validate_connection_inputs(
            auth_mode=auth_mode,
            kubeconfig_path_input=kubeconfig_path_input,
            kubeconfig_text_input=kubeconfig_text_input,
        )
        if connection_error:
            st.sidebar.error(connection_error)
        else:
            try:
                kubeconfig_path: str | None = None
                in_cluster = auth_mode == _AUTH_MODE_IN_CLUSTER
                if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
                    kubeconfig_path = str(Path(kubeconfig_path_input).expanduser())
                elif auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
                    kubeconfig_path = persist_kubeconfig_content(kubeconfig_text_input)

                st.session_state.clients = load_kubernetes_clients(
                    kubeconfig_path=kubeconfig_path,
                    context=context or None,
                    in_cluster=in_cluster,
                    request_timeout_seconds=config.request_timeout_seconds,
                )
                st.session_state.connected = True
                st.session_state.connection = {"auth_mode": auth_mode, "context": context or None}
                st.session_state.policies = []
                st.success("Connected to Kubernetes cluster.")
            except Exception as error:  # pylint: disable=broad-except
                st.session_state.connected = False
                st.session_state.clients = None
                st.error(f"Connection failed: {error}")

    if st.sidebar.button("Disconnect"):
        st.session_state.connected = False
        st.session_state.clients = None
        st.session_state.connection = {}
        st.session_state.policies = []
        st.session_state.last_reconcile = None

    if not st.session_state.connected or st.session_state.clients is None:
        st.info("Connect to a cluster from the sidebar to list BackupPolicies.")
        return

    clients = st.session_state.clients
    namespace_input = st.text_input("Namespace (optional)", value="", help="Leave blank to list all namespaces.")
    if st.button("Refresh policies"):
        with st.spinner("Listing BackupPolicies..."):
            try:
                st.session_state.policies = list_backup_policies(clients, namespace=namespace_input.strip() or None)
                if not st.session_state.policies:
                    st.warning("No BackupPolicies found for the current filter.")
            except KubernetesApiError as error:
                st.error(str(error))

    policies: list[BackupPolicy] = st.session_state.policies
    if not policies:
        st.info("Click 'Refresh policies' to load BackupPolicies.")
        return

    summary_columns = st.columns(3)
    summary_columns[0].metric("Policies", len(policies))
    summary_columns[1].metric("Active", sum(1 for policy in policies if policy.status.phase == PHASE_ACTIVE))
    summary_columns[2].metric("Error", sum(1 for policy in policies if policy.status.phase == PHASE_ERROR))
    st.dataframe(_build_policy_rows(policies), use_container_width=True, hide_index=True)

    labels = [_label_for_policy(policy) for policy in policies]
    label_to_policy = dict(zip(labels, policies, strict=False))
    selected_label = st.selectbox("Policy details", options=labels)
    policy = label_to_policy[selected_label]

    st.subheader(f"{policy.namespace}/{policy.name}")
    st.caption(_phase_hint(policy.status.phase))
    ledger_summary = _summarize_ledger(policy)
    ledger_columns = st.columns(3)
    for column, (status_name, count) in zip(ledger_columns, ledger_summary.items(), strict=False):
        column.metric(status_name, count)

    conditions = _build_condition_rows(policy)
    if conditions:
        st.dataframe(conditions, use_container_width=True, hide_index=True)

    ledger_rows = _build_ledger_rows(policy)
    if ledger_rows:
        st.dataframe(ledger_rows, use_container_width=True, hide_index=True)
    else:
        st.info("No stored backups recorded for this policy yet.")

    with st.expander("Policy spec"):
        st.code(_spec_document(policy), language="yaml")

    if st.button("Reconcile now"):
        with st.spinner(f"Reconciling {policy.namespace}/{policy.name}..."):
            result = PolicyReconciler(clients, config).reconcile(policy.namespace, policy.name)
        st.session_state.last_reconcile = _describe_reconcile_result(result)

    if st.session_state.last_reconcile:
        st.info(st.session_state.last_reconcile)


if __name__ == "__main__":
    main()
