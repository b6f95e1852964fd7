from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from datetime import UTC, datetime, timedelta
import threading
from unittest.mock import Mock

import pytest

from nerdy_backup_operator import runner as runner_module
from nerdy_backup_operator.config import OperatorConfig
from nerdy_backup_operator.k8s import KubernetesApiError, KubernetesAuthenticationError
from nerdy_backup_operator.models import BackupPolicy, BackupPolicySpec, ReconcileResult
from nerdy_backup_operator.runner import OperatorRunner, build_parser, main

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _policy(name: str, *, schedule: str = "*/5 * * * *") -> BackupPolicy:
    return BackupPolicy(name=name, namespace="apps", spec=BackupPolicySpec(schedule=schedule))


def _reconciler(result: ReconcileResult | None = None) -> Mock:
    reconciler = Mock()
    reconciler.clients = Mock()
    reconciler.reconcile_policy.return_value = result or ReconcileResult(requeue_after=timedelta(minutes=5))
    return reconciler


def _runner(reconciler: Mock, *, executor: object | None = None) -> OperatorRunner:
    return OperatorRunner(
        reconciler,
        OperatorConfig(),
        clock=lambda: NOW,
        executor=executor or ThreadPoolExecutor(max_workers=2),
    )


@pytest.fixture
def policies(monkeypatch: pytest.MonkeyPatch) -> list[BackupPolicy]:
    listed = [_policy("alpha"), _policy("beta")]
    monkeypatch.setattr(runner_module, "list_backup_policies", lambda clients, namespace=None: list(listed))
    return listed


def test_run_once_submits_every_new_policy_and_records_requeue_time(policies: list[BackupPolicy]) -> None:
    reconciler = _reconciler()
    runner = _runner(reconciler)

    submitted = runner.run_once(NOW)
    runner.drain()

    assert submitted == 2
    assert reconciler.reconcile_policy.call_count == 2
    assert runner.next_due(("apps", "alpha")) == NOW + timedelta(minutes=5)


def test_run_once_skips_policies_until_their_requeue_time(policies: list[BackupPolicy]) -> None:
    reconciler = _reconciler()
    runner = _runner(reconciler)
    runner.run_once(NOW)
    runner.drain()

    assert runner.run_once(NOW + timedelta(minutes=1)) == 0
    assert runner.run_once(NOW + timedelta(minutes=5)) == 2
    runner.drain()


def test_run_once_reconciles_edited_policy_immediately(policies: list[BackupPolicy]) -> None:
    reconciler = _reconciler()
    runner = _runner(reconciler)
    runner.run_once(NOW)
    runner.drain()

    policies[0] = _policy("alpha", schedule="0 * * * *")

    assert runner.run_once(NOW + timedelta(seconds=1)) == 1
    runner.drain()


def test_run_once_never_submits_a_policy_with_a_pass_in_flight(policies: list[BackupPolicy]) -> None:
    executor = Mock()
    executor.submit.return_value = Future()
    runner = _runner(_reconciler(), executor=executor)

    runner.run_once(NOW)
    runner.run_once(NOW + timedelta(hours=1))

    assert executor.submit.call_count == 2


def test_run_once_with_listing_failure_submits_nothing(monkeypatch: pytest.MonkeyPatch) -> None:
    def _fail(clients: object, namespace: str | None = None) -> list[BackupPolicy]:
        raise KubernetesApiError("forbidden", status=403)

    monkeypatch.setattr(runner_module, "list_backup_policies", _fail)

    assert _runner(_reconciler()).run_once(NOW) == 0


def test_pass_raising_unexpectedly_is_requeued_with_error_backoff(policies: list[BackupPolicy]) -> None:
    reconciler = _reconciler()
    reconciler.reconcile_policy.side_effect = RuntimeError("boom")
    runner = _runner(reconciler)

    runner.run_once(NOW)
    runner.drain()

    assert runner.next_due(("apps", "alpha")) == NOW + timedelta(seconds=60)


def test_deleted_policies_are_forgotten(policies: list[BackupPolicy]) -> None:
    runner = _runner(_reconciler())
    runner.run_once(NOW)
    runner.drain()

    policies.pop()
    runner.run_once(NOW)

    assert runner.next_due(("apps", "beta")) is None


def test_seconds_until_next_tick_is_bounded_by_resync_and_floor(policies: list[BackupPolicy]) -> None:
    runner = _runner(_reconciler(ReconcileResult(requeue_after=timedelta(seconds=10))))
    assert runner.seconds_until_next_tick() == 30.0

    runner.run_once(NOW)
    runner.drain()

    assert runner.seconds_until_next_tick() == 10.0


def test_run_forever_stops_when_event_is_set(policies: list[BackupPolicy]) -> None:
    class _StopAfterFirstWait(threading.Event):
        def wait(self, timeout: float | None = None) -> bool:
            self.set()
            return True

    reconciler = _reconciler()
    runner = _runner(reconciler)

    runner.run_forever(_StopAfterFirstWait())

    assert reconciler.reconcile_policy.call_count == 2


def test_build_parser_rejects_kubeconfig_with_in_cluster() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args(["--kubeconfig", "/tmp/config", "--in-cluster"])


def test_main_with_authentication_failure_returns_error_code(monkeypatch: pytest.MonkeyPatch) -> None:
    def _fail(**kwargs: object) -> None:
        raise KubernetesAuthenticationError("no kubeconfig")

    monkeypatch.setattr(runner_module, "load_kubernetes_clients", _fail)

    assert main(["--kubeconfig", "/nonexistent"]) == 1


def test_main_once_runs_single_tick(monkeypatch: pytest.MonkeyPatch, policies: list[BackupPolicy]) -> None:
    reconcile_policy = Mock(return_value=ReconcileResult(requeue_after=timedelta(minutes=5)))
    monkeypatch.setattr(runner_module, "load_kubernetes_clients", lambda **kwargs: Mock())
    monkeypatch.setattr(runner_module.PolicyReconciler, "reconcile_policy", reconcile_policy)

    assert main(["--once", "--namespace", "apps"]) == 0
    assert reconcile_policy.call_count == 2
