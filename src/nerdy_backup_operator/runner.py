from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timedelta
import argparse
import logging
import signal
import threading
from typing import Callable, Sequence

from .config import OperatorConfig, configure_logging, validate_config
from .controller import MIN_REQUEUE, PolicyReconciler
from .k8s import KubernetesApiError, KubernetesAuthenticationError, list_backup_policies, load_kubernetes_clients
from .models import BackupPolicy, BackupPolicySpec, ReconcileResult, utc_now

logger = logging.getLogger(__name__)

PolicyKey = tuple[str, str]


class OperatorRunner:
    """Level-triggered loop over every BackupPolicy visible to the operator.

    Each tick re-lists policies and submits a pass for every policy whose
    requeue time has arrived or whose spec changed. A policy never has more
    than one pass in flight; different policies run concurrently on a thread
    pool.
    """

    def __init__(
        self,
        reconciler: PolicyReconciler,
        config: OperatorConfig,
        *,
        namespace: str | None = None,
        clock: Callable[[], datetime] = utc_now,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self.reconciler = reconciler
        self.config = config
        self.namespace = namespace
        self.clock = clock
        self.executor = executor or ThreadPoolExecutor(
            max_workers=config.max_workers,
            thread_name_prefix="reconcile",
        )
        self._lock = threading.Lock()
        self._due: dict[PolicyKey, datetime] = {}
        self._specs: dict[PolicyKey, BackupPolicySpec] = {}
        self._in_flight: dict[PolicyKey, Future] = {}

    def run_once(self, now: datetime | None = None) -> int:
        """Submit passes for due policies and return how many were submitted."""
        now = now or self.clock()
        try:
            policies = list_backup_policies(self.reconciler.clients, namespace=self.namespace)
        except KubernetesApiError as error:
            logger.error("Failed to list BackupPolicies: %s", error)
            return 0

        submitted = 0
        with self._lock:
            live_keys = {(policy.namespace, policy.name) for policy in policies}
            for key in set(self._due) | set(self._in_flight):
                if key not in live_keys:
                    self._due.pop(key, None)
                    self._specs.pop(key, None)
                    future = self._in_flight.get(key)
                    if future is not None and future.done():
                        del self._in_flight[key]

            for policy in policies:
                key = (policy.namespace, policy.name)
                in_flight = self._in_flight.get(key)
                if in_flight is not None and not in_flight.done():
                    continue
                if not self._is_due(key, policy, now):
                    continue
                self._specs[key] = policy.spec
                self._in_flight[key] = self.executor.submit(self._run_pass, key, policy)
                submitted += 1

        if submitted:
            logger.debug("Submitted %d reconciliation pass(es)", submitted)
        return submitted

    def run_forever(self, stop_event: threading.Event) -> None:
        logger.info(
            "Operator loop started (namespace=%s, workers=%d, resync=%ds)",
            self.namespace or "<all>",
            self.config.max_workers,
            self.config.resync_interval_seconds,
        )
        try:
            while not stop_event.is_set():
                self.run_once()
                stop_event.wait(self.seconds_until_next_tick())
        finally:
            logger.info("Operator loop stopping; waiting for in-flight passes")
            self.executor.shutdown(wait=True)

    def drain(self, timeout: float | None = None) -> None:
        with self._lock:
            pending = [future for future in self._in_flight.values() if not future.done()]
        wait(pending, timeout=timeout)

    def next_due(self, key: PolicyKey) -> datetime | None:
        with self._lock:
            return self._due.get(key)

    def seconds_until_next_tick(self) -> float:
        resync = float(self.config.resync_interval_seconds)
        with self._lock:
            upcoming = min(self._due.values(), default=None)
        if upcoming is None:
            return resync
        remaining = (upcoming - self.clock()).total_seconds()
        return max(MIN_REQUEUE.total_seconds(), min(resync, remaining))

    def _is_due(self, key: PolicyKey, policy: BackupPolicy, now: datetime) -> bool:
        due = self._due.get(key)
        if due is None:
            return True
        if self._specs.get(key) != policy.spec:
            logger.info("BackupPolicy %s/%s changed; reconciling now", policy.namespace, policy.name)
            return True
        return now >= due

    def _run_pass(self, key: PolicyKey, policy: BackupPolicy) -> ReconcileResult:
        try:
            result = self.reconciler.reconcile_policy(policy)
        except Exception as error:  # pylint: disable=broad-except
            logger.exception("Reconciliation pass for %s/%s raised", key[0], key[1])
            result = ReconcileResult(requeue_after=self.config.requeue_after_error, error=str(error))

        requeue_after = result.requeue_after
        if requeue_after is None:
            requeue_after = timedelta(seconds=self.config.resync_interval_seconds)
        with self._lock:
            self._due[key] = self.clock() + max(requeue_after, MIN_REQUEUE)
        if result.error:
            logger.warning("BackupPolicy %s/%s requeued after error: %s", key[0], key[1], result.error)
        return result


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nerdy-backup-operator",
        description="Schedule and track PVC backups declared by BackupPolicy resources.",
    )
    auth = parser.add_mutually_exclusive_group()
    auth.add_argument("--kubeconfig", default=None, help="Path to a kubeconfig file (default search path if omitted).")
    auth.add_argument("--in-cluster", action="store_true", help="Use the pod's service account credentials.")
    parser.add_argument("--context", default=None, help="Kubeconfig context override.")
    parser.add_argument("--namespace", default=None, help="Only reconcile BackupPolicies in this namespace.")
    parser.add_argument("--once", action="store_true", help="Run a single tick, wait for it, and exit.")
    parser.add_argument("--log-level", default=None, help="Overrides NBO_LOG_LEVEL.")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = OperatorConfig()
    configure_logging(args.log_level or config.log_level)

    try:
        validate_config(config)
        clients = load_kubernetes_clients(
            kubeconfig_path=args.kubeconfig,
            context=args.context,
            in_cluster=args.in_cluster,
            request_timeout_seconds=config.request_timeout_seconds,
        )
    except (ValueError, KubernetesAuthenticationError) as error:
        logger.error("%s", error)
        return 1

    runner = OperatorRunner(PolicyReconciler(clients, config), config, namespace=args.namespace)
    if args.once:
        runner.run_once()
        runner.drain()
        runner.executor.shutdown(wait=True)
        return 0

    stop_event = threading.Event()

    def _stop(signum: int, _frame: object) -> None:
        logger.info("Received signal %d; shutting down", signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)
    runner.run_forever(stop_event)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
