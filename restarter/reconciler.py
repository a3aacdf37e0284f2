from __future__ import annotations

from threading import Thread
from typing import Protocol

from .errors import InfraError, UnitNotFound
from .events import log_event
from .filters import FilterMatcher
from .health import HealthChecker
from .models import HealthCheckConfig, ManagedUnit, Outcome, ReconcileResult, UnitKey
from .workqueue import WorkQueue

# Fixed delay before a failed reconcile is retried.
REQUEUE_AFTER_S = 10.0


class UnitStore(Protocol):
    def get_unit(self, namespace: str, name: str) -> ManagedUnit: ...

    def delete_unit(self, namespace: str, name: str, uid: str | None = None) -> None: ...


class PodReconciler:
    """Fetch, filter, evaluate and act on one replica.

    Every path ends in a ReconcileResult; nothing is raised to the caller.
    Infrastructure failures ask for a retry after REQUEUE_AFTER_S, an
    unhealthy verdict deletes the pod so its owner recreates it, and a pod
    that is already gone counts as done.
    """

    def __init__(
        self,
        store: UnitStore,
        matcher: FilterMatcher,
        checker: HealthChecker,
        health_options: HealthCheckConfig,
        requeue_after_s: float = REQUEUE_AFTER_S,
    ):
        self.store = store
        self.matcher = matcher
        self.checker = checker
        self.health_options = health_options
        self.requeue_after_s = requeue_after_s

    def _retry(self, reason: str) -> ReconcileResult:
        return ReconcileResult(Outcome.ERROR, requeue_after=self.requeue_after_s, reason=reason)

    def reconcile(self, key: UnitKey) -> ReconcileResult:
        ns, name = key.namespace, key.name

        try:
            unit = self.store.get_unit(ns, name)
        except UnitNotFound:
            return ReconcileResult(Outcome.NO_ACTION, reason="pod not found")
        except InfraError as e:
            log_event("ERROR", f"Failed to get pod: {e}", namespace=ns, pod=name)
            return self._retry(f"fetch: {e}")

        if not self.matcher.matches(unit):
            log_event("DEBUG", "Pod does not match filter criteria, skipping", namespace=ns, pod=name)
            return ReconcileResult(Outcome.NO_ACTION, reason="not in scope")

        log_event("DEBUG", f"Reconciling pod (phase={unit.phase.value})", namespace=ns, pod=name)
        try:
            healthy, msg = self.checker.evaluate(unit, self.health_options)
        except InfraError as e:
            log_event("ERROR", f"Failed to check pod health: {e}", namespace=ns, pod=name)
            return self._retry(f"evaluate: {e}")

        if healthy:
            log_event("DEBUG", f"Pod is healthy: {msg}", namespace=ns, pod=name)
            return ReconcileResult(Outcome.NO_ACTION, reason=msg)

        log_event("WARN", f"Pod is unhealthy, triggering restart: {msg}", namespace=ns, pod=name)
        try:
            self.store.delete_unit(ns, name, uid=unit.uid)
        except UnitNotFound:
            log_event("INFO", "Pod was already deleted, nothing to do", namespace=ns, pod=name)
            return ReconcileResult(Outcome.NO_ACTION, reason="already deleted")
        except InfraError as e:
            log_event("ERROR", f"Failed to delete pod: {e}", namespace=ns, pod=name)
            return self._retry(f"delete: {e}")

        log_event("INFO", "Successfully triggered pod restart", namespace=ns, pod=name)
        return ReconcileResult(Outcome.RECYCLED, reason=msg)


class ReconcileWorker:
    """Drains the work queue one key at a time on a single thread."""

    def __init__(self, reconciler: PodReconciler, queue: WorkQueue):
        self.reconciler = reconciler
        self.queue = queue
        self._thr: Thread | None = None

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._thr = Thread(target=self._loop, name="reconcile-worker", daemon=True)
        self._thr.start()

    def is_running(self) -> bool:
        return bool(self._thr and self._thr.is_alive())

    def stop(self, timeout_s: float | None = None) -> None:
        """Stop taking new keys and wait for the in-flight reconcile to finish."""
        self.queue.shutdown()
        if self._thr:
            self._thr.join(timeout_s)

    def _loop(self) -> None:
        log_event("INFO", "Reconcile worker started")
        while True:
            key = self.queue.get()
            if key is None:
                break
            self.process(key)
        log_event("INFO", "Reconcile worker stopped")

    def process(self, key: UnitKey) -> ReconcileResult:
        try:
            result = self.reconciler.reconcile(key)
        except Exception as e:
            log_event("ERROR", f"Reconcile failed: {type(e).__name__}: {e}", namespace=key.namespace, pod=key.name)
            result = ReconcileResult(
                Outcome.ERROR, requeue_after=self.reconciler.requeue_after_s, reason=f"{type(e).__name__}: {e}"
            )
        if result.requeue_after:
            self.queue.add_after(key, result.requeue_after)
        return result
