from __future__ import annotations

import time
from threading import Event, Thread
from typing import Any

import urllib3
from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from kubernetes.stream import stream

from .errors import ConfigError, ExecStreamError, InfraError, UnitNotFound
from .events import log_event
from .models import ContainerStatus, ExecResult, ManagedUnit, Phase, UnitKey
from .selectors import LabelSelector, selector_from_label_selector
from .workqueue import WorkQueue

# Errors that mean "the API server could not answer", as opposed to a bug.
_API_ERRORS = (ApiException, urllib3.exceptions.HTTPError, OSError)

# Extra time on top of the check timeout for the exec websocket handshake.
EXEC_GRACE_S = 5.0
# Client-side read deadline beyond the server-side watch timeout.
WATCH_READ_GRACE_S = 30.0


def load_kube_config() -> None:
    """In-cluster service account first, local kubeconfig as a fallback."""
    try:
        config.load_incluster_config()
        log_event("INFO", "Loaded in-cluster config")
    except ConfigException:
        try:
            config.load_kube_config()
        except (ConfigException, OSError) as e:
            raise ConfigError(f"No in-cluster config and no usable kubeconfig: {e}") from e
        log_event("INFO", "Loaded kubeconfig")


def _describe(e: Exception) -> str:
    if isinstance(e, ApiException):
        return f"HTTP {e.status} {e.reason}"
    return f"{type(e).__name__}: {e}"


def unit_from_pod(pod: Any) -> ManagedUnit:
    """Decode a V1Pod into the snapshot the controller works with."""
    meta = pod.metadata
    spec = pod.spec
    status = pod.status

    ready = False
    statuses: list[ContainerStatus] = []
    phase = Phase.UNKNOWN
    address = None
    if status is not None:
        phase = Phase.parse(status.phase)
        address = status.pod_ip or None
        # A pod without a Ready condition is treated as not ready.
        ready = any(c.type == "Ready" and c.status == "True" for c in (status.conditions or []))
        for cs in status.container_statuses or []:
            waiting = cs.state.waiting if cs.state else None
            statuses.append(
                ContainerStatus(
                    name=cs.name,
                    ready=bool(cs.ready),
                    waiting=waiting is not None,
                    waiting_reason=waiting.reason if waiting is not None else None,
                )
            )

    return ManagedUnit(
        namespace=meta.namespace,
        name=meta.name,
        uid=meta.uid,
        labels=dict(meta.labels or {}),
        containers=tuple(c.name for c in (spec.containers or [])) if spec is not None else (),
        phase=phase,
        ready=ready,
        address=address,
        container_statuses=tuple(statuses),
    )


class KubeStore:
    """Pods and StatefulSets in the cluster, as seen by the controller."""

    def __init__(
        self,
        core: client.CoreV1Api,
        apps: client.AppsV1Api,
        request_timeout_s: float = 30.0,
        exec_grace_s: float = EXEC_GRACE_S,
    ):
        self.core = core
        self.apps = apps
        self.request_timeout_s = request_timeout_s
        self.exec_grace_s = exec_grace_s

    @classmethod
    def from_environment(cls) -> "KubeStore":
        load_kube_config()
        return cls(client.CoreV1Api(), client.AppsV1Api())

    def get_unit(self, namespace: str, name: str) -> ManagedUnit:
        try:
            pod = self.core.read_namespaced_pod(name, namespace, _request_timeout=self.request_timeout_s)
        except _API_ERRORS as e:
            if isinstance(e, ApiException) and e.status == 404:
                raise UnitNotFound(f"pod {namespace}/{name} not found") from e
            raise InfraError(f"get pod {namespace}/{name}: {_describe(e)}") from e
        return unit_from_pod(pod)

    def delete_unit(self, namespace: str, name: str, uid: str | None = None) -> None:
        """Delete a pod. With a uid, only that incarnation of the pod is deleted."""
        body = client.V1DeleteOptions(preconditions=client.V1Preconditions(uid=uid)) if uid else None
        try:
            self.core.delete_namespaced_pod(name, namespace, body=body, _request_timeout=self.request_timeout_s)
        except _API_ERRORS as e:
            # 409: the uid precondition failed, the pod was already replaced.
            if isinstance(e, ApiException) and e.status in (404, 409):
                raise UnitNotFound(f"pod {namespace}/{name} already deleted") from e
            raise InfraError(f"delete pod {namespace}/{name}: {_describe(e)}") from e

    def exec_in_container(
        self, namespace: str, name: str, container: str, command: str, timeout_s: float
    ) -> ExecResult:
        """Run `sh -c command` in the container.

        The websocket handshake has no timeout of its own, so the stream runs on
        a separate thread; after timeout_s + exec_grace_s it is abandoned.
        """
        outcome: dict[str, Any] = {}
        done = Event()

        def _target() -> None:
            try:
                outcome["result"] = self._exec(namespace, name, container, command, timeout_s)
            except ExecStreamError as e:
                outcome["error"] = e
            finally:
                done.set()

        Thread(target=_target, name="pod-exec", daemon=True).start()
        if not done.wait(timeout_s + self.exec_grace_s):
            raise ExecStreamError(f"exec into {namespace}/{name} did not complete within {timeout_s + self.exec_grace_s}s")
        if "error" in outcome:
            raise outcome["error"]
        return outcome["result"]

    def _exec(self, namespace: str, name: str, container: str, command: str, timeout_s: float) -> ExecResult:
        resp = None
        try:
            resp = stream(
                self.core.connect_get_namespaced_pod_exec,
                name,
                namespace,
                container=container,
                command=["sh", "-c", command],
                stderr=True,
                stdin=False,
                stdout=True,
                tty=False,
                _preload_content=False,
            )
            resp.run_forever(timeout=timeout_s)
            stdout = resp.read_stdout(timeout=0)
            stderr = resp.read_stderr(timeout=0)
            exit_code = None if resp.is_open() else resp.returncode
        except Exception as e:
            raise ExecStreamError(f"{type(e).__name__}: {e}") from e
        finally:
            if resp is not None:
                resp.close()
        return ExecResult(stdout=stdout or "", stderr=stderr or "", exit_code=exit_code)

    def get_group_selector(self, namespace: str, group_name: str) -> LabelSelector:
        try:
            sts = self.apps.read_namespaced_stateful_set(group_name, namespace, _request_timeout=self.request_timeout_s)
        except _API_ERRORS as e:
            raise InfraError(f"get StatefulSet {namespace}/{group_name}: {_describe(e)}") from e
        if sts.spec is None or sts.spec.selector is None:
            raise InfraError(f"StatefulSet {namespace}/{group_name} has no selector")
        try:
            return selector_from_label_selector(sts.spec.selector)
        except ValueError as e:
            raise InfraError(f"StatefulSet {namespace}/{group_name}: {e}") from e

    def list_units(self, namespace: str, label_selector: str = "") -> tuple[list[ManagedUnit], str]:
        """Current pods and the resource version to watch from."""
        try:
            resp = self.core.list_namespaced_pod(
                namespace, label_selector=label_selector, _request_timeout=self.request_timeout_s
            )
        except _API_ERRORS as e:
            raise InfraError(f"list pods in {namespace}: {_describe(e)}") from e
        return [unit_from_pod(p) for p in resp.items], resp.metadata.resource_version


class PodWatcher:
    """Lists, then watches pods and feeds their keys into the work queue.

    Server-side filtering is limited to the namespace and the configured
    selector text; the controller applies the rest. On 410 Gone the watch
    relists, on any other stream failure it reconnects after a short delay.
    """

    def __init__(
        self,
        store: KubeStore,
        queue: WorkQueue,
        namespace: str,
        label_selector: str = "",
        resync_interval_s: float = 0.0,
        reconnect_delay_s: float = 2.0,
        watch_timeout_s: int = 300,
    ):
        self.store = store
        self.queue = queue
        self.namespace = namespace
        self.label_selector = label_selector
        self.resync_interval_s = resync_interval_s
        self.reconnect_delay_s = reconnect_delay_s
        if resync_interval_s > 0:
            watch_timeout_s = max(1, min(watch_timeout_s, int(resync_interval_s)))
        self.watch_timeout_s = watch_timeout_s
        self._stop = Event()
        self._watch: watch.Watch | None = None
        self._thr: Thread | None = None
        self._last_list = 0.0

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, name="pod-watcher", daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop.set()
        if self._watch is not None:
            self._watch.stop()

    def _enqueue(self, namespace: str, name: str) -> None:
        self.queue.add(UnitKey(namespace, name))

    def relist(self) -> str:
        units, resource_version = self.store.list_units(self.namespace, self.label_selector)
        for u in units:
            self._enqueue(u.namespace, u.name)
        self._last_list = time.monotonic()
        log_event("DEBUG", f"Listed {len(units)} pod(s) in {self.namespace} matching '{self.label_selector or '<all>'}'")
        return resource_version

    def _resync_due(self) -> bool:
        return self.resync_interval_s > 0 and time.monotonic() - self._last_list >= self.resync_interval_s

    def _loop(self) -> None:
        log_event("INFO", f"Pod watch started in namespace {self.namespace}")
        resource_version: str | None = None
        while not self._stop.is_set():
            try:
                if resource_version is None or self._resync_due():
                    resource_version = self.relist()
                resource_version = self.watch_once(resource_version)
            except ApiException as e:
                if e.status == 410:
                    log_event("INFO", "Watch resource version expired, relisting")
                    resource_version = None
                    continue
                log_event("WARN", f"Pod watch closed ({_describe(e)}), reconnecting in {self.reconnect_delay_s}s")
                self._stop.wait(self.reconnect_delay_s)
            except Exception as e:
                log_event("WARN", f"Pod watch closed ({_describe(e)}), reconnecting in {self.reconnect_delay_s}s")
                self._stop.wait(self.reconnect_delay_s)
        log_event("INFO", "Pod watch stopped")

    def watch_once(self, resource_version: str) -> str:
        """Consume one watch stream; return the last resource version seen."""
        w = watch.Watch()
        self._watch = w
        try:
            for ev in w.stream(
                self.store.core.list_namespaced_pod,
                namespace=self.namespace,
                label_selector=self.label_selector,
                resource_version=resource_version,
                timeout_seconds=self.watch_timeout_s,
                _request_timeout=self.watch_timeout_s + WATCH_READ_GRACE_S,
                allow_watch_bookmarks=True,
            ):
                if self._stop.is_set():
                    break
                et = ev.get("type")
                obj = ev.get("object")
                if et == "ERROR":
                    raw = ev.get("raw_object") or {}
                    raise ApiException(status=raw.get("code"), reason=raw.get("reason") or raw.get("message"))
                if et == "BOOKMARK":
                    raw = ev.get("raw_object") or {}
                    resource_version = (raw.get("metadata") or {}).get("resourceVersion") or resource_version
                    continue
                if obj is None or not hasattr(obj, "metadata"):
                    continue
                resource_version = obj.metadata.resource_version or resource_version
                if et in ("ADDED", "MODIFIED", "DELETED"):
                    self._enqueue(obj.metadata.namespace, obj.metadata.name)
                if self._resync_due():
                    break
        finally:
            w.stop()
            self._watch = None
        return resource_version
